"""TCP health probe for the local server."""

import logging
import socket

from karaoke_desktop.config import PROBE_HOST, SERVER_PORT

log = logging.getLogger(__name__)


def probe(host: str = PROBE_HOST, port: int = SERVER_PORT, timeout: float = 0.5) -> bool:
    """Return True iff something accepts a TCP connection on host:port within timeout.

    Connection errors (refused, timed out, unreachable) mean "not ready yet"
    and are reported as False, never raised.
    """
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except (OSError, ValueError, OverflowError) as e:
        log.debug("Probe %s:%s failed: %s", host, port, e)
        return False
