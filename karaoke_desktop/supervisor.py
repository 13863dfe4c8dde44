"""
Bootstrap supervisor: gets the local server running and tells the window.

    IDLE -> PROBING_EXISTING -> LAUNCHING -> POLLING -> READY
                          \-> READY      \-> FAILED   \-> FAILED

Shutdown is reachable from every state and moves to STOPPED.
READY and FAILED are terminal for the bootstrap sequence; nothing retries.
"""

from __future__ import annotations

import enum
import logging
import pathlib
import threading
from typing import Callable, Optional, Protocol

from karaoke_desktop import locator
from karaoke_desktop.config import SupervisorConfig
from karaoke_desktop.launch import LaunchChain, LaunchContext
from karaoke_desktop.probe import probe
from karaoke_desktop.process import ProcessHandle, kill_stale_on_port
from karaoke_desktop.readiness import ReadinessTracker

log = logging.getLogger(__name__)


class State(enum.Enum):
    IDLE = "idle"
    PROBING_EXISTING = "probing-existing"
    LAUNCHING = "launching"
    POLLING = "polling"
    READY = "ready"
    FAILED = "failed"
    STOPPED = "stopped"


class Window(Protocol):
    def navigate(self, url: str) -> None: ...


ProbeFn = Callable[[str, int, float], bool]
ChainFactory = Callable[[SupervisorConfig], LaunchChain]


def default_chain(config: SupervisorConfig, output_log: Optional[pathlib.Path] = None) -> LaunchChain:
    context = LaunchContext(
        bases=locator.default_bases(config.resource_dir),
        cwd=pathlib.Path.cwd(),
        port=config.port,
        bind_host=config.bind_host,
    )
    return LaunchChain(context, output_log=output_log)


class BootstrapSupervisor:
    def __init__(
        self,
        config: Optional[SupervisorConfig] = None,
        window: Optional[Window] = None,
        readiness: Optional[ReadinessTracker] = None,
        probe_fn: ProbeFn = probe,
        chain_factory: Optional[ChainFactory] = None,
        output_log: Optional[pathlib.Path] = None,
        sweep_orphans: bool = True,
    ) -> None:
        self.config = config or SupervisorConfig()
        self.window = window
        self.readiness = readiness or ReadinessTracker()
        self._probe_fn = probe_fn
        self._chain_factory = chain_factory or (lambda cfg: default_chain(cfg, output_log))
        self._sweep_orphans = sweep_orphans

        self._lock = threading.Lock()
        self._stopping = threading.Event()
        self._state = State.IDLE
        self._handle: Optional[ProcessHandle] = None
        self._thread: Optional[threading.Thread] = None
        self._redirected = False
        self.poll_attempts = 0

    # -- queries -----------------------------------------------------------
    @property
    def state(self) -> State:
        with self._lock:
            return self._state

    @property
    def handle(self) -> Optional[ProcessHandle]:
        with self._lock:
            return self._handle

    def is_ready(self) -> bool:
        return self.readiness.is_ready()

    # -- lifecycle ---------------------------------------------------------
    def start(self, window: Optional[Window] = None) -> threading.Thread:
        """Run the bootstrap on a daemon thread. Later calls return the same thread."""
        with self._lock:
            if window is not None:
                self.window = window
            if self._thread is None:
                self._thread = threading.Thread(target=self.run, name="server-bootstrap", daemon=True)
                self._thread.start()
            return self._thread

    def join(self, timeout: Optional[float] = None) -> None:
        thread = self._thread
        if thread is not None:
            thread.join(timeout)

    def run(self) -> State:
        try:
            self._bootstrap()
        except Exception as e:
            log.exception("Server bootstrap crashed")
            self._fail(f"Server bootstrap crashed: {e}")
        return self.state

    def shutdown(self) -> None:
        """Terminate the owned server process. Safe to call repeatedly, from any thread."""
        self._stopping.set()
        with self._lock:
            handle, self._handle = self._handle, None
            previous, self._state = self._state, State.STOPPED
        if previous is not State.STOPPED:
            log.info("Supervisor shutting down (state=%s)", previous.value)
        if handle is None:
            return
        try:
            handle.terminate(timeout=self.config.terminate_timeout)
            if self._sweep_orphans:
                kill_stale_on_port(self.config.port)
        except Exception:
            log.warning("Error while stopping server process", exc_info=True)

    # -- internals ---------------------------------------------------------
    def _transition(self, new: State) -> bool:
        with self._lock:
            if self._state is State.STOPPED:
                return False
            log.debug("Supervisor %s -> %s", self._state.value, new.value)
            self._state = new
            return True

    def _probe(self) -> bool:
        cfg = self.config
        return self._probe_fn(cfg.probe_host, cfg.port, cfg.probe_timeout)

    def _bootstrap(self) -> None:
        cfg = self.config
        if not self._transition(State.PROBING_EXISTING):
            return
        if self._probe():
            log.info("Server already running on port %d; not launching another", cfg.port)
            self._become_ready()
            return

        if self._stopping.wait(cfg.startup_delay):
            return
        if not self._transition(State.LAUNCHING):
            return
        handle = self._chain_factory(cfg).launch()
        if handle is None:
            self._fail("Could not start server - no Node.js or bun found")
            return

        with self._lock:
            stopped = self._state is State.STOPPED
            if not stopped:
                self._handle = handle
        if stopped:
            handle.terminate(timeout=cfg.terminate_timeout)
            return
        if not self._transition(State.POLLING):
            return

        log.info("Waiting for server on port %d...", cfg.port)
        reported_exit = False
        for attempt in range(1, cfg.poll_max_attempts + 1):
            self.poll_attempts = attempt
            if self._probe():
                log.info("Server is ready after %d attempts", attempt)
                self._become_ready()
                return
            if not reported_exit and not handle.is_alive():
                log.warning("Server process exited early with code %s", handle.returncode())
                reported_exit = True
            if attempt < cfg.poll_max_attempts and self._stopping.wait(cfg.poll_interval):
                return
        self._fail(f"Server startup timeout after {cfg.poll_max_attempts} attempts "
                   f"({cfg.poll_max_attempts * cfg.poll_interval:g}s)")

    def _become_ready(self) -> None:
        self.readiness.mark_ready()
        if not self._transition(State.READY):
            return
        self._redirect()

    def _redirect(self) -> None:
        with self._lock:
            if self._redirected or self.window is None:
                return
            self._redirected = True
            window = self.window
        url = self.config.url
        log.info("Navigating window to %s", url)
        try:
            window.navigate(url)
        except Exception:
            log.warning("Window navigation to %s failed", url, exc_info=True)

    def _fail(self, reason: str) -> None:
        if not self._transition(State.FAILED):
            return
        self.readiness.mark_failed(reason)
        log.error(reason)
