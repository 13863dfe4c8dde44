"""
Ownership of the spawned server process.

A ProcessHandle owns at most one child. All access goes through one lock so
the supervisor thread storing a handle can't race the shutdown hook killing it.
"""

from __future__ import annotations

import logging
import os
import pathlib
import shutil
import subprocess
import sys
import threading
from typing import IO, Optional

log = logging.getLogger(__name__)


class ProcessHandle:
    def __init__(self, proc: subprocess.Popen, description: str = "") -> None:
        self._proc: Optional[subprocess.Popen] = proc
        self._lock = threading.Lock()
        self.description = description or " ".join(str(a) for a in _args_of(proc))
        self.pid = proc.pid

    def is_alive(self) -> bool:
        with self._lock:
            return self._proc is not None and self._proc.poll() is None

    def returncode(self) -> Optional[int]:
        with self._lock:
            return None if self._proc is None else self._proc.poll()

    def terminate(self, timeout: float = 5.0) -> None:
        """Stop the process. Idempotent, bounded, never raises."""
        with self._lock:
            proc, self._proc = self._proc, None
        if proc is None:
            return
        if proc.poll() is not None:
            log.info("Server process (pid=%s) already exited with code %s", proc.pid, proc.returncode)
            return
        log.info("Stopping server process (pid=%s)...", proc.pid)
        try:
            proc.terminate()
            proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            try:
                proc.kill()
                proc.wait(timeout=timeout)
            except (subprocess.TimeoutExpired, OSError) as e:
                log.warning("Server process (pid=%s) did not die: %s", proc.pid, e)
        except OSError as e:
            log.debug("Terminate failed for pid=%s: %s", proc.pid, e)

    def stream_output(self, log_path: pathlib.Path) -> Optional[threading.Thread]:
        """Copy the child's stdout to log_path on a daemon thread."""
        with self._lock:
            stdout = None if self._proc is None else self._proc.stdout
        if stdout is None:
            return None
        thread = threading.Thread(target=_copy_stream, args=(stdout, log_path),
                                  name="server-stdout", daemon=True)
        thread.start()
        return thread


def _args_of(proc: subprocess.Popen) -> list:
    args = getattr(proc, "args", None)
    if isinstance(args, (list, tuple)):
        return list(args)
    return [args] if args else []


def _copy_stream(stream: IO[bytes], log_path: pathlib.Path) -> None:
    """Copy stream to log_path until EOF. The pipe is drained even if the log can't be written."""
    f: Optional[IO[str]] = None
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        f = open(log_path, "a", encoding="utf-8")
    except OSError as e:
        log.warning("Cannot write server output to %s: %s", log_path, e)
    try:
        for line in iter(stream.readline, b""):
            if f is None:
                continue
            try:
                f.write(line.decode("utf-8", errors="replace"))
                f.flush()
            except OSError as e:
                log.warning("Stopped logging server output to %s: %s", log_path, e)
                f.close()
                f = None
    except (OSError, ValueError) as e:
        log.debug("Server output stream closed: %s", e)
    finally:
        if f is not None:
            f.close()


# ---------------------------------------------------------------------------
# Orphan sweep
# ---------------------------------------------------------------------------
def pids_listening_on_port(port: int) -> set[int]:
    pids: set[int] = set()
    if sys.platform == "win32":
        commands = [["netstat", "-ano", "-p", "tcp"]]
    else:
        commands = [
            ["lsof", "-ti", f"tcp:{port}", "-sTCP:LISTEN"],
            ["ss", "-ltnp"],
        ]

    for cmd in commands:
        if shutil.which(cmd[0]) is None:
            continue
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=5)
        except (OSError, subprocess.SubprocessError):
            continue

        out = result.stdout
        if cmd[0] == "netstat":
            for line in out.splitlines():
                parts = line.split()
                if len(parts) >= 5 and parts[1].endswith(f":{port}") and "LISTEN" in line:
                    try:
                        pids.add(int(parts[-1]))
                    except ValueError:
                        pass
        elif cmd[0] == "lsof":
            for pid_str in out.split():
                try:
                    pids.add(int(pid_str))
                except ValueError:
                    pass
        else:  # ss
            for line in out.splitlines():
                parts = line.split()
                if len(parts) < 4 or not parts[3].endswith(f":{port}"):
                    continue
                if "pid=" in line:
                    tail = line.split("pid=", 1)[1]
                    digits = ""
                    for ch in tail:
                        if not ch.isdigit():
                            break
                        digits += ch
                    if digits:
                        pids.add(int(digits))

        if pids:
            break

    return pids


def kill_stale_on_port(port: int) -> None:
    """Kill any process still listening on port (grandchildren of a dev command)."""
    for pid in pids_listening_on_port(port):
        if pid == os.getpid():
            continue
        try:
            if sys.platform == "win32":
                subprocess.run(["taskkill", "/F", "/T", "/PID", str(pid)], check=False, capture_output=True)
            else:
                os.kill(pid, 9)
            log.info("Killed leftover process %d on port %d", pid, port)
        except (ProcessLookupError, PermissionError, OSError):
            pass
