"""
Karaoke Successor Launcher: desktop shell process manager.

This file is bundled into the app via PyInstaller next to the ``bundled/``
directory (portable Node.js + Next.js standalone server).

Responsibilities:
  - Show a pywebview window with a loading page
  - Start the local game server (bundled Node, system Node, or bun/npm dev)
  - Navigate the window to the server once it answers on its port
  - Kill the server when the window closes
"""

import atexit
import importlib
import logging
import os
import subprocess
import sys
from logging.handlers import RotatingFileHandler
from typing import Any

from karaoke_desktop import __version__
from karaoke_desktop.config import LOG_DIR, SupervisorConfig, ensure_settings_file, load_config
from karaoke_desktop.readiness import ReadinessTracker
from karaoke_desktop.supervisor import BootstrapSupervisor

_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

log = logging.getLogger("launcher")


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
def configure_logging(level: int = logging.INFO) -> None:
    LOG_DIR.mkdir(parents=True, exist_ok=True)
    file_handler = RotatingFileHandler(
        LOG_DIR / "launcher.log", maxBytes=2 * 1024 * 1024, backupCount=2, encoding="utf-8",
    )
    file_handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    handlers: list = [file_handler]
    if not getattr(sys, "frozen", False):
        handlers.append(logging.StreamHandler())
    logging.basicConfig(level=level, format=_LOG_FORMAT, handlers=handlers)


# ---------------------------------------------------------------------------
# Window bridge
# ---------------------------------------------------------------------------
class WebviewWindow:
    """Adapts a pywebview window to the supervisor's navigate() interface."""

    def __init__(self, window: Any) -> None:
        self._window = window

    def navigate(self, url: str) -> None:
        self._window.load_url(url)


class LauncherApi:
    """Exposed to the loading page as window.pywebview.api."""

    def __init__(self, readiness: ReadinessTracker, config: SupervisorConfig) -> None:
        self._readiness = readiness
        self._config = config

    def is_server_ready(self) -> bool:
        return self._readiness.is_ready()

    def get_server_status(self) -> dict:
        return {
            "status": self._readiness.status(),
            "reason": self._readiness.failure_reason() or "",
            "url": self._config.url,
        }


_LOADING_HTML = """<!DOCTYPE html>
<html><head><meta charset="UTF-8"><style>
* { margin:0; padding:0; box-sizing:border-box; }
body { background:#0b0714; color:#e2e8f0; font-family:-apple-system,system-ui,sans-serif;
       display:flex; align-items:center; justify-content:center; height:100vh; }
.card { text-align:center; }
h2 { font-size:28px; margin-bottom:8px; color:#c084fc; letter-spacing:2px; }
.sub { color:rgba(255,255,255,.55); font-size:14px; }
.err { color:#f87171; font-size:13px; margin-top:14px; display:none; max-width:420px; }
</style></head><body>
<div class="card">
  <h2>KARAOKE SUCCESSOR</h2>
  <p class="sub" id="status">Starting the game server...</p>
  <p class="err" id="err"></p>
</div>
<script>
async function poll() {
    if (!window.pywebview || !window.pywebview.api) { setTimeout(poll, 300); return; }
    const s = await window.pywebview.api.get_server_status();
    if (s.status === 'failed') {
        document.getElementById('status').textContent = 'The game server could not be started.';
        const err = document.getElementById('err');
        err.style.display = 'block';
        err.textContent = s.reason;
        return;
    }
    setTimeout(poll, 500);
}
window.addEventListener('pywebviewready', poll);
</script></body></html>"""


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------
def main() -> None:
    configure_logging()
    webview = importlib.import_module("webview")

    ensure_settings_file()
    config = load_config()
    log.info("Karaoke Successor launcher v%s (port=%d, cwd=%s)", __version__, config.port, os.getcwd())

    readiness = ReadinessTracker()
    window = webview.create_window(
        "Karaoke Successor",
        html=_LOADING_HTML,
        js_api=LauncherApi(readiness, config),
        width=1280,
        height=800,
        min_size=(960, 600),
        background_color="#0b0714",
    )
    supervisor = BootstrapSupervisor(
        config=config,
        window=WebviewWindow(window),
        readiness=readiness,
        output_log=LOG_DIR / "server_stdout.log",
    )

    def _on_closing():
        log.info("Window closing, stopping server.")
        supervisor.shutdown()

    window.events.closing += _on_closing
    atexit.register(supervisor.shutdown)

    webview.start(func=supervisor.start, debug=False)


if __name__ == "__main__":
    from multiprocessing import freeze_support
    freeze_support()

    # Finder-launched apps get a bare PATH; system node/bun/npm live in the login shell PATH.
    if sys.platform == "darwin":
        try:
            _shell_path = subprocess.check_output(
                ["/bin/bash", "-l", "-c", "echo $PATH"], text=True, timeout=5,
            ).strip()
            if _shell_path:
                os.environ["PATH"] = _shell_path
        except (OSError, subprocess.SubprocessError):
            pass

    main()
