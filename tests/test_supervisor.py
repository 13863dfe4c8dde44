"""
Tests for the bootstrap supervisor state machine.

Probe, launch chain and window are all fakes, so no real server or GUI runs.

Run: pytest tests/test_supervisor.py -v
"""

import os
import pathlib
import sys
import threading
import time

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from karaoke_desktop.config import SupervisorConfig
from karaoke_desktop.launch import LaunchChain, LaunchContext, LaunchMethod
from karaoke_desktop.process import ProcessHandle
from karaoke_desktop.readiness import ReadinessTracker
from karaoke_desktop.supervisor import BootstrapSupervisor, State


FAST = SupervisorConfig(
    probe_timeout=0.01,
    poll_interval=0.01,
    poll_max_attempts=20,
    startup_delay=0,
    terminate_timeout=1,
)


class FakeProc:
    def __init__(self, args=("node", "server.js")):
        self.pid = 4321
        self.args = list(args)
        self.stdout = None
        self.returncode = None
        self.terminated = 0

    def poll(self):
        return self.returncode

    def terminate(self):
        self.terminated += 1
        self.returncode = -15

    def kill(self):
        self.returncode = -9

    def wait(self, timeout=None):
        return self.returncode


class FakeWindow:
    def __init__(self, readiness=None):
        self.urls = []
        self.ready_at_navigate = []
        self._readiness = readiness

    def navigate(self, url):
        if self._readiness is not None:
            self.ready_at_navigate.append(self._readiness.is_ready())
        self.urls.append(url)


class ScriptedProbe:
    """Returns False for the first `fail_count` calls, then True."""

    def __init__(self, fail_count):
        self.fail_count = fail_count
        self.calls = 0
        self.targets = []

    def __call__(self, host, port, timeout):
        self.calls += 1
        self.targets.append((host, port))
        return self.calls > self.fail_count


class FakeChain:
    def __init__(self, handle):
        self.handle = handle
        self.launches = 0

    def launch(self):
        self.launches += 1
        return self.handle


def _supervisor(probe, chain, window=None, config=FAST, readiness=None):
    return BootstrapSupervisor(
        config=config,
        window=window,
        readiness=readiness,
        probe_fn=probe,
        chain_factory=lambda cfg: chain,
        sweep_orphans=False,
    )


def test_existing_server_short_circuits():
    probe = ScriptedProbe(fail_count=0)
    chain = FakeChain(ProcessHandle(FakeProc()))
    window = FakeWindow()
    sup = _supervisor(probe, chain, window)

    assert sup.run() is State.READY
    assert chain.launches == 0
    assert sup.is_ready()
    assert sup.handle is None
    assert window.urls == ["http://localhost:3000"]
    assert probe.targets == [("127.0.0.1", 3000)]


def test_launch_then_ready_on_attempt_k():
    proc = FakeProc()
    chain = FakeChain(ProcessHandle(proc))
    probe = ScriptedProbe(fail_count=4)  # existing check + 3 failed polls
    readiness = ReadinessTracker()
    window = FakeWindow(readiness)
    sup = _supervisor(probe, chain, window, readiness=readiness)

    assert not readiness.is_ready()
    assert sup.run() is State.READY
    assert chain.launches == 1
    assert sup.poll_attempts == 4
    assert readiness.is_ready()
    assert window.urls == ["http://localhost:3000"]
    assert window.ready_at_navigate == [True]
    assert sup.handle is not None and proc.terminated == 0


def test_launch_failure_is_terminal():
    probe = ScriptedProbe(fail_count=10**6)
    chain = FakeChain(None)
    window = FakeWindow()
    sup = _supervisor(probe, chain, window)

    assert sup.run() is State.FAILED
    assert probe.calls == 1
    assert not sup.is_ready()
    assert sup.readiness.is_failed()
    assert "Could not start server" in sup.readiness.failure_reason()
    assert window.urls == []


def test_poll_ceiling_leaves_process_running():
    proc = FakeProc()
    chain = FakeChain(ProcessHandle(proc))
    probe = ScriptedProbe(fail_count=10**6)
    window = FakeWindow()
    config = SupervisorConfig(probe_timeout=0.01, poll_interval=0.01, poll_max_attempts=7,
                              startup_delay=0, terminate_timeout=1)
    sup = _supervisor(probe, chain, window, config=config)

    started = time.monotonic()
    assert sup.run() is State.FAILED
    elapsed = time.monotonic() - started

    assert probe.calls == 1 + 7
    assert sup.poll_attempts == 7
    assert elapsed < 5
    assert proc.terminated == 0
    assert sup.handle is not None
    assert window.urls == []
    assert sup.readiness.status() == "failed"
    assert "timeout" in sup.readiness.failure_reason()


def test_readiness_never_reverts():
    readiness = ReadinessTracker()
    assert readiness.status() == "pending"
    assert readiness.mark_ready() is True
    assert readiness.mark_ready() is False
    assert readiness.mark_failed("late failure") is False
    assert readiness.is_ready()
    assert readiness.status() == "ready"
    assert readiness.failure_reason() is None


def test_shutdown_terminates_owned_process():
    proc = FakeProc()
    chain = FakeChain(ProcessHandle(proc))
    sup = _supervisor(ScriptedProbe(fail_count=2), chain, FakeWindow())
    sup.run()
    assert sup.state is State.READY

    sup.shutdown()
    sup.shutdown()
    assert proc.terminated == 1
    assert sup.state is State.STOPPED
    assert sup.handle is None
    # Readiness stays set after shutdown.
    assert sup.is_ready()


def test_shutdown_without_handle_is_noop():
    sup = _supervisor(ScriptedProbe(fail_count=0), FakeChain(None))
    sup.shutdown()
    assert sup.state is State.STOPPED


def test_shutdown_interrupts_polling():
    proc = FakeProc()
    chain = FakeChain(ProcessHandle(proc))
    config = SupervisorConfig(probe_timeout=0.01, poll_interval=0.5, poll_max_attempts=120,
                              startup_delay=0, terminate_timeout=1)
    sup = _supervisor(ScriptedProbe(fail_count=10**6), chain, FakeWindow(), config=config)

    thread = sup.start()
    deadline = time.monotonic() + 5
    while sup.state is not State.POLLING and time.monotonic() < deadline:
        time.sleep(0.01)
    assert sup.state is State.POLLING

    sup.shutdown()
    thread.join(timeout=5)
    assert not thread.is_alive()
    assert proc.terminated == 1
    assert sup.state is State.STOPPED
    assert not sup.is_ready()


def test_start_is_not_reentered():
    gate = threading.Event()
    calls = []

    def probe(host, port, timeout):
        calls.append(port)
        gate.wait(5)
        return True

    sup = _supervisor(probe, FakeChain(None), FakeWindow())
    first = sup.start()
    second = sup.start()
    gate.set()
    sup.join(timeout=5)
    assert first is second
    assert calls == [3000]
    assert sup.state is State.READY


def test_navigation_error_does_not_escape():
    class BrokenWindow:
        def navigate(self, url):
            raise RuntimeError("window destroyed")

    sup = _supervisor(ScriptedProbe(fail_count=0), FakeChain(None), BrokenWindow())
    assert sup.run() is State.READY
    assert sup.is_ready()


def test_unexpected_chain_error_becomes_failed():
    class ExplodingChain:
        def launch(self):
            raise RuntimeError("boom")

    sup = _supervisor(ScriptedProbe(fail_count=10**6), ExplodingChain(), FakeWindow())
    assert sup.run() is State.FAILED
    assert "boom" in sup.readiness.failure_reason()


# ── End-to-end with the real launch chain ────────────────────────

def _touch(path: pathlib.Path) -> pathlib.Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("", encoding="utf-8")
    return path


@pytest.fixture
def layout(tmp_path):
    resources = tmp_path / "resources"
    cwd = tmp_path / "cwd"
    resources.mkdir()
    cwd.mkdir()
    return resources, cwd


def test_bundled_layout_launches_via_bundled_runtime(layout):
    resources, cwd = layout
    _touch(resources / "bundled" / "node" / "node")
    _touch(resources / "bundled" / "server" / "server.js")
    spawned = []

    def spawn(attempt):
        spawned.append(attempt)
        return FakeProc(attempt.argv)

    def chain_factory(cfg):
        ctx = LaunchContext(bases=[resources, cwd], cwd=cwd, port=cfg.port, platform="linux", base_env={})
        return LaunchChain(ctx, spawn=spawn)

    window = FakeWindow()
    sup = BootstrapSupervisor(config=FAST, window=window, probe_fn=ScriptedProbe(fail_count=3),
                              chain_factory=chain_factory, sweep_orphans=False)
    assert sup.run() is State.READY
    assert [a.method for a in spawned] == [LaunchMethod.BUNDLED_RUNTIME]
    assert window.urls == ["http://localhost:3000"]


def test_nothing_available_reaches_failed(layout):
    resources, cwd = layout
    spawned = []

    def chain_factory(cfg):
        ctx = LaunchContext(bases=[resources, cwd], cwd=cwd, port=cfg.port, platform="linux", base_env={})
        return LaunchChain(ctx, spawn=lambda attempt: spawned.append(attempt))

    window = FakeWindow()
    sup = BootstrapSupervisor(config=FAST, window=window, probe_fn=ScriptedProbe(fail_count=10**6),
                              chain_factory=chain_factory, sweep_orphans=False)
    assert sup.run() is State.FAILED
    assert spawned == []
    assert not sup.is_ready()
    assert window.urls == []
