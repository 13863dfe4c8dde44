"""
Launch strategy chain for the local server.

Strategies are data: each entry expands into zero or more concrete
LaunchAttempts, and the chain spawns attempts in order until one starts.

  1. bundled runtime + bundled script
  2. system runtime (found on PATH) + bundled script
  3. package manager dev command (bun, then npm) when ./package.json exists
"""

from __future__ import annotations

import dataclasses
import enum
import functools
import logging
import os
import pathlib
import shutil
import subprocess
import sys
from typing import Callable, Mapping, Optional, Sequence

from karaoke_desktop import locator
from karaoke_desktop.config import BIND_HOST, SERVER_PORT
from karaoke_desktop.process import ProcessHandle

log = logging.getLogger(__name__)

SYSTEM_RUNTIME_COMMAND = "node"
DEV_TOOLS = ("bun", "npm")
DEV_ARGS = ("run", "dev")


class LaunchMethod(enum.Enum):
    BUNDLED_RUNTIME = "bundled-runtime"
    SYSTEM_RUNTIME = "system-runtime"
    PACKAGE_MANAGER_DEV = "package-manager-dev"


@dataclasses.dataclass(frozen=True)
class LaunchAttempt:
    method: LaunchMethod
    argv: tuple[str, ...]
    working_directory: pathlib.Path
    environment: Mapping[str, str]
    tool: Optional[str] = None

    def describe(self) -> str:
        label = self.method.value if self.tool is None else f"{self.method.value}:{self.tool}"
        return f"{label} {' '.join(self.argv)} (cwd={self.working_directory})"


@dataclasses.dataclass
class LaunchContext:
    bases: Sequence[pathlib.Path]
    cwd: pathlib.Path
    port: int = SERVER_PORT
    bind_host: str = BIND_HOST
    platform: Optional[str] = None
    base_env: Optional[Mapping[str, str]] = None

    def env(self, **overrides: str) -> dict[str, str]:
        env = dict(os.environ if self.base_env is None else self.base_env)
        env.update(overrides)
        return env


@dataclasses.dataclass(frozen=True)
class LaunchStrategy:
    method: LaunchMethod
    plan: Callable[[LaunchContext], list[LaunchAttempt]]


def _bundled_attempts(ctx: LaunchContext) -> list[LaunchAttempt]:
    env = ctx.env(PORT=str(ctx.port), HOSTNAME=ctx.bind_host, NODE_ENV="production")
    pairs = [(p.runtime_path, p.script_path) for p in locator.candidate_pairs(ctx.bases, ctx.platform)]
    runtime = locator.locate_runtime(ctx.bases, ctx.platform)
    script = locator.locate_script(ctx.bases)
    if runtime is not None and script is not None and (runtime, script) not in pairs:
        pairs.append((runtime, script))
    return [
        LaunchAttempt(LaunchMethod.BUNDLED_RUNTIME, (str(rt), str(sc)), sc.parent, env)
        for rt, sc in pairs
    ]


def _system_attempts(ctx: LaunchContext) -> list[LaunchAttempt]:
    script = locator.locate_script(ctx.bases)
    if script is None:
        return []
    env = ctx.env(PORT=str(ctx.port))
    return [LaunchAttempt(LaunchMethod.SYSTEM_RUNTIME, (SYSTEM_RUNTIME_COMMAND, str(script)),
                          script.parent, env, tool=SYSTEM_RUNTIME_COMMAND)]


def _dev_attempts(ctx: LaunchContext) -> list[LaunchAttempt]:
    if locator.find_manifest(ctx.cwd) is None:
        return []
    env = ctx.env(PORT=str(ctx.port))
    return [LaunchAttempt(LaunchMethod.PACKAGE_MANAGER_DEV, (tool,) + DEV_ARGS, ctx.cwd, env, tool=tool)
            for tool in DEV_TOOLS]


DEFAULT_STRATEGIES: tuple[LaunchStrategy, ...] = (
    LaunchStrategy(LaunchMethod.BUNDLED_RUNTIME, _bundled_attempts),
    LaunchStrategy(LaunchMethod.SYSTEM_RUNTIME, _system_attempts),
    LaunchStrategy(LaunchMethod.PACKAGE_MANAGER_DEV, _dev_attempts),
)


Spawner = Callable[[LaunchAttempt], subprocess.Popen]


def spawn_process(attempt: LaunchAttempt, capture_output: bool = False) -> subprocess.Popen:
    """Start the attempt. stdout is piped only when a reader will drain it."""
    argv = list(attempt.argv)
    if attempt.tool is not None:
        # npm/bun are .cmd shims on Windows; Popen needs the resolved path.
        argv[0] = shutil.which(argv[0], path=attempt.environment.get("PATH")) or argv[0]
    kwargs = {}
    if sys.platform == "win32":
        kwargs["creationflags"] = getattr(subprocess, "CREATE_NO_WINDOW", 0)
    return subprocess.Popen(
        argv,
        cwd=str(attempt.working_directory),
        env=dict(attempt.environment),
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE if capture_output else subprocess.DEVNULL,
        stderr=subprocess.STDOUT,
        **kwargs,
    )


class LaunchChain:
    def __init__(
        self,
        context: LaunchContext,
        strategies: Sequence[LaunchStrategy] = DEFAULT_STRATEGIES,
        spawn: Optional[Spawner] = None,
        output_log: Optional[pathlib.Path] = None,
    ) -> None:
        self.context = context
        self.strategies = tuple(strategies)
        self._spawn = spawn or functools.partial(spawn_process, capture_output=output_log is not None)
        self.output_log = output_log
        self.tried: list[LaunchAttempt] = []

    def attempts(self) -> list[LaunchAttempt]:
        planned: list[LaunchAttempt] = []
        for strategy in self.strategies:
            try:
                steps = strategy.plan(self.context)
            except OSError as e:
                log.warning("Could not plan %s launch: %s", strategy.method.value, e)
                continue
            if not steps:
                log.info("Skipping %s launch: prerequisites not found", strategy.method.value)
            planned.extend(steps)
        return planned

    def launch(self) -> Optional[ProcessHandle]:
        """Spawn the first attempt that starts. Returns None if every attempt fails."""
        for attempt in self.attempts():
            self.tried.append(attempt)
            log.info("Starting server: %s", attempt.describe())
            try:
                proc = self._spawn(attempt)
            except (OSError, ValueError, subprocess.SubprocessError) as e:
                log.warning("Launch via %s failed: %s", attempt.method.value, e)
                continue
            handle = ProcessHandle(proc, description=attempt.describe())
            log.info("Server process started (pid=%s) via %s", handle.pid, attempt.method.value)
            if self.output_log is not None:
                handle.stream_output(self.output_log)
            return handle
        log.error("Could not start server: no runtime or package manager available")
        return None
