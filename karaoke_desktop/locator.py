"""
Resource discovery for the bundled Node.js runtime and server entry script.

Base directories are searched in priority order:
  1. bundled resource directory (where packaged assets live)
  2. directory containing the running executable
  3. current working directory
"""

from __future__ import annotations

import dataclasses
import logging
import os
import pathlib
import sys
from typing import Iterable, Optional

from karaoke_desktop.config import bundle_root

log = logging.getLogger(__name__)

# Relative runtime location per platform family.
RUNTIME_SUBPATHS = {
    "win32": pathlib.PurePath("bundled", "node", "node.exe"),
    "darwin": pathlib.PurePath("bundled", "node", "node"),
    "linux": pathlib.PurePath("bundled", "node", "node"),
}
SCRIPT_SUBPATH = pathlib.PurePath("bundled", "server", "server.js")
MANIFEST_NAME = "package.json"


@dataclasses.dataclass(frozen=True)
class CandidatePair:
    runtime_path: pathlib.Path
    script_path: pathlib.Path


def platform_family(platform: Optional[str] = None) -> str:
    name = sys.platform if platform is None else platform
    if name.startswith("win") or name == "cygwin":
        return "win32"
    if name == "darwin":
        return "darwin"
    return "linux"


def runtime_subpath(platform: Optional[str] = None) -> pathlib.PurePath:
    return RUNTIME_SUBPATHS[platform_family(platform)]


def default_bases(resource_dir: Optional[pathlib.Path] = None) -> list[pathlib.Path]:
    """Ordered, de-duplicated base directories. Bases that can't be computed are skipped."""
    bases: list[pathlib.Path] = []

    try:
        bases.append(pathlib.Path(resource_dir) if resource_dir else bundle_root())
    except OSError as e:
        log.debug("No resource directory: %s", e)

    try:
        exe = pathlib.Path(sys.executable if getattr(sys, "frozen", False) else sys.argv[0])
        bases.append(exe.resolve().parent)
    except (OSError, IndexError, RuntimeError) as e:
        log.debug("No executable directory: %s", e)

    try:
        bases.append(pathlib.Path(os.getcwd()))
    except OSError as e:
        log.debug("No current directory: %s", e)

    unique: list[pathlib.Path] = []
    for base in bases:
        if base not in unique:
            unique.append(base)
    return unique


def _exists(path: pathlib.Path) -> bool:
    try:
        return path.is_file()
    except OSError:
        return False


def _first_match(bases: Iterable[pathlib.Path], subpath: pathlib.PurePath) -> Optional[pathlib.Path]:
    for base in bases:
        candidate = pathlib.Path(base) / subpath
        if _exists(candidate):
            log.info("Found %s at %s", subpath.name, candidate)
            return candidate
    return None


def locate_runtime(bases: Iterable[pathlib.Path], platform: Optional[str] = None) -> Optional[pathlib.Path]:
    return _first_match(bases, runtime_subpath(platform))


def locate_script(bases: Iterable[pathlib.Path]) -> Optional[pathlib.Path]:
    return _first_match(bases, SCRIPT_SUBPATH)


def candidate_pairs(bases: Iterable[pathlib.Path], platform: Optional[str] = None) -> list[CandidatePair]:
    """Runtime/script pairs that both exist under the same base, in priority order."""
    pairs = []
    for base in bases:
        runtime = pathlib.Path(base) / runtime_subpath(platform)
        script = pathlib.Path(base) / SCRIPT_SUBPATH
        if _exists(runtime) and _exists(script):
            pairs.append(CandidatePair(runtime, script))
    return pairs


def find_manifest(directory: Optional[pathlib.Path] = None) -> Optional[pathlib.Path]:
    try:
        root = pathlib.Path(os.getcwd()) if directory is None else pathlib.Path(directory)
    except OSError:
        return None
    manifest = root / MANIFEST_NAME
    return manifest if _exists(manifest) else None
