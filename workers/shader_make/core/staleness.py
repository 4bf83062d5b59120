"""
Staleness oracle — decides whether a permutation's outputs are current.

The hierarchical update time of a file is the newest modification time
of the file itself and every non-relaxed file it transitively
``#include``s.  Results are memoized per absolute path for the whole
run, so every staleness decision in a run sees the same times even if
files change while it executes.

The cache is only touched during the single-threaded planning phase.
"""
from __future__ import annotations

import logging
import os
import re
import sys
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from shader_make.core.errors import DependencyResolutionError

logger = logging.getLogger(__name__)

_INCLUDE_PATTERN = re.compile(r'\s*#include\s+["<]([^>"]+)[>"]')

# back-edge depth meaning "no unfinished cycle below this frame"
_NO_CYCLE = sys.maxsize


def _normalize(path: Path) -> Path:
    return Path(os.path.normpath(os.path.abspath(path)))


def _relaxed_key(name: str) -> str:
    return Path(name).as_posix()


class StalenessOracle:
    """Memoized include-tree walker plus the up-to-date rule."""

    def __init__(
        self,
        include_dirs: Iterable[Path] = (),
        relaxed_includes: Iterable[str] = (),
    ):
        self.include_dirs: List[Path] = [Path(d) for d in include_dirs]
        self.relaxed_includes = frozenset(_relaxed_key(r) for r in relaxed_includes)
        self._cache: Dict[Path, int] = {}

    @property
    def cache(self) -> Mapping[Path, int]:
        return self._cache

    # ── Include tree ─────────────────────────────────────────────────────

    def hierarchical_time(self, path: Path, call_stack: Sequence[Path] = ()) -> int:
        """
        Newest st_mtime_ns over *path* and its include tree.

        *call_stack* lists the files that led here (outermost first) and
        is only used for diagnostics.  Raises DependencyResolutionError
        for a file that cannot be opened or an include that cannot be
        found.
        """
        stack = [_normalize(p) for p in call_stack]
        result, _ = self._walk(_normalize(path), stack)
        return result

    def _walk(self, path: Path, stack: List[Path]) -> Tuple[int, int]:
        cached = self._cache.get(path)
        if cached is not None:
            return cached, _NO_CYCLE

        try:
            own_time = path.stat().st_mtime_ns
            text = path.read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            raise DependencyResolutionError(
                f"Can't open file '{path}'", list(reversed(stack)),
            ) from e

        depth = len(stack)
        stack.append(path)

        result = own_time
        cycle_depth = _NO_CYCLE

        for line in text.splitlines():
            match = _INCLUDE_PATTERN.match(line)
            if match is None:
                continue

            name = match.group(1)
            if _relaxed_key(name) in self.relaxed_includes:
                continue

            include = self._resolve(path.parent, name)
            if include is None:
                raise DependencyResolutionError(
                    f"Can't find include file '{name}'", list(reversed(stack)),
                )

            if include in stack:
                # Include cycle: the enclosing frame accounts for that file.
                logger.debug("Include cycle: %s -> %s", path, include)
                cycle_depth = min(cycle_depth, stack.index(include))
                continue

            include_time, inner_depth = self._walk(include, stack)
            result = max(result, include_time)
            cycle_depth = min(cycle_depth, inner_depth)

        stack.pop()

        if cycle_depth >= depth:
            # Complete result: no back-edge escapes above this frame.
            self._cache[path] = result
            cycle_depth = _NO_CYCLE

        return result, cycle_depth

    def _resolve(self, base_dir: Path, name: str) -> Optional[Path]:
        """Including file's directory first, then include dirs in order."""
        for directory in [base_dir, *self.include_dirs]:
            candidate = _normalize(directory / name)
            if candidate.is_file():
                return candidate
        return None

    # ── Up-to-date rule ──────────────────────────────────────────────────

    def needs_rebuild(
        self,
        source: Path,
        required_outputs: Iterable[Path],
        reference_time: int = 0,
    ) -> bool:
        """
        True unless every required output exists and the oldest of them
        is strictly newer than the source hierarchy and *reference_time*
        (config file / launcher modification time).
        """
        output_times: List[int] = []
        for output in required_outputs:
            try:
                output_times.append(Path(output).stat().st_mtime_ns)
            except FileNotFoundError:
                logger.debug("Missing output %s", output)
                return True
            except OSError as e:
                logger.warning("Can't stat output %s: %s", output, e)
                return True

        if not output_times:
            return True

        output_time = min(output_times)
        source_time = max(self.hierarchical_time(source), reference_time)
        return not output_time > source_time
