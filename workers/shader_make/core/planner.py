"""
Task planner — config lines → compile tasks and container groups.

Runs single-threaded before any compilation.  For each expanded
directive it derives the permutation's output path, asks the staleness
oracle whether the outputs are current, and records container-group
membership when container output is requested.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path, PurePath
from typing import Dict, Iterable, List, Optional, Tuple

from shader_make.core.config_loader import ConfigLine
from shader_make.core.directive import (
    CompileDirective,
    is_supported,
    parse_directive,
    permutation_suffix,
)
from shader_make.core.errors import ConfigurationError
from shader_make.core.permutations import expand_line
from shader_make.core.staleness import StalenessOracle
from shader_make.io.artifacts import required_outputs
from shader_make.policy.context import (
    DEFAULT_ENTRY_POINT,
    MAX_OPTIMIZATION_LEVEL,
    PDB_DIR,
    BuildContext,
)

logger = logging.getLogger(__name__)


# ── Data model ───────────────────────────────────────────────────────────────

@dataclass
class CompileTask:
    """One scheduled permutation compile."""
    source: str                  # as written in the config, for display
    source_path: Path            # absolute
    profile: str
    entry_point: str
    combined_defines: str
    defines: Tuple[str, ...]
    optimization_level: int
    output_base: Path            # resolved output path without extension
    line_number: int = 0
    attempts: int = 0

    @property
    def has_defines(self) -> bool:
        return bool(self.defines)


@dataclass(frozen=True)
class ContainerEntry:
    output_base: Path
    combined_defines: str


@dataclass
class ContainerGroup:
    """Every permutation of one shader/entry point, packed into one file."""
    name: str                    # base shader name, e.g. 'passes/blur_horizontal'
    output_base: Path            # container path without extension
    entries: List[ContainerEntry] = field(default_factory=list)

    @property
    def needs_container(self) -> bool:
        """A lone define-less permutation is its own container."""
        return not (len(self.entries) == 1 and not self.entries[0].combined_defines)

    @property
    def has_defineless_entry(self) -> bool:
        return any(not e.combined_defines for e in self.entries)


@dataclass
class BuildPlan:
    tasks: List[CompileTask] = field(default_factory=list)
    groups: Dict[str, ContainerGroup] = field(default_factory=dict)
    directive_count: int = 0
    up_to_date_count: int = 0
    unsupported_count: int = 0


@dataclass
class _Candidate:
    task: CompileTask
    stale: bool
    group_key: Optional[str]


# ── Helpers ──────────────────────────────────────────────────────────────────

def strip_leading_dotdots(path: str) -> PurePath:
    parts = list(PurePath(path).parts)
    while parts and parts[0] == "..":
        parts.pop(0)
    return PurePath(*parts) if parts else PurePath()


def compiled_name(directive: CompileDirective, flatten: bool) -> PurePath:
    """Output name of a shader/entry point, before the permutation suffix."""
    name = strip_leading_dotdots(directive.source)
    name = name.with_suffix("") if name.suffix else name
    if flatten or directive.output_dir:
        name = PurePath(name.name)
    if directive.entry_point != DEFAULT_ENTRY_POINT:
        name = name.with_name(f"{name.name}_{directive.entry_point}")
    return name


def _file_time(path: Optional[Path]) -> int:
    if path is None:
        return 0
    try:
        return path.stat().st_mtime_ns
    except OSError:
        return 0


# ── Planner ──────────────────────────────────────────────────────────────────

class TaskPlanner:
    """Turns active config lines into a BuildPlan."""

    def __init__(self, context: BuildContext, oracle: Optional[StalenessOracle] = None):
        self.context = context
        self.oracle = oracle or StalenessOracle(
            include_dirs=context.include_dirs,
            relaxed_includes=context.relaxed_includes,
        )
        # Editing the config or the tool itself invalidates every output.
        self.reference_time = max(
            _file_time(context.config_file),
            _file_time(context.tool_path),
        )

    def plan(self, lines: Iterable[ConfigLine]) -> BuildPlan:
        """
        Expand, parse and judge every line.

        Raises ConfigurationError for malformed lines or duplicate
        permutations, DependencyResolutionError for missing sources or
        includes.
        """
        plan = BuildPlan()
        candidates: List[_Candidate] = []
        seen_outputs: Dict[Path, Tuple[int, str]] = {}

        for line in lines:
            for text in expand_line(line.text, line.line_number, self.context.config_file):
                directive = parse_directive(text, line.line_number, self.context.config_file)
                plan.directive_count += 1

                if not is_supported(directive, self.context.platform):
                    logger.debug(
                        "Skipping %s -T %s: not supported on %s",
                        directive.source, directive.profile, self.context.platform.value,
                    )
                    plan.unsupported_count += 1
                    continue

                candidate = self._prepare(directive, plan)

                output_base = candidate.task.output_base
                combined = candidate.task.combined_defines
                if output_base in seen_outputs:
                    first_line, first_defines = seen_outputs[output_base]
                    if first_defines == combined:
                        message = (
                            f"Permutation '{output_base.name}' {{{combined}}} "
                            f"is already produced by line {first_line}!"
                        )
                    else:
                        message = (
                            f"Hash collision: {{{combined}}} and {{{first_defines}}} "
                            f"(line {first_line}) both map to '{output_base.name}'!"
                        )
                    raise ConfigurationError(message, self.context.config_file, line.line_number)
                seen_outputs[output_base] = (line.line_number, combined)
                candidates.append(candidate)

        # A container is rebuilt from all of its members or not at all.
        stale_groups = {c.group_key for c in candidates if c.stale and c.group_key}

        for candidate in candidates:
            if candidate.stale or candidate.group_key in stale_groups:
                plan.tasks.append(candidate.task)
            else:
                plan.up_to_date_count += 1

        plan.groups = {
            key: group for key, group in plan.groups.items() if key in stale_groups
        }

        logger.info(
            "Planned %d task(s) from %d directive(s) (%d up to date, %d unsupported)",
            len(plan.tasks), plan.directive_count,
            plan.up_to_date_count, plan.unsupported_count,
        )
        return plan

    def _prepare(self, directive: CompileDirective, plan: BuildPlan) -> _Candidate:
        context = self.context
        combined = directive.combined_defines

        name = compiled_name(directive, context.flatten)
        permutation = name
        if directive.defines:
            permutation = name.with_name(name.name + permutation_suffix(combined))

        dest_dir = context.output_dir
        if directive.output_dir:
            dest_dir = dest_dir / directive.output_dir

        # Create intermediate output directories; a fresh directory means
        # nothing in it can be up to date.
        force = context.force
        end_path = dest_dir / name.parent
        if context.pdb:
            end_path = end_path / PDB_DIR
        if not end_path.is_dir():
            try:
                end_path.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise ConfigurationError(
                    f"Can't create output directory '{end_path}': {e}",
                    context.config_file,
                    directive.line_number,
                ) from e
            force = True

        output_base = Path(os.path.normpath(dest_dir / permutation))
        container_base = Path(os.path.normpath(dest_dir / name))
        source_path = context.resolve_source(directive.source)

        if force:
            stale = True
        else:
            outputs = required_outputs(
                context, output_base, container_base, bool(directive.defines),
            )
            stale = self.oracle.needs_rebuild(source_path, outputs, self.reference_time)

        level = directive.optimization_level
        if level is None:
            level = context.optimization_level
        level = min(level, MAX_OPTIMIZATION_LEVEL)

        task = CompileTask(
            source=directive.source,
            source_path=source_path,
            profile=directive.profile,
            entry_point=directive.entry_point,
            combined_defines=combined,
            defines=directive.defines,
            optimization_level=level,
            output_base=output_base,
            line_number=directive.line_number,
        )

        group_key: Optional[str] = None
        if context.output_kinds.any_blob:
            group_key = str(container_base)
            group = plan.groups.get(group_key)
            if group is None:
                group = ContainerGroup(name=name.as_posix(), output_base=container_base)
                plan.groups[group_key] = group
            group.entries.append(ContainerEntry(output_base, combined))

        return _Candidate(task=task, stale=stale, group_key=group_key)
