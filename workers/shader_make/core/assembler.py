"""
Container assembler — packs finished permutations into container files.

Runs single-threaded after the worker pool has joined.  Each group's
payloads are read back from the per-permutation binaries the workers
wrote, so the assembler never depends on worker memory.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import AbstractSet, Dict, List, Tuple

from shader_make.core.errors import ContainerAssemblyError
from shader_make.core.planner import ContainerGroup
from shader_make.io.artifacts import binary_path, header_path, symbol_name
from shader_make.io.container import (
    ENCODING_BINARY,
    ENCODING_TEXT,
    MAX_PAYLOAD_WARN,
    encode_container,
    encode_container_text,
)
from shader_make.policy.context import BuildContext

logger = logging.getLogger(__name__)


@dataclass
class ContainerResult:
    group: str
    path: Path
    encoding: str
    labels: List[str] = field(default_factory=list)
    status: str = "WRITTEN"
    error: str = ""


class ContainerAssembler:
    """Writes one container per ContainerGroup that needs one."""

    def __init__(self, context: BuildContext):
        self.context = context
        self.results: List[ContainerResult] = []
        self.failed_groups = 0

    def assemble(
        self,
        groups: Dict[str, ContainerGroup],
        failed_outputs: AbstractSet[Path] = frozenset(),
    ) -> List[ContainerResult]:
        """
        Raises ContainerAssemblyError for the first broken group unless
        continue-on-error is set, in which case broken groups are skipped.

        *failed_outputs* holds output bases of permutations that did not
        compile; a group containing one is broken.
        """
        for group in groups.values():
            if not group.needs_container:
                continue
            try:
                self._assemble_group(group, failed_outputs)
            except ContainerAssemblyError as e:
                self.failed_groups += 1
                self.results.append(ContainerResult(
                    group=group.name,
                    path=group.output_base,
                    encoding="",
                    labels=[entry.combined_defines for entry in group.entries],
                    status="SKIPPED",
                    error=str(e),
                ))
                if not self.context.continue_on_error:
                    raise
                logger.error("Skipping container '%s': %s", group.name, e)
        return self.results

    def _read_entries(self, group: ContainerGroup) -> List[Tuple[str, bytes, Path]]:
        entries: List[Tuple[str, bytes, Path]] = []
        for entry in group.entries:
            path = binary_path(self.context, entry.output_base)
            try:
                payload = path.read_bytes()
            except OSError as e:
                raise ContainerAssemblyError(f"Can't open file source '{path}': {e}") from e
            if not payload:
                raise ContainerAssemblyError(f"Binary file '{path}' is empty!")
            if len(payload) > MAX_PAYLOAD_WARN:
                logger.warning("Binary file '%s' is too large!", path)
            entries.append((entry.combined_defines, payload, path))
        return entries

    def _assemble_group(self, group: ContainerGroup, failed_outputs: AbstractSet[Path]) -> None:
        if group.has_defineless_entry:
            raise ContainerAssemblyError(
                f"Container '{group.name}' mixes a permutation without defines "
                f"with {len(group.entries) - 1} permutation(s) with defines; "
                f"its output would collide with the container file!"
            )
        failed = [e for e in group.entries if e.output_base in failed_outputs]
        if failed:
            raise ContainerAssemblyError(
                f"Container '{group.name}' is incomplete: "
                f"{len(failed)} permutation(s) failed to compile"
            )

        entries = self._read_entries(group)
        labels = [label for label, _, _ in entries]
        container = encode_container((label, payload) for label, payload, _ in entries)
        kinds = self.context.output_kinds

        try:
            if kinds.binary_blob:
                path = binary_path(self.context, group.output_base)
                path.write_bytes(container)
                self.results.append(ContainerResult(group.name, path, ENCODING_BINARY, labels))
            if kinds.header_blob:
                path = header_path(self.context, group.output_base)
                symbol = symbol_name(self.context, group.output_base)
                path.write_text(encode_container_text(symbol, container))
                self.results.append(ContainerResult(group.name, path, ENCODING_TEXT, labels))
        except OSError as e:
            raise ContainerAssemblyError(f"Can't write container '{group.name}': {e}") from e

        logger.debug("Container '%s': %d permutation(s)", group.name, len(entries))

        if not kinds.binary:
            for _, _, intermediate in entries:
                intermediate.unlink(missing_ok=True)
