"""
Build context — run-wide configuration, frozen after initialization.

The context holds every policy knob the planner, workers and assembler
consult, so core logic carries no global state of its own.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import FrozenSet, Optional, Tuple

from shader_make.core.errors import ConfigurationError


class Platform(str, Enum):
    """Target bytecode platform."""
    DXBC = "DXBC"
    DXIL = "DXIL"
    SPIRV = "SPIRV"

    @property
    def default_extension(self) -> str:
        return _PLATFORM_EXTS[self]

    @classmethod
    def parse(cls, name: str) -> "Platform":
        try:
            return cls(name.upper())
        except ValueError:
            raise ConfigurationError(f"Unrecognized platform '{name}'!") from None


_PLATFORM_EXTS = {
    Platform.DXBC: ".dxbc",
    Platform.DXIL: ".dxil",
    Platform.SPIRV: ".spirv",
}

STAGE_PROFILES: FrozenSet[str] = frozenset({"vs", "ps", "gs", "hs", "ds", "cs", "ms", "as"})
LIBRARY_PROFILE = "lib"

# DXBC (shader model 5.0) has no mesh, amplification or library targets.
DXBC_UNSUPPORTED_PROFILES: FrozenSet[str] = frozenset({"ms", "as", LIBRARY_PROFILE})

MAX_OPTIMIZATION_LEVEL = 3
DEFAULT_ENTRY_POINT = "main"
PDB_DIR = "PDB"


@dataclass(frozen=True)
class OutputKinds:
    """Which artifacts a run produces."""
    binary: bool = False
    header: bool = False
    binary_blob: bool = False
    header_blob: bool = False

    @property
    def any(self) -> bool:
        return self.binary or self.header or self.binary_blob or self.header_blob

    @property
    def any_blob(self) -> bool:
        return self.binary_blob or self.header_blob


@dataclass(frozen=True)
class BuildContext:
    """Process-wide configuration for one shader_make run."""

    platform: Platform
    config_file: Path
    output_dir: Path
    output_kinds: OutputKinds

    defines: Tuple[str, ...] = ()
    include_dirs: Tuple[Path, ...] = ()
    relaxed_includes: FrozenSet[str] = frozenset()
    source_dir: str = ""
    output_ext: Optional[str] = None

    # Compiler settings
    compiler: Optional[Path] = None
    shader_model: str = "6_5"
    optimization_level: int = 3
    warnings_are_errors: bool = False
    all_resources_bound: bool = False
    pdb: bool = False
    strip_reflection: bool = False
    matrix_row_major: bool = False

    # SPIR-V
    vulkan_version: str = "1.3"
    spirv_extensions: Tuple[str, ...] = ("SPV_EXT_descriptor_indexing", "KHR")
    s_reg_shift: int = 100
    t_reg_shift: int = 200
    b_reg_shift: int = 300
    u_reg_shift: int = 400

    # Scheduling
    force: bool = False
    serial: bool = False
    flatten: bool = False
    continue_on_error: bool = False
    retry_count: int = 0
    verbose: bool = False

    # Launcher file whose modification time invalidates every output
    tool_path: Optional[Path] = field(default=None, compare=False)

    @property
    def config_dir(self) -> Path:
        return self.config_file.parent

    @property
    def extension(self) -> str:
        return self.output_ext or self.platform.default_extension

    @property
    def platform_suffix(self) -> str:
        """Platform extension without the dot, used in header symbol names."""
        return self.platform.default_extension[1:]

    @property
    def worker_count(self) -> int:
        if self.serial:
            return 1
        return max(os.cpu_count() or 1, 1)

    def resolve_source(self, source: str) -> Path:
        """Absolute path of a source named in the config file."""
        return Path(os.path.normpath(self.config_dir / self.source_dir / source))

    def validate(self) -> None:
        """Raise ConfigurationError for contradictory or incomplete settings."""
        if not self.output_kinds.any:
            raise ConfigurationError(
                "At least one of 'binary', 'header', 'blob' or 'headerBlob' must be set!"
            )
        if len(self.shader_model) != 3 or self.shader_model[1] != "_" \
                or not self.shader_model[0].isdigit() or not self.shader_model[2].isdigit():
            raise ConfigurationError(
                f"Shader model ('{self.shader_model}') must have format 'X_Y'!"
            )
        if not 0 <= self.optimization_level <= MAX_OPTIMIZATION_LEVEL:
            raise ConfigurationError(
                f"Optimization level {self.optimization_level} is outside 0-{MAX_OPTIMIZATION_LEVEL}!"
            )
        if self.retry_count < 0:
            raise ConfigurationError("Retry count must not be negative!")
