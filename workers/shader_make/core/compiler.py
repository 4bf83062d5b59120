"""
Compiler collaborator — the one seam between the worker pool and an
actual shader compiler.

Workers only see ``ShaderCompiler.invoke(request) -> CompileOutcome``.
The backend is chosen once at startup (``select_compiler``) and injected
into the pool, so workers never know which compiler they drive.
"""
from __future__ import annotations

import logging
import subprocess
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import List, Tuple

from shader_make.core.errors import CompileError, ConfigurationError, TransientLaunchError
from shader_make.policy.context import PDB_DIR, BuildContext, Platform

logger = logging.getLogger(__name__)

SPIRV_SPACES_NUM = 8

_OPTIMIZATION_FLAGS = ("-Od", "-O1", "-O2", "-O3")

# FXC prints this on every successful compile
_NOISE_LINES = ("compilation object save succeeded",)


@dataclass(frozen=True)
class PlatformFlags:
    """Run-wide compiler switches derived from the build context."""
    platform: Platform
    shader_model: str = "6_5"
    warnings_are_errors: bool = False
    all_resources_bound: bool = False
    pdb: bool = False
    strip_reflection: bool = False
    matrix_row_major: bool = False
    vulkan_version: str = "1.3"
    spirv_extensions: Tuple[str, ...] = ()
    reg_shifts: Tuple[int, int, int, int] = (100, 200, 300, 400)   # s, t, b, u

    @classmethod
    def from_context(cls, context: BuildContext) -> "PlatformFlags":
        return cls(
            platform=context.platform,
            shader_model=context.shader_model,
            warnings_are_errors=context.warnings_are_errors,
            all_resources_bound=context.all_resources_bound,
            pdb=context.pdb,
            strip_reflection=context.strip_reflection,
            matrix_row_major=context.matrix_row_major,
            vulkan_version=context.vulkan_version,
            spirv_extensions=context.spirv_extensions,
            reg_shifts=(
                context.s_reg_shift,
                context.t_reg_shift,
                context.b_reg_shift,
                context.u_reg_shift,
            ),
        )

    @property
    def target_profile_suffix(self) -> str:
        # DXBC is always shader model 5.0
        return "5_0" if self.platform == Platform.DXBC else self.shader_model

    @property
    def shader_model_index(self) -> int:
        """'6_5' -> 65."""
        return int(self.shader_model[0]) * 10 + int(self.shader_model[2])


@dataclass(frozen=True)
class CompileRequest:
    """Everything a backend needs to compile one permutation."""
    source_path: Path
    profile: str
    entry_point: str
    defines: Tuple[str, ...]           # per-line defines, then global ones
    include_dirs: Tuple[Path, ...]
    optimization_level: int
    output_base: Path
    platform_flags: PlatformFlags

    @property
    def target_profile(self) -> str:
        return f"{self.profile}_{self.platform_flags.target_profile_suffix}"


@dataclass(frozen=True)
class CompileOutcome:
    success: bool
    payload: bytes = b""
    diagnostics: str = ""
    launch_failed: bool = False

    @classmethod
    def launch_failure(cls, diagnostics: str) -> "CompileOutcome":
        return cls(success=False, diagnostics=diagnostics, launch_failed=True)

    def raise_for_failure(self) -> None:
        """Raise TransientLaunchError or CompileError unless the compile succeeded."""
        if self.success:
            return
        if self.launch_failed:
            raise TransientLaunchError(self.diagnostics)
        raise CompileError(self.diagnostics)


class ShaderCompiler(ABC):
    """A compiler backend."""

    name: str = "compiler"

    @abstractmethod
    def invoke(self, request: CompileRequest) -> CompileOutcome:
        """Compile synchronously.  Must not raise for compile failures."""


# ── External process backend ─────────────────────────────────────────────────

class ExternalProcessCompiler(ShaderCompiler):
    """Spawns an FXC/DXC-compatible executable per permutation."""

    name = "process"

    def __init__(self, executable: Path, verbose: bool = False):
        self.executable = Path(executable)
        self.verbose = verbose

    def build_command(self, request: CompileRequest, output_file: Path) -> List[str]:
        flags = request.platform_flags
        cmd: List[str] = [str(self.executable), "-nologo", str(request.source_path)]

        cmd += ["-Fo", str(output_file)]
        cmd += ["-T", request.target_profile]
        cmd += ["-E", request.entry_point]

        for define in request.defines:
            cmd += ["-D", define]
        for include_dir in request.include_dirs:
            cmd += ["-I", str(include_dir)]

        cmd.append(_OPTIMIZATION_FLAGS[request.optimization_level])

        if flags.platform != Platform.DXBC and flags.shader_model_index >= 62:
            cmd.append("-enable-16bit-types")
        if flags.warnings_are_errors:
            cmd.append("-WX")
        if flags.all_resources_bound:
            cmd.append("-all_resources_bound")
        if flags.matrix_row_major:
            cmd.append("-Zpr")
        if flags.pdb:
            cmd += ["-Zi", "-Zsb"]   # only binary code affects the hash

        if flags.platform == Platform.SPIRV:
            cmd.append("-spirv")
            cmd.append(f"-fspv-target-env=vulkan{flags.vulkan_version}")
            for ext in flags.spirv_extensions:
                cmd.append(f"-fspv-extension={ext}")
            s_shift, t_shift, b_shift, u_shift = flags.reg_shifts
            for space in range(SPIRV_SPACES_NUM):
                cmd += ["-fvk-s-shift", str(s_shift), str(space)]
                cmd += ["-fvk-t-shift", str(t_shift), str(space)]
                cmd += ["-fvk-b-shift", str(b_shift), str(space)]
                cmd += ["-fvk-u-shift", str(u_shift), str(space)]
        else:
            if flags.strip_reflection:
                cmd.append("-Qstrip_reflect")
            if flags.pdb:
                cmd += ["-Fd", str(request.output_base.parent / PDB_DIR) + "/"]

        return cmd

    def invoke(self, request: CompileRequest) -> CompileOutcome:
        with tempfile.TemporaryDirectory(prefix="shader_make_") as tmp:
            output_file = Path(tmp) / "out.bin"
            cmd = self.build_command(request, output_file)
            if self.verbose:
                logger.info("%s", subprocess.list2cmdline(cmd))

            try:
                result = subprocess.run(
                    cmd,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.STDOUT,
                    text=True,
                    errors="replace",
                )
            except OSError as e:
                return CompileOutcome.launch_failure(f"Can't start '{self.executable}': {e}")

            diagnostics = "".join(
                line for line in result.stdout.splitlines(keepends=True)
                if not any(noise in line for noise in _NOISE_LINES)
            )

            if result.returncode != 0:
                return CompileOutcome(success=False, diagnostics=diagnostics)

            try:
                payload = output_file.read_bytes()
            except OSError:
                return CompileOutcome(
                    success=False,
                    diagnostics=diagnostics + "Compiler reported success but wrote no output\n",
                )

        return CompileOutcome(success=True, payload=payload, diagnostics=diagnostics)


def select_compiler(context: BuildContext) -> ShaderCompiler:
    """Pick the backend once per run."""
    if context.compiler is None:
        raise ConfigurationError("Compiler not specified!")
    if not context.compiler.exists():
        raise ConfigurationError(f"Compiler '{context.compiler}' does not exist!")
    return ExternalProcessCompiler(context.compiler, verbose=context.verbose)
