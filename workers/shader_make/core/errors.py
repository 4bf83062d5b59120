"""
Errors raised by shader_make.

Planning-phase errors (configuration, dependency resolution) abort the
whole run.  Compile-phase problems are classified per task and never
escape a worker: the pool raises CompileError or TransientLaunchError
from a failed outcome and records it against the task.
"""
from __future__ import annotations

from pathlib import Path
from typing import List, Optional, Sequence


class ShaderMakeError(Exception):
    """Base class for every error raised by shader_make."""


class ConfigurationError(ShaderMakeError, ValueError):
    """Malformed configuration: bad directive, brace group, platform, file."""

    def __init__(
        self,
        message: str,
        config_file: Optional[Path] = None,
        line_number: Optional[int] = None,
    ):
        self.message = message
        self.config_file = config_file
        self.line_number = line_number
        super().__init__(self._render())

    def _render(self) -> str:
        if self.config_file is None:
            return self.message
        line = self.line_number if self.line_number is not None else 0
        return f"{self.config_file}({line},0): {self.message}"


class DependencyResolutionError(ShaderMakeError):
    """A source or include file could not be opened or located."""

    def __init__(self, message: str, call_stack: Sequence[Path] = ()):
        self.message = message
        # innermost file first
        self.call_stack: List[Path] = list(call_stack)
        super().__init__(self._render())

    def _render(self) -> str:
        if not self.call_stack:
            return self.message
        lines = [f"{self.message}, included in:"]
        lines.extend(f"\t{p}" for p in self.call_stack)
        return "\n".join(lines)


class CompileError(ShaderMakeError):
    """The compiler ran and reported a failed compilation."""

    def __init__(self, diagnostics: str = ""):
        self.diagnostics = diagnostics
        super().__init__(diagnostics.strip() or "<no message text>")


class TransientLaunchError(CompileError):
    """The compiler process could not be started; retryable."""


class ContainerAssemblyError(ShaderMakeError):
    """A container group could not be written."""


class ContainerFormatError(ShaderMakeError, ValueError):
    """Container bytes are truncated or carry the wrong signature."""
