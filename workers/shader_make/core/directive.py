"""
Directive parser — one concrete config line → CompileDirective.

Line grammar::

    PATH -T PROFILE [-E ENTRY] [-O LEVEL] [-o SUBDIR] {-D NAME[=VALUE]}

Tokens are separated by spaces; double quotes group a token that
contains spaces and are removed.  Short options accept attached values
(``-O3``, ``-DX=1``).
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from shader_make.core.errors import ConfigurationError
from shader_make.policy.context import (
    DEFAULT_ENTRY_POINT,
    DXBC_UNSUPPORTED_PROFILES,
    LIBRARY_PROFILE,
    STAGE_PROFILES,
    Platform,
)

logger = logging.getLogger(__name__)

# option spelling -> directive field
_OPTIONS: Dict[str, str] = {
    "-T": "profile",
    "--profile": "profile",
    "-E": "entry_point",
    "--entryPoint": "entry_point",
    "-D": "define",
    "--define": "define",
    "-o": "output_dir",
    "--output": "output_dir",
    "-O": "optimization_level",
    "--optimization": "optimization_level",
}

_SHORT_OPTIONS = ("-T", "-E", "-D", "-o", "-O")

_FNV64_OFFSET = 0xCBF29CE484222325
_FNV64_PRIME = 0x100000001B3
_MASK64 = 0xFFFFFFFFFFFFFFFF


@dataclass(frozen=True)
class CompileDirective:
    """One resolved config line."""
    source: str
    profile: str
    entry_point: str = DEFAULT_ENTRY_POINT
    defines: Tuple[str, ...] = ()
    output_dir: Optional[str] = None
    optimization_level: Optional[int] = None
    line_number: int = 0

    @property
    def combined_defines(self) -> str:
        """Order-preserving, space-joined define list: 'A=1 B=0 C'."""
        return " ".join(self.defines)


# ── Tokenizer ────────────────────────────────────────────────────────────────

def tokenize_line(line: str) -> List[str]:
    """Split on spaces outside double quotes; quotes are dropped."""
    tokens: List[str] = []
    buf: List[str] = []
    in_string = False
    has_token = False

    for ch in line:
        if ch == '"':
            in_string = not in_string
            has_token = True
        elif ch == " " and not in_string:
            if has_token:
                tokens.append("".join(buf))
            buf = []
            has_token = False
        else:
            buf.append(ch)
            has_token = True

    if has_token:
        tokens.append("".join(buf))
    return tokens


# ── Parser ───────────────────────────────────────────────────────────────────

def _split_option(token: str) -> Tuple[Optional[str], Optional[str]]:
    """Return (field, attached_value) for an option token, else (None, None)."""
    if token in _OPTIONS:
        return _OPTIONS[token], None
    for short in _SHORT_OPTIONS:
        if token.startswith(short) and len(token) > len(short):
            return _OPTIONS[short], token[len(short):]
    return None, None


def parse_directive(
    line: str,
    line_number: int = 0,
    config_file: Optional[Path] = None,
) -> CompileDirective:
    """
    Parse one expanded config line.

    Raises ConfigurationError for a missing or unknown profile, a
    dangling option, a non-integer optimization level or any leftover
    token.
    """
    def _error(message: str) -> ConfigurationError:
        return ConfigurationError(f"{message} in '{line}'", config_file, line_number)

    tokens = tokenize_line(line)
    if not tokens:
        raise _error("Empty directive")

    source = tokens[0]
    if source.startswith("-"):
        raise _error("Shader source path missing")

    profile: Optional[str] = None
    entry_point = DEFAULT_ENTRY_POINT
    output_dir: Optional[str] = None
    optimization_level: Optional[int] = None
    defines: List[str] = []

    i = 1
    while i < len(tokens):
        token = tokens[i]
        field, value = _split_option(token)
        if field is None:
            raise _error(f"Unrecognized token '{token}'")
        if value is None:
            i += 1
            if i >= len(tokens):
                raise _error(f"Option '{token}' requires a value")
            value = tokens[i]
        i += 1

        if field == "profile":
            profile = value
        elif field == "entry_point":
            entry_point = value
        elif field == "define":
            defines.append(value)
        elif field == "output_dir":
            output_dir = value
        else:
            try:
                optimization_level = int(value)
            except ValueError:
                raise _error(f"Optimization level '{value}' is not an integer") from None
            if optimization_level < 0:
                raise _error(f"Optimization level '{value}' is negative")

    if profile is None:
        raise _error("Shader target not specified")
    if profile not in STAGE_PROFILES and profile != LIBRARY_PROFILE:
        raise _error(f"Unknown shader profile '{profile}'")

    return CompileDirective(
        source=source,
        profile=profile,
        entry_point=entry_point,
        defines=tuple(defines),
        output_dir=output_dir,
        optimization_level=optimization_level,
        line_number=line_number,
    )


def is_supported(directive: CompileDirective, platform: Platform) -> bool:
    """DXBC cannot compile mesh, amplification or library profiles."""
    return not (platform == Platform.DXBC and directive.profile in DXBC_UNSUPPORTED_PROFILES)


# ── Permutation hash ─────────────────────────────────────────────────────────

def permutation_hash(combined_defines: str) -> int:
    """
    32-bit hash of a combined-define key.

    FNV-1a over the UTF-8 bytes, 64-bit, folded as low32 ^ high32.
    Order-sensitive: 'A B' and 'B A' hash differently.
    """
    h = _FNV64_OFFSET
    for byte in combined_defines.encode("utf-8"):
        h ^= byte
        h = (h * _FNV64_PRIME) & _MASK64
    return (h & 0xFFFFFFFF) ^ (h >> 32)


def permutation_suffix(combined_defines: str) -> str:
    """'_%08X' file-name suffix for a permutation."""
    return f"_{permutation_hash(combined_defines):08X}"
