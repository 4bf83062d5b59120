"""
Artifacts — per-permutation output files.

Filesystem layout for one permutation with output base ``out/dir/name_HASH``::

    out/dir/name_HASH<ext>       raw compiled payload
    out/dir/name_HASH<ext>.h     C array of the payload

Container files use the permutation-less base ``out/dir/name``.
"""
from __future__ import annotations

import re
from pathlib import Path
from typing import List

from shader_make.policy.context import BuildContext, OutputKinds

_NON_IDENTIFIER = re.compile(r"[^0-9A-Za-z_]")

# bytes per output line are bounded by text width, not count
_LINE_WIDTH = 128


def binary_path(context: BuildContext, output_base: Path) -> Path:
    return Path(str(output_base) + context.extension)


def header_path(context: BuildContext, output_base: Path) -> Path:
    return Path(str(output_base) + context.extension + ".h")


def writes_binary(kinds: OutputKinds, has_defines: bool) -> bool:
    """Raw payload is needed as an output or as a container intermediate."""
    return kinds.binary or kinds.binary_blob or (kinds.header_blob and has_defines)


def writes_header(kinds: OutputKinds, has_defines: bool) -> bool:
    """A define-less permutation's own header doubles as its text container."""
    return kinds.header or (kinds.header_blob and not has_defines)


def required_outputs(
    context: BuildContext,
    output_base: Path,
    container_base: Path,
    has_defines: bool,
) -> List[Path]:
    """Every file whose age governs whether a permutation is stale."""
    kinds = context.output_kinds
    blob_base = container_base if has_defines else output_base
    outputs: List[Path] = []
    if kinds.binary:
        outputs.append(binary_path(context, output_base))
    if kinds.header:
        outputs.append(header_path(context, output_base))
    if kinds.binary_blob:
        outputs.append(binary_path(context, blob_base))
    if kinds.header_blob:
        outputs.append(header_path(context, blob_base))
    # de-duplicate, keep order
    return list(dict.fromkeys(outputs))


def symbol_name(context: BuildContext, output_base: Path) -> str:
    """C symbol for a header: g_<file name>_<platform>."""
    name = _NON_IDENTIFIER.sub("_", Path(output_base).name)
    return f"g_{name}_{context.platform_suffix}"


def format_c_array(symbol: str, data: bytes) -> str:
    """Render *data* as ``const uint8_t <symbol>[] = { ... };``."""
    parts: List[str] = [f"const uint8_t {symbol}[] = {{"]
    width = _LINE_WIDTH + 1
    for byte in data:
        if width > _LINE_WIDTH:
            parts.append("\n    ")
            width = 0
        text = f"{byte}, "
        parts.append(text)
        width += len(text)
    parts.append("\n};\n")
    return "".join(parts)


def write_artifacts(
    context: BuildContext,
    output_base: Path,
    payload: bytes,
    has_defines: bool,
) -> List[Path]:
    """
    Persist one compiled permutation.  Returns the paths written.
    """
    kinds = context.output_kinds
    written: List[Path] = []

    if writes_binary(kinds, has_defines):
        path = binary_path(context, output_base)
        path.write_bytes(payload)
        written.append(path)

    if writes_header(kinds, has_defines):
        path = header_path(context, output_base)
        path.write_text(format_c_array(symbol_name(context, output_base), payload))
        written.append(path)

    return written
