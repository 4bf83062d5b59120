"""
Config loader — raw configuration text → active directive lines.

Strips comments, normalizes whitespace and evaluates the
``#ifdef NAME`` / ``#if 1`` / ``#if 0`` / ``#else`` / ``#endif`` blocks
against the global define set.  Only lines inside active blocks are
returned; permutation expansion happens later.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, List, Optional, Set, Tuple

from shader_make.core.errors import ConfigurationError

logger = logging.getLogger(__name__)

_SPACES = re.compile(r" {2,}")


@dataclass(frozen=True)
class ConfigLine:
    """One active, normalized directive line."""
    line_number: int     # 1-based, for diagnostics
    text: str


def normalize_line(raw: str) -> str:
    """Tabs to spaces, collapse repeated spaces, trim both ends."""
    line = raw.replace("\t", " ").strip()
    return _SPACES.sub(" ", line)


def define_name(define: str) -> str:
    """'NAME=VALUE' -> 'NAME'."""
    return define.split("=", 1)[0]


def filter_config_lines(
    text: str,
    global_defines: Iterable[str],
    config_file: Optional[Path] = None,
) -> Tuple[List[ConfigLine], List[ConfigurationError]]:
    """
    Evaluate conditional blocks over *text*.

    Returns ``(active_lines, errors)``.  Errors do not stop the scan so
    that every problem in the file is reported in one pass.
    """
    defined: Set[str] = {define_name(d) for d in global_defines}
    blocks: List[bool] = [True]
    lines: List[ConfigLine] = []
    errors: List[ConfigurationError] = []

    def _error(message: str, line_number: int) -> None:
        err = ConfigurationError(message, config_file, line_number)
        logger.error("%s", err)
        errors.append(err)

    for index, raw in enumerate(text.splitlines()):
        line_number = index + 1
        line = normalize_line(raw)

        if not line or line.startswith("//"):
            continue

        if not line.startswith("#"):
            if blocks[-1]:
                lines.append(ConfigLine(line_number, line))
            continue

        tokens = line.split(" ")
        keyword = tokens[0]
        argument = tokens[1] if len(tokens) > 1 else None

        if keyword == "#ifdef":
            if argument is None:
                _error("'#ifdef' without a macro name!", line_number)
                blocks.append(False)
            else:
                blocks.append(blocks[-1] and argument in defined)
        elif keyword == "#if":
            if argument == "1":
                blocks.append(blocks[-1])
            elif argument == "0":
                blocks.append(False)
            else:
                _error(f"Unsupported '#if {argument}', only '#if 0' and '#if 1' are allowed!", line_number)
                blocks.append(False)
        elif keyword == "#else":
            if len(blocks) < 2:
                _error("Unexpected '#else'!", line_number)
            elif blocks[-2]:
                blocks[-1] = not blocks[-1]
        elif keyword == "#endif":
            if len(blocks) == 1:
                _error("Unexpected '#endif'!", line_number)
            else:
                blocks.pop()
        else:
            _error(f"Unknown control line '{keyword}'!", line_number)

    if len(blocks) > 1:
        logger.warning(
            "%s: %d conditional block(s) not closed at end of file",
            config_file or "<config>", len(blocks) - 1,
        )

    return lines, errors


def load_config(config_file: Path, global_defines: Iterable[str]) -> List[ConfigLine]:
    """
    Read *config_file* and return its active directive lines.

    Raises ConfigurationError if the file cannot be read or any control
    line was malformed.
    """
    try:
        text = config_file.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(f"Can't read config file '{config_file}': {e}") from e

    lines, errors = filter_config_lines(text, global_defines, config_file)
    if errors:
        raise errors[0]

    logger.debug("Config %s: %d active line(s)", config_file, len(lines))
    return lines
