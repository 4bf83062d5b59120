"""
Permutation expander — ``{a,b,c}`` choice groups → concrete lines.

A line is parsed into a small tree of literal segments and choice
groups, then expanded into the cartesian product of its choices.  The
first group on a line varies slowest::

    a.hlsl -T cs -D X={0,1} -D Y={A,B}
      -> X=0 Y=A, X=0 Y=B, X=1 Y=A, X=1 Y=B

Groups may nest (``{a,{b,c}}`` expands to ``a``, ``b``, ``c``).  A ``}``
outside any group is kept as literal text.
"""
from __future__ import annotations

import itertools
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, List, Optional, Tuple, Union

from shader_make.core.errors import ConfigurationError


@dataclass(frozen=True)
class Literal:
    text: str


@dataclass(frozen=True)
class Choice:
    alternatives: Tuple[Tuple["Node", ...], ...]


Node = Union[Literal, Choice]


class _ChoiceParser:
    """Recursive-descent parser for one config line."""

    def __init__(self, text: str):
        self.text = text
        self.pos = 0

    def parse(self) -> Tuple[Node, ...]:
        return self._sequence(depth=0)

    def _sequence(self, depth: int) -> Tuple[Node, ...]:
        nodes: List[Node] = []
        buf: List[str] = []

        while self.pos < len(self.text):
            ch = self.text[self.pos]
            if ch == "{":
                if buf:
                    nodes.append(Literal("".join(buf)))
                    buf = []
                opening = self.pos
                self.pos += 1
                nodes.append(self._choice(depth + 1, opening))
            elif depth > 0 and ch in ",}":
                break
            else:
                buf.append(ch)
                self.pos += 1

        if buf:
            nodes.append(Literal("".join(buf)))
        return tuple(nodes)

    def _choice(self, depth: int, opening: int) -> Choice:
        alternatives: List[Tuple[Node, ...]] = []
        while True:
            alternatives.append(self._sequence(depth))
            if self.pos >= len(self.text):
                raise _Unterminated(opening)
            ch = self.text[self.pos]
            self.pos += 1
            if ch == "}":
                return Choice(tuple(alternatives))


class _Unterminated(Exception):
    def __init__(self, column: int):
        self.column = column


def parse_choices(
    line: str,
    line_number: Optional[int] = None,
    config_file: Optional[Path] = None,
) -> Tuple[Node, ...]:
    """Parse *line* into literal and choice nodes."""
    try:
        return _ChoiceParser(line).parse()
    except _Unterminated as e:
        raise ConfigurationError(
            f"Missing '}}' for '{{' at column {e.column + 1}!",
            config_file,
            line_number,
        ) from None


def _node_strings(node: Node) -> List[str]:
    if isinstance(node, Literal):
        return [node.text]
    out: List[str] = []
    for alternative in node.alternatives:
        out.extend(_expand(alternative))
    return out


def _expand(nodes: Tuple[Node, ...]) -> Iterator[str]:
    for parts in itertools.product(*(_node_strings(n) for n in nodes)):
        yield "".join(parts)


def expand_line(
    line: str,
    line_number: Optional[int] = None,
    config_file: Optional[Path] = None,
) -> List[str]:
    """
    Expand every choice group in *line*.

    A line without groups expands to exactly itself.  Raises
    ConfigurationError on an unterminated ``{``.
    """
    if "{" not in line:
        return [line]
    return list(_expand(parse_choices(line, line_number, config_file)))
