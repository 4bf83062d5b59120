"""
Container codec — many compiled permutations of one shader in one file.

Binary layout (all integers little-endian uint32)::

    b"NVSP"
    repeat until EOF:
        label_length  payload_length  label[label_length]  payload[payload_length]

The label is the permutation's combined-define key, e.g. ``"A=1 B=0"``.
The text encoding is the same bytes rendered as a C array.
"""
from __future__ import annotations

import logging
import struct
from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple, Union

from shader_make.core.errors import ContainerFormatError
from shader_make.io.artifacts import format_c_array

logger = logging.getLogger(__name__)

SIGNATURE = b"NVSP"
_RECORD_HEADER = struct.Struct("<II")

MAX_PAYLOAD_WARN = 64 << 20

ENCODING_BINARY = "binary"
ENCODING_TEXT = "text"


# ── Write side ───────────────────────────────────────────────────────────────

def encode_record(label: str, payload: bytes) -> bytes:
    label_bytes = label.encode("utf-8")
    return _RECORD_HEADER.pack(len(label_bytes), len(payload)) + label_bytes + payload


def encode_container(entries: Iterable[Tuple[str, bytes]]) -> bytes:
    """Serialize ``(label, payload)`` pairs in the given order."""
    parts = [SIGNATURE]
    parts.extend(encode_record(label, payload) for label, payload in entries)
    return b"".join(parts)


def encode_container_text(symbol: str, container: bytes) -> str:
    return format_c_array(symbol, container)


# ── Read side ────────────────────────────────────────────────────────────────

def iter_permutations(data: Union[bytes, bytearray, memoryview]) -> Iterator[Tuple[str, bytes]]:
    """
    Yield ``(label, payload)`` for every record.

    Raises ContainerFormatError on a bad signature or a truncated record.
    """
    view = memoryview(data)
    if bytes(view[:len(SIGNATURE)]) != SIGNATURE:
        raise ContainerFormatError("Not a shader container: bad signature")

    offset = len(SIGNATURE)
    end = len(view)
    while offset < end:
        if offset + _RECORD_HEADER.size > end:
            raise ContainerFormatError(f"Truncated record header at offset {offset}")
        label_len, payload_len = _RECORD_HEADER.unpack_from(view, offset)
        offset += _RECORD_HEADER.size

        if offset + label_len + payload_len > end:
            raise ContainerFormatError(f"Truncated record body at offset {offset}")

        label = bytes(view[offset:offset + label_len]).decode("utf-8")
        offset += label_len
        payload = bytes(view[offset:offset + payload_len])
        offset += payload_len
        yield label, payload


@dataclass
class LookupResult:
    found: bool
    payload: Optional[bytes] = None
    available_labels: List[str] = field(default_factory=list)


def find_permutation(data: bytes, label: str) -> LookupResult:
    """Linear scan for *label*; on a miss, report every label present."""
    seen: List[str] = []
    for entry_label, payload in iter_permutations(data):
        if entry_label == label:
            return LookupResult(found=True, payload=payload)
        seen.append(entry_label)
    return LookupResult(found=False, available_labels=seen)


def format_not_found_message(label: str, available_labels: Sequence[str]) -> str:
    lines = [f"Permutation '{label}' not found in the container. Available permutations:"]
    if available_labels:
        lines.extend(f"  {l}" for l in available_labels)
    else:
        lines.append("  <none>")
    return "\n".join(lines)


class ContainerIndex:
    """Label → payload map built with one scan, for repeated lookups."""

    def __init__(self, data: bytes):
        self._entries: Dict[str, bytes] = {}
        for label, payload in iter_permutations(data):
            # first record wins, matching a linear scan
            self._entries.setdefault(label, payload)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, label: str) -> bool:
        return label in self._entries

    @property
    def labels(self) -> List[str]:
        return list(self._entries)

    def get(self, label: str) -> Optional[bytes]:
        return self._entries.get(label)

    def require(self, label: str) -> bytes:
        payload = self._entries.get(label)
        if payload is None:
            raise KeyError(format_not_found_message(label, self.labels))
        return payload


def build_permutation_key(constants: Iterable[Tuple[str, object]]) -> str:
    """``[("A", 1), ("B", 0)]`` → ``"A=1 B=0"``.  Order is significant."""
    return " ".join(f"{name}={value}" for name, value in constants)
