"""Digest value type: the 16-byte node value of every commitment tree."""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Union

from starkcommit.commitment.errors import PreconditionViolation, digest_length_error

LOG_BYTES_PER_HASH = 4
DIGEST_SIZE = 1 << LOG_BYTES_PER_HASH

BytesLike = Union[bytes, bytearray, memoryview]


@dataclass(frozen=True, order=True)
class Digest:
    """Fixed-width tree node value.

    Ordering is lexicographic over the raw bytes, so digests can key sorted
    containers and serialize canonically. ``str()`` renders hex and
    ``Digest.from_hex`` reads it back.
    """

    value: bytes

    def __post_init__(self) -> None:
        if not isinstance(self.value, bytes):
            object.__setattr__(self, "value", bytes(self.value))
        if len(self.value) != DIGEST_SIZE:
            raise digest_length_error("digest", len(self.value), DIGEST_SIZE)

    @classmethod
    def from_hex(cls, text: str) -> "Digest":
        try:
            raw = bytes.fromhex(text)
        except ValueError as exc:
            raise PreconditionViolation("digest text must be hex", str(exc)) from exc
        return cls(raw)

    @classmethod
    def from_buffer(cls, buffer: BytesLike, offset: int = 0) -> "Digest":
        """Copy the digest stored at ``offset`` in a byte buffer."""
        return cls(bytes(buffer[offset:offset + DIGEST_SIZE]))

    def hex(self) -> str:
        return self.value.hex()

    def __bytes__(self) -> bytes:
        return self.value

    def __str__(self) -> str:
        return self.value.hex()

    def __repr__(self) -> str:
        return f"Digest({self.value.hex()})"


Path = List[Digest]
