"""Davies-Meyer compression built on ``FieldCipher``.

One call turns a 32-byte dual block (two sibling digests) into the 16-byte
parent digest: the left half keys the cipher, the right half is encrypted,
and the plaintext is added back so the map cannot be inverted.
"""

from __future__ import annotations

from typing import Optional

from starkcommit.commitment.cipher import FieldCipher, default_cipher
from starkcommit.commitment.digest import DIGEST_SIZE, BytesLike, Digest
from starkcommit.commitment.errors import digest_length_error

DUAL_BLOCK_SIZE = 2 * DIGEST_SIZE


def compress_bytes(block: BytesLike, cipher: Optional[FieldCipher] = None) -> bytes:
    """Compress a 32-byte block into 16 raw bytes."""
    if len(block) != DUAL_BLOCK_SIZE:
        raise digest_length_error("compression input", len(block), DUAL_BLOCK_SIZE)
    cipher = cipher or default_cipher()
    key = int.from_bytes(block[:DIGEST_SIZE], "little")
    plaintext = int.from_bytes(block[DIGEST_SIZE:], "little")
    return cipher.to_bytes(cipher.encrypt(plaintext, key) ^ plaintext)


def compress(block: BytesLike, cipher: Optional[FieldCipher] = None) -> Digest:
    return Digest(compress_bytes(block, cipher))


def compress_pair(left: Digest, right: Digest, cipher: Optional[FieldCipher] = None) -> Digest:
    """Parent digest of two siblings, left child first."""
    return Digest(compress_bytes(left.value + right.value, cipher))
