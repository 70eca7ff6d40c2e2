"""Keyed permutation over GF(2^128) used as the tree compression primitive.

Round function (``ROUNDS`` times)::

    s <- S(s)          S(x) = x^-1, S(0) = 0
    s <- A(s)          A(x) = M*x + Ac, M an invertible GF(2) matrix
    s <- s + c[r]      c = [0, 1, 0, 1, ...]
    s <- s + k[r]

with ``s = p + k[0]`` on entry. Round keys come from the same S-box and
affine map: ``k[0] = K``, ``k[i] = A(S(k[i-1])) + c[i]``.

``M`` is the product of a unit lower and a unit upper triangular matrix
expanded from SHAKE-128, so it is invertible by construction. Any F2-linear
map of GF(2^128) is a linearized polynomial, which makes ``A`` an affine
transform of the field. ``M`` and ``M^-1`` are computed once per process.

Byte encoding is little-endian: byte ``i`` carries the coefficients of
``x^(8i)`` .. ``x^(8i+7)``.
"""

from __future__ import annotations

import functools
import hashlib
from typing import List, Optional, Sequence, Tuple

import numpy as np

from starkcommit.commitment.errors import PreconditionViolation, digest_length_error
from starkcommit.commitment.field import BinaryField, GF2m

ROUNDS = 10

# x^128 + x^7 + x^2 + x + 1
IRREDUCIBLE_POLY = (1 << 128) | (1 << 7) | (1 << 2) | (1 << 1) | 1

_AFFINE_TAG = b"starkcommit/cipher/affine/v1"


# =============================================================================
# GF(2) matrix helpers
# =============================================================================

def _expand_bits(tag: bytes, count: int) -> np.ndarray:
    raw = hashlib.shake_128(tag).digest((count + 7) // 8)
    bits = np.unpackbits(np.frombuffer(raw, dtype=np.uint8), bitorder="little")
    return bits[:count]


def _affine_matrix(n: int) -> np.ndarray:
    """Deterministic invertible n x n matrix over GF(2)."""
    eye = np.eye(n, dtype=np.uint8)
    lower = np.tril(_expand_bits(_AFFINE_TAG + b"/L", n * n).reshape(n, n), -1) | eye
    upper = np.triu(_expand_bits(_AFFINE_TAG + b"/U", n * n).reshape(n, n), 1) | eye
    product = lower.astype(np.int64) @ upper.astype(np.int64)
    return (product % 2).astype(np.uint8)


def _gf2_inverse(matrix: np.ndarray) -> np.ndarray:
    """Gauss-Jordan inverse over GF(2).

    Raises:
        ValueError: if the matrix is singular
    """
    n = matrix.shape[0]
    aug = np.concatenate([matrix % 2, np.eye(n, dtype=np.uint8)], axis=1).astype(np.uint8)
    for col in range(n):
        candidates = np.nonzero(aug[col:, col])[0]
        if candidates.size == 0:
            raise ValueError("matrix is singular over GF(2)")
        pivot = col + int(candidates[0])
        if pivot != col:
            aug[[col, pivot]] = aug[[pivot, col]]
        rows = np.nonzero(aug[:, col])[0]
        rows = rows[rows != col]
        aug[rows] ^= aug[col]
    return aug[:, n:]


def _rows_to_ints(matrix: np.ndarray) -> Tuple[int, ...]:
    """Pack each row so that bit ``j`` of row ``i`` is ``matrix[i, j]``."""
    return tuple(
        int.from_bytes(np.packbits(row, bitorder="little").tobytes(), "little")
        for row in matrix
    )


def _apply_rows(rows: Sequence[int], x: int) -> int:
    y = 0
    for i, row in enumerate(rows):
        y |= ((row & x).bit_count() & 1) << i
    return y


# =============================================================================
# Cipher
# =============================================================================

class FieldCipher:
    """Involutive-S-box block cipher over a binary extension field.

    Args:
        field: Field backend; defaults to GF(2^128) with ``IRREDUCIBLE_POLY``
        rounds: Number of rounds
    """

    def __init__(self, field: Optional[BinaryField] = None, rounds: int = ROUNDS):
        if rounds < 1:
            raise ValueError("rounds must be positive")
        self.field = field if field is not None else GF2m(IRREDUCIBLE_POLY)
        self.rounds = rounds
        self.element_bytes = (self.field.degree + 7) // 8

        matrix = _affine_matrix(self.field.degree)
        self._a_rows = _rows_to_ints(matrix)
        self._a_inv_rows = _rows_to_ints(_gf2_inverse(matrix))

        mask = (1 << self.field.degree) - 1
        ac_raw = hashlib.shake_128(_AFFINE_TAG + b"/Ac").digest(self.element_bytes)
        self.affine_constant = int.from_bytes(ac_raw, "little") & mask
        self.round_constants: Tuple[int, ...] = tuple(i % 2 for i in range(rounds + 1))

    # -- building blocks ------------------------------------------------------

    def sbox(self, x: int) -> int:
        """Field inversion extended with 0 -> 0; its own inverse."""
        if x == 0:
            return 0
        return self.field.inverse(x)

    def affine(self, x: int) -> int:
        return _apply_rows(self._a_rows, x) ^ self.affine_constant

    def affine_inverse(self, y: int) -> int:
        return _apply_rows(self._a_inv_rows, y ^ self.affine_constant)

    # -- cipher ---------------------------------------------------------------

    def key_schedule(self, master_key: int) -> List[int]:
        """Derive ``rounds + 1`` round keys from ``master_key``."""
        keys = [master_key]
        for i in range(1, self.rounds + 1):
            keys.append(self.affine(self.sbox(keys[-1])) ^ self.round_constants[i])
        return keys

    def encrypt(self, plaintext: int, key: int) -> int:
        keys = self.key_schedule(key)
        state = plaintext ^ keys[0]
        for r in range(1, self.rounds + 1):
            state = self.sbox(state)
            state = self.affine(state)
            state ^= self.round_constants[r]
            state ^= keys[r]
        return state

    def decrypt(self, ciphertext: int, key: int) -> int:
        keys = self.key_schedule(key)
        state = ciphertext
        for r in range(self.rounds, 0, -1):
            state ^= keys[r]
            state ^= self.round_constants[r]
            state = self.affine_inverse(state)
            state = self.sbox(state)
        return state ^ keys[0]

    # -- encoding -------------------------------------------------------------

    def to_bytes(self, element: int) -> bytes:
        if not self.field.contains(element):
            raise PreconditionViolation(
                "value is not a field element",
                f"element bit length {element.bit_length()} exceeds degree {self.field.degree}",
            )
        return element.to_bytes(self.element_bytes, "little")

    def from_bytes(self, data: bytes) -> int:
        if len(data) != self.element_bytes:
            raise digest_length_error("field element encoding", len(data), self.element_bytes)
        element = int.from_bytes(data, "little")
        if not self.field.contains(element):
            raise PreconditionViolation(
                "encoding is not a field element",
                f"decoded value has bit length {element.bit_length()}",
            )
        return element


@functools.lru_cache(maxsize=None)
def default_cipher() -> FieldCipher:
    """Process-wide cipher over GF(2^128), built on first use."""
    return FieldCipher()
