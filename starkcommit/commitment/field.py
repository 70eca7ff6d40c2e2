"""Binary extension field arithmetic for the commitment cipher.

The cipher only needs a handful of operations from its field, so the
dependency is expressed as the ``BinaryField`` protocol. ``GF2m`` is the
default backend: elements are Python ints whose bit ``i`` is the coefficient
of ``x^i``, reduced modulo a fixed irreducible polynomial.
"""

from __future__ import annotations

from typing import Protocol


class BinaryField(Protocol):
    """Arithmetic capability consumed by ``FieldCipher``."""

    degree: int
    modulus: int

    def add(self, a: int, b: int) -> int: ...

    def mul(self, a: int, b: int) -> int: ...

    def square(self, a: int) -> int: ...

    def inverse(self, a: int) -> int: ...

    def power(self, a: int, exponent: int) -> int: ...

    def contains(self, a: int) -> bool: ...


class GF2m:
    """GF(2^m) over Python ints.

    Args:
        modulus: Irreducible polynomial as an int, including the leading
            ``x^m`` term. Irreducibility is trusted, not checked.
    """

    def __init__(self, modulus: int):
        if modulus < 0b10:
            raise ValueError("modulus must have degree >= 1")
        self.modulus = modulus
        self.degree = modulus.bit_length() - 1
        self._top = 1 << self.degree

    def __repr__(self) -> str:
        return f"GF2m(degree={self.degree}, modulus={self.modulus:#x})"

    def contains(self, a: int) -> bool:
        return 0 <= a < self._top

    def add(self, a: int, b: int) -> int:
        return a ^ b

    def mul(self, a: int, b: int) -> int:
        """Shift-and-add multiplication with interleaved reduction."""
        result = 0
        top = self._top
        modulus = self.modulus
        while b:
            if b & 1:
                result ^= a
            b >>= 1
            a <<= 1
            if a & top:
                a ^= modulus
        return result

    def square(self, a: int) -> int:
        return self.mul(a, a)

    def inverse(self, a: int) -> int:
        """Multiplicative inverse via the binary extended Euclidean algorithm.

        Invariants (mod modulus): ``a * g1 == u`` and ``a * g2 == v``.

        Raises:
            ZeroDivisionError: if ``a`` is zero
        """
        if a == 0:
            raise ZeroDivisionError("zero has no inverse in GF(2^m)")
        u, v = a, self.modulus
        g1, g2 = 1, 0
        while u != 1:
            shift = u.bit_length() - v.bit_length()
            if shift < 0:
                u, v = v, u
                g1, g2 = g2, g1
                shift = -shift
            u ^= v << shift
            g1 ^= g2 << shift
        return g1

    def power(self, a: int, exponent: int) -> int:
        if exponent < 0:
            return self.power(self.inverse(a), -exponent)
        result = 1
        base = a
        while exponent:
            if exponent & 1:
                result = self.mul(result, base)
            base = self.mul(base, base)
            exponent >>= 1
        return result
