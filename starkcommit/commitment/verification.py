"""Structured verification results for sparse commitment proofs.

A bare boolean cannot tell "the proof is wrong" from "the proof is too
incomplete to check", so sparse verification returns a ``VerificationReport``
carrying one of the codes below.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict


class VerificationErrorCode(str, Enum):
    """Outcome codes for commitment verification.

    Using str as base class allows JSON serialization.
    """

    OK = "ok"

    # Verification failed: the data was checkable and is wrong
    ROOT_MISMATCH = "root_mismatch"
    LEAF_MISMATCH = "leaf_mismatch"
    PROOF_INCONSISTENT = "proof_inconsistent"

    # Cannot verify: the proof does not carry enough well-formed data
    PROOF_INCOMPLETE = "proof_incomplete"
    MALFORMED_PROOF = "malformed_proof"


_CANNOT_VERIFY = frozenset({
    VerificationErrorCode.PROOF_INCOMPLETE,
    VerificationErrorCode.MALFORMED_PROOF,
})


@dataclass(frozen=True)
class VerificationReport:
    """Verification outcome.

    Examples:
        >>> report = VerificationReport.ok()
        >>> bool(report)
        True

        >>> report = VerificationReport.fail(
        ...     VerificationErrorCode.ROOT_MISMATCH,
        ...     "Recomputed root differs",
        ...     expected="00" * 16,
        ... )
        >>> report.cannot_verify
        False
    """

    success: bool
    error_code: VerificationErrorCode
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, message: str = "Verification successful", **details: Any) -> "VerificationReport":
        return cls(
            success=True,
            error_code=VerificationErrorCode.OK,
            message=message,
            details=details or {},
        )

    @classmethod
    def fail(
        cls,
        code: VerificationErrorCode,
        message: str,
        **details: Any,
    ) -> "VerificationReport":
        """Create a failed report.

        Args:
            code: The specific error code
            message: Human-readable error message
            **details: Additional context (e.g., expected vs actual digests)
        """
        return cls(
            success=False,
            error_code=code,
            message=message,
            details=details or {},
        )

    @property
    def cannot_verify(self) -> bool:
        """True when verification could not even be attempted."""
        return self.error_code in _CANNOT_VERIFY

    def __bool__(self) -> bool:
        return self.success

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "error_code": self.error_code.value,
            "message": self.message,
            "details": self.details,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VerificationReport":
        return cls(
            success=data["success"],
            error_code=VerificationErrorCode(data["error_code"]),
            message=data.get("message", ""),
            details=data.get("details", {}),
        )
