"""Error taxonomy for the commitment core.

Verification failures are not errors: they come back as ``False`` or a
failed ``VerificationReport``. The exceptions here cover the other cases:

- ``PreconditionViolation``: the caller broke a size or range contract
- ``ConsistencyViolation``: two different digests claimed the same node
- ``IncompleteProofError``: a proof lacks data needed to reach the root
"""

from __future__ import annotations

import logging
from typing import Optional

logger = logging.getLogger(__name__)


class CommitmentError(Exception):
    """Base class for commitment errors.

    The message stays short and safe to surface; ``internal_details`` is only
    logged.
    """

    def __init__(self, user_message: str, internal_details: Optional[str] = None):
        """
        Args:
            user_message: Message carried by the exception
            internal_details: Extra diagnostics for the log only
        """
        super().__init__(user_message)
        self.user_message = user_message
        self.internal_details = internal_details

        if internal_details:
            logger.debug(f"{type(self).__name__}: {internal_details}")


class PreconditionViolation(CommitmentError, ValueError):
    """Malformed sizes, indices or buffers passed by the caller."""


class ConsistencyViolation(CommitmentError):
    """A node was given a digest that differs from the one already stored."""

    def __init__(
        self,
        user_message: str,
        layer: Optional[int] = None,
        index: Optional[int] = None,
        internal_details: Optional[str] = None,
    ):
        super().__init__(user_message, internal_details)
        self.layer = layer
        self.index = index
        logger.warning(f"Consistency violation at layer={layer} index={index}")


class IncompleteProofError(CommitmentError):
    """Data needed to recompute the root is missing."""

    def __init__(
        self,
        user_message: str,
        layer: Optional[int] = None,
        index: Optional[int] = None,
        internal_details: Optional[str] = None,
    ):
        super().__init__(user_message, internal_details)
        self.layer = layer
        self.index = index


def buffer_length_error(name: str, length: int, log_len: int) -> PreconditionViolation:
    """Build the error for a buffer whose size disagrees with its log length."""
    return PreconditionViolation(
        f"{name} must be exactly 2^{log_len} bytes",
        f"{name} has {length} bytes, expected {1 << log_len}",
    )


def digest_length_error(what: str, length: int, expected: int) -> PreconditionViolation:
    """Build the error for a byte string of the wrong width."""
    return PreconditionViolation(
        f"{what} must be {expected} bytes",
        f"{what} has {length} bytes",
    )
