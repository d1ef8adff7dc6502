"""Exceptions raised by the continuity engine.

Business outcomes (discrepancy found, fuzzy match, no match) are never
exceptions; they are variants of ContinuityResult. These classes cover
broken references only.
"""

from uuid import UUID


class ContinuityError(Exception):
    """Base class for continuity engine failures."""


class MasterVerificationNotFoundError(ContinuityError, LookupError):
    """A referenced master verification does not resolve.

    Data integrity fault: propagated to the caller, never retried. Aborts
    only the current lease's transaction.
    """

    def __init__(self, verification_id: UUID | None, detail: str | None = None):
        self.verification_id = verification_id
        super().__init__(detail or f"Master verification {verification_id} not found")


class ContinuityNotFoundError(ContinuityError, LookupError):
    """A referenced verification continuity does not exist."""

    def __init__(self, continuity_id: UUID):
        self.continuity_id = continuity_id
        super().__init__(f"Verification continuity {continuity_id} not found")
