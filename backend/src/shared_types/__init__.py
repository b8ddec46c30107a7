"""
Shared type definitions for the referral settlement backend.

This module contains dataclasses and types that are used across multiple services.
"""

from shared_types.settlement import (
    ApprovalResult,
    IngestionResult,
    MatchCandidate,
    MatchDecision,
    PayoutResult,
)

__all__ = [
    "ApprovalResult",
    "IngestionResult",
    "MatchCandidate",
    "MatchDecision",
    "PayoutResult",
]
