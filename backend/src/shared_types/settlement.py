"""
Shared types for the settlement pipeline.

Result records passed between the matcher, the settlement orchestrator, the
payout gateway and the API layer. They carry no ORM state so they can be
returned across session boundaries and serialized directly.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional

from models.clinic_report import ClinicReportStatus


@dataclass(frozen=True)
class MatchCandidate:
    """One scored referral for a clinic report."""
    referral_id: int
    score: int  # 0-100
    name_score: int
    date_score: Optional[int] = None  # None when the report has no visit date
    clinic_score: Optional[int] = None  # None when the report has no clinic name


@dataclass(frozen=True)
class MatchDecision:
    """
    Routing outcome for a clinic report.

    linked_referral_id is set only for auto_matched; suggested_referral_id only
    for the review band. Below the review threshold both are None.
    """
    status: ClinicReportStatus
    confidence: int
    linked_referral_id: Optional[int] = None
    suggested_referral_id: Optional[int] = None
    candidates: List[MatchCandidate] = field(default_factory=list)


@dataclass
class IngestionResult:
    """Counters for one ingestion run."""
    processed: int = 0
    created: int = 0
    skipped: int = 0
    errors: int = 0
    auto_matched: int = 0
    report_ids: List[int] = field(default_factory=list)

    def to_dict(self) -> dict[str, int | list[int]]:
        return {
            "processed": self.processed,
            "created": self.created,
            "skipped": self.skipped,
            "errors": self.errors,
            "auto_matched": self.auto_matched,
            "report_ids": list(self.report_ids),
        }


@dataclass
class ApprovalResult:
    """
    Outcome of approving a clinic report.

    The referral is settled whenever an ApprovalResult is returned. payment_id
    is None when the net commission is zero or when creating the payout failed;
    in the latter case payout_error holds the reason and the payout can be
    created again later.
    """
    report_id: int
    referral_id: int
    treatment_amount: int
    commission_rate: Decimal
    commission_amount: int
    net_amount: int
    payment_id: Optional[int] = None
    payout_error: Optional[str] = None


@dataclass(frozen=True)
class PayoutResult:
    """
    Structured outcome of a payout gateway call. Never raised, always returned.

    error is the administrator-facing reason string. error_code is the
    provider's machine-readable code when the failure came from the provider.
    """
    success: bool
    payment_id: int
    provider_payment_id: Optional[str] = None
    status: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    ambiguous: bool = False

    @classmethod
    def failure(
        cls,
        payment_id: int,
        error: str,
        error_code: Optional[str] = None,
        ambiguous: bool = False,
        status: Optional[str] = None,
    ) -> "PayoutResult":
        return cls(
            success=False,
            payment_id=payment_id,
            error=error,
            error_code=error_code,
            ambiguous=ambiguous,
            status=status,
        )
