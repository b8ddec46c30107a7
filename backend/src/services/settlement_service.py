"""
Settlement orchestrator: administrator actions on clinic reports.

Approving a report is the only way a referral reaches visited and paid. The
referral and report updates are both conditional (compare-and-swap on the
state that was read), so when two approvals race for the same referral
exactly one commits and the other fails with PreconditionError.

Creating the payout happens after the settlement commit, in its own
transaction. If it fails the referral stays settled and the payout can be
created again later.
"""

import logging
from datetime import date, datetime
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.exceptions import NotFoundError, PreconditionError, ValidationError
from models import ClinicReport, ClinicReportStatus, Referral, ReferralStatus
from services.commission_tier_service import CommissionTierService
from services.payment_service import PaymentService
from services.rate_engine import compute_commission
from services.referral_service import ReferralService
from services.referral_state_machine import OPEN_STATUSES, ensure_transition
from services.report_matcher import ReportMatcher, score_candidate
from shared_types import ApprovalResult
from utils.datetime_utils import ensure_moscow, moscow_now, parse_visit_date

logger = logging.getLogger(__name__)

# Extracted fields an administrator may correct before approval
EDITABLE_REPORT_FIELDS = frozenset({
    "patient_name",
    "clinic_name",
    "visit_date",
    "treatment_amount",
    "services",
    "reviewer_notes",
})


class SettlementService:
    """Service for approving, rejecting and correcting clinic reports."""

    @staticmethod
    def get_report(db: Session, report_id: int) -> ClinicReport:
        report = db.get(ClinicReport, report_id)
        if report is None:
            raise NotFoundError(f"Clinic report {report_id} not found")
        return report

    @staticmethod
    def list_reports(
        db: Session,
        status: Optional[ClinicReportStatus] = None,
        clinic_id: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> List[ClinicReport]:
        query = select(ClinicReport)
        if status is not None:
            query = query.where(ClinicReport.status == status)
        if clinic_id is not None:
            query = query.where(ClinicReport.clinic_id == clinic_id)
        query = query.order_by(ClinicReport.email_received_at.desc(), ClinicReport.id.desc())
        if limit is not None:
            query = query.limit(limit)
        return list(db.scalars(query))

    @staticmethod
    def report_stats(db: Session) -> Dict[str, int]:
        """Number of reports per status, every status present."""
        counts = {status.value: 0 for status in ClinicReportStatus}
        rows = db.execute(
            select(ClinicReport.status, func.count(ClinicReport.id)).group_by(ClinicReport.status)
        )
        for status, count in rows:
            counts[ClinicReportStatus(status).value] = count
        counts["total"] = sum(counts.values())
        return counts

    @staticmethod
    def approve_report(
        db: Session,
        report_id: int,
        reviewer: str,
        referral_id: Optional[int] = None,
        treatment_amount: Optional[int] = None,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ApprovalResult:
        """
        Approve a clinic report and settle its referral.

        Args:
            db: Database session
            report_id: Report to approve
            reviewer: Administrator identifier, recorded on the report
            referral_id: Target referral; defaults to the report's linked referral
            treatment_amount: Confirmed amount in kopecks; defaults to the report's amount
            notes: Reviewer notes
            now: Settlement time (defaults to the current Moscow time)

        Returns:
            ApprovalResult

        Raises:
            ValidationError: No target referral, or missing/non-positive amount
            NotFoundError: Unknown report or referral
            PreconditionError: Report already approved, referral already
                settled or claimed by a concurrent approval
        """
        now = ensure_moscow(now) or moscow_now()
        report = SettlementService.get_report(db, report_id)
        observed_report_status = report.status
        if observed_report_status == ClinicReportStatus.APPROVED:
            raise PreconditionError(f"Clinic report {report_id} is already approved")

        target_id = referral_id if referral_id is not None else report.linked_referral_id
        if target_id is None:
            raise ValidationError("No referral selected for this report", field="referral_id")

        amount = treatment_amount if treatment_amount is not None else report.treatment_amount
        if amount is None:
            raise ValidationError("Treatment amount is required", field="treatment_amount")
        if amount <= 0:
            raise ValidationError(
                f"Treatment amount must be positive, got {amount}", field="treatment_amount"
            )

        referral = ReferralService.get_referral(db, target_id)
        if referral.linked_report_id is not None:
            raise PreconditionError(
                f"Referral {target_id} is already settled by report {referral.linked_report_id}"
            )
        observed_referral_status = referral.status
        ensure_transition(observed_referral_status, ReferralStatus.VISITED)

        volume = ReferralService.agent_trailing_revenue(
            db, referral.agent_id, now, exclude_referral_id=referral.id
        )
        agent = referral.agent
        breakdown = compute_commission(
            amount,
            volume,
            agent.is_self_employed,
            override_tiers=CommissionTierService.get_agent_tiers(db, agent.id),
            global_tiers=CommissionTierService.get_global_tiers(db),
        )

        try:
            ReferralService.record_settlement(
                db,
                referral,
                observed_referral_status,
                amount,
                breakdown,
                report_id=report.id,
                settled_at=now,
                note=f"Report {report.id} approved by {reviewer}",
            )
            values: Dict[str, Any] = {
                "status": ClinicReportStatus.APPROVED,
                "linked_referral_id": referral.id,
                "suggested_referral_id": None,
                "treatment_amount": amount,
                "reviewed_by": reviewer,
                "reviewed_at": now,
                "rejection_reason": None,
                "updated_at": now,
            }
            if notes is not None:
                values["reviewer_notes"] = notes
            result = db.execute(
                update(ClinicReport)
                .where(ClinicReport.id == report.id, ClinicReport.status == observed_report_status)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:  # type: ignore[attr-defined]
                raise PreconditionError(f"Clinic report {report_id} was modified concurrently")
            db.commit()
        except PreconditionError:
            db.rollback()
            raise
        except IntegrityError as e:
            db.rollback()
            raise PreconditionError(
                f"Referral {target_id} was settled by another report concurrently"
            ) from e

        db.refresh(report)
        logger.info(
            f"Report {report_id} approved by {reviewer}: referral {referral.id} settled, "
            f"amount {amount}, rate {breakdown.rate}, commission {breakdown.gross_amount}, "
            f"net {breakdown.net_amount} (agent volume {volume})"
        )

        approval = ApprovalResult(
            report_id=report.id,
            referral_id=referral.id,
            treatment_amount=amount,
            commission_rate=breakdown.rate,
            commission_amount=breakdown.gross_amount,
            net_amount=breakdown.net_amount,
        )
        try:
            payment = PaymentService.create_payout(db, referral.id, breakdown)
            approval.payment_id = payment.id if payment else None
        except Exception as e:
            db.rollback()
            logger.exception(f"Failed to create payout for referral {referral.id}: {e}")
            approval.payout_error = str(e)
        return approval

    @staticmethod
    def reject_report(
        db: Session,
        report_id: int,
        reviewer: str,
        reason: str,
        now: Optional[datetime] = None,
    ) -> ClinicReport:
        """
        Reject a report. Referrals are not touched.

        Raises:
            ValidationError: Empty reason
            PreconditionError: Report already approved
        """
        if not (reason or "").strip():
            raise ValidationError("A rejection reason is required", field="reason")
        now = ensure_moscow(now) or moscow_now()
        report = SettlementService.get_report(db, report_id)
        observed = report.status
        if observed == ClinicReportStatus.APPROVED:
            raise PreconditionError(f"Clinic report {report_id} is already approved")

        result = db.execute(
            update(ClinicReport)
            .where(ClinicReport.id == report_id, ClinicReport.status == observed)
            .values(
                status=ClinicReportStatus.REJECTED,
                rejection_reason=reason.strip(),
                reviewed_by=reviewer,
                reviewed_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:  # type: ignore[attr-defined]
            db.rollback()
            raise PreconditionError(f"Clinic report {report_id} was modified concurrently")
        db.commit()
        db.refresh(report)

        logger.info(f"Report {report_id} rejected by {reviewer}: {reason.strip()}")
        return report

    @staticmethod
    def edit_report(
        db: Session,
        report_id: int,
        updates: Mapping[str, Any],
        editor: str,
        rematch: bool = False,
        matcher: Optional[ReportMatcher] = None,
    ) -> ClinicReport:
        """
        Correct a report's extracted fields before approval.

        Only keys present in updates are changed; an explicit None clears the
        field. Referrals are never touched. With rematch, the corrected report
        is routed again (pending or auto-matched reports only).

        Raises:
            ValidationError: Unknown field or invalid value
            PreconditionError: Report already approved, or its status changed since it was read
        """
        unknown = set(updates) - EDITABLE_REPORT_FIELDS
        if unknown:
            field = sorted(unknown)[0]
            raise ValidationError(f"Field {field} cannot be edited", field=field)

        report = SettlementService.get_report(db, report_id)
        observed = report.status
        if observed == ClinicReportStatus.APPROVED:
            raise PreconditionError(f"Clinic report {report_id} is already approved and cannot be edited")

        cleaned = SettlementService._clean_report_updates(updates)
        result = db.execute(
            update(ClinicReport)
            .where(ClinicReport.id == report_id, ClinicReport.status == observed)
            .values(**cleaned, updated_at=moscow_now())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:  # type: ignore[attr-defined]
            db.rollback()
            raise PreconditionError(f"Clinic report {report_id} was modified concurrently")
        db.refresh(report)

        if rematch and report.status != ClinicReportStatus.REJECTED:
            (matcher or ReportMatcher()).route_report(db, report)
        db.commit()
        db.refresh(report)

        logger.info(f"Report {report_id} edited by {editor}: {sorted(cleaned)}")
        return report

    @staticmethod
    def _clean_report_updates(updates: Mapping[str, Any]) -> Dict[str, Any]:
        cleaned: Dict[str, Any] = {}
        for field, value in updates.items():
            if field == "treatment_amount" and value is not None:
                if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                    raise ValidationError(
                        f"Treatment amount must be a non-negative integer, got {value!r}",
                        field="treatment_amount",
                    )
            elif field == "visit_date" and isinstance(value, str):
                try:
                    value = parse_visit_date(value)
                except ValueError as e:
                    raise ValidationError(str(e), field="visit_date") from e
            elif field == "visit_date" and value is not None and not isinstance(value, date):
                raise ValidationError(f"Invalid visit date: {value!r}", field="visit_date")
            elif field == "services":
                value = [str(item) for item in (value or [])]
            elif isinstance(value, str):
                value = value.strip() or None
            cleaned[field] = value
        return cleaned

    @staticmethod
    def relink_report(
        db: Session,
        report_id: int,
        referral_id: Optional[int],
        editor: str,
    ) -> ClinicReport:
        """
        Point a report at a different referral (or clear the link with None).

        The report returns to pending_review with the chosen referral linked and
        its match confidence recomputed for that referral.

        Raises:
            NotFoundError: Unknown report or referral
            PreconditionError: Report approved or changed concurrently, or referral not open or already settled
        """
        report = SettlementService.get_report(db, report_id)
        observed = report.status
        if observed == ClinicReportStatus.APPROVED:
            raise PreconditionError(f"Clinic report {report_id} is already approved and cannot be relinked")

        confidence = 0
        if referral_id is not None:
            referral: Referral = ReferralService.get_referral(db, referral_id)
            if referral.linked_report_id is not None:
                raise PreconditionError(
                    f"Referral {referral_id} is already settled by report {referral.linked_report_id}"
                )
            if referral.status not in OPEN_STATUSES:
                raise PreconditionError(
                    f"Referral {referral_id} is {referral.status.value} and cannot be linked"
                )
            if report.patient_name:
                confidence = score_candidate(
                    referral, report.patient_name, report.visit_date, report.clinic_name, report.clinic_id
                ).score

        result = db.execute(
            update(ClinicReport)
            .where(ClinicReport.id == report_id, ClinicReport.status == observed)
            .values(
                linked_referral_id=referral_id,
                suggested_referral_id=None,
                match_confidence=confidence,
                status=ClinicReportStatus.PENDING_REVIEW,
                updated_at=moscow_now(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:  # type: ignore[attr-defined]
            db.rollback()
            raise PreconditionError(f"Clinic report {report_id} was modified concurrently")
        db.commit()
        db.refresh(report)

        logger.info(f"Report {report_id} relinked to referral {referral_id} by {editor}")
        return report
