"""
Payout gateway: sends local Payments to the settlement provider exactly once.

Submission flow for one payment:
1. Local checks (payment pending, no provider id, agent payout details valid).
   Any failure here returns before a network call.
2. Claim the attempt with a conditional update, so two concurrent submitters
   cannot both reach the provider.
   The claim marks the attempt ambiguous; only a stored provider id or a
   definite provider rejection clears that.
3. If the previous attempt is still ambiguous (timeout, 5xx, crash mid-flight),
   look the payment up by its idempotency key first; the provider may already
   have it.
4. Submit: plain payment for a known payee, combined payee+payment otherwise.
5. Store the provider id and status, mark processing, notify the agent.

The gateway never raises and never retries on its own; callers get a
PayoutResult and decide whether to try again.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from core.config import ADMIN_NOTIFICATION_CHAT_ID
from core.constants import PAYOUT_SERVICE_NAME, PAYOUT_SUBMIT_BATCH_SIZE
from core.exceptions import ProviderError
from models import Agent, Payment, PaymentStatus, PayoutMethod
from services.notification_service import (
    NotificationSink,
    admin_payout_error_message,
    payout_paid_message,
    payout_rejected_message,
    payout_sent_message,
    signature_required_message,
)
from services.payment_service import build_idempotency_key
from services.settlement_provider_client import (
    LegalForm,
    ProviderPayment,
    ProviderPaymentStatus,
    RequisiteType,
    SettlementProviderClient,
    parse_payee_name,
)
from shared_types import PayoutResult
from utils.datetime_utils import epoch_millis, moscow_now
from utils.payout_validators import validate_bank_account, validate_bik, validate_card_number, validate_tax_id
from utils.phone_validator import validate_russian_phone

logger = logging.getLogger(__name__)

_STATUS_MAP: Dict[int, PaymentStatus] = {
    ProviderPaymentStatus.PAID: PaymentStatus.PAID,
    ProviderPaymentStatus.REJECTED: PaymentStatus.REJECTED,
    ProviderPaymentStatus.ERROR: PaymentStatus.ERROR,
    ProviderPaymentStatus.DELETED: PaymentStatus.REJECTED,
    ProviderPaymentStatus.PROCESSING: PaymentStatus.PROCESSING,
    ProviderPaymentStatus.AWAITING_PAYMENT: PaymentStatus.PROCESSING,
    ProviderPaymentStatus.AWAITING_CONFIRMATION: PaymentStatus.PROCESSING,
    ProviderPaymentStatus.AWAITING_SIGNATURE: PaymentStatus.PROCESSING,
}

_REQUISITE_TYPES = {
    PayoutMethod.CARD: RequisiteType.CARD,
    PayoutMethod.SBP: RequisiteType.SBP,
    PayoutMethod.BANK_ACCOUNT: RequisiteType.BANK_ACCOUNT,
}


def map_provider_status(status_id: int) -> PaymentStatus:
    """Local status for a provider status id. Unknown ids count as still processing."""
    return _STATUS_MAP.get(status_id, PaymentStatus.PROCESSING)


@dataclass(frozen=True)
class PayoutDetails:
    """Validated agent payout details."""
    tax_id: str
    phone: str
    method: PayoutMethod
    requisite_type: RequisiteType
    account_number: Optional[str] = None
    bank_bik: Optional[str] = None


def check_payout_preconditions(agent: Agent) -> PayoutDetails:
    """
    Validate everything the provider needs before any network call.

    Raises:
        ValueError: With the administrator-facing reason
    """
    tax_id = validate_tax_id(agent.tax_id or "")
    if not agent.phone:
        raise ValueError("Agent has no phone")
    phone = validate_russian_phone(agent.phone)

    method = agent.payout_method
    if method == PayoutMethod.CARD:
        return PayoutDetails(
            tax_id, phone, method, RequisiteType.CARD,
            account_number=validate_card_number(agent.card_number or ""),
        )
    if method == PayoutMethod.SBP:
        return PayoutDetails(tax_id, phone, method, RequisiteType.SBP)
    if not agent.bank_account or not agent.bank_bik:
        raise ValueError("Agent has incomplete bank details")
    return PayoutDetails(
        tax_id, phone, method, RequisiteType.BANK_ACCOUNT,
        account_number=validate_bank_account(agent.bank_account),
        bank_bik=validate_bik(agent.bank_bik),
    )


class PayoutGateway:
    """Idempotent wrapper around the settlement provider."""

    def __init__(
        self,
        client: SettlementProviderClient,
        notifier: NotificationSink,
        admin_chat_id: Optional[str] = ADMIN_NOTIFICATION_CHAT_ID,
    ) -> None:
        self.client = client
        self.notifier = notifier
        self.admin_chat_id = admin_chat_id or None

    # --- Submission ---

    def submit_payment(self, db: Session, payment_id: int) -> PayoutResult:
        """Submit one pending payment. Never raises."""
        try:
            return self._submit(db, payment_id)
        except Exception as e:
            db.rollback()
            logger.exception(f"Unexpected error submitting payment {payment_id}: {e}")
            return PayoutResult.failure(payment_id, str(e) or type(e).__name__, error_code="unexpected")

    def _submit(self, db: Session, payment_id: int) -> PayoutResult:
        payment = db.get(Payment, payment_id)
        if payment is None:
            return PayoutResult.failure(payment_id, f"Payment {payment_id} not found", error_code="not_found")
        if payment.provider_payment_id:
            return PayoutResult.failure(
                payment_id,
                f"Payment already sent to provider (ID: {payment.provider_payment_id})",
                error_code="already_submitted",
                status=payment.status.value,
            )
        if payment.status != PaymentStatus.PENDING:
            return PayoutResult.failure(
                payment_id,
                f"Payment {payment_id} is not pending (status: {payment.status.value})",
                error_code="not_pending",
                status=payment.status.value,
            )

        agent = db.get(Agent, payment.agent_id)
        if agent is None:
            return PayoutResult.failure(payment_id, f"Agent {payment.agent_id} not found", error_code="not_found")
        try:
            details = check_payout_preconditions(agent)
        except ValueError as e:
            return self._record_local_failure(db, payment, str(e))

        if not self.client.is_configured:
            return PayoutResult.failure(
                payment_id, "Settlement provider API not configured",
                error_code="not_configured", status=payment.status.value,
            )

        if not payment.idempotency_key:
            payment.idempotency_key = build_idempotency_key(payment.id, epoch_millis(payment.created_at))
        key = payment.idempotency_key
        recover = payment.last_error_ambiguous

        if not self._claim_attempt(db, payment):
            return PayoutResult.failure(
                payment_id, "Payment is being submitted concurrently",
                error_code="concurrent_submission", status=PaymentStatus.PENDING.value,
            )

        # Known absent at the provider once the lookup came back empty
        looked_up = not recover
        try:
            provider_payment: Optional[ProviderPayment] = None
            if recover:
                provider_payment = self.client.get_payment_by_customer_id(key)
                looked_up = True
                if provider_payment is not None:
                    logger.info(f"Payment {payment_id} found at provider by key {key} after ambiguous failure")
            if provider_payment is None:
                provider_payment = self._send(db, agent, payment, details, key)
        except ProviderError as e:
            return self._record_provider_failure(db, payment, e, still_ambiguous=not looked_up)

        self._record_submitted(db, agent, payment, provider_payment)
        self._notify(agent.external_id, payout_sent_message(payment.amount, details.method))
        return PayoutResult(
            success=True,
            payment_id=payment.id,
            provider_payment_id=payment.provider_payment_id,
            status=payment.status.value,
        )

    def _claim_attempt(self, db: Session, payment: Payment) -> bool:
        attempts = payment.submit_attempts
        result = db.execute(
            update(Payment)
            .where(
                Payment.id == payment.id,
                Payment.status == PaymentStatus.PENDING,
                Payment.provider_payment_id.is_(None),
                Payment.submit_attempts == attempts,
            )
            .values(
                submit_attempts=attempts + 1,
                idempotency_key=payment.idempotency_key,
                # In flight until the provider answers either way
                last_error_ambiguous=True,
                updated_at=moscow_now(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:  # type: ignore[attr-defined]
            db.rollback()
            return False
        db.commit()
        db.refresh(payment)
        return True

    def _send(
        self,
        db: Session,
        agent: Agent,
        payment: Payment,
        details: PayoutDetails,
        key: str,
    ) -> ProviderPayment:
        purpose = f"Выплата агенту #{agent.id} по заявке #{payment.id}"
        legal_form = LegalForm.SELF_EMPLOYED if agent.is_self_employed else LegalForm.INDIVIDUAL

        if agent.provider_payee_id:
            requisite_id = self._ensure_requisite(db, agent, details)
            return self.client.create_payment(
                contractor_id=agent.provider_payee_id,
                requisite_id=requisite_id,
                amount=payment.amount,
                customer_payment_id=key,
                service_name=PAYOUT_SERVICE_NAME,
                payment_purpose=purpose,
            )

        return self.client.create_smart_payment(
            phone=details.phone,
            name=parse_payee_name(agent.full_name),
            legal_form=legal_form,
            tax_id=details.tax_id,
            requisite_type=details.requisite_type,
            amount=payment.amount,
            customer_payment_id=key,
            service_name=PAYOUT_SERVICE_NAME,
            payment_purpose=purpose,
            account_number=details.account_number,
            bank_bik=details.bank_bik,
        )

    def _ensure_requisite(self, db: Session, agent: Agent, details: PayoutDetails) -> str:
        """Reuse the stored requisite, or find/create one for the agent's payout method."""
        if agent.provider_requisite_id:
            return agent.provider_requisite_id
        assert agent.provider_payee_id is not None

        existing = [
            r for r in self.client.list_requisites(agent.provider_payee_id)
            if r.type_id == int(details.requisite_type)
        ]
        existing.sort(key=lambda r: not r.is_default)
        if existing:
            requisite = existing[0]
        else:
            requisite = self.client.add_requisite(
                agent.provider_payee_id,
                details.requisite_type,
                account_number=details.account_number,
                bank_bik=details.bank_bik,
            )
        agent.provider_requisite_id = requisite.id
        db.commit()
        logger.info(f"Agent {agent.id} requisite {requisite.id} stored for {details.method.value}")
        return requisite.id

    def _record_local_failure(self, db: Session, payment: Payment, reason: str) -> PayoutResult:
        logger.warning(f"Payment {payment.id} not submitted: {reason}")
        payment.last_error = reason
        db.commit()
        return PayoutResult.failure(payment.id, reason, error_code="precondition", status=payment.status.value)

    def _record_provider_failure(
        self,
        db: Session,
        payment: Payment,
        error: ProviderError,
        still_ambiguous: bool = False,
    ) -> PayoutResult:
        db.rollback()
        logger.warning(
            f"Provider rejected payment {payment.id}: {error.code} {error.detail} (ambiguous={error.ambiguous})"
        )
        payment.last_error = error.detail
        # The claim marked the attempt ambiguous; only a definite answer clears it
        payment.last_error_ambiguous = error.ambiguous or still_ambiguous
        db.commit()
        return PayoutResult.failure(
            payment.id, error.detail, error_code=error.code,
            ambiguous=error.ambiguous, status=payment.status.value,
        )

    def _record_submitted(self, db: Session, agent: Agent, payment: Payment, provider_payment: ProviderPayment) -> None:
        now = moscow_now()
        payment.provider_payment_id = provider_payment.id
        payment.provider_status_code = provider_payment.status_id
        payment.provider_status_text = provider_payment.status_title
        payment.status = PaymentStatus.PROCESSING
        payment.submitted_at = now
        payment.last_error = None
        payment.last_error_ambiguous = False
        if provider_payment.contractor_id and not agent.provider_payee_id:
            agent.provider_payee_id = provider_payment.contractor_id
        db.commit()
        logger.info(
            f"Payment {payment.id} submitted: provider id {payment.provider_payment_id}, "
            f"status {provider_payment.status_id} {provider_payment.status_title}"
        )

    def submit_pending_payments(self, db: Session, limit: int = PAYOUT_SUBMIT_BATCH_SIZE) -> List[PayoutResult]:
        """Submit a bounded batch of pending payments (the scheduled retry)."""
        payment_ids = list(db.scalars(
            select(Payment.id)
            .where(Payment.status == PaymentStatus.PENDING, Payment.provider_payment_id.is_(None))
            .order_by(Payment.id)
            .limit(limit)
        ))
        return [self.submit_payment(db, payment_id) for payment_id in payment_ids]

    # --- Status sync ---

    def sync_payment_status(self, db: Session, payment_id: int) -> PayoutResult:
        """Refresh one payment from the provider. Terminal local statuses are never changed. Never raises."""
        try:
            return self._sync(db, payment_id)
        except Exception as e:
            db.rollback()
            logger.exception(f"Unexpected error syncing payment {payment_id}: {e}")
            return PayoutResult.failure(payment_id, str(e) or type(e).__name__, error_code="unexpected")

    def _sync(self, db: Session, payment_id: int) -> PayoutResult:
        payment = db.get(Payment, payment_id)
        if payment is None:
            return PayoutResult.failure(payment_id, f"Payment {payment_id} not found", error_code="not_found")
        if payment.status.is_terminal:
            return PayoutResult(
                success=True, payment_id=payment.id,
                provider_payment_id=payment.provider_payment_id, status=payment.status.value,
            )
        if not payment.provider_payment_id:
            return PayoutResult.failure(
                payment_id, "Payment has not been submitted to the provider",
                error_code="not_submitted", status=payment.status.value,
            )

        try:
            provider_payment = self.client.get_payment(payment.provider_payment_id)
        except ProviderError as e:
            logger.warning(f"Status sync failed for payment {payment_id}: {e.code} {e.detail}")
            return PayoutResult.failure(
                payment_id, e.detail, error_code=e.code, ambiguous=e.ambiguous, status=payment.status.value
            )

        status_changed = provider_payment.status_id != payment.provider_status_code
        new_status = map_provider_status(provider_payment.status_id)
        values = {
            "provider_status_code": provider_payment.status_id,
            "provider_status_text": provider_payment.status_title,
            "updated_at": moscow_now(),
        }
        if new_status.is_terminal:
            values["status"] = new_status
            values["completed_at"] = moscow_now()

        result = db.execute(
            update(Payment)
            .where(Payment.id == payment.id, Payment.status == PaymentStatus.PROCESSING)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:  # type: ignore[attr-defined]
            # Became terminal (or was reset) concurrently; leave it as it is
            db.rollback()
            db.refresh(payment)
            return PayoutResult(
                success=True, payment_id=payment.id,
                provider_payment_id=payment.provider_payment_id, status=payment.status.value,
            )
        db.commit()
        db.refresh(payment)

        if status_changed:
            logger.info(
                f"Payment {payment.id} provider status {provider_payment.status_id} "
                f"{provider_payment.status_title} -> local {payment.status.value}"
            )
            self._notify_status_change(db, payment, provider_payment.status_id)

        return PayoutResult(
            success=True, payment_id=payment.id,
            provider_payment_id=payment.provider_payment_id, status=payment.status.value,
        )

    def _notify_status_change(self, db: Session, payment: Payment, provider_status_id: int) -> None:
        agent = db.get(Agent, payment.agent_id)
        if agent is None:
            return
        if payment.status == PaymentStatus.PAID:
            self._notify(agent.external_id, payout_paid_message(payment.amount))
        elif payment.status == PaymentStatus.REJECTED and provider_status_id == ProviderPaymentStatus.REJECTED:
            self._notify(agent.external_id, payout_rejected_message(payment.amount))
        elif payment.status == PaymentStatus.ERROR:
            if self.admin_chat_id:
                self._notify(
                    self.admin_chat_id,
                    admin_payout_error_message(agent.full_name, payment.amount, payment.provider_payment_id),
                )
        elif provider_status_id == ProviderPaymentStatus.AWAITING_SIGNATURE:
            self._notify(agent.external_id, signature_required_message())

    def _notify(self, recipient: Optional[str], message: str) -> None:
        """Best-effort delivery; a broken sink never changes a payout outcome."""
        try:
            self.notifier.notify(recipient, message)
        except Exception as e:
            logger.exception(f"Notification to {recipient} failed: {e}")

    def sync_processing_payments(self, db: Session) -> Dict[str, int]:
        """
        Refresh every processing payment. Safe to run alongside submissions:
        it only maps provider state into payments that already have a provider id.
        """
        payment_ids = list(db.scalars(
            select(Payment.id)
            .where(Payment.status == PaymentStatus.PROCESSING, Payment.provider_payment_id.is_not(None))
            .order_by(Payment.id)
        ))
        counts = {"checked": 0, "failed": 0, "paid": 0, "rejected": 0, "error": 0}
        for payment_id in payment_ids:
            result = self.sync_payment_status(db, payment_id)
            counts["checked"] += 1
            if not result.success:
                counts["failed"] += 1
            elif result.status in ("paid", "rejected", "error"):
                counts[result.status] += 1
        if payment_ids:
            logger.info(f"Payout status sync: {counts}")
        return counts
