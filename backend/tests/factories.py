"""
Factory helpers for building settlement records in tests.

Each helper adds, commits and returns the record. Defaults describe a valid
self-employed agent paid by card, so tests only spell out what they vary.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy.orm import Session

from models import (
    Agent,
    Clinic,
    ClinicReport,
    ClinicReportStatus,
    CommissionTier,
    Payment,
    PaymentStatus,
    PayoutMethod,
    Referral,
    ReferralStatus,
)
from services.payment_service import build_idempotency_key
from utils.datetime_utils import epoch_millis, moscow_now

VALID_CARD = "4111111111111111"
VALID_TAX_ID = "500100732259"


def create_agent(
    db: Session,
    full_name: str = "Иванов Иван Иванович",
    phone: Optional[str] = "+79161234567",
    tax_id: Optional[str] = VALID_TAX_ID,
    is_self_employed: bool = True,
    payout_method: PayoutMethod = PayoutMethod.CARD,
    card_number: Optional[str] = VALID_CARD,
    external_id: Optional[str] = "tg-1001",
    **kwargs,
) -> Agent:
    agent = Agent(
        full_name=full_name,
        phone=phone,
        tax_id=tax_id,
        is_self_employed=is_self_employed,
        payout_method=payout_method,
        card_number=card_number,
        external_id=external_id,
        **kwargs,
    )
    db.add(agent)
    db.commit()
    return agent


def create_clinic(
    db: Session,
    name: str = "Клиника «Здоровье»",
    report_emails: Optional[List[str]] = None,
) -> Clinic:
    clinic = Clinic(name=name, report_emails=report_emails if report_emails is not None else ["reports@zdorovie.ru"])
    db.add(clinic)
    db.commit()
    return clinic


def create_referral(
    db: Session,
    agent: Agent,
    patient_full_name: str = "Петров Сергей Николаевич",
    clinic: Optional[Clinic] = None,
    status: ReferralStatus = ReferralStatus.NEW,
    created_at: Optional[datetime] = None,
    **kwargs,
) -> Referral:
    referral = Referral(
        agent_id=agent.id,
        clinic_id=clinic.id if clinic else None,
        clinic_name=kwargs.pop("clinic_name", clinic.name if clinic else None),
        patient_full_name=patient_full_name,
        status=status,
        created_at=created_at,
        **kwargs,
    )
    db.add(referral)
    db.commit()
    return referral


def create_report(
    db: Session,
    source_id: str = "msg-1",
    patient_name: Optional[str] = "Петров Сергей Николаевич",
    clinic: Optional[Clinic] = None,
    treatment_amount: Optional[int] = 100_000,
    visit_date: Optional[date] = None,
    status: ClinicReportStatus = ClinicReportStatus.PENDING_REVIEW,
    linked_referral: Optional[Referral] = None,
    **kwargs,
) -> ClinicReport:
    report = ClinicReport(
        source_id=source_id,
        clinic_id=clinic.id if clinic else None,
        clinic_name=clinic.name if clinic else None,
        email_from="reports@zdorovie.ru",
        email_subject="Отчёт о приёме",
        email_received_at=moscow_now(),
        patient_name=patient_name,
        visit_date=visit_date,
        treatment_amount=treatment_amount,
        services=[],
        status=status,
        linked_referral_id=linked_referral.id if linked_referral else None,
        **kwargs,
    )
    db.add(report)
    db.commit()
    return report


def create_payment(
    db: Session,
    agent: Agent,
    amount: int = 7_000,
    status: PaymentStatus = PaymentStatus.PENDING,
    referral: Optional[Referral] = None,
    **kwargs,
) -> Payment:
    payment = Payment(
        agent_id=agent.id,
        referral_id=referral.id if referral else None,
        amount=amount,
        gross_amount=kwargs.pop("gross_amount", amount),
        tax_amount=kwargs.pop("tax_amount", 0),
        social_contributions=kwargs.pop("social_contributions", 0),
        status=status,
        payout_method=agent.payout_method,
        **kwargs,
    )
    db.add(payment)
    db.flush()
    payment.idempotency_key = build_idempotency_key(payment.id, epoch_millis(payment.created_at))
    db.commit()
    return payment


def create_tier(db: Session, min_monthly_revenue: int, rate: str, agent: Optional[Agent] = None) -> CommissionTier:
    tier = CommissionTier(
        agent_id=agent.id if agent else None,
        min_monthly_revenue=min_monthly_revenue,
        commission_rate=Decimal(rate),
    )
    db.add(tier)
    db.commit()
    return tier
