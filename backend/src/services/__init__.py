"""
Services package for settlement business logic.

This package contains service classes that encapsulate business logic
shared across API endpoints and scheduled jobs.
"""

from .referral_service import ReferralService
from .commission_tier_service import CommissionTierService
from .report_ingestion_service import ReportIngestionService
from .settlement_service import SettlementService
from .payment_service import PaymentService
from .payout_gateway import PayoutGateway

__all__ = [
    "ReferralService",
    "CommissionTierService",
    "ReportIngestionService",
    "SettlementService",
    "PaymentService",
    "PayoutGateway",
]
