# Package initialization
# Import all models to ensure relationships are properly established
from .agent import Agent, PayoutMethod
from .clinic import Clinic
from .referral import Referral, ReferralStatus
from .referral_status_history import ReferralStatusHistory
from .clinic_report import ClinicReport, ClinicReportStatus
from .payment import Payment, PaymentStatus
from .commission_tier import CommissionTier

__all__ = [
    "Agent",
    "PayoutMethod",
    "Clinic",
    "Referral",
    "ReferralStatus",
    "ReferralStatusHistory",
    "ClinicReport",
    "ClinicReportStatus",
    "Payment",
    "PaymentStatus",
    "CommissionTier",
]
