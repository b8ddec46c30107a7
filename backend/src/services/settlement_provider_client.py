"""
HTTP client for the external settlement provider (payout API).

Wraps the provider's REST contract: payees (contractors), payment requisites,
payments and payment status. Every call has a finite timeout. Failures are
raised as ProviderError with the provider's machine-readable code preserved;
the client itself never retries.

The instance is built once by the application lifespan and passed to the
payout gateway, so tests can hand in a client backed by httpx.MockTransport.
"""

import enum
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from core.config import (
    SETTLEMENT_PROVIDER_AGENT_ID,
    SETTLEMENT_PROVIDER_API_KEY,
    SETTLEMENT_PROVIDER_BANK_ACCOUNT_ID,
    SETTLEMENT_PROVIDER_BASE_URL,
    SETTLEMENT_PROVIDER_TIMEOUT_SECONDS,
)
from core.exceptions import ProviderError
from utils.money import minor_to_major

logger = logging.getLogger(__name__)


class RequisiteType(enum.IntEnum):
    CARD = 8
    SBP = 9
    BANK_ACCOUNT = 10


class LegalForm(enum.IntEnum):
    INDIVIDUAL = 1
    SELF_EMPLOYED = 2


class ProviderPaymentStatus(enum.IntEnum):
    """Provider payment status ids."""
    PAID = 1
    REJECTED = 2
    PROCESSING = 3
    AWAITING_PAYMENT = 4
    ERROR = 5
    DELETED = 6
    AWAITING_CONFIRMATION = 7
    AWAITING_SIGNATURE = 8


@dataclass(frozen=True)
class PayeeName:
    last_name: str
    first_name: str
    middle_name: Optional[str] = None


@dataclass(frozen=True)
class ProviderPayment:
    """Provider-side view of a payment."""
    id: str
    status_id: int
    status_title: str
    is_final: bool
    customer_payment_id: Optional[str] = None
    contractor_id: Optional[str] = None

    @classmethod
    def from_json(cls, item: Dict[str, Any]) -> "ProviderPayment":
        status = item.get("status") or {}
        contractor = item.get("contractor") or {}
        return cls(
            id=str(item["id"]),
            status_id=int(status.get("id", 0)),
            status_title=str(status.get("title", "")),
            is_final=bool(item.get("is_final", False)),
            customer_payment_id=item.get("customer_payment_id"),
            contractor_id=str(contractor["id"]) if contractor.get("id") is not None else None,
        )


@dataclass(frozen=True)
class ProviderRequisite:
    id: str
    type_id: int
    is_default: bool = False
    masked_account: Optional[str] = None

    @classmethod
    def from_json(cls, item: Dict[str, Any]) -> "ProviderRequisite":
        return cls(
            id=str(item["id"]),
            type_id=int(item.get("type_id", 0)),
            is_default=bool(item.get("is_default", False)),
            masked_account=item.get("masked_account"),
        )


def parse_payee_name(full_name: str) -> PayeeName:
    """
    Split "Last First Middle" into name parts.

    "Иванов Иван Иванович" -> PayeeName("Иванов", "Иван", "Иванович").
    A single word is used for both first and last name.
    """
    parts = full_name.split()
    if len(parts) >= 3:
        return PayeeName(last_name=parts[0], first_name=parts[1], middle_name=" ".join(parts[2:]))
    if len(parts) == 2:
        return PayeeName(last_name=parts[0], first_name=parts[1])
    name = full_name.strip()
    return PayeeName(last_name=name, first_name=name)


def _optional_int(value: str) -> Optional[int]:
    try:
        return int(value) if value else None
    except ValueError:
        return None


class SettlementProviderClient:
    """
    Client for the settlement provider's open API.

    Attributes:
        base_url: API root
        agent_id: Optional payer agent id sent with payments
        bank_account_id: Optional payer bank account id sent with payments
    """

    def __init__(
        self,
        api_key: str = SETTLEMENT_PROVIDER_API_KEY,
        base_url: str = SETTLEMENT_PROVIDER_BASE_URL,
        agent_id: str = SETTLEMENT_PROVIDER_AGENT_ID,
        bank_account_id: str = SETTLEMENT_PROVIDER_BANK_ACCOUNT_ID,
        timeout: float = SETTLEMENT_PROVIDER_TIMEOUT_SECONDS,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._api_key = api_key
        self.agent_id = _optional_int(agent_id)
        self.bank_account_id = _optional_int(bank_account_id)
        self._http = httpx.Client(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout),
            headers={
                "Accept": "application/json",
                "Content-Type": "application/json",
                "Client-Key": api_key,
            },
            transport=transport,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self._api_key)

    def close(self) -> None:
        self._http.close()

    # --- HTTP ---

    def _request(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        if not self.is_configured:
            raise ProviderError("not_configured", "Settlement provider API key not configured")

        logger.info(f"Settlement provider {method} {path}")
        try:
            response = self._http.request(method, path, json=json, params=params)
        except httpx.TimeoutException as e:
            raise ProviderError("timeout", f"{method} {path} timed out", ambiguous=True) from e
        except httpx.ConnectError as e:
            # The request never reached the provider
            raise ProviderError("connect_error", str(e) or "Connection failed") from e
        except httpx.TransportError as e:
            raise ProviderError("transport_error", str(e) or type(e).__name__, ambiguous=True) from e

        if response.is_error:
            raise self._error_from_response(response)
        if response.status_code == 204 or not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise ProviderError(
                "invalid_response", "Provider returned a non-JSON body", response.status_code, ambiguous=True
            ) from e

    @staticmethod
    def _error_from_response(response: httpx.Response) -> ProviderError:
        code = f"http_{response.status_code}"
        detail = response.reason_phrase or "Provider request failed"
        try:
            error = (response.json() or {}).get("error") or {}
            if error.get("code") is not None:
                code = str(error["code"])
            detail = error.get("detail") or error.get("title") or detail
            fields = error.get("fields")
            if fields:
                logger.warning(f"Settlement provider field errors: {fields}")
        except ValueError:
            pass
        logger.error(f"Settlement provider error {response.status_code}: {detail}")
        return ProviderError(code, detail, response.status_code, ambiguous=response.status_code >= 500)

    def _payer_fields(self) -> Dict[str, Any]:
        fields: Dict[str, Any] = {}
        if self.agent_id is not None:
            fields["agent_id"] = self.agent_id
        if self.bank_account_id is not None:
            fields["bank_account_id"] = self.bank_account_id
        return fields

    # --- Contractors ---

    def create_contractor(self, phone: str, name: PayeeName, legal_form: LegalForm, tax_id: Optional[str]) -> str:
        """Create a payee. Returns the provider's contractor id."""
        body = {
            "phone": phone,
            "first_name": name.first_name,
            "last_name": name.last_name,
            "middle_name": name.middle_name,
            "legal_form_id": int(legal_form),
            "tin": tax_id,
        }
        data = self._request("POST", "/contractors", json=body)
        return str(data["item"]["id"])

    # --- Requisites ---

    def list_requisites(self, contractor_id: str) -> List[ProviderRequisite]:
        data = self._request("GET", f"/contractors/{contractor_id}/requisites")
        return [ProviderRequisite.from_json(item) for item in data.get("items", [])]

    def add_requisite(
        self,
        contractor_id: str,
        requisite_type: RequisiteType,
        account_number: Optional[str] = None,
        bank_bik: Optional[str] = None,
    ) -> ProviderRequisite:
        body: Dict[str, Any] = {"type_id": int(requisite_type)}
        if account_number:
            body["account_number"] = account_number
        if bank_bik:
            body["bik"] = bank_bik
        data = self._request("POST", f"/contractors/{contractor_id}/requisites", json=body)
        return ProviderRequisite.from_json(data["item"])

    # --- Payments ---

    def create_payment(
        self,
        contractor_id: str,
        requisite_id: str,
        amount: int,
        customer_payment_id: str,
        service_name: str,
        payment_purpose: str,
    ) -> ProviderPayment:
        """Pay an existing payee. amount is in kopecks; the provider takes rubles."""
        body = {
            "contractor_id": _optional_int(contractor_id) or contractor_id,
            "requisite_id": _optional_int(requisite_id) or requisite_id,
            "amount": float(minor_to_major(amount)),
            "service_name": service_name,
            "payment_purpose": payment_purpose,
            "customer_payment_id": customer_payment_id,
            **self._payer_fields(),
        }
        data = self._request("POST", "/payments", json=body)
        return ProviderPayment.from_json(data["item"])

    def create_smart_payment(
        self,
        phone: str,
        name: PayeeName,
        legal_form: LegalForm,
        tax_id: str,
        requisite_type: RequisiteType,
        amount: int,
        customer_payment_id: str,
        service_name: str,
        payment_purpose: str,
        account_number: Optional[str] = None,
        bank_bik: Optional[str] = None,
    ) -> ProviderPayment:
        """Create the payee and the payment in one call (payee not yet known to the provider)."""
        requisite: Dict[str, Any] = {"type_id": int(requisite_type)}
        if account_number:
            requisite["account_number"] = account_number
        if bank_bik:
            requisite["bik"] = bank_bik
        body: Dict[str, Any] = {
            "phone": phone,
            "first_name": name.first_name,
            "last_name": name.last_name,
            "middle_name": name.middle_name,
            "legal_form_id": int(legal_form),
            "tin": tax_id,
            "amount": float(minor_to_major(amount)),
            "requisite": requisite,
            "service_name": service_name,
            "payment_purpose": payment_purpose,
            "customer_payment_id": customer_payment_id,
            **self._payer_fields(),
        }
        if requisite_type == RequisiteType.SBP:
            body["sbp_validation_data"] = {
                "first_name": name.first_name,
                "middle_name": name.middle_name,
                "last_name": name.last_name,
            }
        data = self._request("POST", "/payments/smart", json=body)
        return ProviderPayment.from_json(data["item"])

    def get_payment(self, provider_payment_id: str) -> ProviderPayment:
        data = self._request("GET", f"/payments/{provider_payment_id}")
        return ProviderPayment.from_json(data["item"])

    def get_payment_by_customer_id(self, customer_payment_id: str) -> Optional[ProviderPayment]:
        """Look a payment up by our idempotency key. None when the provider never received it."""
        try:
            data = self._request("GET", f"/payments/customer-payment/{customer_payment_id}")
        except ProviderError as e:
            if e.status_code == 404:
                return None
            raise
        return ProviderPayment.from_json(data["item"])
