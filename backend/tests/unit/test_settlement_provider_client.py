"""
Unit tests for the settlement provider HTTP client.

The provider is simulated with httpx.MockTransport; tests check the request
bodies we send and how provider failures map onto ProviderError.
"""

import json

import httpx
import pytest

from core.exceptions import ProviderError
from services.settlement_provider_client import (
    LegalForm,
    PayeeName,
    ProviderPayment,
    RequisiteType,
    SettlementProviderClient,
    parse_payee_name,
)
from tests.conftest import provider_payment_json

NAME = PayeeName(last_name="Иванов", first_name="Иван", middle_name="Иванович")


def body(request: httpx.Request) -> dict:
    return json.loads(request.content)


class TestParsePayeeName:

    def test_three_parts(self):
        assert parse_payee_name("Иванов Иван Иванович") == NAME

    def test_two_parts(self):
        assert parse_payee_name("Иванов Иван") == PayeeName("Иванов", "Иван")

    def test_single_word(self):
        assert parse_payee_name(" Мадонна ") == PayeeName("Мадонна", "Мадонна")

    def test_compound_middle_name(self):
        assert parse_payee_name("Алиев Рашид Ахмед оглы").middle_name == "Ахмед оглы"


class TestRequests:

    def test_headers_carry_client_key(self, fake_provider):
        fake_provider.on("GET", "/payments/9001", lambda r: httpx.Response(200, json=provider_payment_json()))

        fake_provider.client(api_key="secret").get_payment("9001")

        request = fake_provider.requests[0]
        assert request.headers["Client-Key"] == "secret"
        assert request.url.path == "/api/payments/9001"

    def test_smart_payment_body(self, fake_provider):
        fake_provider.on("POST", "/payments/smart", lambda r: httpx.Response(
            200, json=provider_payment_json(customer_payment_id="RP-1-1")
        ))

        payment = fake_provider.client().create_smart_payment(
            phone="+79161234567",
            name=NAME,
            legal_form=LegalForm.SELF_EMPLOYED,
            tax_id="500100732259",
            requisite_type=RequisiteType.CARD,
            amount=700_050,
            customer_payment_id="RP-1-1",
            service_name="Вознаграждение",
            payment_purpose="Выплата",
            account_number="4111111111111111",
        )

        sent = body(fake_provider.calls("POST", "/payments/smart")[0])
        assert sent["amount"] == 7000.5
        assert sent["legal_form_id"] == 2
        assert sent["tin"] == "500100732259"
        assert sent["customer_payment_id"] == "RP-1-1"
        assert sent["requisite"] == {"type_id": 8, "account_number": "4111111111111111"}
        assert "sbp_validation_data" not in sent
        assert payment == ProviderPayment(
            id="9001", status_id=3, status_title="В обработке", is_final=False,
            customer_payment_id="RP-1-1", contractor_id="555",
        )

    def test_sbp_smart_payment_sends_name_validation(self, fake_provider):
        fake_provider.on("POST", "/payments/smart", lambda r: httpx.Response(200, json=provider_payment_json()))

        fake_provider.client().create_smart_payment(
            phone="+79161234567", name=NAME, legal_form=LegalForm.INDIVIDUAL, tax_id="500100732259",
            requisite_type=RequisiteType.SBP, amount=100, customer_payment_id="RP-1-1",
            service_name="s", payment_purpose="p",
        )

        sent = body(fake_provider.requests[0])
        assert sent["requisite"] == {"type_id": 9}
        assert sent["sbp_validation_data"]["last_name"] == "Иванов"

    def test_payment_for_known_payee(self, fake_provider):
        fake_provider.on("POST", "/payments", lambda r: httpx.Response(200, json=provider_payment_json()))
        client = SettlementProviderClient(
            api_key="k", base_url="https://provider.test/api", agent_id="17", bank_account_id="",
            transport=httpx.MockTransport(fake_provider.handle),
        )

        client.create_payment("555", "77", 7_000, "RP-1-1", "s", "p")

        sent = body(fake_provider.requests[0])
        assert sent["contractor_id"] == 555
        assert sent["requisite_id"] == 77
        assert sent["amount"] == 70.0
        assert sent["agent_id"] == 17
        assert "bank_account_id" not in sent

    def test_requisites(self, fake_provider):
        fake_provider.on("GET", "/contractors/555/requisites", lambda r: httpx.Response(200, json={"items": [
            {"id": 1, "type_id": 9, "is_default": True},
            {"id": 2, "type_id": 8, "masked_account": "411111******1111"},
        ]}))
        fake_provider.on("POST", "/contractors/555/requisites", lambda r: httpx.Response(
            200, json={"item": {"id": 3, "type_id": 10}}
        ))
        client = fake_provider.client()

        requisites = client.list_requisites("555")
        added = client.add_requisite("555", RequisiteType.BANK_ACCOUNT, "40817810099910004312", "044525225")

        assert [(r.id, r.type_id, r.is_default) for r in requisites] == [("1", 9, True), ("2", 8, False)]
        assert added.id == "3"
        assert body(fake_provider.calls("POST", "/contractors/555/requisites")[0]) == {
            "type_id": 10, "account_number": "40817810099910004312", "bik": "044525225",
        }

    def test_create_contractor(self, fake_provider):
        fake_provider.on("POST", "/contractors", lambda r: httpx.Response(200, json={"item": {"id": 555}}))

        assert fake_provider.client().create_contractor("+79161234567", NAME, LegalForm.INDIVIDUAL, None) == "555"


class TestErrors:

    def test_not_configured_makes_no_request(self, fake_provider):
        client = fake_provider.client(api_key="")

        with pytest.raises(ProviderError) as exc_info:
            client.get_payment("9001")

        assert exc_info.value.code == "not_configured"
        assert not client.is_configured
        assert fake_provider.requests == []

    def test_provider_error_code_preserved(self, fake_provider):
        fake_provider.on("POST", "/payments/smart", lambda r: httpx.Response(422, json={
            "error": {"code": "invalid_requisite", "detail": "Card is blocked", "fields": {"account_number": "bad"}}
        }))

        with pytest.raises(ProviderError) as exc_info:
            fake_provider.client().create_smart_payment(
                phone="+79161234567", name=NAME, legal_form=LegalForm.INDIVIDUAL, tax_id="500100732259",
                requisite_type=RequisiteType.CARD, amount=100, customer_payment_id="RP-1-1",
                service_name="s", payment_purpose="p",
            )

        error = exc_info.value
        assert error.code == "invalid_requisite"
        assert error.detail == "Card is blocked"
        assert error.status_code == 422
        assert not error.ambiguous

    def test_server_error_is_ambiguous(self, fake_provider):
        fake_provider.on("GET", "/payments/9001", lambda r: httpx.Response(503, text="unavailable"))

        with pytest.raises(ProviderError) as exc_info:
            fake_provider.client().get_payment("9001")

        assert exc_info.value.code == "http_503"
        assert exc_info.value.ambiguous

    def test_timeout_is_ambiguous(self, fake_provider):
        fake_provider.on("GET", "/payments/9001", lambda r: httpx.ReadTimeout("timed out", request=r))

        with pytest.raises(ProviderError) as exc_info:
            fake_provider.client().get_payment("9001")

        assert exc_info.value.code == "timeout"
        assert exc_info.value.ambiguous
        assert exc_info.value.status_code is None

    def test_connect_error_is_not_ambiguous(self, fake_provider):
        fake_provider.on("GET", "/payments/9001", lambda r: httpx.ConnectError("refused", request=r))

        with pytest.raises(ProviderError) as exc_info:
            fake_provider.client().get_payment("9001")

        assert exc_info.value.code == "connect_error"
        assert not exc_info.value.ambiguous

    def test_non_json_body_is_ambiguous(self, fake_provider):
        fake_provider.on("GET", "/payments/9001", lambda r: httpx.Response(200, text="<html>"))

        with pytest.raises(ProviderError) as exc_info:
            fake_provider.client().get_payment("9001")

        assert exc_info.value.code == "invalid_response"
        assert exc_info.value.ambiguous


class TestLookupByCustomerId:

    def test_found(self, fake_provider):
        fake_provider.on("GET", "/payments/customer-payment/RP-1-1", lambda r: httpx.Response(
            200, json=provider_payment_json(customer_payment_id="RP-1-1")
        ))

        payment = fake_provider.client().get_payment_by_customer_id("RP-1-1")

        assert payment is not None
        assert payment.id == "9001"

    def test_unknown_key_returns_none(self, fake_provider):
        assert fake_provider.client().get_payment_by_customer_id("RP-1-1") is None

    def test_other_errors_propagate(self, fake_provider):
        fake_provider.on("GET", "/payments/customer-payment/RP-1-1", lambda r: httpx.Response(500))

        with pytest.raises(ProviderError):
            fake_provider.client().get_payment_by_customer_id("RP-1-1")
