"""
Integration tests for the settlement HTTP API.

Routes run against the real services and an in-memory database; the payout
gateway talks to the in-process FakeProvider.
"""

import json
from decimal import Decimal
from typing import Generator

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from api.dependencies import get_payout_gateway, get_report_matcher, get_report_producer
from core.database import get_db
from main import app
from models import ClinicReportStatus, PaymentStatus, ReferralStatus
from services.payout_gateway import PayoutGateway
from services.report_ingestion_service import ReportCandidate
from services.report_matcher import MatchPolicy, ReportMatcher
from tests.conftest import provider_payment_json
from tests.factories import create_agent, create_clinic, create_payment, create_referral, create_report
from utils.datetime_utils import moscow_now


class ListProducer:
    def __init__(self, candidates):
        self.candidates = candidates

    def fetch(self, limit):
        return self.candidates[:limit]


@pytest.fixture
def producer() -> ListProducer:
    return ListProducer([])


@pytest.fixture
def client(db_session, fake_provider, notifier, producer) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        # The session belongs to the test fixture
        yield db_session

    gateway = PayoutGateway(fake_provider.client(), notifier)
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payout_gateway] = lambda: gateway
    app.dependency_overrides[get_report_producer] = lambda: producer
    app.dependency_overrides[get_report_matcher] = lambda: ReportMatcher(MatchPolicy(85, 60))
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides = {}


class TestReferralEndpoints:

    def test_create_and_nudge(self, client, db_session):
        agent = create_agent(db_session)
        clinic = create_clinic(db_session)

        response = client.post("/api/referrals", json={
            "agent_id": agent.id,
            "patient_full_name": "Петров Сергей",
            "clinic_id": clinic.id,
            "patient_phone": "8 (916) 123-45-67",
        })

        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "new"
        assert data["patient_phone"] == "+79161234567"
        assert data["clinic_name"] == clinic.name

        response = client.post(f"/api/referrals/{data['id']}/status", json={
            "status": "contacted", "actor": "admin@ops", "note": "Позвонили",
        })

        assert response.status_code == 200
        assert response.json()["status"] == "contacted"

        detail = client.get(f"/api/referrals/{data['id']}").json()
        assert [h["to_status"] for h in detail["history"]] == ["new", "contacted"]
        assert detail["history"][1]["actor"] == "admin@ops"

    def test_visited_cannot_be_set_manually(self, client, db_session):
        agent = create_agent(db_session)
        referral = create_referral(db_session, agent, status=ReferralStatus.BOOKED)

        response = client.post(f"/api/referrals/{referral.id}/status", json={
            "status": "visited", "actor": "admin",
        })

        assert response.status_code == 409
        assert response.json()["type"] == "precondition_failed"

    def test_unknown_agent_is_404(self, client):
        response = client.post("/api/referrals", json={"agent_id": 404, "patient_full_name": "Петров"})

        assert response.status_code == 404
        assert response.json()["type"] == "not_found"

    def test_bad_phone_is_400_with_field(self, client, db_session):
        agent = create_agent(db_session)

        response = client.post("/api/referrals", json={
            "agent_id": agent.id, "patient_full_name": "Петров", "patient_phone": "123",
        })

        assert response.status_code == 400
        body = response.json()
        assert body["type"] == "validation_error"
        assert body["field"] == "patient_phone"

    def test_list_filters_by_status(self, client, db_session):
        agent = create_agent(db_session)
        create_referral(db_session, agent)
        create_referral(db_session, agent, status=ReferralStatus.CANCELLED)

        response = client.get("/api/referrals", params={"status": "cancelled"})

        assert response.status_code == 200
        assert [r["status"] for r in response.json()] == ["cancelled"]


class TestClinicReportEndpoints:

    def test_approve_settles_and_creates_payment(self, client, db_session):
        agent = create_agent(db_session)
        referral = create_referral(db_session, agent, status=ReferralStatus.BOOKED)
        report = create_report(db_session, linked_referral=referral, status=ClinicReportStatus.AUTO_MATCHED)

        response = client.post(f"/api/clinic-reports/{report.id}/approve", json={"reviewer": "admin@ops"})

        assert response.status_code == 200
        data = response.json()
        assert data["referral_id"] == referral.id
        assert data["commission_amount"] == 7_000
        assert Decimal(data["commission_rate"]) == Decimal("0.07")
        assert data["payment_id"] is not None

        referral_data = client.get(f"/api/referrals/{referral.id}").json()
        assert referral_data["status"] == "paid"
        assert referral_data["linked_report_id"] == report.id

        report_data = client.get(f"/api/clinic-reports/{report.id}").json()
        assert report_data["status"] == "approved"
        assert report_data["reviewed_by"] == "admin@ops"

    def test_second_approval_for_referral_is_409(self, client, db_session):
        agent = create_agent(db_session)
        referral = create_referral(db_session, agent, status=ReferralStatus.BOOKED)
        first = create_report(db_session, linked_referral=referral)
        second = create_report(db_session, source_id="msg-2", linked_referral=referral)
        client.post(f"/api/clinic-reports/{first.id}/approve", json={"reviewer": "admin"})

        response = client.post(f"/api/clinic-reports/{second.id}/approve", json={"reviewer": "admin"})

        assert response.status_code == 409
        assert response.json()["type"] == "precondition_failed"

    def test_approve_without_referral_is_400(self, client, db_session):
        report = create_report(db_session)

        response = client.post(f"/api/clinic-reports/{report.id}/approve", json={"reviewer": "admin"})

        assert response.status_code == 400
        assert response.json()["field"] == "referral_id"

    def test_reject_edit_and_relink(self, client, db_session):
        agent = create_agent(db_session)
        referral = create_referral(db_session, agent)
        report = create_report(db_session, patient_name=None)

        response = client.patch(f"/api/clinic-reports/{report.id}", json={
            "editor": "admin", "patient_name": "Петров Сергей", "treatment_amount": 250_000,
        })
        assert response.status_code == 200
        assert response.json()["patient_name"] == "Петров Сергей"
        assert response.json()["treatment_amount"] == 250_000

        response = client.post(f"/api/clinic-reports/{report.id}/relink", json={
            "editor": "admin", "referral_id": referral.id,
        })
        assert response.status_code == 200
        assert response.json()["linked_referral_id"] == referral.id

        response = client.post(f"/api/clinic-reports/{report.id}/reject", json={
            "reviewer": "admin", "reason": "Не наш пациент",
        })
        assert response.status_code == 200
        assert response.json()["status"] == "rejected"
        assert response.json()["rejection_reason"] == "Не наш пациент"

    def test_list_and_stats(self, client, db_session):
        create_report(db_session)
        create_report(db_session, source_id="msg-2", status=ClinicReportStatus.REJECTED)

        listed = client.get("/api/clinic-reports", params={"status": "pending_review"}).json()
        stats = client.get("/api/clinic-reports/stats").json()

        assert [r["source_id"] for r in listed] == ["msg-1"]
        assert stats["pending_review"] == 1
        assert stats["rejected"] == 1
        assert stats["total"] == 2

    def test_missing_report_is_404(self, client):
        assert client.get("/api/clinic-reports/999").status_code == 404

    def test_run_ingestion_now(self, client, producer):
        producer.candidates = [
            ReportCandidate(source_id=f"m{i}", sender="reports@zdorovie.ru", received_at=moscow_now(),
                            patient_name="Петров Сергей")
            for i in range(2)
        ]

        response = client.post("/api/clinic-reports/ingestion-runs")

        assert response.status_code == 200
        data = response.json()
        assert (data["processed"], data["created"], data["errors"]) == (2, 2, 0)
        assert len(data["report_ids"]) == 2


class TestPaymentEndpoints:

    def test_submit_and_sync(self, client, db_session, fake_provider):
        agent = create_agent(db_session)
        payment = create_payment(db_session, agent)

        def smart(request: httpx.Request) -> httpx.Response:
            sent = json.loads(request.content)
            return httpx.Response(200, json=provider_payment_json(customer_payment_id=sent["customer_payment_id"]))

        fake_provider.on("POST", "/payments/smart", smart)
        fake_provider.on("GET", "/payments/9001", httpx.Response(200, json=provider_payment_json(
            status_id=1, title="Оплачен",
        )))

        submitted = client.post(f"/api/payments/{payment.id}/submit").json()
        assert submitted["success"] is True
        assert submitted["provider_payment_id"] == "9001"

        again = client.post(f"/api/payments/{payment.id}/submit").json()
        assert again["success"] is False
        assert again["error_code"] == "already_submitted"
        assert len(fake_provider.calls("POST", "/payments/smart")) == 1

        synced = client.post(f"/api/payments/{payment.id}/sync").json()
        assert synced["status"] == "paid"
        assert client.get(f"/api/payments/{payment.id}").json()["status"] == "paid"

    def test_submit_failure_is_structured(self, client, db_session, fake_provider):
        agent = create_agent(db_session, tax_id=None)
        payment = create_payment(db_session, agent)

        response = client.post(f"/api/payments/{payment.id}/submit")

        assert response.status_code == 200
        assert response.json()["error_code"] == "precondition"
        assert fake_provider.requests == []

    def test_list_by_status(self, client, db_session):
        agent = create_agent(db_session)
        create_payment(db_session, agent)
        create_payment(db_session, agent, status=PaymentStatus.PAID)

        response = client.get("/api/payments", params={"agent_id": agent.id, "status": "pending"})

        assert [p["status"] for p in response.json()] == ["pending"]

    def test_from_referral_for_unsettled_referral_is_409(self, client, db_session):
        agent = create_agent(db_session)
        referral = create_referral(db_session, agent)

        response = client.post(f"/api/payments/from-referral/{referral.id}")

        assert response.status_code == 409

    def test_sync_all_with_nothing_processing(self, client):
        response = client.post("/api/payments/sync")

        assert response.status_code == 200
        assert response.json()["checked"] == 0


class TestCommissionTierEndpoints:

    def test_global_schedule_round_trip(self, client):
        response = client.put("/api/commission-tiers/global", json={"tiers": [
            {"min_monthly_revenue": 1_000_000, "commission_rate": "0.10"},
            {"min_monthly_revenue": 0, "commission_rate": "0.07"},
        ]})

        assert response.status_code == 200
        tiers = client.get("/api/commission-tiers/global").json()["tiers"]
        assert [t["min_monthly_revenue"] for t in tiers] == [0, 1_000_000]
        assert [Decimal(t["commission_rate"]) for t in tiers] == [Decimal("0.07"), Decimal("0.10")]

    def test_decreasing_schedule_is_400(self, client):
        response = client.put("/api/commission-tiers/global", json={"tiers": [
            {"min_monthly_revenue": 0, "commission_rate": "0.10"},
            {"min_monthly_revenue": 1_000_000, "commission_rate": "0.05"},
        ]})

        assert response.status_code == 400
        assert response.json()["field"] == "commission_rate"

    def test_agent_override_set_and_cleared(self, client, db_session):
        agent = create_agent(db_session)

        client.put(f"/api/commission-tiers/agents/{agent.id}", json={"tiers": [
            {"min_monthly_revenue": 0, "commission_rate": "0.15"},
        ]})
        assert len(client.get(f"/api/commission-tiers/agents/{agent.id}").json()["tiers"]) == 1

        client.put(f"/api/commission-tiers/agents/{agent.id}", json={"tiers": []})
        assert client.get(f"/api/commission-tiers/agents/{agent.id}").json()["tiers"] == []

    def test_unknown_agent_is_404(self, client):
        response = client.put("/api/commission-tiers/agents/999", json={"tiers": []})

        assert response.status_code == 404
