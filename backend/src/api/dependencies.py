"""
FastAPI dependencies for collaborators built in the application lifespan.

The provider client, notification sink and report producer live on
app.state; tests replace them through app.dependency_overrides.
"""

from fastapi import Request

from services.payout_gateway import PayoutGateway
from services.report_ingestion_service import ReportProducer
from services.report_matcher import ReportMatcher


def get_payout_gateway(request: Request) -> PayoutGateway:
    return request.app.state.payout_gateway


def get_report_producer(request: Request) -> ReportProducer:
    return request.app.state.report_producer


def get_report_matcher(request: Request) -> ReportMatcher:
    return request.app.state.report_matcher
