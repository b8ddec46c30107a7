"""
Unit tests for main FastAPI application.

Tests the root endpoints, global exception handlers and the lifespan.
"""

import pytest
from unittest.mock import Mock, patch
from fastapi.testclient import TestClient
from fastapi import Request
import httpx

from core.exceptions import InvalidTransition, NotFoundError, ProviderError, ValidationError
from main import (
    app,
    root,
    health_check,
    global_exception_handler,
    validation_error_handler,
    not_found_error_handler,
    precondition_error_handler,
    provider_error_handler,
    value_error_handler,
    http_error_handler,
    lifespan,
)


class TestRootEndpoints:
    """Test root API endpoints."""

    def test_root_endpoint(self):
        """Test the root endpoint returns correct information."""
        client = TestClient(app)
        response = client.get("/")

        assert response.status_code == 200
        data = response.json()
        assert data["message"] == "Referral Settlement Backend API"
        assert data["version"] == "1.0.0"
        assert data["status"] == "running"

    def test_health_endpoint(self):
        """Test the health check endpoint."""
        client = TestClient(app)
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}

    @pytest.mark.asyncio
    async def test_health_check_function_directly(self):
        """Test the health_check function directly."""
        assert await health_check() == {"status": "healthy"}
        assert (await root())["status"] == "running"


class TestExceptionHandlers:
    """Test global exception handlers."""

    @pytest.mark.asyncio
    async def test_global_exception_handler(self):
        """Test handling of unhandled exceptions."""
        mock_request = Mock(spec=Request)

        with patch('main.logger') as mock_logger:
            response = await global_exception_handler(mock_request, RuntimeError("Test error"))

            assert response.status_code == 500
            assert b"internal_error" in response.body
            mock_logger.exception.assert_called_once()
            assert "Unhandled exception: Test error" in mock_logger.exception.call_args[0][0]

    @pytest.mark.asyncio
    async def test_validation_error_handler_reports_field(self):
        response = await validation_error_handler(
            Mock(spec=Request), ValidationError("Amount must be positive", field="treatment_amount")
        )

        assert response.status_code == 400
        assert b"treatment_amount" in response.body
        assert b"validation_error" in response.body

    @pytest.mark.asyncio
    async def test_not_found_handler(self):
        response = await not_found_error_handler(Mock(spec=Request), NotFoundError("Referral 5 not found"))

        assert response.status_code == 404
        assert b"Referral 5 not found" in response.body

    @pytest.mark.asyncio
    async def test_precondition_handler(self):
        response = await precondition_error_handler(Mock(spec=Request), InvalidTransition("paid", "new"))

        assert response.status_code == 409
        assert b"precondition_failed" in response.body

    @pytest.mark.asyncio
    async def test_provider_error_handler_keeps_code(self):
        response = await provider_error_handler(
            Mock(spec=Request), ProviderError("invalid_requisite", "Card is blocked", 422)
        )

        assert response.status_code == 502
        assert b"invalid_requisite" in response.body
        assert b"Card is blocked" in response.body

    @pytest.mark.asyncio
    async def test_value_error_handler(self):
        """Test handling of ValueError exceptions."""
        with patch('main.logger') as mock_logger:
            response = await value_error_handler(Mock(spec=Request), ValueError("Invalid value"))

            assert response.status_code == 400
            assert b"Invalid value" in response.body
            mock_logger.warning.assert_called_once_with("ValueError: Invalid value")

    @pytest.mark.asyncio
    async def test_http_error_handler(self):
        """Test handling of errors from external services."""
        with patch('main.logger'):
            response = await http_error_handler(Mock(spec=Request), httpx.ConnectError("down"))

        assert response.status_code == 502
        assert b"external_service_error" in response.body


class TestApplicationSetup:
    """Test FastAPI application setup and configuration."""

    def test_app_creation(self):
        assert app.title == "Referral Settlement Backend"
        assert app.version == "1.0.0"
        assert app.docs_url == "/docs"

    def test_router_inclusion(self):
        """Test that API routers are properly included."""
        paths = {route.path for route in app.routes if hasattr(route, 'path')}

        assert any(p.startswith("/api/clinic-reports") for p in paths)
        assert any(p.startswith("/api/payments") for p in paths)
        assert any(p.startswith("/api/referrals") for p in paths)
        assert any(p.startswith("/api/commission-tiers") for p in paths)


class TestLifespan:
    """Test application lifespan management."""

    @pytest.mark.asyncio
    async def test_lifespan_builds_collaborators(self):
        """Test the lifespan context manager."""
        with patch('main.logger') as mock_logger, \
             patch('main.ENABLE_SCHEDULER', False), \
             patch('main.start_settlement_scheduler') as mock_start, \
             patch('main.stop_settlement_scheduler') as mock_stop:
            async with lifespan(app):
                assert app.state.payout_gateway is not None
                assert app.state.report_producer is not None
                assert app.state.report_matcher is not None

            mock_start.assert_not_called()
            mock_stop.assert_called_once()

            startup_calls = [call.args[0] for call in mock_logger.info.call_args_list]
            assert "🚀 Starting Referral Settlement Backend API" in startup_calls
            assert "🛑 Shutting down Referral Settlement Backend API" in startup_calls
