"""
Health Check Tests
==================

Tests for the health check endpoints and transaction enrichment.
"""

from unittest.mock import patch

import pytest
from httpx import AsyncClient

from app.main import NewRelicTransactionMiddleware


@pytest.mark.asyncio
async def test_health_check(client: AsyncClient):
    """Test the health check endpoint."""
    response = await client.get("/health")

    assert response.status_code == 200
    data = response.json()

    assert data["status"] == "healthy"
    assert "version" in data
    assert "environment" in data


@pytest.mark.asyncio
async def test_root_endpoint(client: AsyncClient):
    """Test the root endpoint."""
    response = await client.get("/")

    assert response.status_code == 200
    data = response.json()

    assert data["name"] == "Subscription Sync API"
    assert "version" in data


def test_transaction_attributes_from_request_state():
    """Handler state on the ASGI scope is copied onto the transaction."""
    middleware = NewRelicTransactionMiddleware(app=None)
    scope = {
        "type": "http",
        "method": "POST",
        "path": "/api/v1/webhooks/stripe",
        "state": {"user_id": "u-1", "webhook_event_type": "invoice.paid"},
    }

    with patch("app.main.newrelic.agent.add_custom_attributes") as add:
        middleware._annotate(scope, 200, 12.3456)

    attributes = dict(add.call_args.args[0])
    assert attributes["http.route"] == "/api/v1/webhooks/stripe"
    assert attributes["http.status_code"] == 200
    assert attributes["http.duration_ms"] == 12.35
    assert attributes["enduser.id"] == "u-1"
    assert attributes["webhook.event_type"] == "invoice.paid"
    assert "webhook.event_id" not in attributes
