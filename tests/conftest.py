"""Shared fixtures for RT MCP tests."""

from unittest.mock import Mock, patch

import pytest

from mcp_rt.client import RTClient, RTResult


@pytest.fixture
def rt_client():
    """Mock RT client whose calls succeed with an empty object unless configured."""
    client = Mock(spec=RTClient)
    client.url = "https://rt.example.com/REST/2.0"
    client.session = Mock()
    client.request.return_value = RTResult(data={})
    client.request_bytes.return_value = RTResult(data=b"")
    client.get_system_info.return_value = RTResult(data={"Version": "5.0.5"})
    return client


@pytest.fixture
def mock_rt_client_class(rt_client):
    """Patch the RTClient constructor used by the server lifespan."""
    with patch("mcp_rt.server.RTClient") as mock_client_class:
        mock_client_class.return_value = rt_client
        yield mock_client_class


@pytest.fixture
def sample_ticket_data():
    """Provides a ticket as returned by GET /ticket/{id}."""
    return {
        "id": 42,
        "Type": "ticket",
        "Subject": "Login fails after password reset",
        "Status": "open",
        "Priority": "10",
        "InitialPriority": "0",
        "FinalPriority": "50",
        "Queue": {"type": "queue", "id": "1", "_url": "https://rt.example.com/REST/2.0/queue/1"},
        "Owner": {"type": "user", "id": "alice", "_url": "https://rt.example.com/REST/2.0/user/alice"},
        "Creator": {"type": "user", "id": "bob"},
        "Requestor": [{"type": "user", "id": "customer@example.com"}],
        "Cc": [],
        "AdminCc": [],
        "Created": "2024-01-15T10:30:00Z",
        "Starts": "1970-01-01T00:00:00Z",
        "Started": "2024-01-15T11:00:00Z",
        "Due": "1970-01-01T00:00:00Z",
        "Resolved": "1970-01-01T00:00:00Z",
        "Told": "2024-01-15T11:05:00Z",
        "LastUpdated": "2024-01-16T09:00:00Z",
        "TimeEstimated": "0",
        "TimeWorked": "30",
        "TimeLeft": "0",
        "CustomFields": [
            {"id": "3", "name": "Severity", "values": ["High"]},
            {"id": "4", "name": "Component", "values": []},
        ],
    }
