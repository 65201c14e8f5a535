"""Tests for the RT MCP server tool registry."""

import json
import logging
import os
import pathlib
from unittest.mock import AsyncMock, patch

import pytest
from mcp.server.fastmcp.exceptions import ToolError

from mcp_rt.client import RTConfigError, RTResult
from mcp_rt.server import SERVER_NAME, RTMCPServer, _configure_logging, main, mcp

EXPECTED_TOOLS = [
    "search_tickets",
    "get_ticket",
    "get_ticket_history",
    "create_ticket",
    "update_ticket",
    "add_comment",
    "get_queues",
    "get_users",
    "get_ticket_links",
    "get_ticket_attachments",
    "get_attachment_details",
    "download_attachment",
]

# ==================== FIXTURES ====================


@pytest.fixture
def server_instance(rt_client):
    """Server with a mock client already attached."""
    server_inst = RTMCPServer()
    server_inst.client = rt_client
    return server_inst


def _tool_fn(server_inst, name):
    tool = server_inst.mcp._tool_manager.get_tool(name)
    assert tool is not None, f"Tool {name} is not registered"
    return tool.fn


# ==================== REGISTRATION ====================


@pytest.mark.asyncio
async def test_all_tools_registered():
    """Every RT tool is exposed under its protocol name."""
    tools = await mcp.list_tools()

    assert sorted(tool.name for tool in tools) == sorted(EXPECTED_TOOLS)


def test_server_name_follows_mcp_convention():
    """Server name follows the {service}_mcp convention."""
    assert RTMCPServer().mcp.name == SERVER_NAME == "rt_mcp"


@pytest.mark.asyncio
async def test_all_tools_have_title_annotation():
    """All tools carry a human-readable title."""
    tools = await RTMCPServer().mcp.list_tools()

    for tool in tools:
        assert tool.annotations is not None
        assert tool.annotations.title, f"Tool '{tool.name}' is missing a title"
        assert " " in tool.annotations.title


@pytest.mark.asyncio
async def test_read_only_hints():
    """Only create, update and comment tools are marked as writes."""
    tools = {tool.name: tool for tool in await RTMCPServer().mcp.list_tools()}

    writes = {"create_ticket", "update_ticket", "add_comment"}
    for name, tool in tools.items():
        assert tool.annotations.readOnlyHint is (name not in writes), name


def test_search_schema_constraints():
    """The search schema declares query length, limit range and default."""
    params = RTMCPServer().mcp._tool_manager.get_tool("search_tickets").parameters
    props = params["properties"]

    assert props["query"]["minLength"] == 5
    assert props["limit"]["minimum"] == 1
    assert props["limit"]["maximum"] == 100
    assert props["limit"]["default"] == 20
    assert params["required"] == ["query"]


def test_write_schema_constraints():
    """Create/update/comment schemas declare their constraints."""
    manager = RTMCPServer().mcp._tool_manager

    create = manager.get_tool("create_ticket").parameters
    assert create["properties"]["subject"]["minLength"] == 1
    assert sorted(create["required"]) == ["queue", "subject"]

    update = manager.get_tool("update_ticket").parameters
    assert update["properties"]["ticket_id"]["exclusiveMinimum"] == 0
    assert update["required"] == ["ticket_id"]

    comment = manager.get_tool("add_comment").parameters
    assert comment["properties"]["content"]["minLength"] == 1
    assert comment["properties"]["type"]["default"] == "comment"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "name,arguments",
    [
        ("search_tickets", {"query": "abc"}),
        ("search_tickets", {"query": "login bug", "limit": 200}),
        ("get_ticket", {"ticket_id": 0}),
        ("create_ticket", {"subject": "", "queue": "General"}),
        ("update_ticket", {"ticket_id": 1, "priority": 101}),
        ("add_comment", {"ticket_id": 1, "content": "hi", "type": "shout"}),
        ("download_attachment", {"ticket_id": 1, "attachment_id": -3}),
    ],
)
async def test_invalid_arguments_rejected_before_tool_runs(server_instance, rt_client, name, arguments):
    """Schema violations fail the call without touching RT."""
    with pytest.raises(ToolError):
        await server_instance.mcp._tool_manager.call_tool(name, arguments)

    rt_client.request.assert_not_called()
    rt_client.request_bytes.assert_not_called()


# ==================== INVOCATION ====================


@pytest.mark.asyncio
async def test_search_tickets_tool_returns_pretty_json(server_instance, rt_client):
    """Tools answer with indented JSON text."""
    rt_client.request.return_value = RTResult(data={"total": 0, "count": 0, "items": []})

    text = await _tool_fn(server_instance, "search_tickets")(query="login bug", limit=200)

    assert text == json.dumps({"total": 0, "count": 0, "limit": 100, "tickets": []}, indent=2)


@pytest.mark.asyncio
async def test_validated_call_reaches_tool(server_instance, rt_client):
    """A valid call goes through validation and reaches RT."""
    rt_client.request.return_value = RTResult(data={"id": 42})

    await server_instance.mcp._tool_manager.call_tool("get_ticket_links", {"ticket_id": 42})

    rt_client.request.assert_called_once_with("/ticket/42/links")


@pytest.mark.asyncio
async def test_add_comment_tool_routes_correspondence(server_instance, rt_client):
    """The type argument selects the correspond endpoint."""
    rt_client.request.return_value = RTResult(data=["Correspondence added"])

    text = await _tool_fn(server_instance, "add_comment")(ticket_id=7, content="fixed", type="correspond")

    assert rt_client.request.call_args.args[0] == "/ticket/7/correspond"
    assert "Correspondence added successfully" in json.loads(text)["message"]


@pytest.mark.asyncio
async def test_tool_error_is_returned_as_data(server_instance, rt_client):
    """RT failures come back as an error object in the text block."""
    rt_client.request.return_value = RTResult(error="HTTP error! status 500 : boom")

    text = await _tool_fn(server_instance, "get_ticket")(ticket_id=5)

    assert json.loads(text) == {"error": "HTTP error! status 500 : boom", "ticket_id": 5}


@pytest.mark.asyncio
async def test_tool_without_client_returns_error():
    """Tools report a missing client instead of raising."""
    server_inst = RTMCPServer()

    text = await _tool_fn(server_inst, "get_queues")()

    assert json.loads(text) == {"error": "RT client not initialized"}


@pytest.mark.asyncio
async def test_ticket_resource(server_instance, rt_client, sample_ticket_data):
    """The ticket resource serves the ticket record."""
    rt_client.request.return_value = RTResult(data=sample_ticket_data)

    template = server_instance.mcp._resource_manager._templates["rt://ticket/{ticket_id}"]
    text = await template.fn(ticket_id="42")

    assert json.loads(text)["subject"] == "Login fails after password reset"
    rt_client.request.assert_called_once_with("/ticket/42")


@pytest.mark.asyncio
async def test_ticket_resource_invalid_id(server_instance, rt_client):
    """A non-numeric id is reported without calling RT."""
    template = server_instance.mcp._resource_manager._templates["rt://ticket/{ticket_id}"]
    text = await template.fn(ticket_id="abc")

    assert "error" in json.loads(text)
    rt_client.request.assert_not_called()


# ==================== LIFECYCLE ====================


def test_get_client_error():
    """get_client fails when the client is not initialized."""
    server_inst = RTMCPServer()

    with pytest.raises(RuntimeError, match="RT client not initialized"):
        server_inst.get_client()


def test_get_client_success(rt_client):
    """get_client returns the attached client."""
    server_inst = RTMCPServer()
    server_inst.client = rt_client

    assert server_inst.get_client() is rt_client


@pytest.mark.asyncio
async def test_initialize_creates_client(mock_rt_client_class, rt_client):
    """initialize builds the client and probes RT."""
    server_inst = RTMCPServer()

    await server_inst.initialize()

    assert server_inst.client is rt_client
    rt_client.get_system_info.assert_called_once_with()


@pytest.mark.asyncio
async def test_initialize_tolerates_failed_probe(mock_rt_client_class, rt_client):
    """A failed connectivity check is logged, not fatal."""
    rt_client.get_system_info.return_value = RTResult(error="Connection refused")
    server_inst = RTMCPServer()

    with patch("mcp_rt.server.logger") as mock_logger:
        await server_inst.initialize()

    assert server_inst.client is rt_client
    mock_logger.warning.assert_called_with("RT connectivity check failed: %s", "Connection refused")


@pytest.mark.asyncio
async def test_initialization_failure():
    """A client that cannot be built aborts startup."""
    with patch("mcp_rt.server.RTClient") as mock_client_class:
        mock_client_class.side_effect = ValueError("RT_URL is not set")

        server_inst = RTMCPServer()
        with pytest.raises(ValueError, match="RT_URL is not set"):
            await server_inst.initialize()


@pytest.mark.asyncio
async def test_initialize_with_dotenv(tmp_path, mock_rt_client_class):
    """A .env file in the working directory is loaded."""
    env_file = tmp_path / ".env"
    env_file.write_text("RT_URL=https://rt.test/REST/2.0\nRT_TOKEN=test-token\n")
    server_inst = RTMCPServer()

    with patch("mcp_rt.server.Path.cwd", return_value=pathlib.Path(tmp_path)), patch(
        "mcp_rt.server.load_dotenv"
    ) as mock_load:
        await server_inst.initialize()

    mock_load.assert_any_call(env_file)
    assert server_inst.client is not None


@pytest.mark.asyncio
async def test_initialize_with_envrc_warning(tmp_path):
    """An .envrc without exported variables triggers a warning."""
    (tmp_path / ".envrc").write_text("export RT_URL=https://rt.test/REST/2.0\n")
    server_inst = RTMCPServer()

    with (
        patch("mcp_rt.server.Path.cwd", return_value=pathlib.Path(tmp_path)),
        patch("mcp_rt.server.load_dotenv"),
        patch.dict(os.environ, {}, clear=True),
        patch("mcp_rt.server.logger") as mock_logger,
        patch("mcp_rt.server.RTClient", side_effect=RuntimeError("No authentication method provided")),
    ):
        with pytest.raises(RuntimeError, match="No authentication method provided"):
            await server_inst.initialize()

    mock_logger.warning.assert_called_with(
        "Found .envrc but environment variables not loaded. Consider using direnv or creating a .env file"
    )


@pytest.mark.asyncio
async def test_lifespan_context_manager(rt_client):
    """The lifespan initializes on entry and drops the client on exit."""
    test_server = RTMCPServer()

    async def fake_initialize():
        test_server.client = rt_client

    with patch.object(test_server, "initialize", new=AsyncMock(side_effect=fake_initialize)) as mock_initialize:
        lifespan_cm = test_server._create_lifespan()

        async with lifespan_cm(test_server.mcp) as result:
            mock_initialize.assert_called_once()
            assert result is None
            assert test_server.client is rt_client

    assert test_server.client is None
    rt_client.session.close.assert_called_once_with()


# ==================== ENTRY POINT ====================


class TestMainFunction:
    """Test the main() function execution."""

    def test_main_defaults_to_stdio(self, monkeypatch) -> None:
        """Without MCP_TRANSPORT the stdio server runs."""
        monkeypatch.delenv("MCP_TRANSPORT", raising=False)
        with patch("mcp_rt.server.mcp") as mock_mcp:
            main()

            mock_mcp.run.assert_called_once_with()

    def test_main_runs_http(self, monkeypatch, mock_rt_client_class) -> None:
        """MCP_TRANSPORT=http checks the RT settings, then serves the session router."""
        monkeypatch.setenv("MCP_TRANSPORT", "http")
        monkeypatch.setenv("MCP_HOST", "0.0.0.0")
        monkeypatch.setenv("MCP_PORT", "8123")
        with patch("mcp_rt.server.run_http") as mock_run_http, patch("mcp_rt.server.mcp") as mock_mcp:
            main()

        mock_run_http.assert_called_once_with(RTMCPServer, host="0.0.0.0", port=8123)
        mock_mcp.run.assert_not_called()
        mock_rt_client_class.assert_called_once_with()

    def test_main_http_fails_on_missing_settings(self, monkeypatch, mock_rt_client_class) -> None:
        """Missing RT settings stop the HTTP server before it starts listening."""
        monkeypatch.setenv("MCP_TRANSPORT", "http")
        mock_rt_client_class.side_effect = RTConfigError("RT_URL is not set")

        with patch("mcp_rt.server.run_http") as mock_run_http, pytest.raises(RTConfigError, match="RT_URL"):
            main()

        mock_run_http.assert_not_called()

    def test_main_rejects_unknown_transport(self, monkeypatch) -> None:
        """An unknown transport exits with an error."""
        monkeypatch.setenv("MCP_TRANSPORT", "carrier-pigeon")

        with pytest.raises(SystemExit) as exc_info:
            main()

        assert exc_info.value.code == 1


def test_configure_logging_invalid_level(monkeypatch):
    """An invalid LOG_LEVEL falls back to INFO."""
    monkeypatch.setenv("LOG_LEVEL", "LOUD")
    root_logger = logging.getLogger()
    previous_level = root_logger.level

    try:
        with patch("mcp_rt.server.logger") as mock_logger:
            _configure_logging()

        assert root_logger.level == logging.INFO
        mock_logger.warning.assert_called_once()
    finally:
        root_logger.setLevel(previous_level)


def test_configure_logging_level(monkeypatch):
    """LOG_LEVEL sets the root logger level."""
    monkeypatch.setenv("LOG_LEVEL", "debug")
    root_logger = logging.getLogger()
    previous_level = root_logger.level

    try:
        _configure_logging()
        assert root_logger.level == logging.DEBUG
    finally:
        root_logger.setLevel(previous_level)
