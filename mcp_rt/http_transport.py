"""Streamable HTTP transport with per-client MCP sessions.

Every client starts with an ``initialize`` request sent without a session id.
That request gets its own transport and its own MCP server instance, keyed by
a fresh session id returned in the ``mcp-session-id`` response header. Later
requests carrying a known id go straight to that transport; anything else is
rejected.
"""

import json
import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from typing import Any, Protocol
from uuid import uuid4

import anyio
import uvicorn
from anyio.abc import TaskGroup, TaskStatus
from mcp.server.fastmcp import FastMCP
from mcp.server.streamable_http import MCP_SESSION_ID_HEADER, StreamableHTTPServerTransport
from mcp.types import InitializeRequestParams
from pydantic import ValidationError
from starlette.applications import Starlette
from starlette.datastructures import Headers
from starlette.requests import Request
from starlette.responses import JSONResponse, PlainTextResponse
from starlette.routing import Route
from starlette.types import Message, Receive, Scope, Send

logger = logging.getLogger(__name__)

MCP_PATH = "/mcp"
DEFAULT_PORT = 3000

# JSON-RPC error codes
BAD_REQUEST = -32000
INTERNAL_ERROR = -32603


class _ServerHolder(Protocol):
    """Anything exposing a FastMCP instance as ``mcp`` (e.g. RTMCPServer)."""

    mcp: FastMCP


ServerFactory = Callable[[], _ServerHolder]


def _jsonrpc_error(code: int, message: str, status_code: int) -> JSONResponse:
    return JSONResponse(
        {"jsonrpc": "2.0", "error": {"code": code, "message": message}, "id": None},
        status_code=status_code,
    )


def _parse_json(body: bytes) -> Any:
    try:
        return json.loads(body)
    except ValueError:
        return None


def is_initialize_request(payload: Any) -> bool:
    """Return True if ``payload`` is a well-formed MCP ``initialize`` request."""
    if not isinstance(payload, dict) or payload.get("method") != "initialize":
        return False
    try:
        InitializeRequestParams.model_validate(payload.get("params"))
    except ValidationError:
        return False
    return True


def _replay_body(body: bytes, receive: Receive) -> Receive:
    """Wrap ``receive`` so a body that was already read is delivered again."""
    replayed = False

    async def replay() -> Message:
        nonlocal replayed
        if not replayed:
            replayed = True
            return {"type": "http.request", "body": body, "more_body": False}
        return await receive()

    return replay


class SessionRouter:
    """ASGI app routing MCP requests to per-session transports.

    Sessions live in ``_transports`` for the lifetime of the process. Nothing
    removes them, so a long-running server accumulates one transport per
    client that ever initialized.
    """

    def __init__(self, server_factory: ServerFactory, *, json_response: bool = True) -> None:
        """Initialize the router.

        Args:
            server_factory: Builds a fresh server for each new session
            json_response: Answer with plain JSON instead of SSE streams
        """
        self.server_factory = server_factory
        self.json_response = json_response
        self._transports: dict[str, StreamableHTTPServerTransport] = {}
        self._task_group: TaskGroup | None = None

    @property
    def session_ids(self) -> list[str]:
        return list(self._transports)

    @asynccontextmanager
    async def run(self) -> AsyncIterator[None]:
        """Own the task group that runs one MCP server per session."""
        async with anyio.create_task_group() as tg:
            self._task_group = tg
            try:
                yield
            finally:
                tg.cancel_scope.cancel()
                self._task_group = None

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        request = Request(scope, receive)
        if request.method != "POST":
            response = PlainTextResponse("Method Not Allowed", status_code=405, headers={"Allow": "POST"})
            await response(scope, receive, send)
            return

        response_started = False

        async def tracked_send(message: Message) -> None:
            nonlocal response_started
            if message["type"] == "http.response.start":
                response_started = True
            await send(message)

        try:
            await self._route(request, scope, receive, tracked_send)
        except Exception:
            logger.exception("Error handling MCP request")
            if not response_started:
                response = _jsonrpc_error(INTERNAL_ERROR, "Internal server error", 500)
                await response(scope, receive, send)

    async def _route(self, request: Request, scope: Scope, receive: Receive, send: Send) -> None:
        session_id = request.headers.get(MCP_SESSION_ID_HEADER)

        if session_id and session_id in self._transports:
            await self._transports[session_id].handle_request(scope, receive, send)
            return

        body = await request.body()
        if session_id or not is_initialize_request(_parse_json(body)):
            response = _jsonrpc_error(BAD_REQUEST, "Bad Request: No valid session ID provided", 400)
            await response(scope, receive, send)
            return

        transport, cancel_scope = await self._start_session()
        accepted = False

        async def watched_send(message: Message) -> None:
            nonlocal accepted
            if message["type"] == "http.response.start":
                headers = Headers(raw=message.get("headers", []))
                accepted = 200 <= message["status"] < 300 and MCP_SESSION_ID_HEADER in headers
            await send(message)

        try:
            await transport.handle_request(scope, _replay_body(body, receive), watched_send)
        finally:
            if accepted:
                logger.info("Session initialized with ID: %s", transport.mcp_session_id)
            else:
                self._discard(transport, cancel_scope)

    async def _start_session(self) -> tuple[StreamableHTTPServerTransport, anyio.CancelScope]:
        if self._task_group is None:
            raise RuntimeError("Session router is not running")

        session_id = str(uuid4())
        transport = StreamableHTTPServerTransport(
            mcp_session_id=session_id,
            is_json_response_enabled=self.json_response,
        )
        server = self.server_factory()
        cancel_scope = await self._task_group.start(self._serve, transport, server.mcp)

        # Registered before the initialize request is answered so follow-up
        # requests always find it; dropped again if initialize is rejected
        self._transports[session_id] = transport
        return transport, cancel_scope

    def _discard(self, transport: StreamableHTTPServerTransport, cancel_scope: anyio.CancelScope) -> None:
        """Forget a session whose initialize request was not accepted and stop its server."""
        self._transports.pop(transport.mcp_session_id, None)
        cancel_scope.cancel()
        logger.warning("Discarded session %s: initialize was not accepted", transport.mcp_session_id)

    @staticmethod
    async def _serve(
        transport: StreamableHTTPServerTransport,
        mcp: FastMCP,
        *,
        task_status: TaskStatus[anyio.CancelScope] = anyio.TASK_STATUS_IGNORED,
    ) -> None:
        """Run one MCP server against one session transport until shutdown or cancellation."""
        # FastMCP exposes no public way to run its server over a custom transport
        lowlevel = mcp._mcp_server
        with anyio.CancelScope() as cancel_scope:
            async with transport.connect() as (read_stream, write_stream):
                task_status.started(cancel_scope)
                try:
                    await lowlevel.run(read_stream, write_stream, lowlevel.create_initialization_options())
                except Exception:
                    logger.exception("MCP session %s stopped with an error", transport.mcp_session_id)


def create_app(server_factory: ServerFactory) -> Starlette:
    """Build the Starlette app serving ``/mcp`` and ``/health``."""
    router = SessionRouter(server_factory)

    async def health_check(request: Request) -> JSONResponse:  # noqa: ARG001
        """Health check endpoint for HTTP transport."""
        return JSONResponse({"status": "healthy", "transport": "http"})

    @asynccontextmanager
    async def lifespan(_app: Starlette) -> AsyncIterator[None]:
        async with router.run():
            logger.info("MCP Streamable HTTP server ready on %s", MCP_PATH)
            try:
                yield
            finally:
                logger.info("Shutting down server...")

    app = Starlette(
        routes=[
            Route(MCP_PATH, endpoint=router),
            Route("/health", endpoint=health_check, methods=["GET"]),
        ],
        lifespan=lifespan,
    )
    app.state.session_router = router
    return app


def run_http(server_factory: ServerFactory, host: str = "127.0.0.1", port: int = DEFAULT_PORT) -> None:
    """Serve the HTTP transport with uvicorn until interrupted (SIGINT)."""
    app = create_app(server_factory)
    logger.info("MCP Streamable HTTP Server listening on %s:%s", host, port)
    uvicorn.run(app, host=host, port=port)
