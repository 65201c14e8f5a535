"""RT MCP Server implementation."""

import asyncio
import json
import logging
import os
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from mcp.server.fastmcp import FastMCP
from mcp.types import ToolAnnotations

from . import tools
from .client import RTClient, RTConfigError
from .http_transport import DEFAULT_PORT, run_http
from .models import (
    AttachmentId,
    CommentType,
    MessageContent,
    Priority,
    ResultLimit,
    SearchQuery,
    Subject,
    TicketId,
)

# Configure logging
logger = logging.getLogger(__name__)

SERVER_NAME = "rt_mcp"


# Tool annotation constants
def _read_only_annotations(title: str) -> ToolAnnotations:
    """Create read-only tool annotations with title."""
    return ToolAnnotations(
        readOnlyHint=True,
        destructiveHint=False,
        idempotentHint=True,
        openWorldHint=True,
        title=title,
    )


def _write_annotations(title: str) -> ToolAnnotations:
    """Create write tool annotations with title."""
    return ToolAnnotations(
        readOnlyHint=False,
        destructiveHint=False,
        idempotentHint=False,
        openWorldHint=True,
        title=title,
    )


def _idempotent_write_annotations(title: str) -> ToolAnnotations:
    """Create idempotent write tool annotations with title."""
    return ToolAnnotations(
        readOnlyHint=False,
        destructiveHint=False,
        idempotentHint=True,
        openWorldHint=True,
        title=title,
    )


def _serialize_json(obj: dict[str, Any]) -> str:
    """Serialize a tool result as pretty-printed JSON."""
    return json.dumps(obj, indent=2, default=str)


def _load_environment() -> None:
    """Load RT settings from .env files into the environment."""
    cwd_env = Path.cwd() / ".env"
    if cwd_env.exists():
        load_dotenv(cwd_env)
        logger.info("Loaded environment from %s", cwd_env)

    envrc_path = Path.cwd() / ".envrc"
    if envrc_path.exists() and not os.environ.get("RT_URL"):
        logger.warning(
            "Found .envrc but environment variables not loaded. Consider using direnv or creating a .env file"
        )

    # Also support loading from parent directories (for when running from subdirs)
    load_dotenv()


class RTMCPServer:
    """RT MCP Server with client lifecycle management."""

    def __init__(self) -> None:
        """Initialize the server and register tools and resources."""
        self.client: RTClient | None = None
        # Create FastMCP with lifespan configured
        self.mcp = FastMCP(SERVER_NAME, lifespan=self._create_lifespan())
        self._setup_tools()
        self._setup_resources()

    def _create_lifespan(self) -> Any:
        """Create the lifespan context manager for the server."""

        @asynccontextmanager
        async def lifespan(_app: FastMCP) -> AsyncIterator[None]:
            """Initialize resources on startup and cleanup on shutdown."""
            await self.initialize()
            try:
                yield
            finally:
                if self.client is not None:
                    self.client.session.close()
                    self.client = None
                    logger.info("RT client cleaned up")

        return lifespan

    def get_client(self) -> RTClient:
        """Get the RT client, ensuring it's initialized."""
        if not self.client:
            raise RuntimeError("RT client not initialized")
        return self.client

    async def initialize(self) -> None:
        """Initialize the RT client on server startup."""
        _load_environment()

        try:
            self.client = RTClient()
            logger.info("RT client initialized for %s", self.client.url)
        except Exception:
            logger.exception("Failed to initialize RT client")
            raise

        # Test connection; tools report their own failures, so this only warns
        info = self.client.get_system_info()
        if info.ok and isinstance(info.data, dict):
            logger.info("Connected to RT version %s", info.data.get("Version", "unknown"))
        else:
            logger.warning("RT connectivity check failed: %s", info.error or tools.UNEXPECTED_RESPONSE_FORMAT)

    async def _call(self, fn: Callable[..., dict[str, Any]], *args: Any) -> str:
        """Run a tool function off the event loop and serialize its result."""
        try:
            client = self.get_client()
        except RuntimeError as e:
            return _serialize_json({"error": str(e)})
        result = await asyncio.to_thread(fn, client, *args)
        return _serialize_json(result)

    def _setup_tools(self) -> None:
        """Register all tools with the MCP server."""
        self._setup_ticket_tools()
        self._setup_directory_tools()
        self._setup_attachment_tools()

    def _setup_ticket_tools(self) -> None:
        """Register ticket-related tools."""

        @self.mcp.tool(annotations=_read_only_annotations("Search Tickets"))
        async def search_tickets(query: SearchQuery, limit: ResultLimit = tools.DEFAULT_SEARCH_LIMIT) -> str:
            """Search for tickets using simple search syntax.

            Returns JSON with the schema:

            ```json
            {
                "total": 2,
                "count": 2,
                "limit": 20,
                "tickets": [
                    {"id": 42, "subject": "Login fails", "status": "open", "queue": "1",
                     "owner": "Nobody", "priority": 10, "created": "2024-01-15T10:30:00Z"}
                ]
            }
            ```

            On failure the object carries an "error" key instead.
            """
            return await self._call(tools.search_tickets, query, limit)

        @self.mcp.tool(annotations=_read_only_annotations("Get Ticket Details"))
        async def get_ticket(ticket_id: TicketId) -> str:
            """Retrieve detailed information about a ticket.

            Includes people (owner, creator, requestors, cc, admin_cc), dates,
            time tracking and custom fields as {name: values}.
            """
            return await self._call(tools.get_ticket, ticket_id)

        @self.mcp.tool(annotations=_read_only_annotations("Get Ticket History"))
        async def get_ticket_history(ticket_id: TicketId) -> str:
            """Retrieve full ticket history, oldest transaction first."""
            return await self._call(tools.get_ticket_history, ticket_id)

        @self.mcp.tool(annotations=_write_annotations("Create Ticket"))
        async def create_ticket(
            subject: Subject,
            queue: str,
            requestor: str | None = None,
            cc: list[str] | None = None,
            content: str | None = None,
            priority: Priority | None = None,
            status: str | None = None,
        ) -> str:
            """Create a new RT ticket.

            Returns {"success": true, "ticket_id": ..., "message": ...} or an object with an "error" key.
            """
            return await self._call(tools.create_ticket, subject, queue, requestor, cc, content, priority, status)

        @self.mcp.tool(annotations=_idempotent_write_annotations("Update Ticket"))
        async def update_ticket(
            ticket_id: TicketId,
            subject: str | None = None,
            status: str | None = None,
            priority: Priority | None = None,
            owner: str | None = None,
            queue: str | None = None,
        ) -> str:
            """Update metadata of an existing ticket.

            Only non-empty values are applied: priority 0 or an empty string leave the field unchanged.
            """
            return await self._call(tools.update_ticket, ticket_id, subject, status, priority, owner, queue)

        @self.mcp.tool(annotations=_write_annotations("Add Comment"))
        async def add_comment(
            ticket_id: TicketId,
            content: MessageContent,
            type: CommentType = CommentType.COMMENT,  # noqa: A002
        ) -> str:
            """Add a comment or correspondence to a ticket.

            "comment" is internal; "correspond" is sent to the requestors.
            """
            return await self._call(tools.add_comment, ticket_id, content, type)

        @self.mcp.tool(annotations=_read_only_annotations("Get Ticket Links"))
        async def get_ticket_links(ticket_id: TicketId) -> str:
            """Retrieve ticket relationships (dependencies, parent/child, references)."""
            return await self._call(tools.get_ticket_links, ticket_id)

    def _setup_directory_tools(self) -> None:
        """Register queue and user tools."""

        @self.mcp.tool(annotations=_read_only_annotations("Get Queues"))
        async def get_queues() -> str:
            """Retrieve list of all RT queues."""
            return await self._call(tools.get_queues)

        @self.mcp.tool(annotations=_read_only_annotations("Get Users"))
        async def get_users(query: str | None = None) -> str:
            """Retrieve list of RT users (optionally filtered)."""
            return await self._call(tools.get_users, query)

    def _setup_attachment_tools(self) -> None:
        """Register attachment tools."""

        @self.mcp.tool(annotations=_read_only_annotations("Get Ticket Attachments"))
        async def get_ticket_attachments(ticket_id: TicketId) -> str:
            """List all attachments for a specific ticket."""
            return await self._call(tools.get_ticket_attachments, ticket_id)

        @self.mcp.tool(annotations=_read_only_annotations("Get Attachment Details"))
        async def get_attachment_details(ticket_id: TicketId, attachment_id: AttachmentId) -> str:
            """Get detailed information about a specific attachment.

            The "content" field is passed through as RT returns it and may be base64 or plain text.
            """
            return await self._call(tools.get_attachment_details, ticket_id, attachment_id)

        @self.mcp.tool(annotations=_read_only_annotations("Download Attachment"))
        async def download_attachment(ticket_id: TicketId, attachment_id: AttachmentId) -> str:
            """Download attachment content as base64-encoded data. Use this to retrieve the actual file content.

            Decode "content_base64" to get the original bytes; "size" is their length.
            """
            return await self._call(tools.download_attachment, ticket_id, attachment_id)

    def _setup_resources(self) -> None:
        """Register all resources with the MCP server."""

        @self.mcp.resource("rt://ticket/{ticket_id}")
        async def get_ticket_resource(ticket_id: str) -> str:
            """Get a ticket as a resource."""
            try:
                numeric_id = int(ticket_id)
            except ValueError:
                return _serialize_json({"error": f"Invalid ticket ID '{ticket_id}'"})
            return await self._call(tools.get_ticket, numeric_id)


# Create the server instance used by the stdio transport
server = RTMCPServer()

# Export the MCP server instance
mcp = server.mcp


def _configure_logging() -> None:
    """Configure logging from LOG_LEVEL environment variable.

    Reads LOG_LEVEL environment variable (default: INFO) and configures
    the root logger. Valid values: DEBUG, INFO, WARNING, ERROR, CRITICAL.
    """
    log_level_str = os.getenv("LOG_LEVEL", "INFO").upper()
    valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}

    if log_level_str not in valid_levels:
        invalid_level = log_level_str
        log_level_str = "INFO"
        logger.warning(
            "Invalid LOG_LEVEL '%s', defaulting to INFO. Valid values: %s",
            invalid_level,
            ", ".join(sorted(valid_levels)),
        )

    log_level = getattr(logging, log_level_str)
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    # Add handler if none exists; stderr keeps stdout free for the stdio transport
    if not root_logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))
        root_logger.addHandler(handler)


def main() -> None:
    """Main entry point for the server.

    MCP_TRANSPORT selects "stdio" (default) or "http"; the HTTP transport binds
    MCP_HOST (default 127.0.0.1) and MCP_PORT (default 3000).
    """
    _configure_logging()
    transport = os.getenv("MCP_TRANSPORT", "stdio").lower()

    if transport == "stdio":
        mcp.run()
    elif transport == "http":
        # Sessions build their own clients, so missing settings must stop startup here
        _load_environment()
        try:
            RTClient().session.close()
        except RTConfigError:
            logger.exception("Invalid RT configuration")
            raise
        host = os.getenv("MCP_HOST", "127.0.0.1")
        port = int(os.getenv("MCP_PORT", str(DEFAULT_PORT)))
        run_http(RTMCPServer, host=host, port=port)
    else:
        logger.error("Unknown MCP_TRANSPORT '%s'. Valid values: stdio, http", transport)
        raise SystemExit(1)
