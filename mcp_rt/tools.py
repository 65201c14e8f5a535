"""RT tool implementations.

Each function issues one RT REST call (two for attachment downloads) and
reshapes the response into a flat record. Failures are reported as data: every
function returns a dict, with an ``error`` key when something went wrong, and
never raises.
"""

import base64
import logging
from typing import Any
from urllib.parse import quote

from .client import RTClient
from .models import (
    AttachmentContent,
    AttachmentDetail,
    AttachmentSummary,
    CommentType,
    HistoryEntry,
    Queue,
    TicketDetail,
    TicketLinks,
    TicketSummary,
    User,
)

logger = logging.getLogger(__name__)

# Constants
MIN_SEARCH_LIMIT = 1
MAX_SEARCH_LIMIT = 100
DEFAULT_SEARCH_LIMIT = 20
HISTORY_PAGE_SIZE = 100
UNEXPECTED_RESPONSE_FORMAT = "Unexpected response format"

SEARCH_FIELDS = "Subject,Status,Queue,Owner,Priority,Created"
HISTORY_FIELDS = "Type,Creator,Created,Description,Field,OldValue,NewValue,Content,Attachments"
ATTACHMENT_FIELDS = "Filename,ContentType,ContentLength,Created,Creator,TransactionId"
QUEUE_FIELDS = "Name,Description"
USER_FIELDS = "Name,EmailAddress,RealName"

# Output field -> (RT link field, RT hyperlink ref)
LINK_TYPES = {
    "depends_on": ("DependsOn", "depends-on"),
    "depended_on_by": ("DependedOnBy", "depended-on-by"),
    "refers_to": ("RefersTo", "refers-to"),
    "referred_to_by": ("ReferredToBy", "referred-to-by"),
    "members": ("Members", "child"),
    "member_of": ("MemberOf", "parent"),
}


def _failure(error: object, **context: Any) -> dict[str, Any]:
    return {"error": str(error), **context}


def _unexpected(data: Any) -> dict[str, Any]:
    return {"error": UNEXPECTED_RESPONSE_FORMAT, "data": data}


def _encode(value: str) -> str:
    """Percent-encode a query value the way JavaScript's encodeURIComponent does."""
    return quote(value, safe="!~*'()")


def _custom_fields(value: Any) -> dict[str, Any]:
    """Flatten RT's ``[{"name": ..., "values": [...]}]`` list into ``{name: values}``."""
    if isinstance(value, dict):
        return value
    fields: dict[str, Any] = {}
    for field in value or []:
        if isinstance(field, dict):
            name = field.get("name") or str(field.get("id"))
            fields[name] = field.get("values") or []
    return fields


def _link_target(value: Any) -> Any:
    if isinstance(value, dict):
        return value.get("id") or value.get("_url")
    return value


def _ticket_summary(item: dict[str, Any]) -> dict[str, Any]:
    return TicketSummary(
        id=item.get("id"),
        subject=item.get("Subject"),
        status=item.get("Status"),
        queue=item.get("Queue"),
        owner=item.get("Owner"),
        priority=item.get("Priority"),
        created=item.get("Created"),
    ).model_dump(mode="json")


def _ticket_detail(data: dict[str, Any]) -> dict[str, Any]:
    return TicketDetail(
        id=data.get("id"),
        type=data.get("Type"),
        subject=data.get("Subject"),
        status=data.get("Status"),
        priority=data.get("Priority"),
        initial_priority=data.get("InitialPriority"),
        final_priority=data.get("FinalPriority"),
        queue=data.get("Queue"),
        owner=data.get("Owner"),
        creator=data.get("Creator"),
        requestors=data.get("Requestor") or [],
        cc=data.get("Cc") or [],
        admin_cc=data.get("AdminCc") or [],
        created=data.get("Created"),
        starts=data.get("Starts"),
        started=data.get("Started"),
        due=data.get("Due"),
        resolved=data.get("Resolved"),
        told=data.get("Told"),
        last_updated=data.get("LastUpdated"),
        time_estimated=data.get("TimeEstimated"),
        time_worked=data.get("TimeWorked"),
        time_left=data.get("TimeLeft"),
        custom_fields=_custom_fields(data.get("CustomFields")),
    ).model_dump(mode="json")


def _history_entry(item: dict[str, Any]) -> dict[str, Any]:
    attachments = item.get("Attachments")
    if attachments is None:
        attachments = [link for link in item.get("_hyperlinks") or [] if link.get("ref") == "attachment"]
    return HistoryEntry(
        id=item.get("id"),
        type=item.get("Type"),
        creator=item.get("Creator"),
        created=item.get("Created"),
        description=item.get("Description"),
        field=item.get("Field") or None,
        old_value=item.get("OldValue"),
        new_value=item.get("NewValue"),
        content=item.get("Content"),
        attachments=attachments,
    ).model_dump(mode="json")


def _attachment_fields(item: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": item.get("id"),
        "filename": item.get("Filename"),
        "content_type": item.get("ContentType"),
        "size": item.get("ContentLength"),
        "created": item.get("Created"),
        "creator": item.get("Creator"),
        "transaction_id": item.get("TransactionId"),
    }


# ==================== TICKETS ====================


def search_tickets(client: RTClient, query: str, limit: int = DEFAULT_SEARCH_LIMIT) -> dict[str, Any]:
    """Search tickets with RT simple search.

    The limit is clamped into [1, 100] before the request is built.

    Returns:
        ``{total, count, limit, tickets}`` or an error record
    """
    try:
        limit = max(MIN_SEARCH_LIMIT, min(limit, MAX_SEARCH_LIMIT))
        endpoint = f"/tickets?simple=1;query={_encode(query)};per_page={limit};fields={SEARCH_FIELDS}"
        result = client.request(endpoint)
        if not result.ok:
            return _failure(result.error, query=query)
        data = result.data
        if not isinstance(data, dict):
            return _unexpected(data)

        return {
            "total": data.get("total") or 0,
            "count": data.get("count") or 0,
            "limit": limit,
            "tickets": [_ticket_summary(item) for item in data.get("items") or []],
        }
    except Exception as e:
        logger.exception("Ticket search failed for query %r", query)
        return _failure(e, query=query)


def get_ticket(client: RTClient, ticket_id: int) -> dict[str, Any]:
    """Return the full record of one ticket."""
    try:
        result = client.request(f"/ticket/{ticket_id}")
        if not result.ok:
            return _failure(result.error, ticket_id=ticket_id)
        if not isinstance(result.data, dict):
            return _unexpected(result.data)
        return _ticket_detail(result.data)
    except Exception as e:
        logger.exception("Failed to get ticket %s", ticket_id)
        return _failure(e, ticket_id=ticket_id)


def get_ticket_history(client: RTClient, ticket_id: int) -> dict[str, Any]:
    """Return a ticket's transactions in the order RT reports them."""
    try:
        result = client.request(f"/ticket/{ticket_id}/history?per_page={HISTORY_PAGE_SIZE};fields={HISTORY_FIELDS}")
        if not result.ok:
            return _failure(result.error, ticket_id=ticket_id)
        data = result.data
        if not isinstance(data, dict):
            return _unexpected(data)

        return {
            "ticket_id": ticket_id,
            "total": data.get("total") or 0,
            "count": data.get("count") or 0,
            "history": [_history_entry(item) for item in data.get("items") or []],
        }
    except Exception as e:
        logger.exception("Failed to get history for ticket %s", ticket_id)
        return _failure(e, ticket_id=ticket_id)


def create_ticket(
    client: RTClient,
    subject: str,
    queue: str,
    requestor: str | None = None,
    cc: list[str] | None = None,
    content: str | None = None,
    priority: int | None = None,
    status: str | None = None,
) -> dict[str, Any]:
    """Create a ticket.

    Optional fields that were not provided are left out of the request body.
    """
    try:
        payload: dict[str, Any] = {"Subject": subject, "Queue": queue}
        optional = {
            "Requestor": requestor,
            "Cc": cc,
            "Content": content,
            "Priority": priority,
            "Status": status,
        }
        payload.update({key: value for key, value in optional.items() if value is not None})

        result = client.request("/ticket", method="POST", payload=payload)
        if not result.ok:
            return _failure(result.error, subject=subject, queue=queue)
        data = result.data
        if not isinstance(data, dict):
            return _unexpected(data)

        ticket_id = data.get("id")
        return {
            "success": True,
            "ticket_id": ticket_id,
            "message": f"Ticket {ticket_id} created successfully",
        }
    except Exception as e:
        logger.exception("Failed to create ticket in queue %s", queue)
        return _failure(e, subject=subject, queue=queue)


def update_ticket(
    client: RTClient,
    ticket_id: int,
    subject: str | None = None,
    status: str | None = None,
    priority: int | None = None,
    owner: str | None = None,
    queue: str | None = None,
) -> dict[str, Any]:
    """Update ticket metadata.

    Only truthy values are sent, so priority 0 or an empty subject cannot be
    applied through this call.
    """
    try:
        fields = {
            "Subject": subject,
            "Status": status,
            "Priority": priority,
            "Owner": owner,
            "Queue": queue,
        }
        payload = {key: value for key, value in fields.items() if value}
        if not payload:
            return _failure("No fields to update", ticket_id=ticket_id)

        result = client.request(f"/ticket/{ticket_id}", method="PUT", payload=payload)
        if not result.ok:
            return _failure(result.error, ticket_id=ticket_id)
        data = result.data
        # RT answers updates with a list of change messages
        if not isinstance(data, dict | list):
            return _unexpected(data)

        return {
            "success": True,
            "ticket_id": ticket_id,
            "message": f"Ticket {ticket_id} updated successfully",
            "changes": data if isinstance(data, list) else [],
        }
    except Exception as e:
        logger.exception("Failed to update ticket %s", ticket_id)
        return _failure(e, ticket_id=ticket_id)


def add_comment(
    client: RTClient,
    ticket_id: int,
    content: str,
    comment_type: CommentType | str = CommentType.COMMENT,
) -> dict[str, Any]:
    """Add a comment or a correspondence to a ticket as plain text."""
    try:
        kind = CommentType(comment_type)
        payload = {"Content": content, "ContentType": "text/plain"}

        result = client.request(f"/ticket/{ticket_id}/{kind.value}", method="POST", payload=payload)
        if not result.ok:
            return _failure(result.error, ticket_id=ticket_id, type=kind.value)
        data = result.data
        if not isinstance(data, dict | list):
            return _unexpected(data)

        label = "Correspondence" if kind is CommentType.CORRESPOND else "Comment"
        return {
            "success": True,
            "ticket_id": ticket_id,
            "type": kind.value,
            "message": f"{label} added successfully",
            "details": data if isinstance(data, list) else [],
        }
    except Exception as e:
        logger.exception("Failed to add %s to ticket %s", comment_type, ticket_id)
        return _failure(e, ticket_id=ticket_id, type=str(comment_type))


def get_ticket_links(client: RTClient, ticket_id: int) -> dict[str, Any]:
    """Return the six relationship lists of a ticket, empty when absent."""
    try:
        result = client.request(f"/ticket/{ticket_id}/links")
        if not result.ok:
            return _failure(result.error, ticket_id=ticket_id)
        data = result.data
        if not isinstance(data, dict):
            return _unexpected(data)

        hyperlinks = [link for link in data.get("_hyperlinks") or [] if isinstance(link, dict)]
        links: dict[str, list[Any]] = {}
        for name, (field, ref) in LINK_TYPES.items():
            targets = list(data.get(field) or [])
            targets.extend(link for link in hyperlinks if link.get("ref") == ref)
            links[name] = [_link_target(target) for target in targets]

        return TicketLinks(ticket_id=ticket_id, **links).model_dump(mode="json")
    except Exception as e:
        logger.exception("Failed to get links for ticket %s", ticket_id)
        return _failure(e, ticket_id=ticket_id)


# ==================== QUEUES & USERS ====================


def get_queues(client: RTClient) -> dict[str, Any]:
    """List every queue."""
    try:
        result = client.request(f"/queues/all?fields={QUEUE_FIELDS}")
        if not result.ok:
            return _failure(result.error)
        data = result.data
        if not isinstance(data, dict):
            return _unexpected(data)

        queues = [
            Queue(id=item.get("id"), name=item.get("Name"), description=item.get("Description")).model_dump()
            for item in data.get("items") or []
        ]
        return {"total": data.get("total") or 0, "count": data.get("count") or 0, "queues": queues}
    except Exception as e:
        logger.exception("Failed to list queues")
        return _failure(e)


def get_users(client: RTClient, query: str | None = None) -> dict[str, Any]:
    """List users, optionally filtered by free text."""
    try:
        endpoint = f"/users?fields={USER_FIELDS}"
        if query:
            endpoint += f";query={_encode(query)}"

        result = client.request(endpoint)
        if not result.ok:
            return _failure(result.error, query=query)
        data = result.data
        if not isinstance(data, dict):
            return _unexpected(data)

        users = [
            User(
                id=item.get("id"),
                name=item.get("Name"),
                email=item.get("EmailAddress"),
                real_name=item.get("RealName"),
            ).model_dump()
            for item in data.get("items") or []
        ]
        return {"total": data.get("total") or 0, "count": data.get("count") or 0, "users": users}
    except Exception as e:
        logger.exception("Failed to list users")
        return _failure(e, query=query)


# ==================== ATTACHMENTS ====================


def get_ticket_attachments(client: RTClient, ticket_id: int) -> dict[str, Any]:
    """List attachment metadata for a ticket."""
    try:
        result = client.request(f"/ticket/{ticket_id}/attachments?fields={ATTACHMENT_FIELDS}")
        if not result.ok:
            return _failure(result.error, ticket_id=ticket_id)
        data = result.data
        if not isinstance(data, dict):
            return _unexpected(data)

        attachments = [
            AttachmentSummary(**_attachment_fields(item)).model_dump(mode="json") for item in data.get("items") or []
        ]
        return {
            "ticket_id": ticket_id,
            "total": data.get("total") or 0,
            "count": data.get("count") or 0,
            "attachments": attachments,
        }
    except Exception as e:
        logger.exception("Failed to list attachments for ticket %s", ticket_id)
        return _failure(e, ticket_id=ticket_id)


def get_attachment_details(client: RTClient, ticket_id: int, attachment_id: int) -> dict[str, Any]:
    """Return attachment metadata, headers and the content field exactly as RT sends it."""
    try:
        result = client.request(f"/ticket/{ticket_id}/attachments/{attachment_id}")
        if not result.ok:
            return _failure(result.error, ticket_id=ticket_id, attachment_id=attachment_id)
        data = result.data
        if not isinstance(data, dict):
            return _unexpected(data)

        return AttachmentDetail(
            ticket_id=ticket_id,
            headers=data.get("Headers"),
            content=data.get("Content"),
            **_attachment_fields(data),
        ).model_dump(mode="json")
    except Exception as e:
        logger.exception("Failed to get attachment %s of ticket %s", attachment_id, ticket_id)
        return _failure(e, ticket_id=ticket_id, attachment_id=attachment_id)


def download_attachment(client: RTClient, ticket_id: int, attachment_id: int) -> dict[str, Any]:
    """Download attachment content as base64 together with its filename and content type.

    Content and metadata come from two separate calls. When only the metadata
    call fails, filename and content type are reported as ``None``.
    """
    try:
        base = f"/ticket/{ticket_id}/attachments/{attachment_id}"
        content = client.request_bytes(f"{base}/content")
        if not content.ok:
            return _failure(content.error, ticket_id=ticket_id, attachment_id=attachment_id)
        raw: bytes = content.data or b""

        filename = content_type = None
        metadata = client.request(base)
        if metadata.ok and isinstance(metadata.data, dict):
            filename = metadata.data.get("Filename")
            content_type = metadata.data.get("ContentType")
        else:
            logger.warning(
                "No metadata for attachment %s of ticket %s: %s",
                attachment_id,
                ticket_id,
                metadata.error or UNEXPECTED_RESPONSE_FORMAT,
            )

        return AttachmentContent(
            ticket_id=ticket_id,
            attachment_id=attachment_id,
            filename=filename,
            content_type=content_type,
            size=len(raw),
            content_base64=base64.b64encode(raw).decode("ascii"),
        ).model_dump()
    except Exception as e:
        logger.exception("Failed to download attachment %s of ticket %s", attachment_id, ticket_id)
        return _failure(e, ticket_id=ticket_id, attachment_id=attachment_id)
