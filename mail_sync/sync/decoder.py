"""
Decode Gmail API message resources into ParsedEmail objects.
"""

import base64
import binascii
from datetime import datetime, timezone
from email.utils import parseaddr, parsedate_to_datetime
from typing import Any

from mail_sync.core.models import Attachment, ParsedEmail


def decode_body_data(data: str) -> str:
    """Decode Gmail's URL-safe base64 body data. Malformed input gives ''."""
    if not data:
        return ""
    padded = data + "=" * (-len(data) % 4)
    try:
        raw = base64.urlsafe_b64decode(padded.encode("ascii"))
    except (binascii.Error, ValueError):
        return ""
    return raw.decode("utf-8", errors="replace")


def get_header(headers: list[dict[str, str]], name: str) -> str:
    """Value of the first header called `name`, compared case-insensitively."""
    wanted = name.lower()
    for header in headers:
        if header.get("name", "").lower() == wanted:
            return header.get("value", "")
    return ""


def _find_part_data(payload: dict[str, Any], mime_type: str) -> str | None:
    """Depth-first search for the first part of `mime_type` carrying body data."""
    if payload.get("mimeType") == mime_type:
        data = payload.get("body", {}).get("data")
        if data:
            return data

    for part in payload.get("parts", []) or []:
        found = _find_part_data(part, mime_type)
        if found:
            return found
    return None


def extract_body(payload: dict[str, Any]) -> str:
    """Prefer text/plain, fall back to text/html, else empty."""
    data = _find_part_data(payload, "text/plain")
    if data is None:
        data = _find_part_data(payload, "text/html")
    return decode_body_data(data) if data else ""


def extract_attachments(payload: dict[str, Any]) -> list[Attachment]:
    """Metadata of every part that carries an attachment id.

    Size is left at 0; Gmail's body.size is not copied over.
    """
    attachments: list[Attachment] = []

    def walk(part: dict[str, Any]) -> None:
        attachment_id = part.get("body", {}).get("attachmentId")
        if attachment_id:
            attachments.append(Attachment(
                filename=part.get("filename") or "unnamed",
                mime_type=part.get("mimeType", ""),
                attachment_id=attachment_id,
            ))
        for child in part.get("parts", []) or []:
            walk(child)

    walk(payload)
    return attachments


def _parse_date(date_header: str, internal_date: str | None) -> datetime | None:
    if date_header:
        try:
            parsed = parsedate_to_datetime(date_header)
        except (TypeError, ValueError, IndexError):
            parsed = None
        if parsed is not None:
            # "-0000" carries no zone; read it as UTC
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return parsed
    if internal_date:
        try:
            return datetime.fromtimestamp(int(internal_date) / 1000, tz=timezone.utc)
        except (TypeError, ValueError, OverflowError):
            pass
    return None


def decode_message(raw: dict[str, Any]) -> ParsedEmail:
    """
    Turn a Gmail message resource (format=full) into a ParsedEmail.

    Args:
        raw: Message dict as returned by messages.get / threads.get

    Returns:
        ParsedEmail; missing pieces come back as empty values
    """
    payload = raw.get("payload", {}) or {}
    headers = payload.get("headers", []) or []

    from_name, from_email = parseaddr(get_header(headers, "From"))

    return ParsedEmail(
        id=raw.get("id", ""),
        thread_id=raw.get("threadId", ""),
        from_email=from_email.lower(),
        from_name=from_name,
        to=get_header(headers, "To"),
        cc=get_header(headers, "Cc"),
        bcc=get_header(headers, "Bcc"),
        subject=get_header(headers, "Subject"),
        body=extract_body(payload),
        date=_parse_date(get_header(headers, "Date"), raw.get("internalDate")),
        labels=list(raw.get("labelIds", []) or []),
        attachments=extract_attachments(payload),
    )
