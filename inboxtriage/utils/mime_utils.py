"""MIME utilities — pull the readable text/plain and text/html parts out of a raw message."""
from __future__ import annotations

import email
import email.policy
import logging
from email.message import Message as EmailMessage

from inboxtriage.models.message import MessageBody

logger = logging.getLogger(__name__)


def extract_bodies(raw_bytes: bytes, uid: int = 0) -> MessageBody:
    """
    Parse raw_bytes as an RFC 2822 message and return its first text/plain
    and first text/html parts, decoded.  Attachments are skipped.
    """
    msg = email.message_from_bytes(raw_bytes, policy=email.policy.default)
    body = MessageBody()
    for part in msg.walk():
        if part.is_multipart() or _is_attachment(part):
            continue
        content_type = part.get_content_type()
        if content_type == "text/plain" and body.text is None:
            body.text = _decode_part(part, uid)
        elif content_type == "text/html" and body.html is None:
            body.html = _decode_part(part, uid)
        if body.text is not None and body.html is not None:
            break
    return body


def _is_attachment(part: EmailMessage) -> bool:
    """Return True if this part should be treated as an attachment."""
    disposition = (part.get("Content-Disposition") or "").lower()
    if "attachment" in disposition:
        return True
    # Named parts are files, not the message body
    return bool(part.get_filename())


def _decode_part(part: EmailMessage, uid: int) -> str:
    try:
        return part.get_content()
    except (LookupError, ValueError) as exc:
        # Unknown charset or broken transfer encoding
        logger.debug("Falling back to lenient decode for uid=%d: %s", uid, exc)
    payload = part.get_payload(decode=True) or b""
    charset = part.get_content_charset() or "utf-8"
    try:
        return payload.decode(charset, errors="replace")
    except LookupError:
        return payload.decode("utf-8", errors="replace")
