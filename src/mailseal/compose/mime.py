"""
Payload assembly and parsing for encrypted messages.

Builds the plaintext handed to the crypto engine (a bare text body or a
MIME tree when attachments travel inside the encrypted part) and splits
decrypted payloads back into text and attachments.
"""

import email
import email.policy
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email import encoders
from email.mime.base import MIMEBase
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import format_datetime, make_msgid
from typing import Optional

from ..common.exceptions import MessageBuildError
from .models import AttachmentData

logger = logging.getLogger(__name__)

MIME_HEADER_PREFIXES = ("content-type:", "mime-version:")


@dataclass
class ParsedMessage:
    """Text and attachments recovered from a decrypted payload."""

    text: str = ""
    attachments: list[AttachmentData] = field(default_factory=list)


def _attachment_part(attachment: AttachmentData, charset: str) -> MIMEBase:
    """Create a MIME part for an attachment."""
    if "/" not in attachment.mime_type:
        raise MessageBuildError(
            f"Invalid MIME type for attachment {attachment.filename}",
            {"filename": attachment.filename, "mime_type": attachment.mime_type},
        )
    maintype, subtype = attachment.mime_type.split("/", 1)

    if maintype == "text":
        try:
            part = MIMEText(attachment.content.decode(charset), subtype, charset)
        except UnicodeDecodeError:
            part = MIMEBase(maintype, subtype)
            part.set_payload(attachment.content)
            encoders.encode_base64(part)
    else:
        part = MIMEBase(maintype, subtype)
        part.set_payload(attachment.content)
        encoders.encode_base64(part)

    part.add_header("Content-Disposition", "attachment", filename=attachment.filename)
    return part


def build_mail(
    message: Optional[str],
    attachments: Optional[list[AttachmentData]] = None,
    pgp_mime: bool = False,
    subject: str = "",
    domain: str = "localhost",
    charset: str = "utf-8",
) -> str:
    """
    Assemble the plaintext payload for encryption.

    Without PGP/MIME and without attachments the body is returned as is.
    Otherwise a ``multipart/mixed`` tree is built with the body as first
    part and one part per attachment.

    Args:
        message: The message body.
        attachments: Files to carry inside the encrypted payload.
        pgp_mime: Always build a MIME tree.
        subject: Subject for the protected headers.
        domain: Domain for the Message-ID.
        charset: Character set for text parts.

    Returns:
        The payload as a string.

    Raises:
        MessageBuildError: If the payload cannot be assembled.
    """
    if message is None:
        raise MessageBuildError("MIME building failed.", {"reason": "no message body"})

    attachments = attachments or []
    if not pgp_mime and not attachments:
        return message

    try:
        msg = MIMEMultipart("mixed")
        msg.attach(MIMEText(message, "plain", charset))
        for attachment in attachments:
            msg.attach(_attachment_part(attachment, charset))

        if subject:
            msg["Subject"] = subject
        msg["Date"] = format_datetime(datetime.now(timezone.utc))
        msg["Message-ID"] = make_msgid(domain=domain)
        msg["MIME-Version"] = "1.0"

        raw = msg.as_string()
    except MessageBuildError:
        raise
    except (TypeError, ValueError, LookupError) as e:
        raise MessageBuildError("MIME building failed.", {"reason": str(e)}) from e

    logger.debug(
        "Built MIME payload with %d attachment(s), size=%d",
        len(attachments),
        len(raw),
    )
    return raw


def _looks_like_mime(raw: str) -> bool:
    head = raw.lstrip().lower()
    return head.startswith(MIME_HEADER_PREFIXES)


def _decode_text(part: email.message.Message) -> str:
    payload = part.get_payload(decode=True)
    if payload is None:
        return ""
    charset = part.get_content_charset() or "utf-8"
    try:
        return payload.decode(charset, errors="replace")
    except LookupError:
        return payload.decode("utf-8", errors="replace")


def parse_message(raw: str) -> ParsedMessage:
    """
    Split a decrypted payload into text and attachments.

    Payloads that are not MIME are returned as plain text.
    """
    if not _looks_like_mime(raw):
        return ParsedMessage(text=raw)

    msg = email.message_from_string(raw, policy=email.policy.compat32)
    parsed = ParsedMessage()

    for part in msg.walk():
        if part.is_multipart():
            continue

        disposition = part.get_content_disposition()
        filename = part.get_filename()
        if disposition == "attachment" or (disposition == "inline" and filename):
            parsed.attachments.append(
                AttachmentData(
                    filename=filename or "attachment.bin",
                    content=part.get_payload(decode=True) or b"",
                    mime_type=part.get_content_type(),
                )
            )
        elif part.get_content_type() == "text/plain" and not parsed.text:
            parsed.text = _decode_text(part)

    return parsed
