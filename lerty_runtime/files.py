"""
File attachment helpers.

Type checks against an allow-list of MIME patterns, name/type inference
from URLs, content signature checks and the guarded download used by the
dispatcher.
"""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING, Iterable
from urllib.parse import unquote, urlsplit

import httpx

from lerty_runtime.errors import AttachmentError
from lerty_runtime.types import AttachmentPolicy, CanonicalMessage, FileAttachment

if TYPE_CHECKING:
    from lerty_runtime.http import LertyHttp

logger = logging.getLogger(__name__)

DEFAULT_MIME_TYPE = "application/octet-stream"

EXTENSION_TYPES = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "webp": "image/webp",
    "txt": "text/plain",
    "csv": "text/csv",
    "pdf": "application/pdf",
    "json": "application/json",
    "xml": "application/xml",
    "zip": "application/zip",
    "doc": "application/msword",
    "docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "xls": "application/vnd.ms-excel",
    "xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
}

# Leading bytes for the types we can verify
FILE_SIGNATURES: dict[str, tuple[bytes, ...]] = {
    "image/jpeg": (b"\xff\xd8\xff",),
    "image/png": (b"\x89PNG\r\n\x1a\n",),
    "image/gif": (b"GIF8",),
    "application/pdf": (b"%PDF",),
    "application/zip": (b"PK\x03\x04", b"PK\x05\x06"),
}

_UNSAFE_CHARS_RE = re.compile(r"[^a-zA-Z0-9._-]")
_REPEATED_UNDERSCORE_RE = re.compile(r"_{2,}")


def mime_allowed(mime_type: str, patterns: Iterable[str]) -> bool:
    """Whether ``mime_type`` matches one of ``patterns``.

    A pattern is an exact type (``application/pdf``) or a category wildcard
    (``image/*``). Matching ignores case and MIME parameters.
    """
    candidate = mime_type.split(";", 1)[0].strip().lower()
    if not candidate:
        return False
    category = candidate.split("/", 1)[0]
    for pattern in patterns:
        pattern = pattern.strip().lower()
        if pattern in ("*", "*/*") or pattern == candidate:
            return True
        if pattern.endswith("/*") and pattern[:-2] == category:
            return True
    return False


def extract_file_info(url: str) -> tuple[str, str]:
    """File name and MIME type guessed from the last path segment of ``url``."""
    path = urlsplit(url).path or url
    name = unquote(path.rstrip("/").rsplit("/", 1)[-1])
    extension = name.rsplit(".", 1)[-1].lower() if "." in name else ""
    return name, EXTENSION_TYPES.get(extension, DEFAULT_MIME_TYPE)


def sanitize_file_name(name: str) -> str:
    cleaned = _UNSAFE_CHARS_RE.sub("_", name)
    cleaned = _REPEATED_UNDERSCORE_RE.sub("_", cleaned)
    return cleaned.strip("_")


def validate_file_content(data: bytes, expected_type: str) -> bool:
    """Check ``data`` against the known signature for ``expected_type``.

    Empty data is never valid; types without a known signature pass.
    """
    if not data:
        return False
    signatures = FILE_SIGNATURES.get(expected_type.lower())
    if not signatures:
        return True
    return any(data.startswith(sig) for sig in signatures)


def format_file_size(size: int) -> str:
    if size <= 0:
        return "0 Bytes"
    units = ("Bytes", "KB", "MB", "GB")
    value = float(size)
    exponent = 0
    while value >= 1024 and exponent < len(units) - 1:
        value /= 1024
        exponent += 1
    return f"{round(value, 2):g} {units[exponent]}"


def describe_attachment(message: CanonicalMessage) -> FileAttachment | None:
    """Attachment reference for ``message`` without downloading it."""
    if not message.file_url:
        return None
    guessed_name, guessed_type = extract_file_info(message.file_url)
    return FileAttachment(
        url=message.file_url,
        name=message.file_name or sanitize_file_name(guessed_name) or "file",
        type=message.file_type or guessed_type,
    )


async def fetch_attachment(
    http: LertyHttp,
    message: CanonicalMessage,
    policy: AttachmentPolicy,
) -> FileAttachment:
    """Download the file referenced by ``message`` within ``policy`` limits.

    Raises:
        AttachmentError: If the message has no file, the type is not
            allowed, the download fails, the file is too large or its
            content does not match its declared type.
    """
    try:
        attachment = describe_attachment(message)
    except ValueError as e:
        raise AttachmentError(f"Malformed file url {message.file_url!r}: {e}") from e
    if attachment is None:
        raise AttachmentError("Message has no file attachment")
    if not mime_allowed(attachment.type, policy.allowed_types):
        raise AttachmentError(f"File type {attachment.type} is not allowed")

    try:
        data = await http.download_file(attachment.url, max_size=policy.max_size)
    except (httpx.HTTPError, httpx.InvalidURL, ValueError) as e:
        raise AttachmentError(f"Failed to download {attachment.name}: {e}") from e

    if not validate_file_content(data, attachment.type):
        raise AttachmentError(f"Content of {attachment.name} does not match {attachment.type}")

    logger.debug("Fetched attachment %s (%s)", attachment.name, format_file_size(len(data)))
    return attachment.model_copy(update={"data": data, "size": len(data)})
