"""
app/content_validator.py
-----------------------------------------------------------------------------
Structural sanity checks for submitted HTML payloads.

The validator is a heuristic gate, not a parser.  It answers one question:
"does this look enough like an HTML document to drop into a web view?"
Everything here is pure: no I/O, no network, no ``app.*`` state.

Exports
-------
validate_payload(payload, *, source, filename) -> ValidPayload
    Decode and check a payload, raising ``InvalidPayload`` on rejection.
"""

from __future__ import annotations

from pathlib import PurePosixPath

from app.errors import InvalidPayload
from app.schema import PayloadSource, ValidPayload

# Lower-case markers; at least one must appear somewhere in the text.
HTML_MARKERS: tuple[str, ...] = ("<!doctype html", "<html", "<body")

# Only consulted for file uploads.  Pasted text has no filename.
ALLOWED_EXTENSIONS: frozenset[str] = frozenset({".html", ".htm"})

_UTF8_BOM = b"\xef\xbb\xbf"


# -----------------------------------------------------------------------------
# Payload validation
# -----------------------------------------------------------------------------


def looks_like_html(text: str) -> bool:
    """Return True if *text* contains a doctype, ``<html`` or ``<body`` marker."""
    lowered = text.lower()
    return any(marker in lowered for marker in HTML_MARKERS)


def validate_payload(
    payload: bytes,
    *,
    source: PayloadSource,
    filename: str | None = None,
) -> ValidPayload:
    """
    Check a submitted payload and return it decoded.

    Checks run cheapest-first so the rejection reason names the first
    problem found:

    1. Empty payload.
    2. File uploads must carry a ``.html`` or ``.htm`` extension.
    3. The bytes must decode as UTF-8 (a leading BOM is dropped).
    4. The text must contain at least one HTML marker, case-insensitively.

    Parameters
    ----------
    payload  : Raw submitted bytes.
    source   : Whether the content was pasted or uploaded as a file.
    filename : Original filename for file uploads; ignored for pasted text.

    Returns
    -------
    ValidPayload : The decoded text plus its UTF-8 bytes.

    Raises
    ------
    InvalidPayload
        With a human-readable reason.
    """
    if not payload:
        raise InvalidPayload("No HTML provided. Paste code or upload an .html file.")

    if source is PayloadSource.FILE:
        extension = PurePosixPath((filename or "").lower()).suffix
        if extension not in ALLOWED_EXTENSIONS:
            raise InvalidPayload(
                "Uploaded file not supported for direct replacement. "
                "Upload .html or use paste."
            )

    if payload.startswith(_UTF8_BOM):
        payload = payload[len(_UTF8_BOM) :]

    try:
        text = payload.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise InvalidPayload(f"Payload is not valid UTF-8 text: {exc.reason}") from exc

    if not text.strip():
        raise InvalidPayload("No HTML provided. Paste code or upload an .html file.")

    if not looks_like_html(text):
        raise InvalidPayload("Provided content does not look like valid HTML.")

    return ValidPayload(text=text, content=text.encode("utf-8"), source=source)
