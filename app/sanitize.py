"""Credential scrubbing and redaction for inbound query strings."""

import unicodedata
from typing import Tuple
from urllib.parse import quote, unquote_plus

REDACTED = "REDACTED"


class BadRequestError(ValueError):
    """The inbound URL could not be interpreted."""


def sanitize_credential_value(value: str) -> str:
    """Strip invisible format characters (Unicode Cf) and all whitespace."""
    return "".join(
        ch for ch in value
        if unicodedata.category(ch) != "Cf" and not ch.isspace()
    )


def _decode(component: str) -> str:
    try:
        return unquote_plus(component, errors="strict")
    except UnicodeDecodeError as e:
        raise BadRequestError(f"Malformed query string component: {component!r}") from e


def sanitize_query(query: str, param: str) -> Tuple[str, bool]:
    """
    Scrub every value of the credential parameter in a raw query string.

    Other parameters are kept byte-for-byte and in their original order, so
    the result is still usable as the verbatim part of a cache key.

    Returns:
        (query, changed) where changed is True if any credential value was altered

    Raises:
        BadRequestError: If a parameter name or credential value is not valid UTF-8
    """
    if not query:
        return query, False

    changed = False
    segments = []
    for segment in query.split("&"):
        name, sep, value = segment.partition("=")
        if sep and _decode(name) == param:
            decoded = _decode(value)
            cleaned = sanitize_credential_value(decoded)
            if cleaned != decoded:
                changed = True
                segment = f"{name}={quote(cleaned, safe='')}"
        else:
            _decode(name)
        segments.append(segment)

    return "&".join(segments), changed


def redact_query(query: str, param: str) -> str:
    """Replace credential values with REDACTED for logging."""
    if not query:
        return query
    segments = []
    for segment in query.split("&"):
        name, sep, _ = segment.partition("=")
        is_credential = sep and unquote_plus(name) == param
        segments.append(f"{name}={REDACTED}" if is_credential else segment)
    return "&".join(segments)


def path_for_log(path: str, query: str, param: str) -> str:
    redacted = redact_query(query, param)
    return f"{path}?{redacted}" if redacted else path
