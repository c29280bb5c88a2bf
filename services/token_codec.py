"""Opaque proxy tokens: one (session id, upstream URL) pair per path segment."""

import base64
import binascii

SEPARATOR = "|"


class InvalidToken(ValueError):
    """The token is not valid base64 or does not carry a session/URL pair."""
    pass


def encode(session_id: str, url: str) -> str:
    payload = f"{session_id}{SEPARATOR}{url}".encode("utf-8")
    return base64.urlsafe_b64encode(payload).decode("ascii").rstrip("=")


def decode(token: str) -> tuple[str, str]:
    """Returns (session_id, url). Raises InvalidToken on any malformed input."""
    if not token:
        raise InvalidToken("empty token")

    padded = token + "=" * (-len(token) % 4)
    try:
        payload = base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8")
    except (binascii.Error, UnicodeError, ValueError) as e:
        raise InvalidToken(f"undecodable token: {e}") from e

    # Session ids never contain the separator, so the first one is the boundary
    session_id, sep, url = payload.partition(SEPARATOR)
    if not sep or not session_id or not url:
        raise InvalidToken("token does not contain a session and a URL")
    return session_id, url
