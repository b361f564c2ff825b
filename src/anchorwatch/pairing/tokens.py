"""Session tokens and join links."""

import re
import secrets
import string
from urllib.parse import parse_qs, urlencode, urlsplit

from anchorwatch.errors import InvalidTokenError

TOKEN_LENGTH = 32
TOKEN_ALPHABET = string.ascii_uppercase + string.digits

_TOKEN_RE = re.compile(r"[A-Z0-9]+")


def generate_token() -> str:
    """Return a new session token from a cryptographically secure source."""
    return "".join(secrets.choice(TOKEN_ALPHABET) for _ in range(TOKEN_LENGTH))


def is_valid_token_format(token: object) -> bool:
    return (
        isinstance(token, str)
        and len(token) == TOKEN_LENGTH
        and _TOKEN_RE.fullmatch(token) is not None
    )


def require_valid_token(token: object) -> str:
    if not is_valid_token_format(token):
        raise InvalidTokenError(token)
    return token  # type: ignore[return-value]


def join_link(token: str, scheme: str = "anchorwatch") -> str:
    """Deep link a secondary device opens to join ``token``."""
    require_valid_token(token)
    return f"{scheme}://join?{urlencode({'sessionId': token, 'token': token})}"


def parse_join_link(link: str) -> str:
    """Extract the session token from a join link or a bare token.

    Raises InvalidTokenError if no well-formed token is found.
    """
    text = link.strip()
    if is_valid_token_format(text):
        return text

    parts = urlsplit(text)
    if parts.netloc != "join" and parts.path.strip("/") != "join":
        raise InvalidTokenError(text)
    params = parse_qs(parts.query)
    candidate = (params.get("sessionId") or params.get("token") or [""])[0]
    return require_valid_token(candidate)
