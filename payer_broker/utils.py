"""Small helpers shared across the broker."""

import hashlib
import json
import secrets
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Optional
from uuid import UUID

from .constants import AUTHORIZATION_TOKEN_BYTES, TOKEN_PREVIEW_LENGTH

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def ensure_aware(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes coming back from storage as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def generate_token() -> str:
    """256-bit random token, hex encoded."""
    return secrets.token_hex(AUTHORIZATION_TOKEN_BYTES)


def mask_token(token: Optional[str]) -> Optional[str]:
    if not token:
        return token
    return f"{token[:TOKEN_PREVIEW_LENGTH]}..."


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return ensure_aware(value).isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def canonical_json(value: Any) -> str:
    """Deterministic JSON encoding: sorted keys, no whitespace."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=_json_default)


def sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()
