"""Small shared helpers: identifiers, clock and text"""

import uuid
import secrets
from datetime import datetime, timezone
from typing import Optional


def generate_uuid() -> str:
    return str(uuid.uuid4())


def utc_now() -> datetime:
    """Naive UTC timestamp; every DateTime column stores naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def generate_order_number(now: Optional[datetime] = None) -> str:
    """Human-facing order reference, e.g. ORD-20260118-3FA9C2"""
    stamp = (now or utc_now()).strftime("%Y%m%d")
    return f"ORD-{stamp}-{secrets.token_hex(3).upper()}"


def truncate_text(text: str, max_length: int = 100) -> str:
    if not text or len(text) <= max_length:
        return text or ""
    return text[: max_length - 3] + "..."
