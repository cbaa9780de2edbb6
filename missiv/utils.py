"""
Utility functions shared by the store, protocol and API layers.
"""

import re
import uuid
from datetime import datetime, timezone

# Desks are addressed by phone-number-style 10-digit ids
DESK_ID_PATTERN = r"^\d{10}$"
_DESK_ID_RE = re.compile(DESK_ID_PATTERN)


def iso_now() -> str:
    """
    Current server time as an ISO-8601 UTC string.

    Microsecond precision with a Z suffix keeps the strings
    lexicographically sortable, so they can be ordered in SQL directly.
    """
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def new_id() -> str:
    """Generate an opaque identifier for conversations, mivs and notifications."""
    return uuid.uuid4().hex


def is_valid_desk_id(desk_id: str) -> bool:
    return bool(_DESK_ID_RE.match(desk_id or ""))
