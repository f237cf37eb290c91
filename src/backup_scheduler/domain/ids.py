import re
import uuid
from datetime import datetime, timezone

SAFE_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,127}$")


def generate_id(prefix: str) -> str:
    """
    Build a sortable, filesystem-safe record id, e.g. ``job_20240101_020000_1a2b3c4d``.
    """
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
    return f"{prefix}_{stamp}_{uuid.uuid4().hex[:8]}"


def check_id(value: str) -> str:
    if not SAFE_ID_PATTERN.match(value):
        raise ValueError(f"Unsafe record id: {value!r}")
    return value
