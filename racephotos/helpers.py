import time
import re
from datetime import datetime, timezone
from typing import Optional

from .errors import ValidationError


_BIB_RE = re.compile(r"^[A-Z0-9-]{1,20}$")


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def is_valid_email(email: Optional[str]) -> bool:
    if not email:
        return False
    email = email.strip()
    # simple but effective email check
    return re.match(r"^[^@\s]+@[^@\s]+\.[^@\s]+$", email) is not None


def normalize_bib(raw: Optional[str]) -> str:
    """Bib numbers are the runner's only credential: upper-cased, trimmed."""
    bib = str(raw or "").strip().upper()
    if not _BIB_RE.match(bib):
        raise ValidationError("invalid bib number")
    return bib


def photo_ids_from(value) -> list[str]:
    """Validate a list of photo ids from a request body, keeping order and
    dropping duplicates."""
    if not isinstance(value, list):
        raise ValidationError("selected_photo_ids must be an array")
    out: list[str] = []
    for item in value:
        if not isinstance(item, str) or not item:
            raise ValidationError("photo ids must be non-empty strings")
        if item not in out:
            out.append(item)
    return out
