from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo
from logging import basicConfig, getLogger
from typing import Optional

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%dT%H:%M:%SZ"
LOG = getLogger(__name__)


def configure_logging(level: str) -> None:
    basicConfig(format=LOG_FORMAT, datefmt=LOG_DATE_FORMAT, level=level)


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def now_tz(tz_name: str) -> datetime:
    try:
        return datetime.now(ZoneInfo(tz_name))
    except Exception as error:
        LOG.warning("Falling back to UTC; invalid timezone %s: %s", tz_name, error)
        return datetime.now(timezone.utc)


def parse_timestamp(value) -> Optional[datetime]:
    """Parse ISO-8601 and SQLite ``YYYY-MM-DD HH:MM:SS`` strings as UTC datetimes."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)
    try:
        # Docker reports nanoseconds, e.g. 2025-01-01T00:00:00.000000000Z
        text = str(value).strip().replace(" ", "T", 1)
        if text.endswith("Z"):
            text = text[:-1]
        if "." in text:
            head, _, fraction = text.partition(".")
            digits = ""
            for ch in fraction:
                if not ch.isdigit():
                    break
                digits += ch
            rest = fraction[len(digits):]
            text = f"{head}.{digits[:6].ljust(6, '0')}{rest}"
        parsed = datetime.fromisoformat(text)
    except (ValueError, TypeError):
        LOG.debug("Could not parse timestamp %r", value)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat()


def normalize_digest(digest: Optional[str]) -> Optional[str]:
    if not digest:
        return None
    value = str(digest).strip()
    if "@" in value:
        value = value.split("@", 1)[1]
    lowered = value.lower()
    if lowered.startswith("sha256:"):
        lowered = lowered[len("sha256:"):]
    return lowered or None


def split_image_ref(image: Optional[str]) -> tuple[str, str]:
    """Return ``(repository, tag)``, defaulting the tag to ``latest``."""
    if not image:
        return "", "latest"
    reference = image.split("@", 1)[0]
    last_segment = reference.rsplit("/", 1)[-1]
    if ":" in last_segment:
        repository, tag = reference.rsplit(":", 1)
        return repository, tag
    return reference, "latest"


def short_id(identifier: Optional[str]) -> str:
    if identifier is None:
        return "unknown"
    return identifier.split(":")[-1][:12]


def format_human(dt: datetime, reference: datetime) -> str:
    if dt.tzinfo is not None and reference.tzinfo is not None:
        dt = dt.astimezone(reference.tzinfo)
    reference_date = reference.date()
    date_part = dt.date()
    if date_part == reference_date:
        prefix = "today"
    elif date_part == reference_date + timedelta(days=1):
        prefix = "tomorrow"
    else:
        prefix = date_part.isoformat()
    return f"{prefix} {dt.strftime('%H:%M')}"
