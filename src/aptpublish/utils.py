import datetime
import hashlib
import logging
from collections.abc import Iterable
from pathlib import Path

from dateutil.parser import parse as parse_date

logger = logging.getLogger(__name__)

RELEASE_DATE_FORMAT = "%a, %d %b %Y %H:%M:%S UTC"


def try_parse_date(date_str: str | None) -> datetime.datetime | None:
    """Parse a Release Date/Valid-Until value, None if absent or unparseable."""
    try:
        return parse_date(date_str) if date_str else None
    except (ValueError, OverflowError) as e:
        logger.debug(f"Failed to parse date '{date_str}': {e}")
        return None


def format_release_date(value: datetime.datetime) -> str:
    """Format a timestamp the way apt expects in Release files (always UTC)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=datetime.UTC)
    return value.astimezone(datetime.UTC).strftime(RELEASE_DATE_FORMAT)


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.UTC)


def hash_bytes(data: bytes, algorithms: Iterable[str]) -> dict[str, str]:
    """Return hex digests of `data` keyed by hashlib algorithm name."""
    return {name: hashlib.new(name, data).hexdigest() for name in algorithms}


def hash_file(path: Path, algorithms: Iterable[str], chunk_size: int = 1 << 16) -> tuple[int, dict[str, str]]:
    """Stream a file through several digests at once.

    Returns:
        Tuple of (size in bytes, {algorithm: hexdigest})
    """
    hashers = {name: hashlib.new(name) for name in algorithms}
    size = 0
    with path.open("rb") as f:
        while chunk := f.read(chunk_size):
            size += len(chunk)
            for hasher in hashers.values():
                hasher.update(chunk)
    return size, {name: hasher.hexdigest() for name, hasher in hashers.items()}
