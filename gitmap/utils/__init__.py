"""Provide utilities that should not be aware of gitmap."""
import datetime
import os
import posixpath
from typing import List, Optional

_os_alt_seps: List[str] = list(
    sep for sep in [os.path.sep, os.path.altsep] if sep is not None and sep != "/"
)


def utc_now() -> datetime.datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.datetime.now(datetime.timezone.utc)


def utc_timestamp(delta: Optional[datetime.timedelta] = None) -> str:
    """Return an ISO-8601 UTC timestamp, optionally shifted by `delta`."""
    now = utc_now()
    if delta is not None:
        now = now + delta
    return now.isoformat()


def parse_timestamp(value) -> Optional[datetime.datetime]:
    """Parse a stored timestamp into an aware datetime.

    Naive values are assumed to be UTC, which is what every storage backend
    writes.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime.datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.datetime.fromisoformat(text.replace(" ", "T", 1))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=datetime.timezone.utc)
    return parsed


def safe_join(directory: str, *pathnames: str) -> str:
    """Safely join zero or more untrusted path components to a base directory.

    This avoids escaping the base directory.
    :param directory: The trusted base directory.
    :param pathnames: The untrusted path components relative to the
        base directory.
    :return: A safe path.
    :raises ValueError: If a component would leave the base directory.

    Adapted from werkzeug.security.safe_join.
    """
    parts = [directory]

    for filename in pathnames:
        if filename != "":
            filename = posixpath.normpath(filename)

        if (
            any(sep in filename for sep in _os_alt_seps)
            or os.path.isabs(filename)
            or filename == ".."
            or filename.startswith("../")
        ):
            raise ValueError(
                f"Illegal file path: `{filename}`, "
                "you can only operate within the work directory."
            )

        parts.append(filename)

    return posixpath.join(*parts)
