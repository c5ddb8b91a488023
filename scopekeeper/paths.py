"""
Scope paths and the backend key layout.

A ScopePath addresses exactly one state document:

    <application>/<stage>/state.json                 top-level scope
    <application>/<stage>/<nested...>/state.json     nested scopes
    <...>/.lock                                      lock marker
    <...>/.backups/<snapshot_id>.json                snapshots

Segments are restricted to filesystem/object-key-safe characters and may
not start with a dot, so scope directories never collide with ``.lock`` or
``.backups``.
"""

import re
from dataclasses import dataclass
from typing import Optional

STATE_FILE = "state.json"
LOCK_FILE = ".lock"
BACKUPS_DIR = ".backups"

MAX_SEGMENT_LENGTH = 128
_SEGMENT_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9._-]*$")


def validate_segment(segment: str) -> str:
    """
    Validate a single path segment.

    Args:
        segment: Candidate segment (application, stage or nested name)

    Returns:
        The segment unchanged

    Raises:
        ValueError: If the segment is empty, too long, or contains unsafe characters
    """
    if not isinstance(segment, str) or not segment:
        raise ValueError("scope path segment must be a non-empty string")
    if len(segment) > MAX_SEGMENT_LENGTH:
        raise ValueError(f"scope path segment longer than {MAX_SEGMENT_LENGTH} chars: {segment[:32]}...")
    if not _SEGMENT_RE.match(segment):
        raise ValueError(
            f"invalid scope path segment '{segment}': use letters, digits, '.', '_' or '-' "
            "and do not start with '.' or '-'"
        )
    if segment == STATE_FILE:
        raise ValueError(f"'{STATE_FILE}' is reserved and cannot be a scope path segment")
    return segment


def sanitize_segment(value: str) -> str:
    """
    Turn an arbitrary identifier into a valid segment.

    Used for user-supplied names such as branch names (``feature/login`` ->
    ``feature-login``).

    Raises:
        ValueError: If nothing filesystem-safe remains
    """
    cleaned = re.sub(r"[^A-Za-z0-9._-]+", "-", value.strip()).strip("-.")
    if not cleaned:
        raise ValueError(f"'{value}' contains no filesystem-safe characters")
    return cleaned[:MAX_SEGMENT_LENGTH]


@dataclass(frozen=True)
class ScopePath:
    """
    Ordered segments ``application/stage[/nested...]``.

    Attributes:
        segments: At least two validated segments
    """
    segments: tuple[str, ...]

    def __post_init__(self):
        if len(self.segments) < 2:
            raise ValueError("scope path needs at least application and stage segments")
        for segment in self.segments:
            validate_segment(segment)

    @classmethod
    def of(cls, application: str, stage: str, *nested: str) -> "ScopePath":
        return cls((application, stage, *nested))

    @classmethod
    def parse(cls, value: str) -> "ScopePath":
        """Parse ``app/stage/nested`` (surrounding slashes ignored)."""
        parts = tuple(p for p in value.strip().strip("/").split("/") if p)
        return cls(parts)

    @classmethod
    def from_state_key(cls, key: str) -> Optional["ScopePath"]:
        """Return the scope path owning ``key`` if it is a state document key."""
        parts = key.strip("/").split("/")
        if len(parts) < 3 or parts[-1] != STATE_FILE:
            return None
        try:
            return cls(tuple(parts[:-1]))
        except ValueError:
            return None

    @property
    def application(self) -> str:
        return self.segments[0]

    @property
    def stage(self) -> str:
        return self.segments[1]

    @property
    def nested(self) -> tuple[str, ...]:
        return self.segments[2:]

    @property
    def name(self) -> str:
        """Last segment."""
        return self.segments[-1]

    @property
    def depth(self) -> int:
        return len(self.segments)

    @property
    def parent(self) -> Optional["ScopePath"]:
        if len(self.segments) <= 2:
            return None
        return ScopePath(self.segments[:-1])

    def child(self, name: str) -> "ScopePath":
        return ScopePath((*self.segments, validate_segment(name)))

    def is_ancestor_of(self, other: "ScopePath") -> bool:
        return len(other.segments) > len(self.segments) and other.segments[: len(self.segments)] == self.segments

    @property
    def prefix(self) -> str:
        return "/".join(self.segments)

    @property
    def state_key(self) -> str:
        return f"{self.prefix}/{STATE_FILE}"

    @property
    def lock_key(self) -> str:
        return f"{self.prefix}/{LOCK_FILE}"

    @property
    def backups_prefix(self) -> str:
        return f"{self.prefix}/{BACKUPS_DIR}/"

    def backup_key(self, snapshot_id: str) -> str:
        return f"{self.backups_prefix}{snapshot_id}.json"

    def __str__(self) -> str:
        return self.prefix
