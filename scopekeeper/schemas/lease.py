"""
Lease - a time-bounded mutual-exclusion marker over a Scope Path.

Serialized as the JSON body of ``<scope>/.lock``.
"""

import json
import os
import socket
import uuid
from dataclasses import dataclass
from typing import Any


def new_holder_id() -> str:
    """Holder identity for this process: ``hostname:pid:random``."""
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


@dataclass(frozen=True)
class Lease:
    """
    A lock lease on one scope path.

    Attributes:
        scope_path: The locked scope path
        holder_id: Identity of the holder (see ``new_holder_id``)
        acquired_at: Acquisition time in epoch milliseconds
        ttl_ms: Lease lifetime in milliseconds
        hostname: Host the holder ran on
        pid: Process id of the holder
    """
    scope_path: str
    holder_id: str
    acquired_at: int
    ttl_ms: int
    hostname: str = ""
    pid: int = 0

    def __post_init__(self):
        if self.ttl_ms <= 0:
            raise ValueError("Lease ttl_ms must be positive")

    @property
    def expires_at(self) -> int:
        return self.acquired_at + self.ttl_ms

    def is_expired(self, now: int) -> bool:
        """A lease is expired once ``now > acquired_at + ttl``."""
        return now > self.expires_at

    def remaining_ms(self, now: int) -> int:
        return max(0, self.expires_at - now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "scopePath": self.scope_path,
            "holderId": self.holder_id,
            "acquiredAt": self.acquired_at,
            "ttl": self.ttl_ms,
            "hostname": self.hostname,
            "pid": self.pid,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Lease":
        return cls(
            scope_path=str(data["scopePath"]),
            holder_id=str(data["holderId"]),
            acquired_at=int(data["acquiredAt"]),
            ttl_ms=int(data["ttl"]),
            hostname=str(data.get("hostname", "")),
            pid=int(data.get("pid", 0)),
        )

    def to_json(self) -> bytes:
        return json.dumps(self.to_dict(), sort_keys=True).encode("utf-8")

    @classmethod
    def from_json(cls, payload: bytes) -> "Lease":
        """
        Raises:
            ValueError: If the marker body is not a valid lease
        """
        try:
            data = json.loads(payload.decode("utf-8"))
            if not isinstance(data, dict):
                raise ValueError("lease marker must be a JSON object")
            return cls.from_dict(data)
        except (KeyError, TypeError, OverflowError, UnicodeDecodeError) as e:
            raise ValueError(f"invalid lease marker: {e}") from e
