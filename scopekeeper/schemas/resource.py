"""
ResourceRecord - one tracked unit within a scope.

The metadata payload is opaque to the engine: it is stored and returned
verbatim and only interpreted by the Destroyable registered for the
record's ``type``. It must be JSON-serializable.
"""

import math
from dataclasses import dataclass, replace
from typing import Any, Optional


@dataclass(frozen=True)
class ResourceRecord:
    """
    A resource tracked in a Scope State document.

    Attributes:
        id: Provider-side identifier, unique within the scope
        type: Resource kind tag used to select a Destroyable (e.g. "worker", "bucket")
        name: Human-readable name
        created_at: Creation time in epoch milliseconds
        updated_at: Last update time in epoch milliseconds
        metadata: Opaque, type-specific payload
    """
    id: str
    type: str
    name: str
    created_at: int
    updated_at: int
    metadata: Any = None

    def __post_init__(self):
        if not self.id:
            raise ValueError("ResourceRecord.id is required")
        if not self.type:
            raise ValueError("ResourceRecord.type is required")
        if not isinstance(self.created_at, int) or not isinstance(self.updated_at, int):
            raise ValueError("ResourceRecord timestamps must be epoch milliseconds (int)")

    @classmethod
    def create(
        cls,
        id: str,
        type: str,
        name: Optional[str] = None,
        metadata: Any = None,
        *,
        now: int,
    ) -> "ResourceRecord":
        """Build a fresh record stamped with ``now`` for both timestamps."""
        return cls(
            id=id,
            type=type,
            name=name if name is not None else id,
            created_at=now,
            updated_at=now,
            metadata=metadata,
        )

    def touched(self, now: int) -> "ResourceRecord":
        """Return a copy with ``updated_at`` moved to ``now``."""
        return replace(self, updated_at=max(now, self.updated_at))

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the persisted (camelCase) document shape."""
        return {
            "id": self.id,
            "type": self.type,
            "name": self.name,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ResourceRecord":
        """Deserialize from the persisted document shape."""
        if not isinstance(data, dict):
            raise ValueError(f"resource record must be an object, got {type(data).__name__}")
        return cls(
            id=str(data["id"]),
            type=str(data["type"]),
            name=str(data.get("name") or data["id"]),
            created_at=_as_millis(data["createdAt"], "createdAt"),
            updated_at=_as_millis(data["updatedAt"], "updatedAt"),
            metadata=data.get("metadata"),
        )


def _as_millis(value: Any, field_name: str) -> int:
    # bool is an int subclass; json.loads also accepts Infinity and NaN
    if (
        isinstance(value, bool)
        or not isinstance(value, (int, float))
        or (isinstance(value, float) and not math.isfinite(value))
    ):
        raise ValueError(f"{field_name} must be epoch milliseconds, got {value!r}")
    return int(value)
