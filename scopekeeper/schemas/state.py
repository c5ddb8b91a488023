"""
ScopeState - the persisted document at a Scope Path.

Wire format (JSON):

    {
      "schemaVersion": 1,
      "scopePath": "myapp/prod",
      "createdAt": 1718000000000,
      "updatedAt": 1718000000123,
      "resources": {"<key>": {ResourceRecord}},
      "nestedScopes": ["backend", "frontend"]
    }

``from_json`` raises ValueError for anything that is not a valid document;
the StateStore turns that into CorruptedStateError.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Optional

from .resource import ResourceRecord, _as_millis

SCHEMA_VERSION = 1


@dataclass
class ScopeState:
    """
    In-memory form of a Scope State document.

    Attributes:
        scope_path: Path the document belongs to
        resources: Records keyed by caller-chosen logical key
        nested_scopes: Names of nested scopes (set semantics)
        created_at: When the document was first created (epoch ms)
        updated_at: Last successful write (epoch ms); strictly increasing
        schema_version: Document schema version
    """
    scope_path: str
    resources: dict[str, ResourceRecord] = field(default_factory=dict)
    nested_scopes: set[str] = field(default_factory=set)
    created_at: int = 0
    updated_at: int = 0
    schema_version: int = SCHEMA_VERSION

    @classmethod
    def empty(cls, scope_path: str, now: int = 0) -> "ScopeState":
        """A brand-new document with no resources and no nested scopes."""
        return cls(scope_path=scope_path, created_at=now, updated_at=0)

    @property
    def is_new(self) -> bool:
        """True until the document has been written once."""
        return self.updated_at == 0

    def copy(self) -> "ScopeState":
        """Copy with independent resource map and nested set (records are immutable)."""
        return ScopeState(
            scope_path=self.scope_path,
            resources=dict(self.resources),
            nested_scopes=set(self.nested_scopes),
            created_at=self.created_at,
            updated_at=self.updated_at,
            schema_version=self.schema_version,
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the persisted document shape."""
        return {
            "schemaVersion": self.schema_version,
            "scopePath": self.scope_path,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "resources": {key: record.to_dict() for key, record in sorted(self.resources.items())},
            "nestedScopes": sorted(self.nested_scopes),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], scope_path: Optional[str] = None) -> "ScopeState":
        """
        Deserialize and validate a document.

        Raises:
            ValueError: If the document is malformed or uses a newer schema
        """
        if not isinstance(data, dict):
            raise ValueError(f"state document must be an object, got {type(data).__name__}")
        try:
            version = data["schemaVersion"]
            if isinstance(version, bool) or not isinstance(version, int):
                raise ValueError(f"schemaVersion must be an integer, got {version!r}")
            if version > SCHEMA_VERSION:
                raise ValueError(f"schemaVersion {version} is newer than supported {SCHEMA_VERSION}")

            raw_resources = data.get("resources", {})
            if not isinstance(raw_resources, dict):
                raise ValueError("resources must be an object")
            resources = {
                str(key): ResourceRecord.from_dict(value)
                for key, value in raw_resources.items()
            }

            raw_nested = data.get("nestedScopes", [])
            if not isinstance(raw_nested, list) or not all(isinstance(n, str) for n in raw_nested):
                raise ValueError("nestedScopes must be a list of strings")

            return cls(
                scope_path=str(data.get("scopePath") or scope_path or ""),
                resources=resources,
                nested_scopes=set(raw_nested),
                created_at=_as_millis(data.get("createdAt", 0), "createdAt"),
                updated_at=_as_millis(data["updatedAt"], "updatedAt"),
                schema_version=version,
            )
        except KeyError as e:
            raise ValueError(f"missing required field {e}") from e
        except TypeError as e:
            raise ValueError(str(e)) from e

    def to_json(self) -> bytes:
        return json.dumps(self.to_dict(), indent=2, sort_keys=True).encode("utf-8")

    @classmethod
    def from_json(cls, payload: bytes, scope_path: Optional[str] = None) -> "ScopeState":
        """
        Parse a serialized document.

        Raises:
            ValueError: If the bytes are not UTF-8 JSON or fail validation
        """
        if not payload or not payload.strip():
            raise ValueError("document is empty")
        try:
            data = json.loads(payload.decode("utf-8"))
        except UnicodeDecodeError as e:
            raise ValueError("document contains invalid UTF-8 data") from e
        return cls.from_dict(data, scope_path=scope_path)
