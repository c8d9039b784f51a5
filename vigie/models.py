from dataclasses import dataclass, field, fields, replace
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from .errors import SchemaDrift
from .utils import format_timestamp, normalize_digest, parse_timestamp, split_image_ref

SCHEMA_VERSION = 2
STANDALONE_STACK = "Standalone"

UPDATE_FIELDS = ("latest_digest", "latest_tag", "checked_at", "registry_missing")


@dataclass(frozen=True)
class TrackedItem:
    id: str
    name: str
    image: str
    instance: str
    owner_group_key: Optional[str] = None
    current_digest: Optional[str] = None
    repo_digests: tuple[str, ...] = ()
    provides_network: Optional[bool] = None
    uses_network_mode: Optional[bool] = None
    latest_digest: Optional[str] = None
    latest_tag: Optional[str] = None
    checked_at: Optional[datetime] = None
    registry_missing: bool = False

    @property
    def current_tag(self) -> str:
        return split_image_ref(self.image)[1]

    @property
    def has_update_available(self) -> bool:
        if self.registry_missing:
            return False
        latest = normalize_digest(self.latest_digest)
        current = normalize_digest(self.current_digest)
        if latest and current:
            # Multi-arch images carry one repo digest per manifest list entry
            if latest in {normalize_digest(digest) for digest in self.repo_digests}:
                return False
            return latest != current
        if latest:
            return False
        if self.latest_tag and self.current_tag:
            return self.latest_tag != self.current_tag
        return False

    @property
    def has_topology(self) -> bool:
        return self.provides_network is not None and self.uses_network_mode is not None

    @property
    def has_registry_result(self) -> bool:
        return self.checked_at is not None

    def with_update_fields_from(self, other: "TrackedItem") -> "TrackedItem":
        return replace(self, **{name: getattr(other, name) for name in UPDATE_FIELDS})

    def cleared(self, checked_at: datetime) -> "TrackedItem":
        return replace(
            self,
            latest_digest=None,
            latest_tag=None,
            checked_at=checked_at,
            registry_missing=True,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "image": self.image,
            "instance": self.instance,
            "owner_group_key": self.owner_group_key,
            "current_digest": self.current_digest,
            "repo_digests": list(self.repo_digests),
            "provides_network": self.provides_network,
            "uses_network_mode": self.uses_network_mode,
            "latest_digest": self.latest_digest,
            "latest_tag": self.latest_tag,
            "checked_at": format_timestamp(self.checked_at),
            "registry_missing": self.registry_missing,
        }

    def to_view(self) -> dict[str, Any]:
        data = self.to_dict()
        data["current_tag"] = self.current_tag
        data["has_update_available"] = self.has_update_available
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TrackedItem":
        # Older cache rows may lack topology flags or carry a stale has_update
        # boolean; neither is trusted here.
        return cls(
            id=str(data["id"]),
            name=data.get("name") or str(data["id"])[:12],
            image=data.get("image") or "",
            instance=data.get("instance") or "",
            owner_group_key=data.get("owner_group_key"),
            current_digest=data.get("current_digest"),
            repo_digests=tuple(data.get("repo_digests") or ()),
            provides_network=data.get("provides_network"),
            uses_network_mode=data.get("uses_network_mode"),
            latest_digest=data.get("latest_digest"),
            latest_tag=data.get("latest_tag"),
            checked_at=parse_timestamp(data.get("checked_at")),
            registry_missing=bool(data.get("registry_missing", False)),
        )


def group_stacks(items: list[TrackedItem]) -> list[dict[str, Any]]:
    grouped: dict[str, list[TrackedItem]] = {}
    for item in items:
        grouped.setdefault(item.owner_group_key or STANDALONE_STACK, []).append(item)
    names = sorted(name for name in grouped if name != STANDALONE_STACK)
    if STANDALONE_STACK in grouped:
        names.append(STANDALONE_STACK)
    return [{"stack_name": name, "item_ids": [item.id for item in grouped[name]]} for name in names]


@dataclass(frozen=True)
class CachePayload:
    items: tuple[TrackedItem, ...] = ()
    unused_count: Optional[int] = None

    @property
    def stacks(self) -> list[dict[str, Any]]:
        return group_stacks(list(self.items))

    def to_dict(self) -> dict[str, Any]:
        return {
            "items": [item.to_dict() for item in self.items],
            "stacks": self.stacks,
            "unused_count": self.unused_count,
        }


@dataclass(frozen=True)
class CacheMetadata:
    last_cheap_refresh: Optional[datetime] = None
    last_expensive_refresh: Optional[datetime] = None
    schema_version: int = SCHEMA_VERSION

    def patched(self, patch: dict[str, Any]) -> "CacheMetadata":
        known = {item.name for item in fields(self)}
        unknown = set(patch) - known
        if unknown:
            raise ValueError(f"unknown metadata fields: {', '.join(sorted(unknown))}")
        return replace(self, **patch)

    def to_dict(self) -> dict[str, Any]:
        return {
            "last_cheap_refresh": format_timestamp(self.last_cheap_refresh),
            "last_expensive_refresh": format_timestamp(self.last_expensive_refresh),
            "schema_version": self.schema_version,
        }

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> "CacheMetadata":
        data = data or {}
        return cls(
            last_cheap_refresh=parse_timestamp(data.get("last_cheap_refresh")),
            last_expensive_refresh=parse_timestamp(data.get("last_expensive_refresh")),
            schema_version=int(data.get("schema_version") or 1),
        )


@dataclass(frozen=True)
class CacheEntry:
    key: str
    payload: CachePayload
    metadata: CacheMetadata
    legacy_update_flags: bool = False

    def drift_reason(self) -> Optional[str]:
        if self.metadata.schema_version < SCHEMA_VERSION:
            return f"schema version {self.metadata.schema_version} < {SCHEMA_VERSION}"
        if self.legacy_update_flags:
            return "persisted update flags"
        missing = [item.name for item in self.payload.items if not item.has_topology]
        if missing:
            return f"topology flags missing for {', '.join(sorted(missing))}"
        return None

    @property
    def drifted(self) -> bool:
        return self.drift_reason() is not None

    def ensure_current_schema(self) -> None:
        reason = self.drift_reason()
        if reason is not None:
            raise SchemaDrift(self.key, reason)

    def find(self, item: TrackedItem) -> Optional[TrackedItem]:
        for candidate in self.payload.items:
            if candidate.id == item.id:
                return candidate
        for candidate in self.payload.items:
            if candidate.instance == item.instance and candidate.name == item.name:
                return candidate
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "payload": self.payload.to_dict(),
            "metadata": self.metadata.to_dict(),
        }

    @classmethod
    def from_dict(cls, key: str, data: dict[str, Any]) -> "CacheEntry":
        payload = data.get("payload") or {}
        raw_items = payload.get("items") or []
        legacy = any("has_update" in raw or "hasUpdate" in raw for raw in raw_items)
        return cls(
            key=key,
            payload=CachePayload(
                items=tuple(TrackedItem.from_dict(raw) for raw in raw_items),
                unused_count=payload.get("unused_count"),
            ),
            metadata=CacheMetadata.from_dict(data.get("metadata")),
            legacy_update_flags=legacy,
        )


@dataclass(frozen=True)
class Listing:
    """One pass over the cheap source: what was found and which instances answered."""

    items: tuple[TrackedItem, ...] = ()
    listed: frozenset[str] = frozenset()
    unreachable: frozenset[str] = frozenset()


@dataclass(frozen=True)
class UpdateCheck:
    latest_digest: Optional[str] = None
    latest_tag: Optional[str] = None
    error: Optional[str] = None
    not_found: bool = False


class RunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class RunOutcome:
    status: RunStatus
    items_checked: int = 0
    items_updated: int = 0
    error_message: Optional[str] = None


@dataclass(frozen=True)
class RunRecord:
    id: int
    job_type: str
    status: RunStatus
    started_at: datetime
    completed_at: Optional[datetime] = None
    items_checked: int = 0
    items_updated: int = 0
    error_message: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "job_type": self.job_type,
            "status": self.status.value,
            "started_at": format_timestamp(self.started_at),
            "completed_at": format_timestamp(self.completed_at),
            "items_checked": self.items_checked,
            "items_updated": self.items_updated,
            "error_message": self.error_message,
        }


@dataclass(frozen=True)
class ScheduleConfig:
    enabled: bool
    interval_minutes: Optional[int] = None
    cron: Optional[str] = None


@dataclass
class ScheduleState:
    last_anchor_id: Optional[str] = None
    last_anchor_interval: Optional[object] = None
    base_scheduled_time: Optional[datetime] = None

    def clear(self) -> None:
        self.last_anchor_id = None
        self.last_anchor_interval = None
        self.base_scheduled_time = None


@dataclass(frozen=True)
class Snapshot:
    items: tuple[TrackedItem, ...]
    unused_count: int
    metadata: CacheMetadata
    stale: bool = False
    stacks: list[dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_entry(cls, entry: CacheEntry, scope: Optional[str] = None, stale: bool = False) -> "Snapshot":
        items = entry.payload.items
        if scope is not None:
            items = tuple(item for item in items if item.instance == scope)
        return cls(
            items=items,
            unused_count=entry.payload.unused_count or 0,
            metadata=entry.metadata,
            stale=stale,
            stacks=group_stacks(list(items)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "items": [item.to_view() for item in self.items],
            "stacks": self.stacks,
            "unused_count": self.unused_count,
            "metadata": self.metadata.to_dict(),
            "stale": self.stale,
        }
