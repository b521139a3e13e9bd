"""Pydantic models for listings, state flags, overrides and history."""

import hashlib
import json
from collections.abc import Iterator
from datetime import UTC, datetime
from enum import Enum
from typing import Final

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Canonical evaluation order for flag transitions
FLAG_FIELDS: Final = ("active", "featured", "hot")

# Listing payload fields tracked for change detection and history
PAYLOAD_FIELDS: Final = (
    "title",
    "description",
    "city",
    "property_type",
    "sale_price",
    "rent_price",
)

DEFAULT_TAG_COLOR: Final = "#3498db"


def flag_to_text(value: bool) -> str:
    """Render a flag the way change_history stores it ('1' / '0')."""
    return "1" if value else "0"


class StateFlags(BaseModel):
    """The (active, featured, hot) tuple of a property."""

    model_config = ConfigDict(frozen=True)

    active: bool = True
    featured: bool = False
    hot: bool = False

    @property
    def is_default(self) -> bool:
        """True when nothing about this property needs an override row."""
        return self == DEFAULT_FLAGS

    def overlay(
        self,
        *,
        active: bool | None = None,
        featured: bool | None = None,
        hot: bool | None = None,
    ) -> "StateFlags":
        """Return a copy with the supplied flags replaced; None keeps the current value."""
        return StateFlags(
            active=self.active if active is None else active,
            featured=self.featured if featured is None else featured,
            hot=self.hot if hot is None else hot,
        )

    def transitions_to(self, new: "StateFlags") -> Iterator[tuple[str, bool, bool]]:
        """Yield (field, old, new) for every flag that differs, in canonical order."""
        for name in FLAG_FIELDS:
            old_value = getattr(self, name)
            new_value = getattr(new, name)
            if old_value != new_value:
                yield name, old_value, new_value


DEFAULT_FLAGS: Final = StateFlags()


def override_key(sync_code: str | None) -> str:
    """Normalize a property's sync code into the override table key."""
    return sync_code or ""


class Property(BaseModel):
    """A listing row from the properties table."""

    model_config = ConfigDict(frozen=True)

    id: int
    ref: int = Field(description="External reference number assigned upstream")
    sync_code: str | None = None
    title: str | None = None
    description: str | None = None
    city: str | None = None
    property_type: str | None = None
    sale_price: float | None = None
    rent_price: float | None = None
    active: bool = True
    featured: bool = False
    hot: bool = False
    data_hash: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    synced_at: datetime | None = None

    @property
    def flags(self) -> StateFlags:
        return StateFlags(active=self.active, featured=self.featured, hot=self.hot)

    @property
    def override_key(self) -> str:
        return override_key(self.sync_code)


class StateOverride(BaseModel):
    """A row of property_state_overrides: a property whose flags deviate from default."""

    model_config = ConfigDict(frozen=True)

    property_ref: int
    sync_code: str = ""
    active: bool
    featured: bool = False
    hot: bool = False
    modified_at: datetime

    @property
    def flags(self) -> StateFlags:
        return StateFlags(active=self.active, featured=self.featured, hot=self.hot)


class ChangeHistoryEntry(BaseModel):
    """One recorded field transition. Immutable once written."""

    model_config = ConfigDict(frozen=True)

    id: int
    property_id: int
    field: str
    old_value: str | None
    new_value: str | None
    changed_at: datetime


class StateChange(BaseModel):
    """Result of a set_property_state call."""

    model_config = ConfigDict(frozen=True)

    active: bool
    featured: bool
    hot: bool
    changed: bool

    @classmethod
    def from_flags(cls, flags: StateFlags, *, changed: bool) -> "StateChange":
        return cls(active=flags.active, featured=flags.featured, hot=flags.hot, changed=changed)


class ReconcileResult(BaseModel):
    """Outcome of reconciling stored properties against an upstream snapshot."""

    model_config = ConfigDict(frozen=True)

    deactivated_count: int = 0
    failed_refs: tuple[int, ...] = ()


class ViolationKind(str, Enum):
    """Ways the override table can disagree with the properties table."""

    MISSING_OVERRIDE = "missing_override"
    STALE_OVERRIDE = "stale_override"
    MISMATCHED_OVERRIDE = "mismatched_override"
    ORPHANED_OVERRIDE = "orphaned_override"


class InvariantViolation(BaseModel):
    """A property or override row breaking the sparse-override invariant."""

    model_config = ConfigDict(frozen=True)

    kind: ViolationKind
    property_ref: int
    sync_code: str = ""


class Listing(BaseModel):
    """A listing as delivered by the upstream feed."""

    model_config = ConfigDict(frozen=True)

    ref: int = Field(gt=0)
    sync_code: str | None = None
    title: str | None = None
    description: str | None = None
    city: str | None = None
    property_type: str | None = None
    sale_price: float | None = Field(default=None, ge=0)
    rent_price: float | None = Field(default=None, ge=0)

    @field_validator("sync_code", "title", "description", "city", "property_type")
    @classmethod
    def strip_blank(cls, v: str | None) -> str | None:
        """Collapse surrounding whitespace; blank strings become None."""
        if v is None:
            return None
        v = v.strip()
        return v or None

    def payload(self) -> dict[str, str | float | None]:
        """The tracked payload fields, keyed by column name."""
        return {name: getattr(self, name) for name in PAYLOAD_FIELDS}

    @property
    def data_hash(self) -> str:
        """SHA-256 of the canonical JSON payload, used to skip unchanged listings."""
        encoded = json.dumps(
            {"sync_code": self.sync_code, **self.payload()},
            sort_keys=True,
            ensure_ascii=False,
        )
        return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


class IngestOutcome(str, Enum):
    """What upsert_listing did with one listing."""

    NEW = "new"
    UPDATED = "updated"
    UNCHANGED = "unchanged"


class SyncCycleResult(BaseModel):
    """Counts for one full sync cycle."""

    run_id: int | None = None
    listing_count: int = 0
    new_count: int = 0
    updated_count: int = 0
    unchanged_count: int = 0
    failed_refs: list[int] = Field(default_factory=list)
    reconcile: ReconcileResult = Field(default_factory=ReconcileResult)
    started_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def failed_count(self) -> int:
        """Listings that failed to upsert plus properties that failed to deactivate."""
        return len(self.failed_refs) + len(self.reconcile.failed_refs)


class SyncRunStatus(str, Enum):
    """Lifecycle of a recorded sync run."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class SyncRun(BaseModel):
    """A row of the sync_runs log."""

    model_config = ConfigDict(frozen=True)

    id: int
    kind: str = "manual"
    status: SyncRunStatus = SyncRunStatus.RUNNING
    started_at: datetime
    finished_at: datetime | None = None
    listing_count: int = 0
    new_count: int = 0
    updated_count: int = 0
    unchanged_count: int = 0
    failed_count: int = 0
    deactivated_count: int = 0
    error: str | None = None


class Tag(BaseModel):
    """A label that operators attach to listings."""

    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    color: str = DEFAULT_TAG_COLOR
    description: str | None = None
    created_at: datetime | None = None
