from __future__ import annotations

"""Value types for player records, ledger rows, alerts, and outbound signals."""

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any


class XPSource(str, Enum):
    GREEN_CONTENT = "green_content"
    ARCADE = "arcade"
    BANKROLL = "bankroll"
    SOCIAL = "social"
    MANUAL_GRANT = "manual_grant"
    SYSTEM = "system"


class AlertKind(str, Enum):
    DECREASE_ATTEMPT = "decrease_attempt"
    INVALID_INCREMENT = "invalid_increment"
    GATE_FAILED = "gate_failed"
    UNAUTHORIZED_CALLER = "unauthorized_caller"


class Axis(str, Enum):
    ACCURACY = "accuracy"
    GRIT = "grit"
    AGGRESSION = "aggression"
    WEALTH = "wealth"
    LUCK = "luck"


class StreakTier(str, Enum):
    NONE = "none"
    STARTED = "started"
    GROWING = "growing"
    COMMITTED = "committed"
    DEDICATED = "dedicated"
    LEGENDARY = "legendary"


class FlameState(str, Enum):
    NONE = "none"
    BLUE_STARTER = "blue_starter"
    ORANGE_ROARING = "orange_roaring"
    PURPLE_INFERNO = "purple_inferno"


class StreakAction(str, Enum):
    MAINTAIN = "maintain"
    INCREMENT = "increment"
    RESET = "reset"


class StreakStatus(str, Enum):
    INACTIVE = "inactive"
    ACTIVE = "active"
    AT_RISK = "at_risk"
    BROKEN = "broken"


class Capability(str, Enum):
    READ = "read"
    WRITE = "write"
    ADMIN = "admin"


def format_ts(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat().replace("+00:00", "Z")


def parse_ts(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def _opt_float(value: Any) -> float | None:
    return None if value is None else float(value)


@dataclass(frozen=True)
class DNAProfile:
    accuracy: float
    grit: float
    aggression: float
    wealth: float
    luck: float
    composite: float
    computed_at: datetime

    def axis(self, axis: Axis) -> float:
        return float(getattr(self, axis.value))

    def axes(self) -> dict[Axis, float]:
        return {axis: self.axis(axis) for axis in Axis}

    def same_values(self, other: "DNAProfile | None") -> bool:
        """True when `other` has the same axes and composite, whatever its `computed_at`."""

        return other is not None and other.axes() == self.axes() and other.composite == self.composite

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {axis.value: self.axis(axis) for axis in Axis}
        payload["composite"] = self.composite
        payload["computed_at"] = format_ts(self.computed_at)
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "DNAProfile":
        computed_at = parse_ts(payload.get("computed_at"))
        if computed_at is None:
            raise ValueError("DNA profile is missing computed_at")
        return cls(
            accuracy=float(payload["accuracy"]),
            grit=float(payload["grit"]),
            aggression=float(payload["aggression"]),
            wealth=float(payload["wealth"]),
            luck=float(payload["luck"]),
            composite=float(payload["composite"]),
            computed_at=computed_at,
        )


@dataclass(frozen=True)
class PlayerRecord:
    """One authoritative identity row per user. Never deleted, only archived."""

    user_id: str
    xp_total: int = 0
    xp_lifetime: int = 0
    level: int = 1
    skill_tier: int = 1
    current_streak: int = 0
    longest_streak: int = 0
    last_active_at: datetime | None = None
    dna_snapshot: DNAProfile | None = None
    flame_state: FlameState = FlameState.NONE
    created_at: datetime | None = None
    archived_at: datetime | None = None
    dna_version: int = 0

    @property
    def archived(self) -> bool:
        return self.archived_at is not None

    def evolve(self, **changes: Any) -> "PlayerRecord":
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "xp_total": self.xp_total,
            "xp_lifetime": self.xp_lifetime,
            "level": self.level,
            "skill_tier": self.skill_tier,
            "current_streak": self.current_streak,
            "longest_streak": self.longest_streak,
            "last_active_at": format_ts(self.last_active_at),
            "dna_snapshot": self.dna_snapshot.to_dict() if self.dna_snapshot else None,
            "flame_state": self.flame_state.value,
            "created_at": format_ts(self.created_at),
            "archived_at": format_ts(self.archived_at),
            "dna_version": self.dna_version,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "PlayerRecord":
        dna = payload.get("dna_snapshot")
        return cls(
            user_id=str(payload["user_id"]),
            xp_total=int(payload.get("xp_total", 0)),
            xp_lifetime=int(payload.get("xp_lifetime", 0)),
            level=int(payload.get("level", 1)),
            skill_tier=int(payload.get("skill_tier", 1)),
            current_streak=int(payload.get("current_streak", 0)),
            longest_streak=int(payload.get("longest_streak", 0)),
            last_active_at=parse_ts(payload.get("last_active_at")),
            dna_snapshot=DNAProfile.from_dict(dna) if isinstance(dna, dict) else None,
            flame_state=FlameState(payload.get("flame_state", FlameState.NONE.value)),
            created_at=parse_ts(payload.get("created_at")),
            archived_at=parse_ts(payload.get("archived_at")),
            dna_version=int(payload.get("dna_version", 0)),
        )


@dataclass(frozen=True)
class XPLedgerEntry:
    entry_id: str
    user_id: str
    delta: int
    source: XPSource
    gate_passed: bool
    prior_total: int
    new_total: int
    timestamp: datetime
    caller_silo_id: str
    accuracy_at_grant: float | None = None
    gto_at_grant: float | None = None

    def __post_init__(self) -> None:
        if self.delta < 1 or self.new_total != self.prior_total + self.delta:
            raise ValueError(
                f"ledger entry does not chain: {self.prior_total} + {self.delta} != {self.new_total}"
            )

    def to_dict(self) -> dict[str, Any]:
        return {
            "entry_id": self.entry_id,
            "user_id": self.user_id,
            "delta": self.delta,
            "source": self.source.value,
            "accuracy_at_grant": self.accuracy_at_grant,
            "gto_at_grant": self.gto_at_grant,
            "gate_passed": self.gate_passed,
            "prior_total": self.prior_total,
            "new_total": self.new_total,
            "timestamp": format_ts(self.timestamp),
            "caller_silo_id": self.caller_silo_id,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "XPLedgerEntry":
        return cls(
            entry_id=str(payload["entry_id"]),
            user_id=str(payload["user_id"]),
            delta=int(payload["delta"]),
            source=XPSource(payload["source"]),
            gate_passed=bool(payload["gate_passed"]),
            prior_total=int(payload["prior_total"]),
            new_total=int(payload["new_total"]),
            timestamp=parse_ts(payload["timestamp"]) or datetime.now(tz=UTC),
            caller_silo_id=str(payload["caller_silo_id"]),
            accuracy_at_grant=_opt_float(payload.get("accuracy_at_grant")),
            gto_at_grant=_opt_float(payload.get("gto_at_grant")),
        )


@dataclass(frozen=True)
class SecurityAlert:
    alert_id: str
    user_id: str
    kind: AlertKind
    prior_total: int
    attempted_total: int | None
    source_identifier: str
    timestamp: datetime
    detail: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "alert_id": self.alert_id,
            "user_id": self.user_id,
            "kind": self.kind.value,
            "prior_total": self.prior_total,
            "attempted_total": self.attempted_total,
            "source_identifier": self.source_identifier,
            "timestamp": format_ts(self.timestamp),
            "detail": dict(self.detail),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "SecurityAlert":
        attempted = payload.get("attempted_total")
        return cls(
            alert_id=str(payload["alert_id"]),
            user_id=str(payload["user_id"]),
            kind=AlertKind(payload["kind"]),
            prior_total=int(payload.get("prior_total", 0)),
            attempted_total=None if attempted is None else int(attempted),
            source_identifier=str(payload.get("source_identifier", "unknown")),
            timestamp=parse_ts(payload["timestamp"]) or datetime.now(tz=UTC),
            detail=dict(payload.get("detail") or {}),
        )


@dataclass(frozen=True)
class DrillRecord:
    drill_id: str
    accuracy: float
    completed_at: datetime
    gto_compliance: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "drill_id": self.drill_id,
            "accuracy": self.accuracy,
            "gto_compliance": self.gto_compliance,
            "completed_at": format_ts(self.completed_at),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "DrillRecord":
        return cls(
            drill_id=str(payload["drill_id"]),
            accuracy=float(payload["accuracy"]),
            completed_at=parse_ts(payload["completed_at"]) or datetime.now(tz=UTC),
            gto_compliance=_opt_float(payload.get("gto_compliance")),
        )


@dataclass(frozen=True)
class SiloRegistration:
    silo_id: str
    display_name: str
    capabilities: frozenset[Capability]
    api_key_digest: str
    active: bool = True

    def can(self, capability: Capability) -> bool:
        return capability in self.capabilities

    def to_dict(self, *, include_digest: bool = False) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "silo_id": self.silo_id,
            "display_name": self.display_name,
            "capabilities": sorted(cap.value for cap in self.capabilities),
            "active": self.active,
        }
        if include_digest:
            payload["api_key_digest"] = self.api_key_digest
        return payload


@dataclass(frozen=True)
class StreakState:
    user_id: str
    current_streak: int
    longest_streak: int
    last_active_at: datetime | None
    tier: StreakTier
    multiplier: float
    flame_state: FlameState
    hours_remaining: float
    status: StreakStatus
    next_flame: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "current_streak": self.current_streak,
            "longest_streak": self.longest_streak,
            "last_active_at": format_ts(self.last_active_at),
            "tier": self.tier.value,
            "multiplier": self.multiplier,
            "flame_state": self.flame_state.value,
            "hours_remaining": self.hours_remaining,
            "status": self.status.value,
            "next_flame": self.next_flame,
        }


@dataclass(frozen=True)
class MultiplierSignal:
    target: str
    user_id: str
    multiplier: float
    tier: StreakTier
    current_streak: int
    hours_remaining: float
    valid_until: datetime | None
    source: str = "identity.streak"

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "target": self.target,
            "user_id": self.user_id,
            "multiplier": self.multiplier,
            "tier": self.tier.value,
            "current_streak": self.current_streak,
            "hours_remaining": self.hours_remaining,
            "valid_until": format_ts(self.valid_until),
        }


@dataclass(frozen=True)
class LevelUpNotification:
    user_id: str
    old_level: int
    new_level: int
    rewards: tuple[dict[str, Any], ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "old_level": self.old_level,
            "new_level": self.new_level,
            "rewards": [dict(reward) for reward in self.rewards],
        }
