from __future__ import annotations

"""Process-wide configuration: loaded once from YAML, validated, then frozen."""

import json
import math
import os
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping

import yaml
from jsonschema import Draft202012Validator

from .clock import ReferenceClock
from .errors import ConfigError
from .levels import LevelTable, LevelThreshold
from .models import Axis, Capability, SiloRegistration
from .security import digest_api_key


CONFIG_SCHEMA_VERSION = "0.1"
CONFIG_ENV = "IDENTITY_CORE_CONFIG"
STORE_TIMEOUT_ENV = "IDENTITY_CORE_STORE_TIMEOUT_SECONDS"
AUDIT_RETENTION_ENV = "IDENTITY_CORE_AUDIT_RETENTION_DAYS"
WEIGHT_TOLERANCE = 1e-9

DEFAULT_AXIS_WEIGHTS = {
    Axis.ACCURACY: 0.30,
    Axis.GRIT: 0.20,
    Axis.AGGRESSION: 0.20,
    Axis.WEALTH: 0.20,
    Axis.LUCK: 0.10,
}


@dataclass(frozen=True)
class GateConfig:
    threshold: float = 0.85
    accuracy_weight: float = 0.6
    gto_weight: float = 0.4


@dataclass(frozen=True)
class StreakThresholds:
    growing: int = 3
    committed: int = 7
    dedicated: int = 14
    legendary: int = 30
    signal_target: str = "YELLOW_DIAMOND"


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 4
    base_delay_seconds: float = 0.05
    max_delay_seconds: float = 1.0

    def delay(self, attempt: int) -> float:
        """Backoff before retry number `attempt` (1-based), doubling and capped."""

        return min(self.max_delay_seconds, self.base_delay_seconds * (2 ** max(0, attempt - 1)))


@dataclass(frozen=True)
class IdentityConfig:
    reference_timezone: str
    silos: tuple[SiloRegistration, ...]
    levels: LevelTable
    axis_weights: Mapping[Axis, float] = field(default_factory=lambda: MappingProxyType(dict(DEFAULT_AXIS_WEIGHTS)))
    min_increment: int = 1
    max_increment: int = 100_000
    internal_sources: frozenset[str] = frozenset({"system"})
    gate: GateConfig = field(default_factory=GateConfig)
    recent_window: int = 50
    decay_step: float = 0.01
    streak: StreakThresholds = field(default_factory=StreakThresholds)
    max_auth_failures: int = 5
    lockout_seconds: float = 300.0
    store_timeout_seconds: float = 5.0
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    audit_retention_days: int = 365
    source: str = "<mapping>"

    @property
    def identity_silo(self) -> SiloRegistration:
        return next(silo for silo in self.silos if silo.can(Capability.WRITE))

    def silo(self, silo_id: str) -> SiloRegistration | None:
        for silo in self.silos:
            if silo.silo_id == silo_id:
                return silo
        return None

    def is_internal_source(self, source_identifier: str) -> bool:
        return source_identifier == self.identity_silo.silo_id or source_identifier in self.internal_sources

    def summary(self) -> dict[str, Any]:
        """Stable public view without key material."""

        return {
            "schema_version": CONFIG_SCHEMA_VERSION,
            "source": self.source,
            "reference_timezone": self.reference_timezone,
            "identity_silo": self.identity_silo.silo_id,
            "silos": [silo.to_dict() for silo in self.silos],
            "axis_weights": {axis.value: weight for axis, weight in self.axis_weights.items()},
            "gate": {
                "threshold": self.gate.threshold,
                "accuracy_weight": self.gate.accuracy_weight,
                "gto_weight": self.gate.gto_weight,
            },
            "increment_bounds": [self.min_increment, self.max_increment],
            "streak": {
                "growing": self.streak.growing,
                "committed": self.streak.committed,
                "dedicated": self.streak.dedicated,
                "legendary": self.streak.legendary,
            },
            "levels": len(self.levels),
            "store_timeout_seconds": self.store_timeout_seconds,
        }


def default_config_path() -> Path:
    return Path(__file__).resolve().parent / "defaults" / "identity.yaml"


def _schema_path() -> Path:
    return Path(__file__).resolve().parent / "schema" / "identity.schema.json"


def _load_schema() -> dict[str, Any]:
    path = _schema_path()
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigError(f"configuration schema is unreadable: {path}") from exc
    if not isinstance(payload, dict):
        raise ConfigError(f"configuration schema must be a JSON object: {path}")
    return payload


def _env_float(env: Mapping[str, str], name: str, fallback: float) -> float:
    raw = env.get(name, "").strip()
    if not raw:
        return fallback
    try:
        value = float(raw)
    except ValueError:
        return fallback
    if value <= 0 or not math.isfinite(value):
        return fallback
    return value


def _env_days(env: Mapping[str, str], name: str, fallback: int) -> int:
    raw = env.get(name, "").strip()
    if not raw:
        return fallback
    try:
        value = int(raw)
    except ValueError:
        return fallback
    if value <= 0:
        return fallback
    return value


def _validate_schema(payload: Any, source: str) -> dict[str, Any]:
    if not isinstance(payload, dict):
        raise ConfigError(f"configuration must be a mapping: {source}")
    validator = Draft202012Validator(_load_schema())
    errors = sorted(validator.iter_errors(payload), key=lambda err: list(err.path))
    if errors:
        first = errors[0]
        where = ".".join(str(part) for part in first.path) or "<root>"
        raise ConfigError(f"configuration schema validation failed for {source} at {where}: {first.message}")
    return payload


def _build_silos(rows: list[dict[str, Any]], env: Mapping[str, str]) -> tuple[SiloRegistration, ...]:
    silos: list[SiloRegistration] = []
    seen: set[str] = set()
    for row in rows:
        silo_id = row["silo_id"]
        if silo_id in seen:
            raise ConfigError(f"duplicate silo_id in registry: {silo_id}")
        seen.add(silo_id)
        active = bool(row.get("active", True))
        digest = row.get("api_key_digest")
        if digest is None:
            # Key supplied out of band; the registry only ever holds the digest.
            key = env.get(row["api_key_env"], "")
            digest = digest_api_key(key) if key else ""
            active = active and bool(key)
        silos.append(
            SiloRegistration(
                silo_id=silo_id,
                display_name=row.get("display_name") or silo_id,
                capabilities=frozenset(Capability(cap) for cap in row["capabilities"]),
                api_key_digest=digest,
                active=active,
            )
        )
    writers = [silo.silo_id for silo in silos if silo.can(Capability.WRITE)]
    if len(writers) != 1:
        raise ConfigError(
            f"exactly one silo may hold write over the player record; found {len(writers)}",
            hint="grant write to a single identity silo",
            write_silos=writers,
        )
    return tuple(silos)


def _build_levels(rows: list[dict[str, Any]] | None) -> LevelTable:
    if not rows:
        raise ConfigError("level table is missing")
    try:
        return LevelTable(
            LevelThreshold(
                level=int(row["level"]),
                xp_required=int(row["xp_required"]),
                title=str(row["title"]),
                badge=str(row.get("badge", "")),
                rarity=str(row.get("rarity", "COMMON")),
            )
            for row in rows
        )
    except ValueError as exc:
        raise ConfigError(f"invalid level table: {exc}") from exc


def _build_axis_weights(raw: dict[str, Any] | None) -> Mapping[Axis, float]:
    if raw is None:
        weights = dict(DEFAULT_AXIS_WEIGHTS)
    else:
        weights = {axis: float(raw[axis.value]) for axis in Axis}
    total = sum(weights.values())
    if abs(total - 1.0) > WEIGHT_TOLERANCE:
        raise ConfigError(f"axis weights must sum to 1, got {round(total, 12)}")
    return MappingProxyType(weights)


def config_from_mapping(
    payload: Any,
    *,
    source: str = "<mapping>",
    env: Mapping[str, str] | None = None,
) -> IdentityConfig:
    """Validate a raw configuration mapping and freeze it."""

    env = os.environ if env is None else env
    data = _validate_schema(payload, source)

    timezone = data["clock"]["reference_timezone"]
    ReferenceClock(timezone)

    vault = data.get("vault", {})
    min_increment = int(vault.get("min_increment", 1))
    max_increment = int(vault.get("max_increment", 100_000))
    if min_increment > max_increment:
        raise ConfigError("vault.min_increment must not exceed vault.max_increment")

    gate_raw = data.get("gate", {})
    gate = GateConfig(
        threshold=float(gate_raw.get("threshold", 0.85)),
        accuracy_weight=float(gate_raw.get("accuracy_weight", 0.6)),
        gto_weight=float(gate_raw.get("gto_weight", 0.4)),
    )

    streak_raw = data.get("streak", {})
    streak = StreakThresholds(
        growing=int(streak_raw.get("growing", 3)),
        committed=int(streak_raw.get("committed", 7)),
        dedicated=int(streak_raw.get("dedicated", 14)),
        legendary=int(streak_raw.get("legendary", 30)),
        signal_target=str(streak_raw.get("signal_target", "YELLOW_DIAMOND")),
    )
    if not (1 < streak.growing < streak.committed < streak.dedicated < streak.legendary):
        raise ConfigError("streak thresholds must be strictly ascending and above 1")

    dna = data.get("dna", {})
    retry_raw = data.get("retry", {})
    retry = RetryPolicy(
        max_attempts=int(retry_raw.get("max_attempts", 4)),
        base_delay_seconds=float(retry_raw.get("base_delay_seconds", 0.05)),
        max_delay_seconds=float(retry_raw.get("max_delay_seconds", 1.0)),
    )
    auth = data.get("auth", {})
    store = data.get("store", {})
    audit = data.get("audit", {})

    return IdentityConfig(
        reference_timezone=timezone,
        silos=_build_silos(data["silos"], env),
        levels=_build_levels(data.get("levels")),
        axis_weights=_build_axis_weights(dna.get("axis_weights")),
        min_increment=min_increment,
        max_increment=max_increment,
        internal_sources=frozenset(vault.get("internal_sources", ["system"])),
        gate=gate,
        recent_window=int(dna.get("recent_window", 50)),
        decay_step=float(dna.get("decay_step", 0.01)),
        streak=streak,
        max_auth_failures=int(auth.get("max_failures", 5)),
        lockout_seconds=float(auth.get("lockout_seconds", 300)),
        store_timeout_seconds=_env_float(env, STORE_TIMEOUT_ENV, float(store.get("timeout_seconds", 5))),
        retry=retry,
        audit_retention_days=_env_days(env, AUDIT_RETENTION_ENV, int(audit.get("retention_days", 365))),
        source=source,
    )


def load_config(path: Path | None = None, *, env: Mapping[str, str] | None = None) -> IdentityConfig:
    """Load configuration from `path`, `$IDENTITY_CORE_CONFIG`, or the packaged default."""

    env = os.environ if env is None else env
    if path is None:
        configured = env.get(CONFIG_ENV, "").strip()
        path = Path(configured).expanduser() if configured else default_config_path()
    if not path.exists():
        raise ConfigError(f"configuration file not found: {path}")
    try:
        payload = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError(f"configuration is not valid YAML: {path}") from exc
    return config_from_mapping(payload, source=str(path), env=env)
