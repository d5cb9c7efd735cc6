from __future__ import annotations

"""Telemetry event sanitization, persistence, and local summary export helpers."""

import hashlib
import json
import platform
import re
import sys
import threading
import unicodedata
import uuid
from collections import Counter
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from importlib.metadata import PackageNotFoundError, version as package_version
from pathlib import Path
from typing import Any

from .security import is_sensitive_key, payload_contains_pii, payload_contains_secrets


SCHEMA_VERSION = "0.1"
VALID_EVENT_TYPES = {
    "identity.started",
    "xp.granted",
    "xp.rejected",
    "level.up",
    "security.alert",
    "source.blocked",
    "streak.ticked",
    "multiplier.signaled",
    "dna.refreshed",
    "gateway.handshake",
    "gateway.update",
    "gateway.revoked",
    "gateway.locked_out",
    "store.timeout",
    "store.retry",
    "store.unavailable",
    "player.archived",
    "audit.purged",
    "risk.flagged",
}
VALID_ACTOR_KINDS = {"silo", "operator", "system"}
VALID_SOURCES = {"api", "coordinator", "gateway", "dispatcher", "service"}
MAX_STRING_LENGTH = 200
RANGE_PATTERN = re.compile(r"^(\d+)([dh])$")


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


def _utc_now_rfc3339() -> str:
    return _utc_now().replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _parse_ts(value: Any) -> datetime | None:
    if not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def _safe_json(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=True)


def _strip_control_chars(value: str) -> str:
    return "".join(ch for ch in value if not unicodedata.category(ch).startswith("C"))


@dataclass(frozen=True)
class BuildInfo:
    """Static build/runtime metadata attached to every telemetry event."""

    core_version: str
    python_version: str
    platform: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "core_version": self.core_version,
            "python_version": self.python_version,
            "platform": self.platform,
        }


@dataclass(frozen=True)
class SanitizeStats:
    redacted_fields: int = 0
    truncated_fields: int = 0

    def __add__(self, other: "SanitizeStats") -> "SanitizeStats":
        return SanitizeStats(
            redacted_fields=self.redacted_fields + other.redacted_fields,
            truncated_fields=self.truncated_fields + other.truncated_fields,
        )


def _sanitize_text(value: str, *, empty_fallback: str | None = None) -> tuple[str, SanitizeStats]:
    cleaned = _strip_control_chars(value).strip()
    if not cleaned and empty_fallback is not None:
        cleaned = empty_fallback
    if payload_contains_secrets(cleaned) or payload_contains_pii(cleaned):
        return "[redacted]", SanitizeStats(redacted_fields=1)
    if len(cleaned) > MAX_STRING_LENGTH:
        return f"{cleaned[:MAX_STRING_LENGTH]}...[truncated]", SanitizeStats(truncated_fields=1)
    return cleaned, SanitizeStats()


def sanitize_actor_id(value: Any) -> str:
    """Normalize actor identity to a safe string and redact risky payloads."""

    text = "unknown" if value is None else str(value)
    sanitized, _ = _sanitize_text(text, empty_fallback="unknown")
    return sanitized or "unknown"


def _sanitize_scalar(value: Any) -> tuple[Any, SanitizeStats]:
    if value is None or isinstance(value, (int, float, bool)):
        return value, SanitizeStats()
    return _sanitize_text(str(value), empty_fallback="")


def sanitize_event_data(data: Any) -> tuple[Any, SanitizeStats]:
    """Recursively sanitize telemetry payloads for keys, secrets, PII, and controls."""

    if isinstance(data, dict):
        sanitized: dict[str, Any] = {}
        stats = SanitizeStats()
        for key, value in data.items():
            key_text, key_stats = _sanitize_scalar(key)
            if is_sensitive_key(key):
                sanitized[str(key_text)] = "[redacted]"
                stats = stats + key_stats + SanitizeStats(redacted_fields=1)
                continue
            value_sanitized, value_stats = sanitize_event_data(value)
            sanitized[str(key_text)] = value_sanitized
            stats = stats + key_stats + value_stats
        return sanitized, stats
    if isinstance(data, (list, tuple)):
        sanitized_items: list[Any] = []
        stats = SanitizeStats()
        for item in data:
            item_sanitized, item_stats = sanitize_event_data(item)
            sanitized_items.append(item_sanitized)
            stats = stats + item_stats
        return sanitized_items, stats
    return _sanitize_scalar(data)


def parse_range(range_value: str) -> timedelta:
    """Parse compact duration windows such as `7d` or `24h`."""

    match = RANGE_PATTERN.match(range_value.strip().lower())
    if not match:
        raise ValueError("range must be like 7d or 24h")
    amount = int(match.group(1))
    if amount <= 0:
        raise ValueError("range amount must be > 0")
    if match.group(2) == "d":
        return timedelta(days=amount)
    return timedelta(hours=amount)


def detect_core_version() -> str:
    try:
        return package_version("identity-core")
    except PackageNotFoundError:
        return "0.1.0"


def hashlib_sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


class TelemetryLogger:
    """Append-only JSONL telemetry logger with local summary export helpers.

    Telemetry never breaks the core: a failed append is reported on stderr and
    the caller continues.
    """

    def __init__(self, events_path: Path) -> None:
        self.events_path = events_path
        self.events_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self.build = BuildInfo(
            core_version=detect_core_version(),
            python_version=sys.version.split()[0],
            platform=platform.platform(),
        )

    def _append_jsonl(self, payload: dict[str, Any]) -> None:
        with self._lock:
            with self.events_path.open("a", encoding="utf-8", newline="\n") as handle:
                handle.write(_safe_json(payload))
                handle.write("\n")

    def _base_event(
        self,
        *,
        event_type: str,
        actor: str,
        actor_id: str | None,
        source: str,
        data: dict[str, Any],
    ) -> dict[str, Any]:
        requested_event_type = event_type
        if requested_event_type not in VALID_EVENT_TYPES:
            event_type = "risk.flagged"
            data = {
                "reason": "invalid_event_type",
                "invalid_event_type_hash": hashlib_sha256_hex(requested_event_type),
            }
        kind = actor if actor in VALID_ACTOR_KINDS else "system"
        return {
            "schema_version": SCHEMA_VERSION,
            "event_id": str(uuid.uuid4()),
            "ts": _utc_now_rfc3339(),
            "event_type": event_type,
            "actor": {"kind": kind, "id": sanitize_actor_id(actor_id)},
            "source": source if source in VALID_SOURCES else "service",
            "build": self.build.to_dict(),
            "data": data,
        }

    def log_event(
        self,
        event_type: str,
        *,
        actor: str,
        source: str,
        data: dict[str, Any],
        actor_id: str | None = None,
        _emit_sanitize_flag: bool = True,
    ) -> None:
        """Write one sanitized event and an optional sanitization risk flag."""

        try:
            sanitized_data, stats = sanitize_event_data(data)
            event_payload = self._base_event(
                event_type=event_type,
                actor=actor,
                actor_id=actor_id,
                source=source,
                data=sanitized_data if isinstance(sanitized_data, dict) else {"value": sanitized_data},
            )
            self._append_jsonl(event_payload)
            if _emit_sanitize_flag and (stats.redacted_fields or stats.truncated_fields):
                self.log_event(
                    "risk.flagged",
                    actor="system",
                    actor_id=actor_id,
                    source=source,
                    data={
                        "reason": "telemetry_sanitized",
                        "trigger_event_type": event_type,
                        "fields_redacted_count": stats.redacted_fields,
                        "fields_truncated_count": stats.truncated_fields,
                    },
                    _emit_sanitize_flag=False,
                )
        except Exception as exc:  # noqa: BLE001
            print(f"[telemetry] failed to append event: {exc}", file=sys.stderr)

    def iter_events(self) -> list[dict[str, Any]]:
        if not self.events_path.exists():
            return []
        events: list[dict[str, Any]] = []
        with self.events_path.open("r", encoding="utf-8") as handle:
            for line in handle:
                line = line.strip()
                if not line:
                    continue
                try:
                    payload = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if isinstance(payload, dict):
                    events.append(payload)
        return events

    def count_events(self) -> int:
        return len(self.iter_events())

    def purge_older_than(self, window: timedelta) -> dict[str, Any]:
        """Drop events older than `window`; returns purge/keep counts."""

        cutoff = _utc_now() - window
        with self._lock:
            events = self.iter_events()
            kept = [evt for evt in events if (_parse_ts(evt.get("ts")) or cutoff) >= cutoff]
            temp_path = self.events_path.parent / f".{self.events_path.name}.tmp"
            with temp_path.open("w", encoding="utf-8", newline="\n") as handle:
                for evt in kept:
                    handle.write(_safe_json(evt))
                    handle.write("\n")
            temp_path.replace(self.events_path)
        return {"purged_count": len(events) - len(kept), "kept_count": len(kept)}

    def export_summary(self, *, range_value: str, out_path: Path | None = None) -> dict[str, Any]:
        """Aggregate windowed identity metrics from the local event log."""

        window = parse_range(range_value)
        end = _utc_now()
        start = end - window
        in_window: list[dict[str, Any]] = []
        for event in self.iter_events():
            parsed_ts = _parse_ts(event.get("ts"))
            if parsed_ts is None or not (start <= parsed_ts <= end):
                continue
            in_window.append(event)

        def _of(event_type: str) -> list[dict[str, Any]]:
            return [evt for evt in in_window if evt.get("event_type") == event_type]

        grants = _of("xp.granted")
        rejections = _of("xp.rejected")
        alerts = _of("security.alert")
        ticks = _of("streak.ticked")
        handshakes = _of("gateway.handshake")

        rejections_by_reason = Counter(str(evt.get("data", {}).get("reason", "unknown")) for evt in rejections)
        alerts_by_kind = Counter(str(evt.get("data", {}).get("kind", "unknown")) for evt in alerts)
        ticks_by_action = Counter(str(evt.get("data", {}).get("action", "unknown")) for evt in ticks)
        handshakes_by_result = Counter(str(evt.get("data", {}).get("result", "unknown")) for evt in handshakes)
        events_by_type = Counter(str(evt.get("event_type")) for evt in in_window)
        attempts = len(grants) + len(rejections)

        summary = {
            "schema_version": SCHEMA_VERSION,
            "generated_at": _utc_now_rfc3339(),
            "range": range_value,
            "window_start": start.replace(microsecond=0).isoformat().replace("+00:00", "Z"),
            "window_end": end.replace(microsecond=0).isoformat().replace("+00:00", "Z"),
            "events_considered": len(in_window),
            "events_by_type": dict(sorted(events_by_type.items())),
            "grants_total": len(grants),
            "xp_granted_sum": sum(int(evt.get("data", {}).get("delta", 0)) for evt in grants),
            "grant_success_rate": round(len(grants) / attempts, 4) if attempts else 0.0,
            "rejections_by_reason": dict(sorted(rejections_by_reason.items())),
            "alerts_by_kind": dict(sorted(alerts_by_kind.items())),
            "streak_ticks_by_action": dict(sorted(ticks_by_action.items())),
            "handshakes_by_result": dict(sorted(handshakes_by_result.items())),
            "level_ups": len(_of("level.up")),
            "store_timeouts": len(_of("store.timeout")),
            "risk_flags_count": len(_of("risk.flagged")),
        }
        if out_path is not None:
            out_path.parent.mkdir(parents=True, exist_ok=True)
            out_path.write_text(json.dumps(summary, indent=2), encoding="utf-8")
        return summary


def summary_sha256(summary: dict[str, Any]) -> str:
    """Compute deterministic SHA-256 for an aggregated telemetry summary."""

    return hashlib_sha256_hex(_safe_json(summary))
