from __future__ import annotations

"""Persistence surface: per-user documents, append-only audit logs, bounded calls.

Each user's record, XP ledger, recent drills, and source signals live in one
document so a grant (ledger append + totals update) is a single atomic write.
Audit tables (security alerts, handshake log) are append-only row logs.
Every public call runs under a bounded timeout and surfaces `store.timeout`
when the backing store does not acknowledge in time.
"""

import copy
import hashlib
import json
import threading
import time
import weakref
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FutureTimeout, wait
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Callable, TypeVar

from .errors import STORE_CONFLICT, STORE_TIMEOUT, STORE_UNAVAILABLE, StoreError
from .models import DNAProfile, DrillRecord, FlameState, PlayerRecord, SecurityAlert, XPLedgerEntry, format_ts, parse_ts


STATE_SCHEMA_VERSION = "0.1"
MAX_DRILLS_PER_USER = 200
ALERTS_LOG = "security_alerts"
HANDSHAKE_LOG = "handshake_log"
BLOCKED_SOURCES = "blocked_sources"
EPOCH = datetime(1970, 1, 1, tzinfo=UTC)
# How long `settle` waits for abandoned calls, in multiples of the call timeout.
SETTLE_TIMEOUT_FACTOR = 4

T = TypeVar("T")


def _load_json(path: Path, default: Any) -> Any:
    if not path.exists():
        return default
    return json.loads(path.read_text(encoding="utf-8"))


def _save_json(path: Path, value: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.parent / f".{path.name}.tmp"
    payload = json.dumps(value, indent=2, sort_keys=True)
    for attempt in range(5):
        temp_path.write_text(payload, encoding="utf-8")
        try:
            temp_path.replace(path)
            return
        except PermissionError:
            if attempt == 4:
                raise
            # On Windows, AV/indexers can briefly lock newly-written temp files.
            time.sleep(0.02 * (attempt + 1))


class KeyedLock:
    """Context-manager wrapper around a lock that a weak-valued map can hold."""

    __slots__ = ("_lock", "__weakref__")

    def __init__(self, lock: Any) -> None:
        self._lock = lock

    def __enter__(self) -> bool:
        return self._lock.__enter__()

    def __exit__(self, *exc_info: Any) -> None:
        self._lock.__exit__(*exc_info)


def _empty_doc(user_id: str, now: datetime) -> dict[str, Any]:
    return {
        "state_schema_version": STATE_SCHEMA_VERSION,
        "record": PlayerRecord(user_id=user_id, created_at=now).to_dict(),
        "ledger": [],
        "drills": [],
        "signals": {},
    }


class Store:
    """Abstract persistence surface; subclasses provide the storage primitives."""

    _executor: ThreadPoolExecutor | None = None
    _executor_lock = threading.Lock()

    def __init__(
        self,
        *,
        timeout_seconds: float | None = 5.0,
        on_timeout: Callable[[str, float], None] | None = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self.on_timeout = on_timeout
        # Entries vanish once no caller holds the lock.
        self._user_locks: weakref.WeakValueDictionary[str, KeyedLock] = weakref.WeakValueDictionary()
        self._doc_locks: weakref.WeakValueDictionary[str, KeyedLock] = weakref.WeakValueDictionary()
        self._abandoned: set[Future[Any]] = set()
        self._locks_guard = threading.Lock()
        self._log_lock = threading.Lock()

    # -- primitives -----------------------------------------------------

    def _read_doc(self, user_id: str) -> dict[str, Any] | None:
        raise NotImplementedError

    def _write_doc(self, user_id: str, doc: dict[str, Any]) -> None:
        raise NotImplementedError

    def _list_user_ids(self) -> list[str]:
        raise NotImplementedError

    def _append_row(self, log_name: str, row: dict[str, Any]) -> None:
        raise NotImplementedError

    def _read_rows(self, log_name: str) -> list[dict[str, Any]]:
        raise NotImplementedError

    def _replace_rows(self, log_name: str, rows: list[dict[str, Any]]) -> None:
        raise NotImplementedError

    def _read_meta(self, name: str, default: Any) -> Any:
        raise NotImplementedError

    def _write_meta(self, name: str, value: Any) -> None:
        raise NotImplementedError

    # -- plumbing -------------------------------------------------------

    @classmethod
    def _pool(cls) -> ThreadPoolExecutor:
        with cls._executor_lock:
            if Store._executor is None:
                Store._executor = ThreadPoolExecutor(max_workers=16, thread_name_prefix="identity-store")
            return Store._executor

    def user_lock(self, user_id: str) -> KeyedLock:
        """Re-entrant lock serializing every writer for one user."""

        with self._locks_guard:
            lock = self._user_locks.get(user_id)
            if lock is None:
                lock = KeyedLock(threading.RLock())
                self._user_locks[user_id] = lock
            return lock

    def _doc_lock(self, user_id: str) -> KeyedLock:
        with self._locks_guard:
            lock = self._doc_locks.get(user_id)
            if lock is None:
                lock = KeyedLock(threading.Lock())
                self._doc_locks[user_id] = lock
            return lock

    def _call(self, operation: str, fn: Callable[..., T], *args: Any) -> T:
        if self.timeout_seconds is None:
            return self._guard(operation, fn, *args)
        future = self._pool().submit(self._guard, operation, fn, *args)
        try:
            return future.result(timeout=self.timeout_seconds)
        except FutureTimeout as exc:
            self._abandon(future)
            if self.on_timeout is not None:
                self.on_timeout(operation, float(self.timeout_seconds))
            raise StoreError(
                STORE_TIMEOUT,
                f"store did not acknowledge {operation} within {self.timeout_seconds}s",
                operation=operation,
            ) from exc

    def _abandon(self, future: Future[Any]) -> None:
        with self._locks_guard:
            self._abandoned.add(future)
        future.add_done_callback(self._forget)

    def _forget(self, future: Future[Any]) -> None:
        with self._locks_guard:
            self._abandoned.discard(future)

    def settle(self, timeout: float | None = None) -> bool:
        """Wait for calls that outlived their timeout.

        A timed-out call keeps running in the pool and may still land. Callers
        retrying after `store.timeout` settle first so the retry reads what the
        abandoned call wrote. Returns False when some call is still running.
        """

        with self._locks_guard:
            pending = list(self._abandoned)
        if not pending:
            return True
        if timeout is None and self.timeout_seconds is not None:
            timeout = self.timeout_seconds * SETTLE_TIMEOUT_FACTOR
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def _guard(self, operation: str, fn: Callable[..., T], *args: Any) -> T:
        try:
            return fn(*args)
        except StoreError:
            raise
        except (OSError, json.JSONDecodeError) as exc:
            raise StoreError(STORE_UNAVAILABLE, f"store failed during {operation}: {exc}", operation=operation) from exc

    def _mutate(self, user_id: str, now: datetime | None, change: Callable[[dict[str, Any]], T]) -> T:
        with self._doc_lock(user_id):
            doc = self._read_doc(user_id)
            if doc is None:
                if now is None:
                    raise StoreError(STORE_CONFLICT, f"player record does not exist: {user_id}", user_id=user_id)
                doc = _empty_doc(user_id, now)
            result = change(doc)
            self._write_doc(user_id, doc)
            return result

    # -- player record --------------------------------------------------

    def load_player(self, user_id: str) -> PlayerRecord | None:
        def _op() -> PlayerRecord | None:
            doc = self._read_doc(user_id)
            return PlayerRecord.from_dict(doc["record"]) if doc else None

        return self._call("load_player", _op)

    def ensure_player(self, user_id: str, now: datetime) -> PlayerRecord:
        def _op() -> PlayerRecord:
            with self._doc_lock(user_id):
                doc = self._read_doc(user_id)
                if doc is None:
                    doc = _empty_doc(user_id, now)
                    self._write_doc(user_id, doc)
                return PlayerRecord.from_dict(doc["record"])

        return self._call("ensure_player", _op)

    def user_ids(self) -> list[str]:
        return self._call("user_ids", lambda: sorted(self._list_user_ids()))

    def archive_player(self, user_id: str, at: datetime) -> PlayerRecord:
        def _change(doc: dict[str, Any]) -> PlayerRecord:
            record = PlayerRecord.from_dict(doc["record"])
            if record.archived_at is None:
                record = record.evolve(archived_at=at)
                doc["record"] = record.to_dict()
            return record

        return self._call("archive_player", self._mutate, user_id, None, _change)

    # -- xp ledger ------------------------------------------------------

    def commit_grant(self, entry: XPLedgerEntry, level: int) -> PlayerRecord:
        """Append a ledger entry and advance totals as one atomic write.

        Guarded on the prior total: the write is refused when the record moved
        since the entry was computed. Replaying an already committed
        `entry_id` returns the current record without a second append.
        """

        def _change(doc: dict[str, Any]) -> PlayerRecord:
            record = PlayerRecord.from_dict(doc["record"])
            if any(row.get("entry_id") == entry.entry_id for row in doc["ledger"]):
                return record
            if record.xp_total != entry.prior_total:
                raise StoreError(
                    STORE_CONFLICT,
                    "xp total changed since grant was computed",
                    user_id=entry.user_id,
                    expected_prior_total=entry.prior_total,
                    actual_total=record.xp_total,
                )
            updated = record.evolve(
                xp_total=entry.new_total,
                xp_lifetime=record.xp_lifetime + entry.delta,
                level=max(record.level, level),
                dna_version=record.dna_version + 1,
            )
            doc["ledger"].append(entry.to_dict())
            doc["record"] = updated.to_dict()
            return updated

        return self._call("commit_grant", self._mutate, entry.user_id, entry.timestamp, _change)

    def find_entry(self, user_id: str, entry_id: str) -> XPLedgerEntry | None:
        def _op() -> XPLedgerEntry | None:
            doc = self._read_doc(user_id) or {}
            for row in doc.get("ledger", []):
                if row.get("entry_id") == entry_id:
                    return XPLedgerEntry.from_dict(row)
            return None

        return self._call("find_entry", _op)

    def history(self, user_id: str, limit: int | None = 50) -> list[XPLedgerEntry]:
        """Ledger entries, newest first."""

        def _op() -> list[XPLedgerEntry]:
            doc = self._read_doc(user_id) or {}
            rows = list(reversed(doc.get("ledger", [])))
            if limit is not None:
                rows = rows[: max(0, limit)]
            return [XPLedgerEntry.from_dict(row) for row in rows]

        return self._call("history", _op)

    # -- streak and dna -------------------------------------------------

    def save_streak(
        self,
        user_id: str,
        *,
        current: int,
        longest: int,
        last_active_at: datetime,
        flame_state: FlameState,
    ) -> PlayerRecord:
        def _change(doc: dict[str, Any]) -> PlayerRecord:
            record = PlayerRecord.from_dict(doc["record"])
            updated = record.evolve(
                current_streak=current,
                longest_streak=max(record.longest_streak, longest, current),
                last_active_at=last_active_at,
                flame_state=flame_state,
            )
            doc["record"] = updated.to_dict()
            return updated

        return self._call("save_streak", self._mutate, user_id, last_active_at, _change)

    def save_dna(self, user_id: str, profile: DNAProfile, skill_tier: int) -> PlayerRecord:
        """Cache a profile; `dna_version` moves only when a value actually changed."""

        def _change(doc: dict[str, Any]) -> PlayerRecord:
            record = PlayerRecord.from_dict(doc["record"])
            changed = not profile.same_values(record.dna_snapshot) or skill_tier != record.skill_tier
            updated = record.evolve(
                dna_snapshot=profile,
                skill_tier=skill_tier,
                dna_version=record.dna_version + 1 if changed else record.dna_version,
            )
            doc["record"] = updated.to_dict()
            return updated

        return self._call("save_dna", self._mutate, user_id, profile.computed_at, _change)

    def append_drill(self, user_id: str, drill: DrillRecord) -> bool:
        """Record a drill result; returns False when the drill id was already seen."""

        def _change(doc: dict[str, Any]) -> bool:
            drills = doc.setdefault("drills", [])
            if any(row.get("drill_id") == drill.drill_id for row in drills):
                return False
            drills.insert(0, drill.to_dict())
            del drills[MAX_DRILLS_PER_USER:]
            return True

        return self._call("append_drill", self._mutate, user_id, drill.completed_at, _change)

    def recent_drills(self, user_id: str, limit: int) -> list[DrillRecord]:
        """Most recent drills first."""

        def _op() -> list[DrillRecord]:
            doc = self._read_doc(user_id) or {}
            rows = sorted(
                doc.get("drills", []),
                key=lambda row: parse_ts(row.get("completed_at")) or EPOCH,
                reverse=True,
            )
            return [DrillRecord.from_dict(row) for row in rows[: max(0, limit)]]

        return self._call("recent_drills", _op)

    def put_signal(self, user_id: str, name: str, value: Any, at: datetime) -> None:
        def _change(doc: dict[str, Any]) -> None:
            doc.setdefault("signals", {})[name] = {"value": value, "updated_at": format_ts(at)}

        self._call("put_signal", self._mutate, user_id, at, _change)

    def signals(self, user_id: str) -> dict[str, Any]:
        def _op() -> dict[str, Any]:
            doc = self._read_doc(user_id) or {}
            return {name: row.get("value") for name, row in doc.get("signals", {}).items()}

        return self._call("signals", _op)

    # -- audit tables ---------------------------------------------------

    def append_alert(self, alert: SecurityAlert) -> None:
        self._call("append_alert", self._append_row, ALERTS_LOG, alert.to_dict())

    def alerts(self, user_id: str | None = None, limit: int | None = 50) -> list[SecurityAlert]:
        """Security alerts, newest first, optionally for one user."""

        def _op() -> list[SecurityAlert]:
            rows = [row for row in reversed(self._read_rows(ALERTS_LOG)) if user_id is None or row.get("user_id") == user_id]
            if limit is not None:
                rows = rows[: max(0, limit)]
            return [SecurityAlert.from_dict(row) for row in rows]

        return self._call("alerts", _op)

    def purge_alerts(self, before: datetime) -> int:
        def _op() -> int:
            with self._log_lock:
                rows = self._read_rows(ALERTS_LOG)
                kept = [row for row in rows if (parse_ts(row.get("timestamp")) or before) >= before]
                self._replace_rows(ALERTS_LOG, kept)
                return len(rows) - len(kept)

        return self._call("purge_alerts", _op)

    def append_handshake(self, row: dict[str, Any]) -> None:
        self._call("append_handshake", self._append_row, HANDSHAKE_LOG, dict(row))

    def handshake_log(self, limit: int | None = 100, silo_id: str | None = None) -> list[dict[str, Any]]:
        def _op() -> list[dict[str, Any]]:
            rows = [row for row in reversed(self._read_rows(HANDSHAKE_LOG)) if silo_id is None or row.get("silo_id") == silo_id]
            return rows if limit is None else rows[: max(0, limit)]

        return self._call("handshake_log", _op)

    def block_source(self, source_identifier: str, detail: dict[str, Any]) -> None:
        def _op() -> None:
            with self._log_lock:
                blocked = self._read_meta(BLOCKED_SOURCES, {})
                blocked.setdefault(source_identifier, dict(detail))
                self._write_meta(BLOCKED_SOURCES, blocked)

        self._call("block_source", _op)

    def is_blocked(self, source_identifier: str) -> bool:
        return self._call("is_blocked", lambda: source_identifier in self._read_meta(BLOCKED_SOURCES, {}))

    def blocked_sources(self) -> dict[str, dict[str, Any]]:
        return self._call("blocked_sources", lambda: dict(self._read_meta(BLOCKED_SOURCES, {})))


class MemoryStore(Store):
    """In-process store. Documents are deep-copied across the boundary."""

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._docs: dict[str, dict[str, Any]] = {}
        self._logs: dict[str, list[dict[str, Any]]] = {}
        self._meta: dict[str, Any] = {}

    def _read_doc(self, user_id: str) -> dict[str, Any] | None:
        doc = self._docs.get(user_id)
        return copy.deepcopy(doc) if doc is not None else None

    def _write_doc(self, user_id: str, doc: dict[str, Any]) -> None:
        self._docs[user_id] = copy.deepcopy(doc)

    def _list_user_ids(self) -> list[str]:
        return list(self._docs)

    def _append_row(self, log_name: str, row: dict[str, Any]) -> None:
        with self._log_lock:
            self._logs.setdefault(log_name, []).append(copy.deepcopy(row))

    def _read_rows(self, log_name: str) -> list[dict[str, Any]]:
        return copy.deepcopy(self._logs.get(log_name, []))

    def _replace_rows(self, log_name: str, rows: list[dict[str, Any]]) -> None:
        self._logs[log_name] = copy.deepcopy(rows)

    def _read_meta(self, name: str, default: Any) -> Any:
        return copy.deepcopy(self._meta.get(name, default))

    def _write_meta(self, name: str, value: Any) -> None:
        self._meta[name] = copy.deepcopy(value)


class JsonFileStore(Store):
    """Local-first store: one JSON document per user plus JSONL audit logs.

    Layout under `base`:
      players/<sha256(user_id)>.json   record, ledger, drills, signals
      audit/<log>.jsonl                append-only audit rows
      <name>.json                      small shared tables (blocked sources)
    """

    def __init__(self, base: Path, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.base = base
        self.players_dir = base / "players"
        self.audit_dir = base / "audit"
        for path in (self.base, self.players_dir, self.audit_dir):
            path.mkdir(parents=True, exist_ok=True)

    def _doc_path(self, user_id: str) -> Path:
        return self.players_dir / f"{hashlib.sha256(user_id.encode('utf-8')).hexdigest()}.json"

    def _log_path(self, log_name: str) -> Path:
        return self.audit_dir / f"{log_name}.jsonl"

    def _read_doc(self, user_id: str) -> dict[str, Any] | None:
        doc = _load_json(self._doc_path(user_id), None)
        if doc is not None and not isinstance(doc, dict):
            raise StoreError(STORE_UNAVAILABLE, f"player document is corrupt for {user_id}", user_id=user_id)
        return doc

    def _write_doc(self, user_id: str, doc: dict[str, Any]) -> None:
        _save_json(self._doc_path(user_id), doc)

    def _list_user_ids(self) -> list[str]:
        user_ids: list[str] = []
        for path in sorted(self.players_dir.glob("*.json")):
            doc = _load_json(path, {})
            record = doc.get("record") if isinstance(doc, dict) else None
            if isinstance(record, dict) and record.get("user_id"):
                user_ids.append(str(record["user_id"]))
        return user_ids

    def _append_row(self, log_name: str, row: dict[str, Any]) -> None:
        path = self._log_path(log_name)
        with self._log_lock:
            with path.open("a", encoding="utf-8", newline="\n") as handle:
                handle.write(json.dumps(row, sort_keys=True, separators=(",", ":")))
                handle.write("\n")

    def _read_rows(self, log_name: str) -> list[dict[str, Any]]:
        path = self._log_path(log_name)
        if not path.exists():
            return []
        rows: list[dict[str, Any]] = []
        with path.open("r", encoding="utf-8") as handle:
            for line in handle:
                line = line.strip()
                if not line:
                    continue
                try:
                    payload = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if isinstance(payload, dict):
                    rows.append(payload)
        return rows

    def _replace_rows(self, log_name: str, rows: list[dict[str, Any]]) -> None:
        path = self._log_path(log_name)
        temp_path = path.parent / f".{path.name}.tmp"
        with temp_path.open("w", encoding="utf-8", newline="\n") as handle:
            for row in rows:
                handle.write(json.dumps(row, sort_keys=True, separators=(",", ":")))
                handle.write("\n")
        temp_path.replace(path)

    def _read_meta(self, name: str, default: Any) -> Any:
        return _load_json(self.base / f"{name}.json", default)

    def _write_meta(self, name: str, value: Any) -> None:
        _save_json(self.base / f"{name}.json", value)
