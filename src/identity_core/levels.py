from __future__ import annotations

"""Level threshold table: a monotone step function from XP total to level."""

from dataclasses import dataclass
from typing import Any, Iterable


@dataclass(frozen=True)
class LevelThreshold:
    level: int
    xp_required: int
    title: str
    badge: str = ""
    rarity: str = "COMMON"

    def reward(self) -> dict[str, Any]:
        return {"level": self.level, "title": self.title, "badge": self.badge, "rarity": self.rarity}


class LevelTable:
    """Ordered, validated level thresholds."""

    def __init__(self, rows: Iterable[LevelThreshold]) -> None:
        ordered = tuple(rows)
        if not ordered:
            raise ValueError("level table must not be empty")
        if ordered[0].xp_required != 0:
            raise ValueError("first level threshold must require 0 xp")
        for before, after in zip(ordered, ordered[1:]):
            if after.level <= before.level or after.xp_required <= before.xp_required:
                raise ValueError(
                    f"level thresholds must be strictly ascending (level {before.level} -> {after.level})"
                )
        self.rows = ordered

    def __iter__(self):  # type: ignore[no-untyped-def]
        return iter(self.rows)

    def __len__(self) -> int:
        return len(self.rows)

    def threshold_for(self, xp_total: int) -> LevelThreshold:
        current = self.rows[0]
        for row in self.rows:
            if xp_total >= row.xp_required:
                current = row
            else:
                break
        return current

    def level_for(self, xp_total: int) -> int:
        return self.threshold_for(xp_total).level

    def next_threshold(self, xp_total: int) -> LevelThreshold | None:
        for row in self.rows:
            if row.xp_required > xp_total:
                return row
        return None

    def rewards_between(self, old_total: int, new_total: int) -> list[dict[str, Any]]:
        """Rewards for every threshold crossed moving from `old_total` to `new_total`."""

        return [row.reward() for row in self.rows if old_total < row.xp_required <= new_total]

    def progress(self, xp_total: int) -> dict[str, Any]:
        current = self.threshold_for(xp_total)
        upcoming = self.next_threshold(xp_total)
        if upcoming is None:
            return {
                "level": current.level,
                "title": current.title,
                "next_level": None,
                "xp_required": None,
                "remaining": 0,
                "progress": 1.0,
            }
        span = upcoming.xp_required - current.xp_required
        return {
            "level": current.level,
            "title": current.title,
            "next_level": upcoming.level,
            "xp_required": upcoming.xp_required,
            "remaining": upcoming.xp_required - xp_total,
            "progress": round((xp_total - current.xp_required) / span, 4),
        }
