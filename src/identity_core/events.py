from __future__ import annotations

"""Inbound event shapes from external producers (training, arcade, bankroll, social)."""

from uuid import uuid4

from pydantic import BaseModel, Field

from .models import XPSource


class DrillCompletion(BaseModel):
    """A finished training drill; the XP amount is validated by the vault, not here."""

    user_id: str = Field(min_length=1, max_length=128)
    drill_id: str = Field(min_length=1, max_length=128)
    accuracy: float = Field(ge=0, le=1)
    gto_compliance: float | None = Field(default=None, ge=0, le=1)
    xp_amount: int


class BankrollUpdate(BaseModel):
    user_id: str = Field(min_length=1, max_length=128)
    wealth: float = Field(ge=0, le=1)


class ReputationUpdate(BaseModel):
    user_id: str = Field(min_length=1, max_length=128)
    luck: float = Field(ge=0, le=1)


class ArcadeUpdate(BaseModel):
    user_id: str = Field(min_length=1, max_length=128)
    base_aggression: float = Field(ge=0, le=1)
    speed_score: float = Field(ge=0, le=1)


class ManualGrant(BaseModel):
    """Operator XP grant; authorized by an admin session, not the caller's write session.

    `event_id` keys the ledger entry, so resubmitting the same event grants once.
    """

    event_id: str = Field(default_factory=lambda: str(uuid4()), min_length=1, max_length=128)
    user_id: str = Field(min_length=1, max_length=128)
    amount: int
    source: XPSource = XPSource.MANUAL_GRANT
    admin_session_token: str = Field(min_length=1)


InboundEvent = DrillCompletion | BankrollUpdate | ReputationUpdate | ArcadeUpdate | ManualGrant
