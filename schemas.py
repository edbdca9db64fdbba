"""
Database Schemas for AgroBet

Each Pydantic model represents a collection in MongoDB.
Collection name is the lowercase of the class name (e.g., Game -> "game").
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class GameStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"
    FINALIZED = "finalized"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REFUNDED = "refunded"


class PayoutStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"


class SelectionStatus(str, Enum):
    PENDING = "pending"
    WON = "won"
    LOST = "lost"
    VOID = "void"


# current state -> states it may move to
PAYMENT_TRANSITIONS = {
    PaymentStatus.PENDING.value: {PaymentStatus.APPROVED.value},
    PaymentStatus.APPROVED.value: {PaymentStatus.REFUNDED.value},
    PaymentStatus.REFUNDED.value: set(),
}

PAYOUT_TRANSITIONS = {
    PayoutStatus.PENDING.value: {PayoutStatus.PAID.value},
    PayoutStatus.PAID.value: set(),
}


def can_transition(table: dict, current: str, new: str) -> bool:
    return new in table.get(current, set())


def sources_of(table: dict, target: str) -> list:
    """States a document may be in for a move to target."""
    return [state for state, targets in table.items() if target in targets]


class Team(BaseModel):
    name: str = Field(..., min_length=1)
    logo: Optional[str] = Field(None, description="URL of the team crest")


class Bettor(BaseModel):
    name: str = Field(..., min_length=1)
    pix: str = Field(..., min_length=1, description="PIX key, identifies the bettor for payouts")


class Game(BaseModel):
    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    home_team: Team
    away_team: Team
    scheduled: str = Field(..., description="Display label, e.g. 'Sáb 16:00'")
    competition: str = ""
    status: GameStatus = GameStatus.OPEN
    # market -> "pending" or the winning outcome
    result: Dict[str, str] = Field(default_factory=dict)
    # market -> outcome -> decimal odds
    odds: Dict[str, Dict[str, float]]
    initial_odds: Dict[str, Dict[str, float]]
    total_goals_line: float = 2.5
    max_stake_per_user: float = Field(..., gt=0)
    created_at: Optional[datetime] = None
    finalized_at: Optional[datetime] = None


class Selection(BaseModel):
    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    game_id: str
    market: str
    outcome: str
    odds: float = Field(..., gt=1.0)
    label: str = ""
    status: SelectionStatus = SelectionStatus.PENDING


class Bet(BaseModel):
    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    selections: List[Selection] = Field(..., min_length=1)
    price: float = Field(..., gt=1.0)
    stake: float = Field(..., gt=0)
    potential_payout: float
    bettor: Bettor
    payment_id: str
    payment_status: PaymentStatus = PaymentStatus.APPROVED
    payout_status: PayoutStatus = PayoutStatus.PENDING
    status: Literal["pending", "won", "lost", "void"] = "pending"
    # amount owed to the bettor once settled: the frozen payout for a clean win,
    # void legs priced at 1.0 otherwise, the stake back when every leg is void
    payout: Optional[float] = None
    placed_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    settled_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None


class UnmatchedPayment(BaseModel):
    """An approved payment whose metadata could not be turned into a bet.

    Kept so the confirmed money is never lost; an admin reconciles it by hand.
    """
    payment_id: str
    status: str
    amount: Optional[float] = None
    payer_email: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    error: str
    received_at: datetime
