"""
Stake pool of a game: approved single-leg stake per outcome.

Multi-leg tickets never feed the pool, and neither do single bets on
secondary markets. Only primary market money moves the odds.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict

from pymongo.database import Database

from odds import PRIMARY_MARKET, OUTCOMES, MarketType
from schemas import PaymentStatus

logger = logging.getLogger(__name__)


@dataclass
class StakePool:
    game_id: str
    by_outcome: Dict[str, float] = field(default_factory=dict)
    bet_count: int = 0

    @property
    def total(self) -> float:
        return round(sum(self.by_outcome.values()), 2)

    def stake_on(self, outcome: str) -> float:
        return self.by_outcome.get(outcome, 0.0)


def aggregate_stakes(db: Database, game_id: str) -> StakePool:
    """Sum approved single-leg primary market stakes per outcome. Read only."""
    pool = StakePool(game_id, {o: 0.0 for o in OUTCOMES[MarketType.FINAL_RESULT]})
    cursor = db["bet"].find(
        {"payment_status": PaymentStatus.APPROVED.value, "selections.game_id": game_id},
        {"selections": 1, "stake": 1},
    )
    for bet in cursor:
        selections = bet.get("selections") or []
        if len(selections) != 1:
            continue
        sel = selections[0]
        if sel.get("game_id") != game_id or sel.get("market") != PRIMARY_MARKET:
            continue
        outcome = sel.get("outcome")
        if outcome not in pool.by_outcome:
            logger.warning("Bet %s has unknown outcome %r, left out of pool", bet.get("_id"), outcome)
            continue
        pool.by_outcome[outcome] = round(pool.by_outcome[outcome] + float(bet.get("stake", 0)), 2)
        pool.bet_count += 1
    return pool
