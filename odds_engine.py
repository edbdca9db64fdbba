"""
Dynamic odds for the primary market.

Opening odds set by the bookmaker hold until the pool reaches the starting
size. From there the price of every outcome moves toward the pool-implied fair
odds (total pool x payout rate / stake on the outcome), weighted by how close
the pool is to maturity:

    weight  = max(0, 1 - pool / maturity_pool)
    blended = implied * (1 - weight) + opening * weight

and clamped to [min_odd, max_odd]. All outcomes are written in one update.
"""

import logging
from datetime import datetime, timezone
from typing import Dict, Optional

from bson import ObjectId
from pymongo.database import Database

from config import Settings
from odds import PRIMARY_MARKET, OddsBook
from schemas import GameStatus
from stakes import StakePool, aggregate_stakes

logger = logging.getLogger(__name__)


def blend_weight(pool_total: float, settings: Settings) -> float:
    if settings.maturity_pool <= 0:
        return 0.0
    return max(0.0, 1.0 - pool_total / settings.maturity_pool)


def blend_odds(opening: Dict[str, float], pool: StakePool, settings: Settings) -> Optional[Dict[str, float]]:
    """Unclamped blended odds per outcome, or None while the pool is too small."""
    total = pool.total
    if total < settings.starting_pool:
        return None
    weight = blend_weight(total, settings)
    blended = {}
    for outcome, opening_odds in opening.items():
        # floor of 1 keeps an outcome nobody backed finite
        implied = total * settings.payout_rate / max(pool.stake_on(outcome), 1.0)
        blended[outcome] = implied * (1.0 - weight) + float(opening_odds) * weight
    return blended


class OddsEngine:
    def __init__(self, db: Database, settings: Settings):
        self.db = db
        self.settings = settings

    def recompute(self, game_id: str) -> Optional[Dict[str, float]]:
        """Reprice a game's primary market from its stake pool.

        Returns the new odds, or None when nothing was written: unknown or
        non-open game, no opening odds, or a pool still below the starting size.
        """
        if not ObjectId.is_valid(game_id):
            logger.warning("Skipping odds recompute for invalid game id %r", game_id)
            return None
        oid = ObjectId(game_id)
        game = self.db["game"].find_one({"_id": oid}, {"status": 1, "odds": 1, "initial_odds": 1})
        if not game or game.get("status") != GameStatus.OPEN.value:
            return None
        opening = (game.get("initial_odds") or {}).get(PRIMARY_MARKET)
        if not opening:
            return None

        pool = aggregate_stakes(self.db, game_id)
        blended = blend_odds(opening, pool, self.settings)
        if blended is None:
            logger.debug("Game %s pool %.2f below starting pool, odds unchanged", game_id, pool.total)
            return None

        book = OddsBook.from_game(game, self.settings)
        for outcome, value in blended.items():
            book.set_odds(PRIMARY_MARKET, outcome, value, clamp=True)

        update = book.changes()
        update["pool_total"] = pool.total
        update["odds_updated_at"] = datetime.now(timezone.utc)
        res = self.db["game"].update_one({"_id": oid, "status": GameStatus.OPEN.value}, {"$set": update})
        if res.matched_count == 0:
            # closed between the read and the write
            return None

        new_odds = book.snapshot()[PRIMARY_MARKET]
        logger.info("Game %s repriced from pool %.2f: %s", game_id, pool.total, new_odds)
        return new_odds
