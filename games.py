"""
Game administration: creation, closing, finalizing and manual odds edits.

Status only moves forward: open -> closed -> finalized (open may finalize
directly). Every write is a targeted $set guarded by the expected status.
"""

import logging
from datetime import datetime, timezone
from typing import Dict, Optional

from bson import ObjectId
from fastapi import HTTPException, status
from pydantic import BaseModel, Field
from pymongo import ReturnDocument
from pymongo.database import Database

from config import Settings
from database import create_document
from odds import PENDING, VOID, OUTCOMES, OddsBook, market_type, resolve_from_score
from schemas import Game, GameStatus, Team
from settlement import settle_game

logger = logging.getLogger(__name__)


class CreateGame(BaseModel):
    home_team: Team
    away_team: Team
    scheduled: str
    competition: str = ""
    odds: Dict[str, Dict[str, float]]
    total_goals_line: float = 2.5
    max_stake_per_user: Optional[float] = Field(None, gt=0)


class Score(BaseModel):
    home_goals: int = Field(..., ge=0)
    away_goals: int = Field(..., ge=0)


class FinalizeGame(BaseModel):
    result: Dict[str, str] = Field(default_factory=dict)
    score: Optional[Score] = None


def oid(id_str: str) -> ObjectId:
    try:
        return ObjectId(id_str)
    except Exception:
        raise HTTPException(status_code=400, detail="Invalid ID format")


def get_game(db: Database, game_id: str) -> dict:
    game = db["game"].find_one({"_id": oid(game_id)})
    if not game:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Game not found")
    return game


def create_game(db: Database, settings: Settings, payload: CreateGame) -> str:
    try:
        table = OddsBook.validate_table(payload.odds, settings.min_odd, settings.max_odd)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    game = Game(
        home_team=payload.home_team,
        away_team=payload.away_team,
        scheduled=payload.scheduled,
        competition=payload.competition,
        status=GameStatus.OPEN,
        result={market: PENDING for market in table},
        odds=table,
        # opening odds are written here and nowhere else
        initial_odds=table,
        total_goals_line=payload.total_goals_line,
        max_stake_per_user=payload.max_stake_per_user or settings.max_stake_per_user,
    )
    new_id = create_document(db, "game", game.model_dump(exclude_none=True))
    logger.info("Game created: %s %s x %s", new_id, payload.home_team.name, payload.away_team.name)
    return new_id


def close_game(db: Database, game_id: str) -> dict:
    game = db["game"].find_one_and_update(
        {"_id": oid(game_id), "status": GameStatus.OPEN.value},
        {"$set": {"status": GameStatus.CLOSED.value, "updated_at": datetime.now(timezone.utc)}},
        return_document=ReturnDocument.AFTER,
    )
    if game is None:
        get_game(db, game_id)
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Only open games can be closed")
    logger.info("Game %s closed", game_id)
    return game


def _final_result(game: dict, payload: FinalizeGame) -> Dict[str, str]:
    markets = list(game.get("odds") or {})
    result = {}
    if payload.score is not None:
        result.update(resolve_from_score(markets, payload.score.home_goals, payload.score.away_goals,
                                         game.get("total_goals_line", 2.5)))
    for market, winner in payload.result.items():
        if market not in markets:
            raise ValueError(f"Market '{market}' is not offered for this game")
        if winner != VOID and winner not in OUTCOMES[market_type(market)]:
            raise ValueError(f"Invalid result '{winner}' for market '{market}'")
        result[market] = winner
    missing = [m for m in markets if result.get(m, PENDING) == PENDING]
    if missing:
        raise ValueError(f"Missing result for {', '.join(missing)}")
    return result


def finalize_game(db: Database, game_id: str, payload: FinalizeGame) -> dict:
    """Record the result and settle the game's bets."""
    game = get_game(db, game_id)
    if game.get("status") == GameStatus.FINALIZED.value:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Game already finalized")
    try:
        result = _final_result(game, payload)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    now = datetime.now(timezone.utc)
    game = db["game"].find_one_and_update(
        {"_id": game["_id"], "status": {"$in": [GameStatus.OPEN.value, GameStatus.CLOSED.value]}},
        {"$set": {"status": GameStatus.FINALIZED.value, "result": result,
                  "finalized_at": now, "updated_at": now}},
        return_document=ReturnDocument.AFTER,
    )
    if game is None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Game already finalized")
    logger.info("Game %s finalized: %s", game_id, result)
    return {"result": result, "settled": settle_game(db, game)}


def edit_odds(db: Database, settings: Settings, game_id: str, odds: Dict[str, Dict[str, float]]) -> dict:
    """Manual odds override. Opening odds stay untouched."""
    game = get_game(db, game_id)
    if game.get("status") != GameStatus.OPEN.value:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Odds can only be edited while open")
    book = OddsBook.from_game(game, settings)
    try:
        for market, prices in odds.items():
            for outcome, value in prices.items():
                book.set_odds(market, outcome, value)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    update = book.changes()
    if update:
        update["updated_at"] = datetime.now(timezone.utc)
        res = db["game"].update_one({"_id": game["_id"], "status": GameStatus.OPEN.value}, {"$set": update})
        if res.matched_count == 0:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Odds can only be edited while open")
        logger.info("Game %s odds edited: %s", game_id, update)
    return book.snapshot()
