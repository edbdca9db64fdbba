"""
Bet lifecycle: quoting, payment requests, approval and refunds.

A bet is only a quote until Mercado Pago confirms the payment. The quote
travels with the checkout preference as metadata and comes back on the
webhook, so the bettor gets exactly the odds and payout shown at checkout.

    payment_status: pending -> approved -> refunded
    payout_status:  pending -> paid          (admin only, settled bets only)

A payment confirmed after its game was finalized is settled on the spot.
"""

import logging
from datetime import datetime, timezone
from functools import reduce
from operator import mul
from typing import List

from bson import ObjectId
from fastapi import HTTPException, status
from pydantic import BaseModel, Field, ValidationError
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

from config import Settings
from odds import OUTCOMES, PRIMARY_MARKET, market_type
from odds_engine import OddsEngine
from payments import MercadoPagoClient
from schemas import (
    PAYMENT_TRANSITIONS, Bet, Bettor, GameStatus, PaymentStatus, Selection, UnmatchedPayment, sources_of,
)
from settlement import settle_bet

logger = logging.getLogger(__name__)

# --- Requests and quotes ---

class SelectionRequest(BaseModel):
    game_id: str
    market: str = PRIMARY_MARKET
    outcome: str


class BetRequest(BaseModel):
    selections: List[SelectionRequest] = Field(..., min_length=1)
    stake: float = Field(..., gt=0)
    bettor: Bettor


class BetQuote(BaseModel):
    """Everything needed to persist the bet once the payment is approved."""
    selections: List[Selection] = Field(..., min_length=1)
    price: float = Field(..., gt=1.0)
    stake: float = Field(..., gt=0)
    potential_payout: float = Field(..., gt=0)
    bettor: Bettor
    placed_at: datetime


def _bad_request(detail) -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


def approved_stake(db: Database, pix: str, game_id: str) -> float:
    """Approved stake a bettor already holds on bets touching this game."""
    cursor = db["bet"].find(
        {"payment_status": PaymentStatus.APPROVED.value, "bettor.pix": pix, "selections.game_id": game_id},
        {"stake": 1},
    )
    return round(sum(float(b.get("stake", 0)) for b in cursor), 2)


def remaining_allowance(db: Database, game: dict, pix: str) -> float:
    existing = approved_stake(db, pix, str(game["_id"]))
    return max(0.0, round(float(game["max_stake_per_user"]) - existing, 2))


def quote_bet(db: Database, settings: Settings, req: BetRequest) -> BetQuote:
    """Validate a bet request against live games and freeze its odds."""
    game_ids = [s.game_id for s in req.selections]
    if len(set(game_ids)) != len(game_ids):
        raise _bad_request("A ticket cannot hold two selections on the same game")
    if not all(ObjectId.is_valid(g) for g in game_ids):
        raise _bad_request("Invalid ID format")

    games = {str(g["_id"]): g for g in db["game"].find({"_id": {"$in": [ObjectId(g) for g in game_ids]}})}

    selections = []
    for sel in req.selections:
        game = games.get(sel.game_id)
        if not game:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Game {sel.game_id} not found")
        if game.get("status") != GameStatus.OPEN.value:
            raise _bad_request("Game is not open for betting")
        try:
            kind = market_type(sel.market)
        except ValueError as e:
            raise _bad_request(str(e))
        prices = (game.get("odds") or {}).get(sel.market)
        if not prices:
            raise _bad_request(f"Market '{sel.market}' is not offered for this game")
        if sel.outcome not in OUTCOMES[kind] or sel.outcome not in prices:
            raise _bad_request(f"Invalid outcome '{sel.outcome}' for market '{sel.market}'")
        odds = float(prices[sel.outcome])

        if req.stake > settings.high_stake_threshold and odds < settings.short_odds_threshold:
            raise _bad_request(
                f"Stakes above {settings.high_stake_threshold:.2f} are not accepted on odds "
                f"below {settings.short_odds_threshold:.2f}")

        remaining = remaining_allowance(db, game, req.bettor.pix)
        if req.stake > remaining + 1e-9:
            raise _bad_request({
                "message": f"Stake limit for this game exceeded, you can still bet {remaining:.2f}",
                "remaining": remaining,
            })

        label = f"{game['home_team']['name']} x {game['away_team']['name']}"
        selections.append(Selection(game_id=sel.game_id, market=sel.market, outcome=sel.outcome,
                                    odds=odds, label=label))

    price = round(reduce(mul, (s.odds for s in selections), 1.0), 2)
    return BetQuote(
        selections=selections,
        price=price,
        stake=round(req.stake, 2),
        potential_payout=round(req.stake * price, 2),
        bettor=req.bettor,
        placed_at=datetime.now(timezone.utc),
    )


def create_payment_request(db: Database, settings: Settings, payments: MercadoPagoClient,
                           req: BetRequest) -> dict:
    """Quote the bet and open a Mercado Pago checkout for it. Nothing is stored."""
    quote = quote_bet(db, settings, req)
    if len(quote.selections) == 1:
        sel = quote.selections[0]
        title = f"Aposta no jogo: {sel.label}"
        description = f"Palpite: {sel.outcome} ({sel.market}) @ {sel.odds:.2f}"
    else:
        title = f"Aposta múltipla ({len(quote.selections)} jogos)"
        description = "; ".join(f"{s.label}: {s.outcome}" for s in quote.selections)

    preference = payments.create_preference(
        title=title,
        description=description,
        amount=quote.stake,
        metadata=quote.model_dump(mode="json"),
        external_reference=req.bettor.pix,
    )
    logger.info("Payment preference %s created for %s, stake %.2f @ %.2f",
                preference.get("id"), req.bettor.pix, quote.stake, quote.price)
    return {
        "init_point": preference.get("init_point"),
        "preference_id": preference.get("id"),
        "price": quote.price,
        "potential_payout": quote.potential_payout,
    }


# --- Payment confirmations ---

def _reprice(engine: OddsEngine, game_ids) -> None:
    for game_id in dict.fromkeys(game_ids):
        try:
            engine.recompute(game_id)
        except PyMongoError:
            # the next approval on this game reprices from the full pool again
            logger.exception("Odds recompute failed for game %s", game_id)


def _record_unmatched(db: Database, payment_id: str, payment: dict, error: ValidationError) -> str:
    """Keep an approved payment whose metadata is not a bet quote for manual reconciliation."""
    record = UnmatchedPayment(
        payment_id=payment_id,
        status=str(payment.get("status")),
        amount=payment.get("transaction_amount"),
        payer_email=(payment.get("payer") or {}).get("email"),
        metadata=payment.get("metadata") or {},
        error=str(error),
        received_at=datetime.now(timezone.utc),
    )
    try:
        db["unmatched_payment"].insert_one(record.model_dump())
    except DuplicateKeyError:
        logger.info("Unmatched payment %s already recorded", payment_id)
        return "duplicate"
    logger.error("Payment %s carries invalid bet metadata, kept for reconciliation: %s", payment_id, error)
    return "unmatched"


def _settle_late(db: Database, bet: dict) -> None:
    """Settle the legs of a stored bet whose games are already finalized.

    Runs on every delivery of the payment, so a redelivery finishes what a
    failed attempt left pending.
    """
    for game_id in dict.fromkeys(s["game_id"] for s in bet["selections"]):
        if (bet.get("status") != "pending" or bet.get("payment_status") != PaymentStatus.APPROVED.value
                or not ObjectId.is_valid(game_id)):
            continue
        try:
            game = db["game"].find_one({"_id": ObjectId(game_id), "status": GameStatus.FINALIZED.value},
                                       {"result": 1})
            if game is None:
                continue
            update = settle_bet(bet, game_id, game.get("result") or {})
            db["bet"].update_one({"_id": bet["_id"]}, {"$set": update})
        except Exception:
            logger.exception("Could not settle late bet %s on game %s", bet["_id"], game_id)
            continue
        bet.update(update)
        logger.info("Bet %s confirmed after game %s was finalized, now %s",
                    bet["_id"], game_id, update["status"])


def approve_payment(db: Database, engine: OddsEngine, payment: dict) -> str:
    """Persist the bet behind an approved payment, once.

    Returns "approved" for the first delivery and "duplicate" for repeats.
    A payment whose metadata is not a bet quote is stored apart and
    reported as "unmatched".
    """
    payment_id = str(payment["id"])
    existing = db["bet"].find_one({"payment_id": payment_id})
    if existing:
        logger.info("Payment %s already recorded, ignoring duplicate notification", payment_id)
        _settle_late(db, existing)
        return "duplicate"

    try:
        quote = BetQuote.model_validate(payment.get("metadata") or {})
    except ValidationError as e:
        return _record_unmatched(db, payment_id, payment, e)

    now = datetime.now(timezone.utc)
    bet = Bet(
        selections=quote.selections,
        price=quote.price,
        stake=quote.stake,
        potential_payout=quote.potential_payout,
        bettor=quote.bettor,
        payment_id=payment_id,
        payment_status=PaymentStatus.APPROVED,
        placed_at=quote.placed_at,
        approved_at=now,
    )
    doc = bet.model_dump()
    doc["created_at"] = now
    try:
        db["bet"].insert_one(doc)
    except DuplicateKeyError:
        logger.info("Payment %s recorded concurrently, ignoring duplicate notification", payment_id)
        return "duplicate"

    logger.info("Bet approved: payment=%s bettor=%s stake=%.2f price=%.2f",
                payment_id, quote.bettor.pix, quote.stake, quote.price)
    _settle_late(db, doc)
    _reprice(engine, [s.game_id for s in quote.selections])
    return "approved"


def refund_payment(db: Database, engine: OddsEngine, payment_id: str) -> str:
    """Move an approved bet to refunded and take its stake out of the pool."""
    bet = db["bet"].find_one_and_update(
        {"payment_id": str(payment_id),
         "payment_status": {"$in": sources_of(PAYMENT_TRANSITIONS, PaymentStatus.REFUNDED.value)}},
        {"$set": {"payment_status": PaymentStatus.REFUNDED.value,
                  "refunded_at": datetime.now(timezone.utc)}},
        return_document=ReturnDocument.AFTER,
    )
    if bet is None:
        logger.warning("Refund for payment %s matched no approved bet", payment_id)
        return "ignored"
    logger.info("Bet refunded: payment=%s bettor=%s stake=%.2f",
                payment_id, bet["bettor"]["pix"], bet["stake"])
    _reprice(engine, [s["game_id"] for s in bet.get("selections", [])])
    return "refunded"
