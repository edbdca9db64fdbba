"""
Settlement of finalized games and the admin money reports.
"""

import logging
from collections import defaultdict
from datetime import datetime, timezone
from functools import reduce
from operator import mul
from typing import Dict, List, Optional

from pymongo.database import Database

from odds import evaluate_selection
from schemas import PAYOUT_TRANSITIONS, PaymentStatus, PayoutStatus, SelectionStatus, sources_of

logger = logging.getLogger(__name__)

SETTLED = ["won", "lost", "void"]
# settled tickets that owe the bettor money
PAYABLE = ["won", "void"]


def overall_status(selections: List[dict]) -> str:
    """Ticket status from its legs.

    Any lost leg loses and any pending leg waits. Otherwise the ticket wins,
    void legs counting at odds 1.0, unless every leg is void.
    """
    statuses = [s.get("status", SelectionStatus.PENDING.value) for s in selections]
    if SelectionStatus.LOST.value in statuses:
        return "lost"
    if SelectionStatus.PENDING.value in statuses:
        return "pending"
    if SelectionStatus.WON.value in statuses:
        return "won"
    return "void"


def settled_payout(bet: dict, selections: List[dict], status: str) -> float:
    """What the bettor is owed for a settled ticket."""
    if status == "lost":
        return 0.0
    if status == "void":
        return round(float(bet["stake"]), 2)
    if all(s["status"] == SelectionStatus.WON.value for s in selections):
        return float(bet["potential_payout"])
    # void legs drop out of the price
    price = round(reduce(mul, (float(s["odds"]) for s in selections
                               if s["status"] == SelectionStatus.WON.value), 1.0), 2)
    return round(float(bet["stake"]) * price, 2)


def settle_bet(bet: dict, game_id: str, result: Dict[str, str]) -> dict:
    """Resolve the bet's pending legs on one game. Returns the fields to $set."""
    selections = [dict(s) for s in bet.get("selections", [])]
    for sel in selections:
        if sel.get("game_id") != game_id or sel.get("status") != SelectionStatus.PENDING.value:
            continue
        sel["status"] = evaluate_selection(sel.get("market"), sel.get("outcome"), result)

    update = {"selections": selections, "status": overall_status(selections)}
    if update["status"] != "pending":
        update["payout"] = settled_payout(bet, selections, update["status"])
        update["settled_at"] = datetime.now(timezone.utc)
    return update


def settle_game(db: Database, game: dict) -> int:
    """Settle every approved bet with a pending leg on a finalized game.

    A bet that fails to settle is logged and skipped. Returns how many bets
    were updated.
    """
    game_id = str(game["_id"])
    result = game.get("result") or {}
    cursor = db["bet"].find({
        "payment_status": PaymentStatus.APPROVED.value,
        "selections": {"$elemMatch": {"game_id": game_id, "status": SelectionStatus.PENDING.value}},
    })
    settled = 0
    for bet in list(cursor):
        try:
            update = settle_bet(bet, game_id, result)
            db["bet"].update_one({"_id": bet["_id"]}, {"$set": update})
            settled += 1
        except Exception:
            logger.exception("Could not settle bet %s on game %s", bet.get("_id"), game_id)
    logger.info("Game %s settled: %d bets updated", game_id, settled)
    return settled


def _window(since: Optional[datetime], until: Optional[datetime]) -> dict:
    placed = {}
    if since:
        placed["$gte"] = since
    if until:
        placed["$lt"] = until
    return {"placed_at": placed} if placed else {}


def amount_due(bet: dict) -> float:
    """Payout owed on a settled won or void ticket."""
    if bet.get("payout") is not None:
        return float(bet["payout"])
    return float(bet["stake"] if bet["status"] == "void" else bet["potential_payout"])


def financial_report(db: Database, since: Optional[datetime] = None,
                     until: Optional[datetime] = None) -> dict:
    """Collected vs owed vs paid over approved, settled bets placed in the window.

    Void tickets owe the stake back and count with the winners.
    """
    query = {"payment_status": PaymentStatus.APPROVED.value, "status": {"$in": SETTLED}}
    query.update(_window(since, until))

    collected = owed = paid = 0.0
    counts = {"lost": 0, "won_pending": 0, "won_paid": 0, "void_pending": 0, "void_paid": 0}
    for bet in db["bet"].find(query, {"status": 1, "stake": 1, "potential_payout": 1, "payout": 1,
                                      "payout_status": 1}):
        if bet["status"] == "lost":
            collected += float(bet["stake"])
            counts["lost"] += 1
        elif bet.get("payout_status") == PayoutStatus.PAID.value:
            paid += amount_due(bet)
            counts[f"{bet['status']}_paid"] += 1
        else:
            owed += amount_due(bet)
            counts[f"{bet['status']}_pending"] += 1

    return {
        "collected": round(collected, 2),
        "owed": round(owed, 2),
        "paid": round(paid, 2),
        "balance": round(collected - (owed + paid), 2),
        "counts": counts,
    }


def _owed_query(pix: Optional[str] = None) -> dict:
    query = {
        "status": {"$in": PAYABLE},
        "payment_status": PaymentStatus.APPROVED.value,
        "payout_status": {"$in": sources_of(PAYOUT_TRANSITIONS, PayoutStatus.PAID.value)},
    }
    if pix is not None:
        query["bettor.pix"] = pix
    return query


def payout_summary(db: Database) -> List[dict]:
    """What each bettor is owed right now, largest first."""
    grouped: Dict[str, dict] = defaultdict(lambda: {"name": "", "pix": "", "owed": 0.0, "bets": 0})
    for bet in db["bet"].find(_owed_query(), {"bettor": 1, "status": 1, "stake": 1, "potential_payout": 1,
                                              "payout": 1}):
        row = grouped[bet["bettor"]["pix"]]
        row["name"] = bet["bettor"]["name"]
        row["pix"] = bet["bettor"]["pix"]
        row["owed"] = round(row["owed"] + amount_due(bet), 2)
        row["bets"] += 1
    return sorted(grouped.values(), key=lambda r: r["owed"], reverse=True)


def mark_user_paid(db: Database, pix: str) -> int:
    """Mark every won or void, unpaid bet of a bettor as paid. Safe to repeat."""
    res = db["bet"].update_many(
        _owed_query(pix),
        {"$set": {"payout_status": PayoutStatus.PAID.value, "paid_at": datetime.now(timezone.utc)}},
    )
    logger.info("Bettor %s marked paid: %d bets", pix, res.modified_count)
    return res.modified_count


def clear_history(db: Database) -> dict:
    """Drop bets with nothing left to pay and finalized games nobody references."""
    done = {"$or": [
        {"payment_status": PaymentStatus.REFUNDED.value},
        {"status": "lost"},
        {"status": {"$in": PAYABLE}, "payout_status": PayoutStatus.PAID.value},
    ]}
    bets_deleted = db["bet"].delete_many(done).deleted_count

    referenced = {s["game_id"] for b in db["bet"].find({}, {"selections": 1})
                  for s in b.get("selections", [])}
    stale = [g["_id"] for g in db["game"].find({"status": "finalized"}, {"_id": 1})
             if str(g["_id"]) not in referenced]
    games_deleted = db["game"].delete_many({"_id": {"$in": stale}}).deleted_count if stale else 0

    logger.info("History cleared: %d bets, %d games", bets_deleted, games_deleted)
    return {"bets_deleted": bets_deleted, "games_deleted": games_deleted}
