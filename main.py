import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import Body, Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from pymongo.database import Database

import games
from config import Settings, get_settings
from database import connect, ensure_indexes, get_documents
from lifecycle import BetRequest, create_payment_request
from odds_engine import OddsEngine
from payments import MercadoPagoClient, PaymentProviderError
from schemas import GameStatus
from settlement import clear_history, financial_report, mark_user_paid, payout_summary
from webhooks import WebhookHandler

db = connect(get_settings())


@asynccontextmanager
async def lifespan(app: FastAPI):
    if db is not None:
        ensure_indexes(db)
    yield


app = FastAPI(title="AgroBet Betting API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Dependencies ---

def get_db() -> Database:
    if db is None:
        raise HTTPException(status_code=503, detail="Database not configured")
    return db


def get_payments(settings: Settings = Depends(get_settings)) -> MercadoPagoClient:
    return MercadoPagoClient(settings)


def get_engine(database: Database = Depends(get_db), settings: Settings = Depends(get_settings)) -> OddsEngine:
    return OddsEngine(database, settings)


def _with_ids(items: list) -> list:
    for it in items:
        it["id"] = str(it.pop("_id"))
    return items


# Pydantic response helpers
class IDModel(BaseModel):
    id: str


class EditOdds(BaseModel):
    odds: Dict[str, Dict[str, float]]


@app.get("/")
def read_root():
    return {"message": "AgroBet backend is running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": [],
    }
    if db is None:
        return response
    try:
        response["collections"] = db.list_collection_names()[:10]
        response["database"] = "✅ Connected & Working"
        response["connection_status"] = "Connected"
    except Exception as e:
        response["database"] = f"⚠️  Connected but Error: {str(e)[:50]}"
    return response


# --- Games ---
@app.get("/api/games")
def list_open_games(database: Database = Depends(get_db)):
    items = get_documents(database, "game", {"status": GameStatus.OPEN.value}, limit=100,
                          sort=[("created_at", 1)])
    return {"items": _with_ids(items)}


@app.get("/api/games/results")
def list_results(database: Database = Depends(get_db)):
    items = get_documents(database, "game", {"status": GameStatus.FINALIZED.value}, limit=100,
                          sort=[("finalized_at", -1)])
    return {"items": _with_ids(items)}


@app.get("/api/games/{game_id}")
def read_game(game_id: str, database: Database = Depends(get_db)):
    return _with_ids([games.get_game(database, game_id)])[0]


# --- Betting ---
@app.post("/api/bets")
def place_bet(payload: BetRequest,
              database: Database = Depends(get_db),
              settings: Settings = Depends(get_settings),
              payments: MercadoPagoClient = Depends(get_payments)):
    try:
        return create_payment_request(database, settings, payments, payload)
    except PaymentProviderError as e:
        raise HTTPException(status_code=502, detail=f"Could not create payment: {e}")


@app.get("/api/bets")
def list_bettor_bets(pix: str = Query(..., min_length=1), database: Database = Depends(get_db)):
    items = get_documents(database, "bet", {"bettor.pix": pix}, limit=200, sort=[("placed_at", -1)])
    return {"items": _with_ids(items)}


@app.post("/api/webhooks/mercadopago")
def mercadopago_webhook(request: Request,
                        body: Optional[Dict[str, Any]] = Body(None),
                        database: Database = Depends(get_db),
                        payments: MercadoPagoClient = Depends(get_payments),
                        engine: OddsEngine = Depends(get_engine)):
    handler = WebhookHandler(database, payments, engine)
    try:
        return handler.handle(body, dict(request.query_params))
    except PaymentProviderError as e:
        raise HTTPException(status_code=503, detail=f"Payment lookup failed, retry later: {e}")


# --- Admin ---
@app.post("/api/admin/games", response_model=IDModel)
def create_game(payload: games.CreateGame,
                database: Database = Depends(get_db),
                settings: Settings = Depends(get_settings)):
    return {"id": games.create_game(database, settings, payload)}


@app.post("/api/admin/games/{game_id}/close")
def close_game(game_id: str, database: Database = Depends(get_db)):
    games.close_game(database, game_id)
    return {"status": "ok"}


@app.post("/api/admin/games/{game_id}/finalize")
def finalize_game(game_id: str, payload: games.FinalizeGame, database: Database = Depends(get_db)):
    return games.finalize_game(database, game_id, payload)


@app.put("/api/admin/games/{game_id}/odds")
def edit_odds(game_id: str, payload: EditOdds,
              database: Database = Depends(get_db),
              settings: Settings = Depends(get_settings)):
    return {"odds": games.edit_odds(database, settings, game_id, payload.odds)}


@app.get("/api/admin/report")
def report(since: Optional[datetime] = None, until: Optional[datetime] = None,
           database: Database = Depends(get_db)):
    return financial_report(database, since, until)


@app.get("/api/admin/payouts")
def payouts(database: Database = Depends(get_db)):
    return {"items": payout_summary(database)}


@app.post("/api/admin/payouts/{pix}/paid")
def mark_paid(pix: str, database: Database = Depends(get_db)):
    return {"updated": mark_user_paid(database, pix)}


@app.get("/api/admin/unmatched-payments")
def unmatched_payments(database: Database = Depends(get_db)):
    items = get_documents(database, "unmatched_payment", limit=200, sort=[("received_at", -1)])
    return {"items": _with_ids(items)}


@app.post("/api/admin/clear-history")
def clear(database: Database = Depends(get_db)):
    return clear_history(database)


if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
