"""
Shared fixtures: in-memory MongoDB, test settings and a fake Mercado Pago.
"""

import itertools
from datetime import datetime, timezone

import mongomock
import pytest
from fastapi.testclient import TestClient

import games
import main
from config import Settings, get_settings
from database import ensure_indexes
from odds_engine import OddsEngine
from payments import PaymentProviderError

OPENING = {"home": 1.5, "draw": 3.0, "away": 2.5}


class FakeMercadoPago:
    """In-memory stand-in for MercadoPagoClient."""

    def __init__(self):
        self.preferences = []
        self.payments = {}
        self.down = False
        self._ids = itertools.count(1)

    def create_preference(self, title, description, amount, metadata, external_reference=None):
        if self.down:
            raise PaymentProviderError("Mercado Pago unreachable: timed out")
        n = next(self._ids)
        pref = {"id": f"pref-{n}", "init_point": f"https://mp.test/checkout/{n}",
                "title": title, "amount": amount, "metadata": metadata}
        self.preferences.append(pref)
        return {"id": pref["id"], "init_point": pref["init_point"]}

    def get_payment(self, payment_id):
        if self.down:
            raise PaymentProviderError("Mercado Pago unreachable: timed out")
        if payment_id not in self.payments:
            raise PaymentProviderError("Mercado Pago returned 404", status=404)
        return dict(self.payments[payment_id])

    def pay(self, payment_id, metadata, status="approved"):
        self.payments[str(payment_id)] = {"id": int(payment_id), "status": status, "metadata": metadata}


@pytest.fixture
def settings():
    return Settings(
        mercado_pago_access_token="TEST-token",
        vig=0.10,
        min_odd=1.01,
        max_odd=4.0,
        starting_pool=60.0,
        maturity_pool=400.0,
        max_stake_per_user=35.0,
        high_stake_threshold=50.0,
        short_odds_threshold=1.30,
    )


@pytest.fixture
def db():
    database = mongomock.MongoClient()["agrobet_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def engine(db, settings):
    return OddsEngine(db, settings)


@pytest.fixture
def mp():
    return FakeMercadoPago()


@pytest.fixture
def make_game(db, settings):
    def _make(odds=None, max_stake=None, home="Boi Bravo", away="Cavalo Preto"):
        payload = games.CreateGame(
            home_team={"name": home},
            away_team={"name": away},
            scheduled="Sáb 16:00",
            competition="Copa Rural",
            odds=odds or {"final_result": dict(OPENING)},
            max_stake_per_user=max_stake,
        )
        return games.create_game(db, settings, payload)
    return _make


@pytest.fixture
def add_bet(db):
    """Insert an already approved bet document directly."""
    counter = itertools.count(1000)

    def _add(game_id, outcome="home", stake=10.0, pix="pix-1", market="final_result",
             odds=2.0, legs=None, payment_status="approved"):
        selections = legs or [{"game_id": game_id, "market": market, "outcome": outcome,
                               "odds": odds, "label": "", "status": "pending"}]
        price = 1.0
        for leg in selections:
            price *= leg["odds"]
        price = round(price, 2)
        doc = {
            "selections": selections,
            "price": price,
            "stake": stake,
            "potential_payout": round(stake * price, 2),
            "bettor": {"name": pix.upper(), "pix": pix},
            "payment_id": str(next(counter)),
            "payment_status": payment_status,
            "payout_status": "pending",
            "status": "pending",
            "placed_at": datetime.now(timezone.utc),
        }
        db["bet"].insert_one(doc)
        return doc
    return _add


@pytest.fixture
def client(db, settings, mp):
    main.app.dependency_overrides[main.get_db] = lambda: db
    main.app.dependency_overrides[get_settings] = lambda: settings
    main.app.dependency_overrides[main.get_payments] = lambda: mp
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()
