"""
Unit tests for bet quoting, stake limits, approval and refunds
"""

import pytest
from bson import ObjectId
from fastapi import HTTPException

import games
from lifecycle import BetRequest, approve_payment, approved_stake, create_payment_request, quote_bet, refund_payment
from payments import PaymentProviderError
from schemas import PAYMENT_TRANSITIONS, PAYOUT_TRANSITIONS, can_transition
from settlement import financial_report, payout_summary


def _request(game_id, stake, outcome="home", pix="pix-x", market="final_result", legs=None):
    selections = legs or [{"game_id": game_id, "market": market, "outcome": outcome}]
    return BetRequest(selections=selections, stake=stake, bettor={"name": "Xavier", "pix": pix})


def _payment(payment_id, quote):
    return {"id": payment_id, "status": "approved", "metadata": quote.model_dump(mode="json")}


class _SpyEngine:
    def __init__(self):
        self.calls = []

    def recompute(self, game_id):
        self.calls.append(game_id)


class _RacingBets:
    """Bet collection whose first lookup misses a bet another worker stores right after."""

    def __init__(self, collection, rival):
        self._collection = collection
        self._rival = rival

    def find_one(self, *args, **kwargs):
        if self._rival:
            self._collection.insert_one(self._rival.pop())
            return None
        return self._collection.find_one(*args, **kwargs)

    def __getattr__(self, name):
        return getattr(self._collection, name)


class _RacingDb:
    def __init__(self, db, rival):
        self._db = db
        self._rival = [rival]

    def __getitem__(self, name):
        if name == "bet":
            return _RacingBets(self._db[name], self._rival)
        return self._db[name]


class TestTransitions:
    def test_payment_status_moves_forward_only(self):
        assert can_transition(PAYMENT_TRANSITIONS, "pending", "approved")
        assert can_transition(PAYMENT_TRANSITIONS, "approved", "refunded")
        assert not can_transition(PAYMENT_TRANSITIONS, "pending", "refunded")
        assert not can_transition(PAYMENT_TRANSITIONS, "refunded", "approved")
        assert not can_transition(PAYMENT_TRANSITIONS, "approved", "pending")

    def test_payout_status_is_one_way(self):
        assert can_transition(PAYOUT_TRANSITIONS, "pending", "paid")
        assert not can_transition(PAYOUT_TRANSITIONS, "paid", "pending")


class TestStakeLimit:
    def test_limit_rejects_with_remaining_allowance(self, db, settings, make_game, add_bet):
        """Limit 35 with 30 already approved: 10 is rejected, 5 is accepted"""
        game_id = make_game(max_stake=35)
        add_bet(game_id, "home", 30, pix="pix-x")
        assert approved_stake(db, "pix-x", game_id) == 30

        with pytest.raises(HTTPException) as exc:
            quote_bet(db, settings, _request(game_id, 10))
        assert exc.value.status_code == 400
        assert exc.value.detail["remaining"] == 5.0

        quote = quote_bet(db, settings, _request(game_id, 5))
        assert quote.stake == 5

    def test_refunded_and_other_bettors_do_not_count(self, db, settings, make_game, add_bet):
        game_id = make_game(max_stake=35)
        add_bet(game_id, "home", 30, pix="pix-x", payment_status="refunded")
        add_bet(game_id, "home", 30, pix="pix-y")
        assert quote_bet(db, settings, _request(game_id, 35)).stake == 35

    def test_unpaid_checkouts_are_not_counted(self, db, settings, engine, make_game):
        """Quotes are not stored, so two open checkouts can each use the full limit"""
        game_id = make_game(max_stake=35)
        first = quote_bet(db, settings, _request(game_id, 35))
        second = quote_bet(db, settings, _request(game_id, 35))

        assert approve_payment(db, engine, _payment(31, first)) == "approved"
        assert approve_payment(db, engine, _payment(32, second)) == "approved"
        assert approved_stake(db, "pix-x", game_id) == 70
        with pytest.raises(HTTPException):
            quote_bet(db, settings, _request(game_id, 1))

    def test_short_odds_limit(self, db, settings, make_game):
        game_id = make_game(odds={"final_result": {"home": 1.2, "draw": 4.0, "away": 3.9}}, max_stake=500)
        with pytest.raises(HTTPException) as exc:
            quote_bet(db, settings, _request(game_id, 60))
        assert "not accepted" in exc.value.detail
        assert quote_bet(db, settings, _request(game_id, 60, outcome="away")).price == 3.9
        assert quote_bet(db, settings, _request(game_id, 50)).price == 1.2


class TestQuote:
    def test_single_leg_quote(self, db, settings, make_game):
        game_id = make_game()
        quote = quote_bet(db, settings, _request(game_id, 20, outcome="draw"))
        assert quote.price == 3.0
        assert quote.potential_payout == 60.0
        assert quote.selections[0].label == "Boi Bravo x Cavalo Preto"
        assert quote.selections[0].status == "pending"

    def test_multi_leg_price_is_product(self, db, settings, make_game):
        g1 = make_game()
        g2 = make_game(odds={"final_result": {"home": 2.0, "draw": 3.0, "away": 3.0},
                             "both_score": {"yes": 1.8, "no": 1.9}})
        quote = quote_bet(db, settings, _request(None, 10, legs=[
            {"game_id": g1, "outcome": "home"},
            {"game_id": g2, "market": "both_score", "outcome": "yes"},
        ]))
        assert quote.price == 2.7
        assert quote.potential_payout == 27.0

    def test_closed_game_rejected(self, db, settings, make_game):
        game_id = make_game()
        db["game"].update_one({"_id": ObjectId(game_id)}, {"$set": {"status": "closed"}})
        with pytest.raises(HTTPException) as exc:
            quote_bet(db, settings, _request(game_id, 5))
        assert exc.value.status_code == 400

    def test_invalid_requests(self, db, settings, make_game):
        game_id = make_game()
        cases = [
            _request(game_id, 5, outcome="over"),
            _request(game_id, 5, market="total_goals", outcome="over"),
            _request(game_id, 5, market="corners", outcome="over"),
            _request(None, 5, legs=[{"game_id": game_id, "outcome": "home"},
                                    {"game_id": game_id, "outcome": "away"}]),
            _request("bogus", 5),
        ]
        for req in cases:
            with pytest.raises(HTTPException) as exc:
                quote_bet(db, settings, req)
            assert exc.value.status_code == 400

        with pytest.raises(HTTPException) as exc:
            quote_bet(db, settings, _request(str(ObjectId()), 5))
        assert exc.value.status_code == 404


class TestPaymentRequest:
    def test_creates_preference_without_storing(self, db, settings, mp, make_game):
        game_id = make_game()
        out = create_payment_request(db, settings, mp, _request(game_id, 10))
        assert out["init_point"].startswith("https://mp.test/checkout/")
        assert out["potential_payout"] == 15.0
        assert mp.preferences[0]["metadata"]["stake"] == 10.0
        assert db["bet"].count_documents({}) == 0

    def test_provider_failure_stores_nothing(self, db, settings, mp, make_game):
        game_id = make_game()
        mp.down = True
        with pytest.raises(PaymentProviderError):
            create_payment_request(db, settings, mp, _request(game_id, 10))
        assert db["bet"].count_documents({}) == 0


class TestApproval:
    def test_repeated_delivery_stores_one_bet(self, db, settings, engine, make_game):
        game_id = make_game()
        quote = quote_bet(db, settings, _request(game_id, 10))
        outcomes = [approve_payment(db, engine, _payment(42, quote)) for _ in range(4)]
        assert outcomes == ["approved", "duplicate", "duplicate", "duplicate"]

        assert db["bet"].count_documents({"payment_id": "42"}) == 1
        bet = db["bet"].find_one({"payment_id": "42"})
        assert bet["payment_status"] == "approved"
        assert bet["payout_status"] == "pending"
        assert bet["status"] == "pending"
        assert approved_stake(db, "pix-x", game_id) == 10

    def test_payout_frozen_at_quote(self, db, settings, engine, make_game, add_bet):
        game_id = make_game()
        quote = quote_bet(db, settings, _request(game_id, 10, outcome="away"))
        # the pool moves the odds before the payment is confirmed
        for i in range(10):
            add_bet(game_id, "away", 10, pix=f"pix-{i}")
        engine.recompute(game_id)
        live = db["game"].find_one({"_id": ObjectId(game_id)})["odds"]["final_result"]["away"]
        assert live != 2.5

        approve_payment(db, engine, _payment(7, quote))
        bet = db["bet"].find_one({"payment_id": "7"})
        assert bet["selections"][0]["odds"] == 2.5
        assert bet["potential_payout"] == 25.0

    def test_approval_reprices_game(self, db, settings, engine, make_game, add_bet):
        game_id = make_game(max_stake=100)
        for i in range(5):
            add_bet(game_id, "draw", 10, pix=f"pix-{i}")
        quote = quote_bet(db, settings, _request(game_id, 10))
        approve_payment(db, engine, _payment(8, quote))
        game = db["game"].find_one({"_id": ObjectId(game_id)})
        assert game["pool_total"] == 60.0
        assert game["odds"]["final_result"]["draw"] < 3.0

    def test_concurrent_delivery_loses_on_unique_index(self, db, settings, make_game):
        """Another worker stores the bet between our lookup and our insert"""
        game_id = make_game()
        quote = quote_bet(db, settings, _request(game_id, 10))
        rival = {**quote.model_dump(), "payment_id": "13", "payment_status": "approved",
                 "payout_status": "pending", "status": "pending"}
        spy = _SpyEngine()

        assert approve_payment(_RacingDb(db, rival), spy, _payment(13, quote)) == "duplicate"
        assert db["bet"].count_documents({"payment_id": "13"}) == 1
        assert spy.calls == []

    def test_invalid_metadata_is_kept_for_reconciliation(self, db, engine):
        """A confirmed payment is never dropped, even when it cannot become a bet"""
        payment = {"id": 9, "status": "approved", "transaction_amount": 25.0,
                   "payer": {"email": "x@test.com"}, "metadata": {"stake": "x"}}
        assert approve_payment(db, engine, payment) == "unmatched"
        assert approve_payment(db, engine, payment) == "duplicate"

        assert db["bet"].count_documents({}) == 0
        rows = list(db["unmatched_payment"].find())
        assert len(rows) == 1
        assert rows[0]["payment_id"] == "9"
        assert rows[0]["amount"] == 25.0
        assert rows[0]["payer_email"] == "x@test.com"
        assert rows[0]["metadata"] == {"stake": "x"}
        assert "selections" in rows[0]["error"]


class TestLateApproval:
    def test_paid_after_finalize_is_settled(self, db, settings, engine, make_game):
        """Checkout opened while the game was open, paid after it was finalized"""
        game_id = make_game()
        quote = quote_bet(db, settings, _request(game_id, 10))
        games.finalize_game(db, game_id, games.FinalizeGame(result={"final_result": "home"}))

        assert approve_payment(db, engine, _payment(21, quote)) == "approved"
        bet = db["bet"].find_one({"payment_id": "21"})
        assert bet["status"] == "won"
        assert bet["selections"][0]["status"] == "won"
        assert bet["payout"] == 15.0
        assert payout_summary(db) == [{"name": "Xavier", "pix": "pix-x", "owed": 15.0, "bets": 1}]
        assert financial_report(db)["owed"] == 15.0

    def test_late_loser_is_collected(self, db, settings, engine, make_game):
        game_id = make_game()
        quote = quote_bet(db, settings, _request(game_id, 10, outcome="away"))
        games.close_game(db, game_id)
        games.finalize_game(db, game_id, games.FinalizeGame(result={"final_result": "home"}))

        approve_payment(db, engine, _payment(22, quote))
        assert db["bet"].find_one({"payment_id": "22"})["status"] == "lost"
        assert financial_report(db)["collected"] == 10.0

    def test_ticket_waits_for_games_still_open(self, db, settings, engine, make_game):
        g1, g2 = make_game(), make_game()
        quote = quote_bet(db, settings, _request(None, 10, legs=[
            {"game_id": g1, "outcome": "home"},
            {"game_id": g2, "outcome": "draw"},
        ]))
        games.finalize_game(db, g1, games.FinalizeGame(result={"final_result": "home"}))

        approve_payment(db, engine, _payment(23, quote))
        bet = db["bet"].find_one({"payment_id": "23"})
        assert bet["status"] == "pending"
        assert [s["status"] for s in bet["selections"]] == ["won", "pending"]

        out = games.finalize_game(db, g2, games.FinalizeGame(result={"final_result": "draw"}))
        assert out["settled"] == 1
        bet = db["bet"].find_one({"payment_id": "23"})
        assert bet["status"] == "won"
        assert bet["payout"] == 45.0


class TestRefund:
    def test_refund_once_and_reprice(self, db, settings, engine, make_game, add_bet):
        game_id = make_game()
        for i in range(5):
            add_bet(game_id, "home", 10, pix=f"pix-{i}")
        quote = quote_bet(db, settings, _request(game_id, 10, outcome="away"))
        approve_payment(db, engine, _payment(11, quote))
        assert db["game"].find_one({"_id": ObjectId(game_id)})["pool_total"] == 60.0

        assert refund_payment(db, engine, "11") == "refunded"
        assert refund_payment(db, engine, "11") == "ignored"
        bet = db["bet"].find_one({"payment_id": "11"})
        assert bet["payment_status"] == "refunded"
        assert approved_stake(db, "pix-x", game_id) == 0

    def test_refund_of_unknown_payment(self, db, engine):
        assert refund_payment(db, engine, "404") == "ignored"
