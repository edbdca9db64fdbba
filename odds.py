"""
Markets and the per-game odds book.

A game offers one or more markets. Each market has a fixed set of outcomes and
every outcome carries its current decimal odds plus the opening odds the game
was created with. The opening odds are never written after creation.
"""

from enum import Enum
from typing import Callable, Dict, Iterable, Optional

from config import Settings

PENDING = "pending"
VOID = "void"


class MarketType(str, Enum):
    FINAL_RESULT = "final_result"
    TOTAL_GOALS = "total_goals"
    BOTH_SCORE = "both_score"


PRIMARY_MARKET = MarketType.FINAL_RESULT.value

OUTCOMES: Dict[MarketType, tuple] = {
    MarketType.FINAL_RESULT: ("home", "draw", "away"),
    MarketType.TOTAL_GOALS: ("over", "under"),
    MarketType.BOTH_SCORE: ("yes", "no"),
}


def _final_result(home_goals: int, away_goals: int, line: float) -> str:
    if home_goals > away_goals:
        return "home"
    if away_goals > home_goals:
        return "away"
    return "draw"


def _total_goals(home_goals: int, away_goals: int, line: float) -> str:
    return "over" if home_goals + away_goals > line else "under"


def _both_score(home_goals: int, away_goals: int, line: float) -> str:
    return "yes" if home_goals > 0 and away_goals > 0 else "no"


RESOLVERS: Dict[MarketType, Callable[[int, int, float], str]] = {
    MarketType.FINAL_RESULT: _final_result,
    MarketType.TOTAL_GOALS: _total_goals,
    MarketType.BOTH_SCORE: _both_score,
}

if not set(RESOLVERS) == set(MarketType) == set(OUTCOMES):
    raise RuntimeError("every market type needs outcomes and a resolver")


def market_type(name: str) -> MarketType:
    try:
        return MarketType(name)
    except ValueError:
        raise ValueError(f"Unknown market '{name}'")


def resolve_from_score(markets: Iterable[str], home_goals: int, away_goals: int,
                       line: float = 2.5) -> Dict[str, str]:
    """Winning outcome of each market given the final score."""
    if home_goals < 0 or away_goals < 0:
        raise ValueError("Goals cannot be negative")
    return {m: RESOLVERS[market_type(m)](home_goals, away_goals, line) for m in markets}


def evaluate_selection(market: str, outcome: str, result: Dict[str, str]) -> str:
    """Settle one selection against a finalized game's result.

    Returns "won", "lost" or "void". Raises ValueError when the market is
    unknown, the outcome does not belong to it, or the game carries no result
    for the market.
    """
    kind = market_type(market)
    if outcome not in OUTCOMES[kind]:
        raise ValueError(f"Outcome '{outcome}' is not valid for market '{market}'")
    winner = result.get(market)
    if winner is None or winner == PENDING:
        raise ValueError(f"Game has no result for market '{market}'")
    if winner == VOID:
        return "void"
    if winner not in OUTCOMES[kind]:
        raise ValueError(f"Result '{winner}' is not valid for market '{market}'")
    return "won" if outcome == winner else "lost"


class OddsBook:
    """Current and opening odds of one game, bounded to [min_odd, max_odd].

    Writes are recorded so callers can persist only the fields that changed.
    """

    def __init__(self, odds: dict, initial_odds: dict, min_odd: float, max_odd: float):
        self.min_odd = min_odd
        self.max_odd = max_odd
        self._odds = {m: dict(o) for m, o in odds.items()}
        self._initial = {m: dict(o) for m, o in (initial_odds or {}).items()}
        self._changes: Dict[str, float] = {}

    @classmethod
    def from_game(cls, game: dict, settings: Settings) -> "OddsBook":
        return cls(game.get("odds") or {}, game.get("initial_odds") or {},
                   settings.min_odd, settings.max_odd)

    @classmethod
    def validate_table(cls, odds: dict, min_odd: float, max_odd: float) -> Dict[str, Dict[str, float]]:
        """Check an admin supplied odds table and return it normalised to floats."""
        if PRIMARY_MARKET not in odds:
            raise ValueError(f"Market '{PRIMARY_MARKET}' is required")
        table = {}
        for market, prices in odds.items():
            expected = set(OUTCOMES[market_type(market)])
            if set(prices) != expected:
                raise ValueError(f"Market '{market}' needs odds for {sorted(expected)}")
            table[market] = {}
            for outcome, value in prices.items():
                value = float(value)
                if not min_odd <= value <= max_odd:
                    raise ValueError(
                        f"Odds {value} for {market}/{outcome} outside [{min_odd}, {max_odd}]")
                table[market][outcome] = value
        return table

    @property
    def has_initial_odds(self) -> bool:
        return bool(self._initial)

    def markets(self) -> list:
        return list(self._odds)

    def outcomes(self, market: str) -> list:
        return list(self._odds.get(market, {}))

    def current(self, market: str, outcome: str) -> float:
        try:
            return self._odds[market][outcome]
        except KeyError:
            raise ValueError(f"No odds for {market}/{outcome}")

    def initial(self, market: str, outcome: str) -> Optional[float]:
        return self._initial.get(market, {}).get(outcome)

    def clamp(self, value: float) -> float:
        return min(self.max_odd, max(self.min_odd, value))

    def set_odds(self, market: str, outcome: str, value: float, clamp: bool = False) -> float:
        """Set the current odds of one outcome.

        Out of range values are an error unless clamp is set.
        """
        if outcome not in self._odds.get(market, {}):
            raise ValueError(f"No odds for {market}/{outcome}")
        value = round(float(value), 2)
        if clamp:
            value = self.clamp(value)
        elif not self.min_odd <= value <= self.max_odd:
            raise ValueError(f"Odds {value} for {market}/{outcome} outside [{self.min_odd}, {self.max_odd}]")
        self._odds[market][outcome] = value
        self._changes[f"odds.{market}.{outcome}"] = value
        return value

    def changes(self) -> Dict[str, float]:
        """Dotted field paths for a targeted $set of everything written."""
        return dict(self._changes)

    def snapshot(self) -> Dict[str, Dict[str, float]]:
        return {m: dict(o) for m, o in self._odds.items()}
