"""
Runtime configuration for the AgroBet backend.

Every tunable lives on one Settings object that is handed to the components
that need it. Nothing outside this module reads the environment.
"""

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return float(raw)


@dataclass(frozen=True)
class Settings:
    # Mercado Pago
    mercado_pago_access_token: Optional[str] = None
    mercado_pago_base_url: str = "https://api.mercadopago.com"
    notification_url: Optional[str] = None
    back_url: str = "https://viniciosxt.github.io/bets/"
    payment_timeout: float = 10.0

    # MongoDB
    database_url: Optional[str] = None
    database_name: str = "agrobet"

    # Dynamic odds
    vig: float = 0.15               # fraction of the pool kept as margin
    min_odd: float = 1.01
    max_odd: float = 4.0
    starting_pool: float = 60.0     # no recompute below this pool size
    maturity_pool: float = 400.0    # blend is fully pool-implied from here

    # Limits
    max_stake_per_user: float = 35.0
    high_stake_threshold: float = 50.0
    short_odds_threshold: float = 1.30

    @property
    def payout_rate(self) -> float:
        return 1.0 - self.vig

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            mercado_pago_access_token=os.getenv("MERCADO_PAGO_ACCESS_TOKEN"),
            mercado_pago_base_url=os.getenv("MERCADO_PAGO_BASE_URL", cls.mercado_pago_base_url),
            notification_url=os.getenv("NOTIFICATION_URL"),
            back_url=os.getenv("BACK_URL", cls.back_url),
            payment_timeout=_env_float("PAYMENT_TIMEOUT", cls.payment_timeout),
            database_url=os.getenv("DATABASE_URL"),
            database_name=os.getenv("DATABASE_NAME", cls.database_name),
            vig=_env_float("ODDS_VIG", cls.vig),
            min_odd=_env_float("ODDS_MIN", cls.min_odd),
            max_odd=_env_float("ODDS_MAX", cls.max_odd),
            starting_pool=_env_float("ODDS_STARTING_POOL", cls.starting_pool),
            maturity_pool=_env_float("ODDS_MATURITY_POOL", cls.maturity_pool),
            max_stake_per_user=_env_float("MAX_STAKE_PER_USER", cls.max_stake_per_user),
            high_stake_threshold=_env_float("HIGH_STAKE_THRESHOLD", cls.high_stake_threshold),
            short_odds_threshold=_env_float("SHORT_ODDS_THRESHOLD", cls.short_odds_threshold),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()
