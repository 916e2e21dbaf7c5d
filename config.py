import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        ledger_currency: str = "EUR",
        fx_provider: str = "frankfurter",
        fx_timeout_secs: float = 5.0,
        horizon_months: int = 18,
        lookback_days: int = 45,
        match_tolerance_cents: int = 5,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.ledger_currency = ledger_currency
        self.fx_provider = fx_provider
        self.fx_timeout_secs = fx_timeout_secs
        self.horizon_months = horizon_months
        self.lookback_days = lookback_days
        self.match_tolerance_cents = match_tolerance_cents

    @property
    def sync_database_url(self) -> str:
        """URL for synchronous tooling such as alembic."""
        return self.database_url.replace("+aiosqlite", "", 1)


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("FORECAST_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "forecast.db"
    database_url = os.getenv(
        "FORECAST_DATABASE_URL", f"sqlite+aiosqlite:///{default_db}"
    )
    timezone = os.getenv("FORECAST_TIMEZONE", "Europe/Berlin")
    ledger_currency = os.getenv("FORECAST_LEDGER_CURRENCY", "EUR").upper()
    fx_provider = os.getenv("FORECAST_FX_PROVIDER", "frankfurter")
    fx_timeout_secs = float(os.getenv("FORECAST_FX_TIMEOUT_SECS", "5"))
    horizon_months = int(os.getenv("FORECAST_HORIZON_MONTHS", "18"))
    lookback_days = int(os.getenv("FORECAST_LOOKBACK_DAYS", "45"))
    match_tolerance_cents = int(os.getenv("FORECAST_MATCH_TOLERANCE_CENTS", "5"))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        ledger_currency=ledger_currency,
        fx_provider=fx_provider,
        fx_timeout_secs=fx_timeout_secs,
        horizon_months=horizon_months,
        lookback_days=lookback_days,
        match_tolerance_cents=match_tolerance_cents,
    )
