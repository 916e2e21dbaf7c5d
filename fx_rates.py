from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from functools import lru_cache
from typing import Optional
from urllib.error import URLError
from urllib.request import Request, urlopen

from config import Settings, get_settings

logger = logging.getLogger(__name__)

RATE_LOOKBACK_DAYS = 10


@dataclass(frozen=True)
class FxQuote:
    provider: str
    base: str
    quote: str
    rate: Decimal  # quote per 1 base
    rate_date: date
    fetched_at: datetime


class FxRateService:
    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()

    def quote_for_date(self, base: str, on_date: date) -> FxQuote:
        provider = (self.settings.fx_provider or "frankfurter").lower()
        if provider != "frankfurter":
            raise ValueError(f"Unsupported FX provider: {provider}")
        return _fetch_frankfurter_quote(
            base.upper(),
            self.settings.ledger_currency,
            on_date,
            timeout=self.settings.fx_timeout_secs,
        )

    def convert_cents(
        self, cents: int, currency: str, on_date: date
    ) -> tuple[int, FxQuote]:
        quote = self.quote_for_date(currency, on_date)
        converted = (Decimal(cents) * quote.rate).quantize(
            Decimal("1"), rounding=ROUND_HALF_UP
        )
        return int(converted), quote

    def ledger_amount_cents(self, cents: int, currency: Optional[str], on_date: date) -> int:
        """Amount in the ledger currency.

        A failed lookup keeps the native amount so a save never fails on FX.
        """
        if not currency or currency.upper() == self.settings.ledger_currency:
            return cents
        try:
            converted, _quote = self.convert_cents(cents, currency, on_date)
        except (RuntimeError, ValueError) as exc:
            logger.warning(
                f"fx_fallback: currency={currency} date={on_date} "
                f"using native amount: {exc}"
            )
            return cents
        return converted

    async def ledger_amount_cents_async(
        self, cents: int, currency: Optional[str], on_date: date
    ) -> int:
        return await asyncio.to_thread(
            self.ledger_amount_cents, cents, currency, on_date
        )


def rate_for_day(
    rates: dict[str, dict[str, float]], on_date: date, quote: str
) -> Optional[tuple[date, Decimal]]:
    """Most recent published rate on or before ``on_date``.

    Providers skip weekends and holidays, so walk back a few days.
    """
    day = on_date
    for _ in range(RATE_LOOKBACK_DAYS):
        value = rates.get(day.isoformat(), {}).get(quote)
        if value is not None:
            return day, Decimal(str(value))
        day -= timedelta(days=1)
    return None


@lru_cache(maxsize=2048)
def _fetch_frankfurter_quote(
    base: str, quote: str, on_date: date, *, timeout: float
) -> FxQuote:
    start = on_date - timedelta(days=RATE_LOOKBACK_DAYS - 1)
    url = (
        f"https://api.frankfurter.app/{start.isoformat()}..{on_date.isoformat()}"
        f"?from={base}&to={quote}"
    )
    req = Request(url, headers={"Accept": "application/json"})
    fetched_at = datetime.now(timezone.utc)
    try:
        with urlopen(req, timeout=timeout) as resp:
            payload = json.loads(resp.read().decode("utf-8"))
    except (URLError, TimeoutError, json.JSONDecodeError) as exc:
        raise RuntimeError(
            f"Failed to fetch FX rate from Frankfurter for {on_date}"
        ) from exc

    try:
        found = rate_for_day(payload["rates"], on_date, quote)
    except (KeyError, TypeError, AttributeError) as exc:
        raise RuntimeError("Unexpected FX provider response") from exc
    if found is None:
        raise RuntimeError(f"No {base}/{quote} rate published near {on_date}")

    rate_date, rate = found
    return FxQuote(
        provider="frankfurter",
        base=base,
        quote=quote,
        rate=rate,
        rate_date=rate_date,
        fetched_at=fetched_at,
    )
