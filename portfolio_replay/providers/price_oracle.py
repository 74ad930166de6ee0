"""Historical close price gateway used for month-end valuations.

The engine only depends on :class:`PriceOracleGateway`. Concrete sources here
cover tests and offline runs; the HTTP gateway lives in
:mod:`portfolio_replay.providers.price_service`.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Collection, Dict, Mapping, MutableMapping, Protocol

from portfolio_replay.models import AssetClass


class PriceOracleError(RuntimeError):
    """Raised when a gateway cannot answer a batch at all (network, timeout, bad payload)."""


@dataclass(frozen=True)
class PriceRequest:
    instrument: str
    asset_class: AssetClass
    as_of_date: date


@dataclass(frozen=True)
class PriceQuote:
    price: float | None
    found: bool

    @classmethod
    def missing(cls) -> "PriceQuote":
        return cls(price=None, found=False)

    @classmethod
    def of(cls, price: float) -> "PriceQuote":
        return cls(price=float(price), found=True)


class PriceOracleGateway(Protocol):
    """Pluggable close price provider.

    Must answer every requested instrument, using ``PriceQuote.missing()``
    when no price exists. Only gateway-level failures raise.
    """

    async def resolve_closing_prices(
        self, requests: Collection[PriceRequest]
    ) -> Dict[str, PriceQuote]:
        ...


class InMemoryPriceOracle:
    """Close prices held in memory, keyed by instrument then date.

    A request for a date without a close snaps to the latest earlier close,
    as long as it is no older than ``max_staleness_days``.
    """

    def __init__(
        self,
        prices: Mapping[str, Mapping[date, float | str]],
        *,
        max_staleness_days: int | None = 10,
    ):
        self._prices: dict[str, dict[date, float]] = {}
        for instrument, series in prices.items():
            self._prices[instrument.upper()] = {
                d: float(value) for d, value in sorted(series.items())
            }
        self.max_staleness_days = max_staleness_days
        self.calls = 0

    def _lookup(self, request: PriceRequest) -> PriceQuote:
        series = self._prices.get(request.instrument.upper(), {})
        if request.as_of_date in series:
            return PriceQuote.of(series[request.as_of_date])
        prior = [d for d in series if d < request.as_of_date]
        if not prior:
            return PriceQuote.missing()
        latest = max(prior)
        if (
            self.max_staleness_days is not None
            and (request.as_of_date - latest).days > self.max_staleness_days
        ):
            return PriceQuote.missing()
        return PriceQuote.of(series[latest])

    async def resolve_closing_prices(
        self, requests: Collection[PriceRequest]
    ) -> Dict[str, PriceQuote]:
        self.calls += 1
        return {request.instrument: self._lookup(request) for request in requests}


class CachingPriceOracle:
    """Cache wrapper to avoid refetching the same (instrument, date) close."""

    def __init__(self, delegate: PriceOracleGateway):
        self.delegate = delegate
        self._cache: MutableMapping[tuple, PriceQuote] = {}

    async def resolve_closing_prices(
        self, requests: Collection[PriceRequest]
    ) -> Dict[str, PriceQuote]:
        pending = [
            request
            for request in requests
            if (request.instrument, request.asset_class, request.as_of_date) not in self._cache
        ]
        if pending:
            fetched = await self.delegate.resolve_closing_prices(pending)
            for request in pending:
                quote = fetched.get(request.instrument, PriceQuote.missing())
                self._cache[(request.instrument, request.asset_class, request.as_of_date)] = quote
        return {
            request.instrument: self._cache[
                (request.instrument, request.asset_class, request.as_of_date)
            ]
            for request in requests
        }


__all__ = [
    "CachingPriceOracle",
    "InMemoryPriceOracle",
    "PriceOracleError",
    "PriceOracleGateway",
    "PriceQuote",
    "PriceRequest",
]
