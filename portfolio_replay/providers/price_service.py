"""Client for the historical close price microservice."""

from __future__ import annotations

import logging
from typing import Any, Collection, Dict

import httpx
from opentelemetry.propagate import inject

from portfolio_replay.config import EngineSettings, get_settings
from portfolio_replay.providers.price_oracle import PriceOracleError, PriceQuote, PriceRequest

logger = logging.getLogger(__name__)


class PriceServiceError(PriceOracleError):
    """Raised when the price service is unreachable or returns an error."""


def _parse_quote(raw: Any) -> PriceQuote:
    if not isinstance(raw, dict):
        return PriceQuote.missing()
    price = raw.get("price")
    found = bool(raw.get("found", price is not None))
    if not found or price is None:
        return PriceQuote.missing()
    try:
        return PriceQuote.of(float(price))
    except (TypeError, ValueError):
        return PriceQuote.missing()


class PriceServiceClient:
    """Batch close price lookups over HTTP.

    Sends one ``POST {base_url}/prices/close`` per batch with
    ``{"requests": [{"instrument", "asset_class", "as_of_date"}, ...]}`` and
    expects ``{"prices": {instrument: {"price": float | null, "found": bool}}}``.
    """

    def __init__(
        self,
        base_url: str | None = None,
        *,
        token: str | None = None,
        timeout_seconds: float | None = None,
        client: httpx.AsyncClient | None = None,
        settings: EngineSettings | None = None,
    ):
        settings = settings or get_settings()
        self.base_url = (base_url or settings.price_service_url or "").rstrip("/")
        if not self.base_url:
            raise PriceServiceError("Price service URL is not configured")
        self.token = token if token is not None else settings.price_service_token
        self.timeout_seconds = timeout_seconds or settings.price_service_timeout_seconds
        self._client = client

    def _headers(self) -> dict[str, str]:
        headers: dict[str, str] = {}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        # Propagate the current trace so the price service links to our span
        inject(headers)
        return headers

    async def _post(self, url: str, payload: dict[str, Any]) -> httpx.Response:
        if self._client is not None:
            return await self._client.post(
                url, json=payload, headers=self._headers(), timeout=self.timeout_seconds
            )
        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            return await client.post(url, json=payload, headers=self._headers())

    async def resolve_closing_prices(
        self, requests: Collection[PriceRequest]
    ) -> Dict[str, PriceQuote]:
        if not requests:
            return {}
        url = f"{self.base_url}/prices/close"
        payload = {
            "requests": [
                {
                    "instrument": request.instrument,
                    "asset_class": request.asset_class.value,
                    "as_of_date": request.as_of_date.isoformat(),
                }
                for request in requests
            ]
        }
        try:
            response = await self._post(url, payload)
        except httpx.HTTPError as exc:
            raise PriceServiceError(f"Failed to reach price service: {exc}") from exc

        if response.status_code >= 400:
            detail: Any
            try:
                body = response.json()
                detail = body.get("detail", body) if isinstance(body, dict) else body
            except ValueError:
                detail = response.text
            raise PriceServiceError(f"Price service error {response.status_code}: {detail}")

        try:
            body = response.json()
        except ValueError as exc:
            raise PriceServiceError("Price service returned invalid JSON payload") from exc

        prices = body.get("prices") if isinstance(body, dict) else None
        if not isinstance(prices, dict):
            raise PriceServiceError("Price service response has no 'prices' mapping")

        quotes = {request.instrument: _parse_quote(prices.get(request.instrument)) for request in requests}
        missing = sorted(symbol for symbol, quote in quotes.items() if not quote.found)
        if missing:
            logger.debug("No close price for %s", ", ".join(missing))
        return quotes


__all__ = ["PriceServiceClient", "PriceServiceError"]
