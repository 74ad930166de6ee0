"""Price gateways for month-end valuations."""

from .price_oracle import (
    CachingPriceOracle,
    InMemoryPriceOracle,
    PriceOracleError,
    PriceOracleGateway,
    PriceQuote,
    PriceRequest,
)
from .price_service import PriceServiceClient, PriceServiceError

__all__ = [
    "CachingPriceOracle",
    "InMemoryPriceOracle",
    "PriceOracleError",
    "PriceOracleGateway",
    "PriceQuote",
    "PriceRequest",
    "PriceServiceClient",
    "PriceServiceError",
]
