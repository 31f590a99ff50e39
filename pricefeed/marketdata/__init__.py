"""Market data retrieval engine for pricefeed."""

from .models import DataType, FetchRequest, MarketDataRecord
from .service import MarketDataService, create_service

__all__ = ["DataType", "FetchRequest", "MarketDataRecord", "MarketDataService", "create_service"]
