from datetime import date
from enum import Enum
from typing import Optional

from pydantic import ConfigDict

from yieldtrace.core.entities.base import CamelModel


class PriceSource(str, Enum):
    EXACT = "exact"
    FORWARD_FILL = "forward_fill"
    LIVE_FALLBACK = "live_fallback"


class ResolvedPrice(CamelModel):
    model_config = ConfigDict(frozen=True)

    price: float
    source: PriceSource
    # Date of the snapshot actually used; None for live prices
    price_date: Optional[date] = None
