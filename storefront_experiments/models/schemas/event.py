import enum
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import Field

from .base import CamelModel


class EventType(str, enum.Enum):
    VIEW = "view"
    ADD_TO_CART = "addToCart"
    PURCHASE = "purchase"
    CLICK = "click"


class ConversionEvent(CamelModel):
    """Immutable fact about user behavior inside an experiment."""

    event_id: str
    experiment_id: str
    variant_id: str
    session_id: str
    product_id: str = ""
    event_type: EventType
    metadata: Optional[Dict[str, Any]] = None
    revenue: Optional[float] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class TrackEventModel(CamelModel):
    """Schema for tracking a conversion event (API Input)."""

    session_id: str = Field(..., min_length=1)
    experiment_id: str = Field(..., min_length=1)
    variant_id: str = Field(..., min_length=1)
    event_type: EventType
    metadata: Optional[Dict[str, Any]] = Field(
        None, description="Flexible JSON object, e.g. productId, revenue."
    )

