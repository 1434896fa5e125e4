import logging
import math
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from storefront_experiments.core.ids import generate_id
from storefront_experiments.models.schemas.event import ConversionEvent, EventType
from storefront_experiments.repositories.event_repo import EventRepository

logger = logging.getLogger(__name__)


def parse_revenue(value: Any) -> Optional[float]:
    """Coerces a metadata revenue to a finite float; anything else becomes None."""
    if value is None:
        return None
    try:
        revenue = float(value)
    except (TypeError, ValueError):
        revenue = None
    if revenue is None or not math.isfinite(revenue):
        logger.warning("Ignoring non-numeric revenue %r", value)
        return None
    return revenue


class ConversionTracker:
    def __init__(self, db: Session):
        self.event_repo = EventRepository(db)

    def track_conversion(
        self,
        session_id: str,
        experiment_id: str,
        variant_id: str,
        event_type: EventType,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Appends one conversion event. Best-effort: failures are logged and
        never reach the caller. No deduplication is done here.
        """
        try:
            meta = metadata or {}
            event = ConversionEvent(
                event_id=generate_id("event"),
                experiment_id=experiment_id,
                variant_id=variant_id,
                session_id=session_id,
                product_id=str(meta.get("productId") or ""),
                event_type=event_type,
                metadata=metadata,
                revenue=parse_revenue(meta.get("revenue")),
                timestamp=datetime.now(timezone.utc),
            )
            self.event_repo.create_event(event)
        except Exception:
            logger.exception(
                "Error tracking conversion",
                extra={
                    "experiment_id": experiment_id,
                    "variant_id": variant_id,
                    "session_id": session_id,
                    "event_type": str(event_type),
                },
            )


def track_conversion_in_background(
    session_factory: Callable[[], Session],
    session_id: str,
    experiment_id: str,
    variant_id: str,
    event_type: EventType,
    metadata: Optional[Dict[str, Any]] = None,
) -> None:
    """Background-task entrypoint: runs after the response with its own db session."""
    try:
        db = session_factory()
    except Exception:
        logger.exception("Could not open a session for conversion tracking")
        return
    try:
        ConversionTracker(db).track_conversion(
            session_id, experiment_id, variant_id, event_type, metadata
        )
    finally:
        db.close()

