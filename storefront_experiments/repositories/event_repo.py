from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy.orm import Session

from storefront_experiments.models.schemas.event import ConversionEvent
from storefront_experiments.repositories.document_store import DocumentStore, parse_documents

CONVERSION_EVENTS = "conversion_events"


def as_utc(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


class EventRepository:
    def __init__(self, db: Session):
        """Initializes the repository with a database session."""
        self.store = DocumentStore(db)

    def get_events_for_experiment(
        self,
        experiment_id: str,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> List[ConversionEvent]:
        """
        Retrieves events for a specific experiment, applying an optional
        time range. Naive datetimes are taken as UTC.
        """
        docs = self.store.query_by_field(CONVERSION_EVENTS, "experimentId", "==", experiment_id)
        events = parse_documents(ConversionEvent, docs)

        if start_date is not None:
            start_date = as_utc(start_date)
            events = [e for e in events if as_utc(e.timestamp) >= start_date]

        if end_date is not None:
            end_date = as_utc(end_date)
            events = [e for e in events if as_utc(e.timestamp) <= end_date]

        return events

    def create_event(self, event: ConversionEvent) -> ConversionEvent:
        self.store.set(CONVERSION_EVENTS, event.event_id, event.to_document())
        return event
