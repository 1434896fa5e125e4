from typing import List, Optional

from sqlalchemy.orm import Session

from storefront_experiments.models.schemas.session import ExperimentSession, session_key
from storefront_experiments.repositories.document_store import (
    DocumentStore,
    parse_document,
    parse_documents,
)

EXPERIMENT_SESSIONS = "experiment_sessions"


class SessionRepository:
    def __init__(self, db: Session):
        self.store = DocumentStore(db)

    def get_session(self, experiment_id: str, session_id: str) -> Optional[ExperimentSession]:
        """Retrieves the sticky assignment of a session in a specific experiment."""
        doc = self.store.get(EXPERIMENT_SESSIONS, session_key(experiment_id, session_id))
        return parse_document(ExperimentSession, doc)

    def get_sessions_for_experiment(self, experiment_id: str) -> List[ExperimentSession]:
        docs = self.store.query_by_field(EXPERIMENT_SESSIONS, "experimentId", "==", experiment_id)
        return parse_documents(ExperimentSession, docs)

    def create_session(self, session: ExperimentSession) -> ExperimentSession:
        """
        Writes the assignment record.

        Concurrent first requests for the same session may both land here;
        the write is a point upsert so the last writer wins.
        """
        self.store.set(EXPERIMENT_SESSIONS, session.key, session.to_document())
        return session
