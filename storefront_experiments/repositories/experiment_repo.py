from typing import List, Optional

from sqlalchemy.orm import Session

from storefront_experiments.models.schemas.experiment import ExperimentModel, ExperimentStatus
from storefront_experiments.repositories.document_store import (
    DocumentStore,
    parse_document,
    parse_documents,
)

EXPERIMENTS = "experiments"


class ExperimentRepository:
    def __init__(self, db: Session):
        """Initializes the repository with a database session."""
        self.store = DocumentStore(db)

    def save_experiment(self, experiment: ExperimentModel) -> ExperimentModel:
        """Writes the whole experiment document under its experiment_id."""
        self.store.set(EXPERIMENTS, experiment.experiment_id, experiment.to_document())
        return experiment

    def get_experiment(self, experiment_id: str) -> Optional[ExperimentModel]:
        return parse_document(ExperimentModel, self.store.get(EXPERIMENTS, experiment_id))

    def list_experiments(self, status: Optional[ExperimentStatus] = None) -> List[ExperimentModel]:
        if status is None:
            docs = self.store.get_all(EXPERIMENTS)
        else:
            docs = self.store.query_by_field(EXPERIMENTS, "status", "==", status.value)
        return parse_documents(ExperimentModel, docs)

    def update_experiment(self, experiment_id: str, partial: dict) -> None:
        self.store.update(EXPERIMENTS, experiment_id, partial)

    def delete_experiment(self, experiment_id: str) -> None:
        self.store.delete(EXPERIMENTS, experiment_id)
