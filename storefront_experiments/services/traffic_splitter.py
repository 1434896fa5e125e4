import logging
import random
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy.orm import Session

from storefront_experiments.core.errors import NotRunningError, StoreError
from storefront_experiments.models.schemas.experiment import (
    ExperimentModel,
    ExperimentStatus,
    ExperimentVariant,
)
from storefront_experiments.models.schemas.session import ExperimentSession
from storefront_experiments.repositories.experiment_repo import ExperimentRepository
from storefront_experiments.repositories.session_repo import SessionRepository

logger = logging.getLogger(__name__)


def select_variant(variants: List[ExperimentVariant], rng: random.Random) -> ExperimentVariant:
    """
    Weighted random selection based on traffic allocation percentages.

    Variants are walked in their stored order. If the allocations sum to less
    than 100 and the draw lands past the last bucket, the first variant is
    returned so traffic is never dropped.
    """
    r = rng.random() * 100

    cumulative = 0.0
    for variant in variants:
        cumulative += variant.traffic_allocation
        if r <= cumulative:
            return variant

    return variants[0]


class VariantAssigner:
    def __init__(self, db: Session, rng: Optional[random.Random] = None):
        self.experiment_repo = ExperimentRepository(db)
        self.session_repo = SessionRepository(db)
        self.rng = rng or random.Random()

    def _get_experiment(self, experiment_id: str) -> Optional[ExperimentModel]:
        try:
            return self.experiment_repo.get_experiment(experiment_id)
        except StoreError:
            logger.warning("Error getting experiment %s", experiment_id, exc_info=True)
            return None

    def _get_existing_variant(
        self, experiment: ExperimentModel, session_id: str
    ) -> Optional[ExperimentVariant]:
        try:
            session = self.session_repo.get_session(experiment.experiment_id, session_id)
        except StoreError:
            logger.warning(
                "Error getting session assignment, assigning fresh",
                exc_info=True,
                extra={"experiment_id": experiment.experiment_id, "session_id": session_id},
            )
            return None

        if session is None:
            return None

        for variant in experiment.variants:
            if variant.id == session.variant_id:
                return variant

        logger.warning(
            "Session assigned to unknown variant %s, reassigning",
            session.variant_id,
            extra={"experiment_id": experiment.experiment_id, "session_id": session_id},
        )
        return None

    def assign_variant(
        self,
        experiment_id: str,
        product_id: str,
        session_id: str,
        user_id: Optional[str] = None,
    ) -> ExperimentVariant:
        """
        Gets a session's variant, assigning one on first request.

        1. Existing assignment for (experiment, session) is returned as-is.
        2. Otherwise a variant is drawn by traffic allocation (running experiments only).
        3. The new assignment is persisted before returning.
        """
        experiment = self._get_experiment(experiment_id)
        if experiment is None or not experiment.variants:
            raise NotRunningError(experiment_id)

        existing = self._get_existing_variant(experiment, session_id)
        if existing is not None:
            return existing

        if experiment.status != ExperimentStatus.RUNNING:
            raise NotRunningError(experiment_id)

        variant = select_variant(experiment.variants, self.rng)

        self.session_repo.create_session(
            ExperimentSession(
                session_id=session_id,
                experiment_id=experiment_id,
                variant_id=variant.id,
                product_id=product_id,
                assigned_at=datetime.now(timezone.utc),
                user_id=user_id,
            )
        )
        logger.info(
            "Assigned session to variant %s",
            variant.id,
            extra={"experiment_id": experiment_id, "session_id": session_id},
        )

        return variant
