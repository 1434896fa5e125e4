# services/experiment_service.py

import logging
import uuid
from collections import defaultdict
from datetime import datetime, timezone
from typing import Dict, List, Optional, Set

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from storefront_experiments.core.errors import NotFoundError, StoreError, ValidationError
from storefront_experiments.core.ids import generate_id
from storefront_experiments.core.settings import Settings, config_settings
from storefront_experiments.models.schemas.event import ConversionEvent, EventType
from storefront_experiments.models.schemas.experiment import (
    ExperimentCreateModel,
    ExperimentModel,
    ExperimentStatus,
    ExperimentUpdateModel,
    ExperimentVariant,
    GoalMetric,
    VariantCreateModel,
)
from storefront_experiments.models.schemas.results import ExperimentResults
from storefront_experiments.models.schemas.session import ExperimentSession
from storefront_experiments.repositories.event_repo import EventRepository, as_utc
from storefront_experiments.repositories.experiment_repo import ExperimentRepository
from storefront_experiments.repositories.session_repo import SessionRepository
from storefront_experiments.services import statistics

logger = logging.getLogger(__name__)

ALLOCATION_TOLERANCE = 0.01

GOAL_EVENT_TYPES: Dict[GoalMetric, EventType] = {
    GoalMetric.CONVERSION: EventType.PURCHASE,
    GoalMetric.ADD_TO_CART: EventType.ADD_TO_CART,
    GoalMetric.REVENUE: EventType.PURCHASE,
    GoalMetric.ENGAGEMENT: EventType.CLICK,
}


def validate_variants(variants: List[VariantCreateModel]) -> List[ExperimentVariant]:
    """
    Checks the variant list of a create/update request and assigns missing ids.

    Raises ValidationError when there are fewer than two variants, ids repeat,
    or allocations do not sum to 100.
    """
    if len(variants) < 2:
        raise ValidationError("Name and at least 2 variants are required")

    total_allocation = sum(v.traffic_allocation for v in variants)
    if abs(total_allocation - 100) > ALLOCATION_TOLERANCE:
        raise ValidationError(
            f"Traffic allocation must sum to 100%. Got: {total_allocation}%"
        )

    validated = [
        ExperimentVariant(
            id=v.id or str(uuid.uuid4()),
            name=v.name,
            template_id=v.template_id,
            traffic_allocation=v.traffic_allocation,
        )
        for v in variants
    ]

    ids = [v.id for v in validated]
    if len(ids) != len(set(ids)):
        raise ValidationError("Variant ids must be unique")

    return validated


class ExperimentService:
    def __init__(self, db: Session, settings: Settings = config_settings):
        self.experiment_repo = ExperimentRepository(db)
        self.session_repo = SessionRepository(db)
        self.event_repo = EventRepository(db)
        self.settings = settings

    def create_experiment(self, experiment_data: ExperimentCreateModel) -> ExperimentModel:
        """Validates the request and stores a new experiment in ``draft``."""
        variants = validate_variants(experiment_data.variants)

        experiment = ExperimentModel(
            experiment_id=generate_id("exp"),
            name=experiment_data.name,
            description=experiment_data.description,
            status=ExperimentStatus.DRAFT,
            variants=variants,
            product_ids=experiment_data.product_ids,
            goal_metric=experiment_data.goal_metric,
            min_sample_size=experiment_data.min_sample_size,
            confidence_level=experiment_data.confidence_level,
            created_at=datetime.now(timezone.utc),
        )

        self.experiment_repo.save_experiment(experiment)
        logger.info("Created experiment", extra={"experiment_id": experiment.experiment_id})
        return experiment

    def list_experiments(self, status: Optional[ExperimentStatus] = None) -> List[ExperimentModel]:
        return self.experiment_repo.list_experiments(status)

    def get_experiment(self, experiment_id: str) -> ExperimentModel:
        experiment = self.experiment_repo.get_experiment(experiment_id)
        if experiment is None:
            raise NotFoundError(f"Experiment {experiment_id}")
        return experiment

    def update_experiment(
        self, experiment_id: str, update_data: ExperimentUpdateModel
    ) -> ExperimentModel:
        """Applies the fields present in the request; variants are re-validated."""
        current = self.get_experiment(experiment_id)

        partial = update_data.model_dump(
            mode="json", by_alias=True, exclude_unset=True, exclude={"variants"}
        )
        if update_data.variants is not None:
            partial["variants"] = [
                v.to_document() for v in validate_variants(update_data.variants)
            ]
        if not partial:
            raise ValidationError("No fields to update")

        # The stored document must still read back as an experiment
        try:
            ExperimentModel.model_validate({**current.to_document(), **partial})
        except PydanticValidationError as e:
            raise ValidationError(
                "Invalid experiment update",
                errors=e.errors(include_url=False, include_context=False, include_input=False),
            )

        self.experiment_repo.update_experiment(experiment_id, partial)
        return self.get_experiment(experiment_id)

    def update_status(self, experiment_id: str, status: ExperimentStatus) -> ExperimentModel:
        """Moves an experiment through its lifecycle, stamping start/end dates."""
        experiment = self.get_experiment(experiment_id)
        now = datetime.now(timezone.utc).isoformat()

        partial = {"status": status.value}
        if status == ExperimentStatus.RUNNING and experiment.start_date is None:
            partial["startDate"] = now
        elif status == ExperimentStatus.COMPLETED:
            partial["endDate"] = now

        self.experiment_repo.update_experiment(experiment_id, partial)
        logger.info(
            "Experiment status changed to %s",
            status.value,
            extra={"experiment_id": experiment_id},
        )
        return self.get_experiment(experiment_id)

    def delete_experiment(self, experiment_id: str) -> None:
        self.get_experiment(experiment_id)
        self.experiment_repo.delete_experiment(experiment_id)

    def _load_sessions(self, experiment_id: str) -> List[ExperimentSession]:
        try:
            return self.session_repo.get_sessions_for_experiment(experiment_id)
        except StoreError:
            logger.warning(
                "Error loading sessions, aggregating without them",
                exc_info=True,
                extra={"experiment_id": experiment_id},
            )
            return []

    def _load_events(
        self,
        experiment_id: str,
        start_date: Optional[datetime],
        end_date: Optional[datetime],
    ) -> List[ConversionEvent]:
        try:
            return self.event_repo.get_events_for_experiment(
                experiment_id, start_date=start_date, end_date=end_date
            )
        except StoreError:
            logger.warning(
                "Error loading events, aggregating without them",
                exc_info=True,
                extra={"experiment_id": experiment_id},
            )
            return []

    def get_experiment_results(
        self,
        experiment_id: str,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> ExperimentResults:
        """
        Aggregates stored sessions and events into per-variant metrics and a verdict.

        impressions: distinct sessions exposed to the variant (assigned, or
            seen in any event for it)
        conversions: distinct sessions that emitted the goal event
        revenue: sum of purchase revenue; average order value per purchase
        """
        experiment = self.get_experiment(experiment_id)
        goal_event = GOAL_EVENT_TYPES[experiment.goal_metric]
        known_variants = {v.id for v in experiment.variants}

        exposed: Dict[str, Set[str]] = defaultdict(set)
        converted: Dict[str, Set[str]] = defaultdict(set)
        revenue: Dict[str, float] = defaultdict(float)
        orders: Dict[str, int] = defaultdict(int)

        for session in self._load_sessions(experiment_id):
            if session.variant_id not in known_variants:
                continue
            if start_date is not None and as_utc(session.assigned_at) < as_utc(start_date):
                continue
            if end_date is not None and as_utc(session.assigned_at) > as_utc(end_date):
                continue
            exposed[session.variant_id].add(session.session_id)

        for event in self._load_events(experiment_id, start_date, end_date):
            if event.variant_id not in known_variants:
                continue
            exposed[event.variant_id].add(event.session_id)
            if event.event_type == goal_event:
                converted[event.variant_id].add(event.session_id)
            if event.event_type == EventType.PURCHASE:
                orders[event.variant_id] += 1
                revenue[event.variant_id] += event.revenue or 0.0

        variant_results = {
            v.id: statistics.build_variant_metrics(
                v.id,
                impressions=len(exposed[v.id]),
                conversions=len(converted[v.id]),
                revenue=revenue[v.id],
                orders=orders[v.id],
                confidence_level=experiment.confidence_level,
            )
            for v in experiment.variants
        }

        results = ExperimentResults(experiment_id=experiment_id, variant_results=variant_results)
        results.winner = statistics.determine_winner(
            results,
            min_impressions=self.settings.MIN_IMPRESSIONS_FOR_WINNER,
            alpha=self.settings.SIGNIFICANCE_ALPHA,
        )
        results.statistical_significance = statistics.experiment_significance(results)
        results.recommended_action = statistics.get_recommended_action(
            results,
            min_impressions=self.settings.MIN_IMPRESSIONS_FOR_WINNER,
            stop_impressions=self.settings.STOP_IMPRESSIONS,
            alpha=self.settings.SIGNIFICANCE_ALPHA,
        )

        return results
