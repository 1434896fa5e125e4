"""Tests for experiment management and results aggregation."""

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError as PydanticValidationError

from conftest import SequenceRandom
from storefront_experiments.core.errors import NotFoundError, StoreError, ValidationError
from storefront_experiments.core.settings import Settings
from storefront_experiments.models.schemas.event import ConversionEvent, EventType
from storefront_experiments.models.schemas.experiment import (
    ExperimentCreateModel,
    ExperimentStatus,
    ExperimentUpdateModel,
    GoalMetric,
    VariantCreateModel,
)
from storefront_experiments.models.schemas.results import RecommendedAction
from storefront_experiments.repositories.event_repo import EventRepository
from storefront_experiments.services.experiment_service import ExperimentService
from storefront_experiments.services.tracking import ConversionTracker
from storefront_experiments.services.traffic_splitter import VariantAssigner


def _create_request(*allocations, **kwargs):
    return ExperimentCreateModel(
        name=kwargs.pop("name", "Hero image test"),
        variants=[
            VariantCreateModel(name=f"Variant {i}", template_id=f"tpl-{i}", traffic_allocation=a)
            for i, a in enumerate(allocations)
        ],
        **kwargs,
    )


class TestCreateExperiment:
    def test_created_as_draft_with_defaults(self, db):
        experiment = ExperimentService(db).create_experiment(_create_request(50, 50))

        assert experiment.experiment_id.startswith("exp-")
        assert experiment.status == ExperimentStatus.DRAFT
        assert experiment.goal_metric == GoalMetric.CONVERSION
        assert experiment.min_sample_size == 1000
        assert experiment.confidence_level == 95
        assert experiment.product_ids == []
        assert all(v.id for v in experiment.variants)
        assert len({v.id for v in experiment.variants}) == 2

        stored = ExperimentService(db).get_experiment(experiment.experiment_id)
        assert stored.name == "Hero image test"
        assert [v.template_id for v in stored.variants] == ["tpl-0", "tpl-1"]

    def test_allocation_tolerance(self, db):
        experiment = ExperimentService(db).create_experiment(_create_request(33.333, 33.333, 33.33))
        assert len(experiment.variants) == 3

    def test_allocation_must_sum_to_100(self, db):
        with pytest.raises(ValidationError, match="sum to 100"):
            ExperimentService(db).create_experiment(_create_request(50, 40))

    def test_needs_two_variants(self, db):
        with pytest.raises(ValidationError, match="at least 2 variants"):
            ExperimentService(db).create_experiment(_create_request(100))

    def test_variant_ids_must_be_unique(self, db):
        request = ExperimentCreateModel(
            name="Dupes",
            variants=[
                VariantCreateModel(id="a", name="A", traffic_allocation=50),
                VariantCreateModel(id="a", name="B", traffic_allocation=50),
            ],
        )
        with pytest.raises(ValidationError, match="unique"):
            ExperimentService(db).create_experiment(request)

    def test_nothing_persisted_on_validation_error(self, db):
        service = ExperimentService(db)
        with pytest.raises(ValidationError):
            service.create_experiment(_create_request(10, 10))
        assert service.list_experiments() == []


class TestManageExperiment:
    def test_status_transitions_stamp_dates(self, db):
        service = ExperimentService(db)
        experiment_id = service.create_experiment(_create_request(50, 50)).experiment_id

        running = service.update_status(experiment_id, ExperimentStatus.RUNNING)
        assert running.status == ExperimentStatus.RUNNING
        assert running.start_date is not None
        assert running.updated_at is not None

        completed = service.update_status(experiment_id, ExperimentStatus.COMPLETED)
        assert completed.end_date is not None
        assert completed.start_date == running.start_date

    def test_partial_update(self, db):
        service = ExperimentService(db)
        experiment = service.create_experiment(_create_request(50, 50, description="old"))

        updated = service.update_experiment(
            experiment.experiment_id,
            ExperimentUpdateModel(name="Renamed", product_ids=["prod-1"]),
        )

        assert updated.name == "Renamed"
        assert updated.product_ids == ["prod-1"]
        assert updated.description == "old"
        assert updated.variants == experiment.variants

    def test_update_revalidates_variants(self, db):
        service = ExperimentService(db)
        experiment = service.create_experiment(_create_request(50, 50))

        with pytest.raises(ValidationError):
            service.update_experiment(
                experiment.experiment_id,
                ExperimentUpdateModel(
                    variants=[
                        VariantCreateModel(name="A", traffic_allocation=90),
                        VariantCreateModel(name="B", traffic_allocation=20),
                    ]
                ),
            )

    def test_update_rejects_null_fields(self):
        with pytest.raises(PydanticValidationError, match="cannot be null"):
            ExperimentUpdateModel(name=None)
        with pytest.raises(PydanticValidationError, match="cannot be null"):
            ExperimentUpdateModel.model_validate({"goalMetric": None})

        # description is the one field that may be cleared
        assert ExperimentUpdateModel(description=None).model_fields_set == {"description"}

    def test_update_that_breaks_the_document_is_not_written(self, db):
        service = ExperimentService(db)
        experiment = service.create_experiment(_create_request(50, 50))
        # Skips request validation, as a caller inside the process could
        update = ExperimentUpdateModel.model_construct(_fields_set={"name"}, name=None)

        with pytest.raises(ValidationError, match="Invalid experiment update"):
            service.update_experiment(experiment.experiment_id, update)

        assert service.get_experiment(experiment.experiment_id).name == "Hero image test"

    def test_empty_update(self, db):
        service = ExperimentService(db)
        experiment = service.create_experiment(_create_request(50, 50))
        with pytest.raises(ValidationError):
            service.update_experiment(experiment.experiment_id, ExperimentUpdateModel())

    def test_list_by_status(self, db):
        service = ExperimentService(db)
        first = service.create_experiment(_create_request(50, 50, name="first"))
        service.create_experiment(_create_request(50, 50, name="second"))
        service.update_status(first.experiment_id, ExperimentStatus.RUNNING)

        assert len(service.list_experiments()) == 2
        running = service.list_experiments(ExperimentStatus.RUNNING)
        assert [e.name for e in running] == ["first"]

    def test_delete(self, db):
        service = ExperimentService(db)
        experiment = service.create_experiment(_create_request(50, 50))
        service.delete_experiment(experiment.experiment_id)

        with pytest.raises(NotFoundError):
            service.get_experiment(experiment.experiment_id)
        with pytest.raises(NotFoundError):
            service.delete_experiment(experiment.experiment_id)


class TestExperimentResults:
    def test_single_purchase_scenario(self, db, make_experiment):
        make_experiment()
        variant = VariantAssigner(db).assign_variant("exp-1", "prod-1", "s1")
        assert VariantAssigner(db).assign_variant("exp-1", "prod-1", "s1").id == variant.id

        ConversionTracker(db).track_conversion(
            "s1", "exp-1", variant.id, EventType.PURCHASE, {"productId": "prod-1", "revenue": 49.99}
        )

        results = ExperimentService(db).get_experiment_results("exp-1")
        metrics = results.variant_results[variant.id]
        assert metrics.impressions == 1
        assert metrics.conversions == 1
        assert metrics.revenue == pytest.approx(49.99)
        assert metrics.average_order_value == pytest.approx(49.99)

        other = next(m for vid, m in results.variant_results.items() if vid != variant.id)
        assert other.impressions == 0
        assert other.conversions == 0

        assert results.winner is None
        assert results.recommended_action == RecommendedAction.CONTINUE

    def test_impressions_and_conversions_count_sessions(self, db, make_experiment):
        make_experiment()
        tracker = ConversionTracker(db)
        for session_id in ("s1", "s2", "s3"):
            tracker.track_conversion(session_id, "exp-1", "a", EventType.VIEW)
            tracker.track_conversion(session_id, "exp-1", "a", EventType.VIEW)
        tracker.track_conversion("s1", "exp-1", "a", EventType.PURCHASE, {"revenue": 10})
        tracker.track_conversion("s1", "exp-1", "a", EventType.PURCHASE, {"revenue": 30})
        tracker.track_conversion("s2", "exp-1", "a", EventType.ADD_TO_CART)

        metrics = ExperimentService(db).get_experiment_results("exp-1").variant_results["a"]
        assert metrics.impressions == 3
        assert metrics.conversions == 1
        assert metrics.conversion_rate == pytest.approx(1 / 3)
        assert metrics.revenue == pytest.approx(40.0)
        assert metrics.average_order_value == pytest.approx(20.0)

    def test_goal_metric_selects_conversion_event(self, db, make_experiment):
        make_experiment(goal_metric=GoalMetric.ADD_TO_CART)
        tracker = ConversionTracker(db)
        tracker.track_conversion("s1", "exp-1", "b", EventType.ADD_TO_CART)
        tracker.track_conversion("s2", "exp-1", "b", EventType.PURCHASE, {"revenue": 5})

        metrics = ExperimentService(db).get_experiment_results("exp-1").variant_results["b"]
        assert metrics.impressions == 2
        assert metrics.conversions == 1

    def test_non_numeric_revenue_still_counts_conversion(self, db, make_experiment):
        make_experiment()
        ConversionTracker(db).track_conversion(
            "s1", "exp-1", "a", EventType.PURCHASE, {"revenue": "N/A"}
        )

        metrics = ExperimentService(db).get_experiment_results("exp-1").variant_results["a"]
        assert metrics.impressions == 1
        assert metrics.conversions == 1
        assert metrics.revenue == 0.0

    def test_unknown_variants_are_ignored(self, db, make_experiment):
        make_experiment()
        ConversionTracker(db).track_conversion("s1", "exp-1", "zzz", EventType.PURCHASE)

        results = ExperimentService(db).get_experiment_results("exp-1")
        assert set(results.variant_results) == {"a", "b"}
        assert all(m.impressions == 0 for m in results.variant_results.values())

    def test_declares_winner(self, db, make_experiment):
        make_experiment()
        tracker = ConversionTracker(db)
        for i in range(40):
            tracker.track_conversion(f"a{i}", "exp-1", "a", EventType.VIEW)
            tracker.track_conversion(f"b{i}", "exp-1", "b", EventType.VIEW)
            if i < 30:
                tracker.track_conversion(f"a{i}", "exp-1", "a", EventType.PURCHASE)
            if i < 2:
                tracker.track_conversion(f"b{i}", "exp-1", "b", EventType.PURCHASE)

        service = ExperimentService(db, settings=Settings(MIN_IMPRESSIONS_FOR_WINNER=20))
        results = service.get_experiment_results("exp-1")

        assert results.winner == "a"
        assert results.recommended_action == RecommendedAction.DECLARE_WINNER
        assert results.statistical_significance < 0.05

        # Same data under the default floor of 1000 impressions
        default_results = ExperimentService(db).get_experiment_results("exp-1")
        assert default_results.winner is None
        assert default_results.recommended_action == RecommendedAction.CONTINUE

    def test_date_range(self, db, make_experiment):
        make_experiment()
        repo = EventRepository(db)
        now = datetime.now(timezone.utc)
        for i, days_ago in enumerate((10, 5, 1)):
            repo.create_event(
                ConversionEvent(
                    event_id=f"e{i}",
                    experiment_id="exp-1",
                    variant_id="a",
                    session_id=f"s{i}",
                    event_type=EventType.PURCHASE,
                    revenue=1.0,
                    timestamp=now - timedelta(days=days_ago),
                )
            )

        results = ExperimentService(db).get_experiment_results(
            "exp-1", start_date=now - timedelta(days=7), end_date=now - timedelta(days=2)
        )
        assert results.variant_results["a"].conversions == 1
        assert results.variant_results["a"].revenue == pytest.approx(1.0)

    def test_confidence_level_from_experiment(self, db, make_experiment):
        make_experiment(confidence_level=99)
        tracker = ConversionTracker(db)
        for i in range(10):
            tracker.track_conversion(f"s{i}", "exp-1", "a", EventType.VIEW)
        tracker.track_conversion("s0", "exp-1", "a", EventType.PURCHASE)

        lower, upper = ExperimentService(db).get_experiment_results("exp-1").variant_results[
            "a"
        ].confidence_interval
        assert lower == 0.0
        assert upper == pytest.approx(0.1 + 2.576 * (0.09 / 10) ** 0.5)

    def test_event_read_failure_degrades(self, db, make_experiment, monkeypatch):
        make_experiment()
        VariantAssigner(db, rng=SequenceRandom(0.1)).assign_variant("exp-1", "p", "s1")
        service = ExperimentService(db)

        def broken_read(experiment_id, start_date=None, end_date=None):
            raise StoreError("store unavailable")

        monkeypatch.setattr(service.event_repo, "get_events_for_experiment", broken_read)

        results = service.get_experiment_results("exp-1")
        assert results.variant_results["a"].impressions == 1
        assert results.variant_results["a"].conversions == 0

    def test_missing_experiment(self, db):
        with pytest.raises(NotFoundError):
            ExperimentService(db).get_experiment_results("nope")
