from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from storefront_experiments.core.db import get_db, get_session_factory, init_db
from storefront_experiments.main import app
from storefront_experiments.models.schemas.experiment import (
    ExperimentModel,
    ExperimentStatus,
    ExperimentVariant,
    GoalMetric,
)
from storefront_experiments.repositories.experiment_repo import ExperimentRepository

AUTH_HEADERS = {"Authorization": "Bearer dev-token"}


class SequenceRandom:
    """Stand-in for random.Random that replays fixed draws in a loop."""

    def __init__(self, *values):
        self.values = list(values)
        self.calls = 0

    def random(self):
        value = self.values[self.calls % len(self.values)]
        self.calls += 1
        return value


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client(session_factory):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_experiment(db):
    def _make(
        experiment_id="exp-1",
        allocations=(("a", 50), ("b", 50)),
        status=ExperimentStatus.RUNNING,
        goal_metric=GoalMetric.CONVERSION,
        confidence_level=95,
    ):
        experiment = ExperimentModel(
            experiment_id=experiment_id,
            name=f"Experiment {experiment_id}",
            status=status,
            variants=[
                ExperimentVariant(
                    id=variant_id,
                    name=variant_id.upper(),
                    template_id=f"tpl-{variant_id}",
                    traffic_allocation=allocation,
                )
                for variant_id, allocation in allocations
            ],
            goal_metric=goal_metric,
            confidence_level=confidence_level,
            created_at=datetime.now(timezone.utc),
        )
        return ExperimentRepository(db).save_experiment(experiment)

    return _make
