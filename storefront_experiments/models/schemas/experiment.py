import enum
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import Field, model_validator

from .base import CamelModel


class ExperimentStatus(str, enum.Enum):
    DRAFT = "draft"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"


class GoalMetric(str, enum.Enum):
    CONVERSION = "conversion"
    ADD_TO_CART = "addToCart"
    REVENUE = "revenue"
    ENGAGEMENT = "engagement"


ConfidenceLevel = Literal[90, 95, 99]


class ExperimentVariant(CamelModel):
    """One arm of an experiment."""

    id: str
    name: str
    template_id: str = ""
    traffic_allocation: float = Field(
        ...,
        ge=0.0,
        le=100.0,
        description="Percentage of traffic allocated to this variant.",
    )


class ExperimentModel(CamelModel):
    """Data model for a persistent experiment record."""

    experiment_id: str = Field(..., description="Unique ID for the experiment.")
    name: str
    description: Optional[str] = None
    status: ExperimentStatus = ExperimentStatus.DRAFT
    variants: List[ExperimentVariant]
    product_ids: List[str] = Field(default_factory=list)
    goal_metric: GoalMetric = GoalMetric.CONVERSION
    min_sample_size: int = 1000
    confidence_level: ConfidenceLevel = 95
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    created_at: datetime
    updated_at: Optional[datetime] = None


class VariantCreateModel(CamelModel):
    id: Optional[str] = None
    name: str = Field(..., min_length=1)
    template_id: str = ""
    traffic_allocation: float = Field(..., ge=0.0, le=100.0)


class ExperimentCreateModel(CamelModel):
    """Request body for creating an experiment. Allocation rules are checked by the service."""

    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    variants: List[VariantCreateModel]
    product_ids: List[str] = Field(default_factory=list)
    goal_metric: GoalMetric = GoalMetric.CONVERSION
    min_sample_size: int = Field(1000, ge=1)
    confidence_level: ConfidenceLevel = 95


NON_NULLABLE_UPDATE_FIELDS = (
    "name",
    "variants",
    "product_ids",
    "goal_metric",
    "min_sample_size",
    "confidence_level",
)


class ExperimentUpdateModel(CamelModel):
    """Partial update; unset fields are left untouched."""

    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    variants: Optional[List[VariantCreateModel]] = None
    product_ids: Optional[List[str]] = None
    goal_metric: Optional[GoalMetric] = None
    min_sample_size: Optional[int] = Field(None, ge=1)
    confidence_level: Optional[ConfidenceLevel] = None

    @model_validator(mode="after")
    def reject_explicit_nulls(self) -> "ExperimentUpdateModel":
        # Only description may be cleared; other fields are omitted to keep them
        cleared = [
            name
            for name in NON_NULLABLE_UPDATE_FIELDS
            if name in self.model_fields_set and getattr(self, name) is None
        ]
        if cleared:
            raise ValueError(f"Fields cannot be null: {', '.join(cleared)}")
        return self


class ExperimentStatusUpdateModel(CamelModel):
    status: ExperimentStatus


class ExperimentListResponseModel(CamelModel):
    experiments: List[ExperimentModel]
