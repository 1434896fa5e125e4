import enum
from typing import Dict, Optional, Tuple

from .base import CamelModel


class RecommendedAction(str, enum.Enum):
    CONTINUE = "continue"
    DECLARE_WINNER = "declare_winner"
    STOP = "stop"


class VariantMetrics(CamelModel):
    """Aggregated metrics for a single variant."""

    variant_id: str
    impressions: int = 0
    conversions: int = 0
    conversion_rate: float = 0.0
    revenue: float = 0.0
    average_order_value: float = 0.0
    confidence_interval: Tuple[float, float] = (0.0, 0.0)


class ExperimentResults(CamelModel):
    experiment_id: str
    variant_results: Dict[str, VariantMetrics]
    winner: Optional[str] = None
    statistical_significance: float = 1.0
    recommended_action: RecommendedAction = RecommendedAction.CONTINUE
