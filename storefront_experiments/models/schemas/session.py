from datetime import datetime, timezone
from typing import Optional

from pydantic import Field

from .base import CamelModel
from .experiment import ExperimentVariant


class ExperimentSession(CamelModel):
    """Sticky binding of one session to one variant of one experiment."""

    session_id: str
    experiment_id: str
    variant_id: str = Field(..., description="The id of the variant the session was assigned.")
    product_id: str = ""
    assigned_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    user_id: Optional[str] = None

    @property
    def key(self) -> str:
        return session_key(self.experiment_id, self.session_id)


def session_key(experiment_id: str, session_id: str) -> str:
    # One binding per experiment per session
    return f"{experiment_id}_{session_id}"


class AssignmentResponseModel(CamelModel):
    experiment_id: str
    session_id: str
    variant: ExperimentVariant
