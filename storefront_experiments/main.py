from contextlib import asynccontextmanager
from datetime import datetime
from typing import Callable, Optional

import uvicorn
from fastapi import APIRouter, BackgroundTasks, Depends, FastAPI, Path, Query, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from starlette import status

from storefront_experiments.core.auth import require_auth_token
from storefront_experiments.core.db import get_db, get_session_factory, init_db
from storefront_experiments.core.errors import APIError, api_error_handler
from storefront_experiments.core.logging_config import setup_logging
from storefront_experiments.core.settings import config_settings
from storefront_experiments.models.schemas.base import SuccessResponseModel
from storefront_experiments.models.schemas.event import EventType, TrackEventModel
from storefront_experiments.models.schemas.experiment import (
    ExperimentCreateModel,
    ExperimentListResponseModel,
    ExperimentModel,
    ExperimentStatus,
    ExperimentStatusUpdateModel,
    ExperimentUpdateModel,
)
from storefront_experiments.models.schemas.results import ExperimentResults
from storefront_experiments.models.schemas.session import AssignmentResponseModel
from storefront_experiments.services.experiment_service import ExperimentService
from storefront_experiments.services.session_identity import (
    CookieSessionStore,
    get_or_create_session_id,
)
from storefront_experiments.services.tracking import track_conversion_in_background
from storefront_experiments.services.traffic_splitter import VariantAssigner


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(config_settings.LOG_LEVEL, config_settings.LOG_JSON)
    init_db()
    yield


app = FastAPI(
    title="Storefront experiments",
    description="A/B testing engine for storefront page templates",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_exception_handler(APIError, api_error_handler)


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "error": {
                "message": "Missing or invalid fields",
                "code": "VALIDATION_ERROR",
                "statusCode": status.HTTP_400_BAD_REQUEST,
                "details": jsonable_encoder(exc.errors()),
            }
        },
    )


# Operator routes require a bearer token; storefront routes are public.
admin_router = APIRouter(prefix="/experiments", dependencies=[Depends(require_auth_token)])
storefront_router = APIRouter(prefix="/experiments")


@storefront_router.post(
    "/track",
    response_model=SuccessResponseModel,
    status_code=status.HTTP_200_OK,
    summary="Track a conversion event",
)
def post_track(
    event_data: TrackEventModel,
    background_tasks: BackgroundTasks,
    session_factory: Callable[[], Session] = Depends(get_session_factory),
):
    """
    Schedules the event write and returns immediately. Tracking is best-effort:
    a failed write is logged and never reported to the caller.
    """
    background_tasks.add_task(
        track_conversion_in_background,
        session_factory,
        event_data.session_id,
        event_data.experiment_id,
        event_data.variant_id,
        event_data.event_type,
        event_data.metadata,
    )
    return SuccessResponseModel()


@storefront_router.get(
    "/{experiment_id}/assignment",
    response_model=AssignmentResponseModel,
    status_code=status.HTTP_200_OK,
    summary="Get session assignment",
)
def get_session_assignment(
    request: Request,
    response: Response,
    background_tasks: BackgroundTasks,
    experiment_id: str = Path(..., description="The ID of the experiment."),
    product_id: str = Query("", description="Catalog product the page renders."),
    session_id: Optional[str] = Query(
        None, description="Explicit session id; defaults to the session cookie."
    ),
    db: Session = Depends(get_db),
    session_factory: Callable[[], Session] = Depends(get_session_factory),
):
    """
    Returns the session's variant, assigning one by traffic allocation on the
    first request, and records a ``view`` event for it.
    """
    if not session_id:
        session_id = get_or_create_session_id(CookieSessionStore(request, response))

    variant = VariantAssigner(db).assign_variant(experiment_id, product_id, session_id)

    background_tasks.add_task(
        track_conversion_in_background,
        session_factory,
        session_id,
        experiment_id,
        variant.id,
        EventType.VIEW,
        {"productId": product_id},
    )

    return AssignmentResponseModel(
        experiment_id=experiment_id, session_id=session_id, variant=variant
    )


@admin_router.post(
    "",
    response_model=ExperimentModel,
    status_code=status.HTTP_201_CREATED,
)
def post_experiments(
    experiment_data: ExperimentCreateModel,
    db: Session = Depends(get_db),
):
    return ExperimentService(db).create_experiment(experiment_data)


@admin_router.get("", response_model=ExperimentListResponseModel)
def list_experiments(
    status_filter: Optional[ExperimentStatus] = Query(None, alias="status"),
    db: Session = Depends(get_db),
):
    experiments = ExperimentService(db).list_experiments(status_filter)
    return ExperimentListResponseModel(experiments=experiments)


@admin_router.get("/{experiment_id}", response_model=ExperimentModel)
def get_experiment(experiment_id: str, db: Session = Depends(get_db)):
    return ExperimentService(db).get_experiment(experiment_id)


@admin_router.put("/{experiment_id}", response_model=ExperimentModel)
def put_experiment(
    experiment_id: str,
    update_data: ExperimentUpdateModel,
    db: Session = Depends(get_db),
):
    return ExperimentService(db).update_experiment(experiment_id, update_data)


@admin_router.post("/{experiment_id}/status", response_model=ExperimentModel)
def post_experiment_status(
    experiment_id: str,
    status_data: ExperimentStatusUpdateModel,
    db: Session = Depends(get_db),
):
    return ExperimentService(db).update_status(experiment_id, status_data.status)


@admin_router.delete("/{experiment_id}", response_model=SuccessResponseModel)
def delete_experiment(experiment_id: str, db: Session = Depends(get_db)):
    ExperimentService(db).delete_experiment(experiment_id)
    return SuccessResponseModel()


@admin_router.get(
    "/{experiment_id}/results",
    response_model=ExperimentResults,
    summary="Get statistics for experiments",
)
def get_experiment_results(
    experiment_id: str,
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    db: Session = Depends(get_db),
):
    return ExperimentService(db).get_experiment_results(
        experiment_id, start_date=start_date, end_date=end_date
    )


# Storefront routes first so "/track" is not captured by "/{experiment_id}" patterns
app.include_router(storefront_router)
app.include_router(admin_router)


if __name__ == "__main__":
    uvicorn.run("storefront_experiments.main:app", host="0.0.0.0", port=8000, reload=True)
