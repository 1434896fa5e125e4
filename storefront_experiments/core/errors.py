from typing import Any, Optional

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette import status


class APIError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    code: Optional[str] = None

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if code is not None:
            self.code = code


class ValidationError(APIError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "VALIDATION_ERROR"

    def __init__(self, message: str, errors: Any = None):
        super().__init__(message)
        self.errors = errors


class NotFoundError(APIError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "NOT_FOUND"

    def __init__(self, resource: str):
        super().__init__(f"{resource} not found")


class NotRunningError(APIError):
    """The experiment does not exist or is not accepting assignments."""

    status_code = status.HTTP_409_CONFLICT
    code = "EXPERIMENT_NOT_RUNNING"

    def __init__(self, experiment_id: str):
        super().__init__(f"Experiment {experiment_id} not found or not running")
        self.experiment_id = experiment_id


class StoreError(APIError):
    """The document store failed to complete an operation."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "STORE_ERROR"


def format_error_response(error: APIError) -> dict:
    body = {
        "message": error.message,
        "code": error.code,
        "statusCode": error.status_code,
    }
    if isinstance(error, ValidationError) and error.errors is not None:
        body["details"] = error.errors
    return {"error": body}


async def api_error_handler(request: Request, exc: APIError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=format_error_response(exc))
