"""
Self-upgrade API routes

Provides REST endpoints for:
- Liveness and version of the supervisor
- Starting a self-upgrade and reading its persisted state
- Manually rolling back the last operation

Mounted under the configured base path (default /supervisor).
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import Field

from config.settings import APP_VERSION
from supervisor.self_upgrade import SelfUpgradeConflict, SelfUpgradeInvalidRequest, SelfUpgradeSupervisor
from supervisor.state_store import CamelModel, SelfUpgradeRequest, StateStoreError

logger = logging.getLogger(__name__)

router = APIRouter(tags=["self-upgrade"])


class RollbackRequest(CamelModel):
    op_id: str = Field(..., description="Operation id returned by POST /self-upgrade")


class ApiError(Exception):
    """Error rendered as {"error": {"code", "message", "details"}}"""

    def __init__(self, status_code: int, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message
        self.details = details or {}


def error_response(status_code: int, code: str, message: str, details: Optional[Dict[str, Any]] = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": {"code": code, "message": message, "details": details or {}}},
    )


def _supervisor(request: Request) -> SelfUpgradeSupervisor:
    return request.app.state.supervisor


@router.get("/health")
async def health():
    return {"ok": True}


@router.get("/version")
async def version():
    return {"version": APP_VERSION}


@router.get("/self-upgrade")
async def get_self_upgrade(request: Request):
    state = await _supervisor(request).get_state()
    return state.model_dump(by_alias=True, mode="json")


@router.post("/self-upgrade")
async def start_self_upgrade(body: SelfUpgradeRequest, request: Request):
    try:
        op_id = await _supervisor(request).start(body)
    except SelfUpgradeInvalidRequest as e:
        raise ApiError(400, "invalid_argument", str(e))
    except SelfUpgradeConflict as e:
        raise ApiError(409, "conflict", str(e))
    return {"opId": op_id}


@router.post("/self-upgrade/rollback")
async def rollback_self_upgrade(body: RollbackRequest, request: Request):
    try:
        await _supervisor(request).rollback(body.op_id)
    except SelfUpgradeInvalidRequest as e:
        raise ApiError(400, "invalid_argument", str(e), {"opId": body.op_id})
    except SelfUpgradeConflict as e:
        raise ApiError(409, "conflict", str(e), {"opId": body.op_id})
    return {"ok": True}


def register_error_handlers(app: FastAPI) -> None:
    """Install the JSON error envelope for supervisor responses"""

    @app.exception_handler(ApiError)
    async def api_error_handler(request: Request, exc: ApiError):
        logger.warning(f"{request.method} {request.url.path} rejected: {exc.code}: {exc.message}")
        return error_response(exc.status_code, exc.code, exc.message, exc.details)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = []
        for error in exc.errors():
            errors.append({
                "field": " -> ".join(str(x) for x in error['loc']),
                "message": error['msg'],
                "type": error['type'],
            })
        logger.warning(f"Validation failed for {request.url.path}: {errors}")
        return error_response(400, "invalid_argument", "Invalid request data", {"errors": errors})

    @app.exception_handler(StateStoreError)
    async def state_store_error_handler(request: Request, exc: StateStoreError):
        logger.error(f"State store failure on {request.url.path}: {exc}", exc_info=exc)
        return error_response(500, "internal", str(exc))

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled error on {request.url.path}: {exc}", exc_info=exc)
        return error_response(500, "internal", "Internal server error")
