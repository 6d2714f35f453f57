"""FastAPI application factory.

Usage::

    from kubestack.api.app import create_app

    app = create_app(stacks=stack_listener, children=children_listener, stack_client=stack_client)

Used by both the production bootstrap (``kubestack.app``) and tests.
"""

from __future__ import annotations

from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from kubernetes_asyncio.client import ApiException

from kubestack.api.routes import probes, router
from kubestack.api.schemas import ErrorResponse
from kubestack.errors import StackValidationError
from kubestack.kube.errors import is_conflict
from kubestack.observability.logging import get_logger

_log = get_logger("api.app")

_API_PREFIX = "/api/v1"


def create_app(stacks: Any, children: Any, stack_client: Any, history_limit: int = 10) -> FastAPI:
    """Create the REST application.

    Args:
        stacks:       StackListener; source of canonical stacks and readiness.
        children:     ChildrenListener; readiness only.
        stack_client: StackClient used to patch a stack on rollback and pruning.
        history_limit: revisions kept by a prune request that names no count.
    """
    from kubestack import __version__

    app = FastAPI(
        title="kubestack",
        summary="Stack controller API",
        version=__version__,
        docs_url="/api/v1/docs",
        redoc_url=None,
        openapi_url="/api/v1/openapi.json",
    )
    app.state.stacks = stacks
    app.state.children = children
    app.state.stack_client = stack_client
    app.state.history_limit = history_limit

    app.include_router(probes)
    app.include_router(router, prefix=_API_PREFIX)

    # -----------------------------------------------------------------------
    # Exception handlers
    # -----------------------------------------------------------------------

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(_request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = exc.errors()
        detail = str(errors[0].get("msg", "")) if errors else ""
        return JSONResponse(
            status_code=400,
            content=ErrorResponse(error="INVALID_REQUEST", detail=detail).model_dump(),
        )

    @app.exception_handler(StackValidationError)
    async def stack_validation_handler(_request: Request, exc: StackValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=422,
            content=ErrorResponse(error="INVALID_STACK", detail=str(exc)).model_dump(),
        )

    @app.exception_handler(ApiException)
    async def api_exception_handler(request: Request, exc: ApiException) -> JSONResponse:
        _log.warning("cluster api call failed", path=str(request.url.path), status=exc.status, reason=exc.reason)
        if is_conflict(exc):
            return JSONResponse(
                status_code=409,
                content=ErrorResponse(error="CONFLICT", detail=str(exc.reason)).model_dump(),
            )
        return JSONResponse(
            status_code=502,
            content=ErrorResponse(error="CLUSTER_ERROR", detail=str(exc.reason)).model_dump(),
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        _log.error("unhandled exception", path=str(request.url.path), method=request.method, error=str(exc))
        return JSONResponse(
            status_code=500,
            content=ErrorResponse(error="INTERNAL_ERROR", detail="An unexpected error occurred.").model_dump(),
        )

    return app
