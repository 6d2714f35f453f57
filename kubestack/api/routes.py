"""Route handlers.

Dependencies are read from ``request.app.state``, populated by
``create_app``.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse
from kubernetes_asyncio.client import ApiException
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from kubestack.api.schemas import (
    ErrorResponse,
    HealthResponse,
    PruneRequest,
    PruneResponse,
    ReadinessResponse,
    RevisionResponse,
    RevisionsResponse,
    RollbackRequest,
    RollbackResponse,
)
from kubestack.errors import RevisionNotFoundError, RevisionUnreadableError
from kubestack.kube.errors import is_invalid
from kubestack.models.stack import Stack, object_key
from kubestack.rollout.revisions import load_spec, prune_revisions, revisions_of, rollback

probes = APIRouter()
router = APIRouter()


def _stack_not_found(namespace: str, name: str) -> JSONResponse:
    return JSONResponse(
        status_code=404,
        content=ErrorResponse(error="STACK_NOT_FOUND", detail=f"stack {namespace}/{name} not found").model_dump(),
    )


def _resource_version(obj: dict[str, Any]) -> str:
    return str((obj.get("metadata") or {}).get("resourceVersion", ""))


@probes.get("/healthz", response_model=HealthResponse)
async def healthz() -> HealthResponse:
    from kubestack import __version__

    return HealthResponse(status="ok", version=__version__)


@probes.get("/readyz", response_model=ReadinessResponse)
async def readyz(request: Request, response: Response) -> ReadinessResponse:
    stacks_synced = request.app.state.stacks.has_synced()
    children_synced = request.app.state.children.has_synced()
    ready = stacks_synced and children_synced
    if not ready:
        response.status_code = 503
    return ReadinessResponse(ready=ready, stacks_synced=stacks_synced, children_synced=children_synced)


@probes.get("/metrics")
async def metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@router.get("/stacks/{namespace}/{name}/revisions", response_model=RevisionsResponse)
async def list_revisions(namespace: str, name: str, request: Request) -> RevisionsResponse | JSONResponse:
    stack: Stack | None = request.app.state.stacks.get(object_key(namespace, name))
    if stack is None:
        return _stack_not_found(namespace, name)
    revisions = []
    for rev in revisions_of(stack.raw).revisions:
        try:
            revisions.append(RevisionResponse(revision=rev.number, spec=load_spec(rev)))
        except RevisionUnreadableError:
            revisions.append(RevisionResponse(revision=rev.number, spec=None, readable=False))
    return RevisionsResponse(namespace=namespace, name=name, revisions=revisions)


@router.post("/stacks/{namespace}/{name}/rollback", response_model=RollbackResponse)
async def rollback_stack(
    namespace: str, name: str, body: RollbackRequest, request: Request
) -> RollbackResponse | JSONResponse:
    stack: Stack | None = request.app.state.stacks.get(object_key(namespace, name))
    if stack is None:
        return _stack_not_found(namespace, name)
    try:
        updated = await rollback(request.app.state.stack_client, stack, body.revision)
    except RevisionNotFoundError as exc:
        return JSONResponse(
            status_code=404,
            content=ErrorResponse(error="REVISION_NOT_FOUND", detail=str(exc)).model_dump(),
        )
    except RevisionUnreadableError as exc:
        return JSONResponse(
            status_code=422,
            content=ErrorResponse(error="REVISION_UNREADABLE", detail=str(exc)).model_dump(),
        )
    return RollbackResponse(
        namespace=namespace,
        name=name,
        revision=body.revision,
        resource_version=_resource_version(updated),
    )


@router.post("/stacks/{namespace}/{name}/revisions/prune", response_model=PruneResponse)
async def prune_stack_revisions(
    namespace: str, name: str, request: Request, body: PruneRequest | None = None
) -> PruneResponse | JSONResponse:
    """Drop old revisions, keeping ``keep`` or the configured history limit."""
    stack: Stack | None = request.app.state.stacks.get(object_key(namespace, name))
    if stack is None:
        return _stack_not_found(namespace, name)
    keep = (body.keep if body is not None else None) or request.app.state.history_limit
    try:
        removed, updated = await prune_revisions(request.app.state.stack_client, stack, keep)
    except ApiException as exc:
        if not is_invalid(exc):
            raise
        return JSONResponse(
            status_code=409,
            content=ErrorResponse(error="CONFLICT", detail="stack changed while pruning, retry").model_dump(),
        )
    return PruneResponse(namespace=namespace, name=name, removed=removed, resource_version=_resource_version(updated))
