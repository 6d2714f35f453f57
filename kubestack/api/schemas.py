"""Pydantic request and response models for the REST API."""

from __future__ import annotations

from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    error: str
    detail: str


class HealthResponse(BaseModel):
    status: str
    version: str


class ReadinessResponse(BaseModel):
    ready: bool
    stacks_synced: bool
    children_synced: bool


class RevisionResponse(BaseModel):
    revision: int
    spec: dict | None
    # false when the stored value is not a JSON object; spec is then null
    readable: bool = True


class RevisionsResponse(BaseModel):
    namespace: str
    name: str
    revisions: list[RevisionResponse]


class RollbackRequest(BaseModel):
    revision: int = Field(ge=1)


class RollbackResponse(BaseModel):
    namespace: str
    name: str
    revision: int
    resource_version: str


class PruneRequest(BaseModel):
    keep: int | None = Field(default=None, ge=1, le=100)


class PruneResponse(BaseModel):
    namespace: str
    name: str
    removed: list[int]
    resource_version: str
