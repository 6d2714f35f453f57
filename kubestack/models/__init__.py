"""Core data structures for kubestack."""

from kubestack.models.config import KubeStackConfig
from kubestack.models.stack import (
    DeployConfig,
    FileObject,
    FileReference,
    InternalServiceType,
    ServiceConfig,
    Stack,
    StackPhase,
    StackSpec,
    StackStatus,
    object_key,
)

__all__ = [
    "DeployConfig",
    "FileObject",
    "FileReference",
    "InternalServiceType",
    "KubeStackConfig",
    "ServiceConfig",
    "Stack",
    "StackPhase",
    "StackSpec",
    "StackStatus",
    "object_key",
]
