"""Conversion of a canonical Stack into Kubernetes objects."""

from kubestack.convert.services import (
    LoadBalancerServiceStrategy,
    NodePortServiceStrategy,
    ServiceStrategy,
    service_strategy_for,
)
from kubestack.convert.stack import stack_to_state

__all__ = [
    "LoadBalancerServiceStrategy",
    "NodePortServiceStrategy",
    "ServiceStrategy",
    "service_strategy_for",
    "stack_to_state",
]
