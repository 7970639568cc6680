"""Chat backends: cloud REST and local cascade RPC behind one interface."""

from antiproxy.backends.base import ChatBackend
from antiproxy.backends.cascade import CascadeBackend, CascadeOrchestrator, CascadeSession
from antiproxy.backends.cloud import CloudBackend
from antiproxy.backends.failover import EndpointFailover

__all__ = [
    "ChatBackend",
    "CascadeBackend",
    "CascadeOrchestrator",
    "CascadeSession",
    "CloudBackend",
    "EndpointFailover",
]
