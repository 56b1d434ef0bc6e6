"""omnitwin: versioned supply-chain digital twin core.

Ingests telemetry and enterprise-system updates about supply-chain nodes,
keeps a versioned twin of their state in Postgres, and serves derived data
through a Redis TTL cache.
"""

from omnitwin.cache.layer import CacheLayer, SessionData
from omnitwin.common.exceptions import (
    ConcurrencyError,
    ConnectivityError,
    ErrorKind,
    NotFoundError,
    TwinError,
    ValidationError,
)
from omnitwin.config import TwinConfig
from omnitwin.errors.reporter import ErrorReporter
from omnitwin.graph.models import Node, NodeMetrics, NodeStatus, NodeType
from omnitwin.graph.repository import NodeRepository
from omnitwin.ingestion.gateway import AcceptedUpdate, IngestionGateway
from omnitwin.twin.conflict import ConflictResolver

__version__ = "0.1.0"

__all__ = [
    "AcceptedUpdate",
    "CacheLayer",
    "ConcurrencyError",
    "ConflictResolver",
    "ConnectivityError",
    "ErrorKind",
    "ErrorReporter",
    "IngestionGateway",
    "Node",
    "NodeMetrics",
    "NodeRepository",
    "NodeStatus",
    "NodeType",
    "NotFoundError",
    "SessionData",
    "TwinConfig",
    "TwinError",
    "ValidationError",
]
