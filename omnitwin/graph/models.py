from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class NodeType(str, Enum):
    SUPPLIER = "supplier"
    MANUFACTURER = "manufacturer"
    WAREHOUSE = "warehouse"
    DISTRIBUTOR = "distributor"
    RETAILER = "retailer"


class NodeStatus(str, Enum):
    OPERATIONAL = "operational"
    DEGRADED = "degraded"
    DISRUPTED = "disrupted"
    OFFLINE = "offline"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_aware(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def parse_instant(value: Any) -> datetime:
    if isinstance(value, datetime):
        return ensure_aware(value)
    text = str(value)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return ensure_aware(datetime.fromisoformat(text))


@dataclass
class Location:
    latitude: float = 0.0
    longitude: float = 0.0
    address: str = ""
    city: str = ""
    country: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "latitude": self.latitude,
            "longitude": self.longitude,
            "address": self.address,
            "city": self.city,
            "country": self.country,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> Location:
        data = data or {}
        return cls(
            latitude=float(data.get("latitude", 0.0)),
            longitude=float(data.get("longitude", 0.0)),
            address=data.get("address", ""),
            city=data.get("city", ""),
            country=data.get("country", ""),
        )


@dataclass(frozen=True)
class NodeMetrics:
    """Operational metrics of a node. Replaced as a whole on every accepted update."""

    current_inventory: float
    utilization_rate: float
    last_update_timestamp: datetime
    last_update_source: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "currentInventory": self.current_inventory,
            "utilizationRate": self.utilization_rate,
            "lastUpdateTimestamp": self.last_update_timestamp.isoformat(),
            "lastUpdateSource": self.last_update_source,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> NodeMetrics:
        return cls(
            current_inventory=data["currentInventory"],
            utilization_rate=data["utilizationRate"],
            last_update_timestamp=parse_instant(data["lastUpdateTimestamp"]),
            last_update_source=data.get("lastUpdateSource"),
        )


@dataclass
class Node:
    node_id: str
    type: NodeType
    metrics: NodeMetrics | None = None
    location: Location = field(default_factory=Location)
    capacity: float = 0.0
    status: NodeStatus = NodeStatus.OPERATIONAL
    connections: set[str] = field(default_factory=set)
    version: int = 1
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "nodeId": self.node_id,
            "type": self.type.value,
            "location": self.location.to_dict(),
            "capacity": self.capacity,
            "status": self.status.value,
            "connections": sorted(self.connections),
            "metrics": self.metrics.to_dict() if self.metrics else None,
            "version": self.version,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Node:
        metrics = data.get("metrics")
        return cls(
            node_id=data["nodeId"],
            type=NodeType(data["type"]),
            location=Location.from_dict(data.get("location")),
            capacity=data.get("capacity", 0.0),
            status=NodeStatus(data.get("status", NodeStatus.OPERATIONAL.value)),
            connections=set(data.get("connections") or []),
            metrics=NodeMetrics.from_dict(metrics) if metrics else None,
            version=int(data["version"]),
            created_at=parse_instant(data["createdAt"]),
            updated_at=parse_instant(data["updatedAt"]),
        )

    def with_changes(self, **changes: Any) -> Node:
        return replace(self, **changes)
