"""
Configuration and enums for the delivery stack.

Each section of the YAML config maps onto one dataclass below; every field
has a working default so tests and the CLI can build a config in code.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class PartialConnectionPolicy(str, Enum):
    """What the router does when the link is connected but not ready.

    - mesh_then_queue: try the mesh relay first, queue only if it fails
    - queue_only: skip the mesh and queue straight away
    """

    MESH_THEN_QUEUE = "mesh_then_queue"
    QUEUE_ONLY = "queue_only"


@dataclass
class StorageConfig:
    """SQLite file locations.

    - db_path: message store (chat history with per-message status)
    - queue_db_path: offline queue; may be the same file as db_path
    """

    db_path: str = "delivery.db"
    queue_db_path: str = "delivery.db"


@dataclass
class QueueConfig:
    max_attempts: int = 5
    max_age_seconds: float = 6 * 3600.0
    deleted_id_ttl_seconds: float = 7 * 24 * 3600.0


@dataclass
class RetryConfig:
    """Retry pacing.

    inter_retry_delay_seconds is the pause between messages inside one
    coordinated sweep; fallback_retry_delay_seconds is the fixed pause used
    by the degraded per-message path.
    """

    inter_retry_delay_seconds: float = 0.3
    fallback_retry_delay_seconds: float = 0.5
    partial_connection_policy: PartialConnectionPolicy = PartialConnectionPolicy.MESH_THEN_QUEUE


@dataclass
class LifecycleConfig:
    handshake_settle_seconds: float = 1.0
    safety_net_seconds: float = 2.5
    maintenance_interval_seconds: float = 60.0


@dataclass
class SyncConfig:
    enabled: bool = True
    min_sync_interval_seconds: float = 30.0
    sync_timeout_seconds: float = 15.0
    max_syncs_per_hour: int = 60
    # How many of a peer's most recent messages we advertise as received.
    received_window: int = 200


@dataclass
class SecurityConfig:
    """At-rest encryption of queued message content.

    `key` must be 16, 24 or 32 bytes when encryption is enabled.
    """

    enable_encryption: bool = False
    key: Optional[bytes] = None


@dataclass
class DeliveryConfig:
    """Overall delivery configuration."""

    node_id: str
    storage: StorageConfig = field(default_factory=StorageConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    lifecycle: LifecycleConfig = field(default_factory=LifecycleConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    security: SecurityConfig = field(default_factory=SecurityConfig)
