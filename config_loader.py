# config_loader.py
#
# YAML -> in-memory config structs for the delivery stack.

from __future__ import annotations

from typing import Dict, Any
import binascii

import yaml
from pathlib import Path

from mesh_config import (
    DeliveryConfig,
    LifecycleConfig,
    PartialConnectionPolicy,
    QueueConfig,
    RetryConfig,
    SecurityConfig,
    StorageConfig,
    SyncConfig,
)


def _get_required(mapping: Dict[str, Any], key: str) -> Any:
    if key not in mapping:
        raise KeyError(f"Missing required config key: {key}")
    return mapping[key]


def _section(root: Dict[str, Any], name: str) -> Dict[str, Any]:
    section_any = root.get(name, {})
    if not isinstance(section_any, dict):
        return {}
    return section_any


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------

def load_storage_config(root: Dict[str, Any], base_dir: Path) -> StorageConfig:
    """Load the `storage` section. Relative paths resolve against the config dir.

    Example YAML:

        storage:
          db_path: "chat.db"
          queue_db_path: "queue.db"
    """
    storage_raw = _section(root, "storage")

    raw_db_path = str(storage_raw.get("db_path", "delivery.db"))
    raw_queue_path = str(storage_raw.get("queue_db_path", raw_db_path))

    return StorageConfig(
        db_path=str(base_dir.joinpath(raw_db_path).resolve()),
        queue_db_path=str(base_dir.joinpath(raw_queue_path).resolve()),
    )


# ---------------------------------------------------------------------------
# Queue / retry / lifecycle / sync
# ---------------------------------------------------------------------------

def load_queue_config(root: Dict[str, Any]) -> QueueConfig:
    queue_raw = _section(root, "queue")

    max_attempts = int(queue_raw.get("max_attempts", 5))
    max_age_seconds = float(queue_raw.get("max_age_seconds", 6 * 3600.0))
    deleted_id_ttl_seconds = float(queue_raw.get("deleted_id_ttl_seconds", 7 * 24 * 3600.0))

    if max_attempts < 1:
        raise ValueError("queue.max_attempts must be >= 1")
    if max_age_seconds <= 0.0:
        raise ValueError("queue.max_age_seconds must be > 0")
    if deleted_id_ttl_seconds <= 0.0:
        raise ValueError("queue.deleted_id_ttl_seconds must be > 0")

    return QueueConfig(
        max_attempts=max_attempts,
        max_age_seconds=max_age_seconds,
        deleted_id_ttl_seconds=deleted_id_ttl_seconds,
    )


def load_retry_config(root: Dict[str, Any]) -> RetryConfig:
    retry_raw = _section(root, "retry")

    inter_retry_delay = float(retry_raw.get("inter_retry_delay_seconds", 0.3))
    fallback_delay = float(retry_raw.get("fallback_retry_delay_seconds", 0.5))
    policy_raw = str(retry_raw.get("partial_connection_policy", "mesh_then_queue") or "").strip().lower()

    if inter_retry_delay < 0.0:
        raise ValueError("retry.inter_retry_delay_seconds must be >= 0")
    if fallback_delay < 0.0:
        raise ValueError("retry.fallback_retry_delay_seconds must be >= 0")
    try:
        policy = PartialConnectionPolicy(policy_raw)
    except ValueError:
        raise ValueError("retry.partial_connection_policy must be one of: mesh_then_queue, queue_only") from None

    return RetryConfig(
        inter_retry_delay_seconds=inter_retry_delay,
        fallback_retry_delay_seconds=fallback_delay,
        partial_connection_policy=policy,
    )


def load_lifecycle_config(root: Dict[str, Any]) -> LifecycleConfig:
    lifecycle_raw = _section(root, "lifecycle")

    settle = float(lifecycle_raw.get("handshake_settle_seconds", 1.0))
    safety_net = float(lifecycle_raw.get("safety_net_seconds", 2.5))
    maintenance = float(lifecycle_raw.get("maintenance_interval_seconds", 60.0))

    if settle < 0.0 or safety_net < 0.0:
        raise ValueError("lifecycle delays must be >= 0")
    if maintenance <= 0.0:
        raise ValueError("lifecycle.maintenance_interval_seconds must be > 0")

    return LifecycleConfig(
        handshake_settle_seconds=settle,
        safety_net_seconds=safety_net,
        maintenance_interval_seconds=maintenance,
    )


def load_sync_config(root: Dict[str, Any]) -> SyncConfig:
    sync_raw = _section(root, "sync")

    enabled = bool(sync_raw.get("enabled", True))
    min_interval = float(sync_raw.get("min_sync_interval_seconds", 30.0))
    timeout = float(sync_raw.get("sync_timeout_seconds", 15.0))
    max_per_hour = int(sync_raw.get("max_syncs_per_hour", 60))
    received_window = int(sync_raw.get("received_window", 200))

    if min_interval < 0.0:
        raise ValueError("sync.min_sync_interval_seconds must be >= 0")
    if timeout <= 0.0:
        raise ValueError("sync.sync_timeout_seconds must be > 0")
    if max_per_hour < 1:
        raise ValueError("sync.max_syncs_per_hour must be >= 1")
    if received_window < 1:
        raise ValueError("sync.received_window must be >= 1")

    return SyncConfig(
        enabled=enabled,
        min_sync_interval_seconds=min_interval,
        sync_timeout_seconds=timeout,
        max_syncs_per_hour=max_per_hour,
        received_window=received_window,
    )


def load_security_config(root: Dict[str, Any]) -> SecurityConfig:
    sec_cfg = _section(root, "security")

    enable_encryption = bool(sec_cfg.get("enable_encryption", False))
    key_hex = sec_cfg.get("key_hex")
    key_bytes = None
    if key_hex is not None:
        key_bytes = binascii.unhexlify(str(key_hex))
        if len(key_bytes) not in (16, 24, 32):
            raise ValueError("security.key_hex must decode to 16, 24 or 32 bytes")

    if enable_encryption and key_bytes is None:
        raise ValueError("security.enable_encryption requires security.key_hex")

    return SecurityConfig(
        enable_encryption=enable_encryption,
        key=key_bytes,
    )


# ---------------------------------------------------------------------------
# Full config
# ---------------------------------------------------------------------------

def load_delivery_config(root: Dict[str, Any], base_dir: Path) -> DeliveryConfig:
    node_cfg = _section(root, "node")
    node_id = str(_get_required(node_cfg, "id") or "").strip()
    if not node_id:
        raise ValueError("node.id must not be empty")

    return DeliveryConfig(
        node_id=node_id,
        storage=load_storage_config(root, base_dir),
        queue=load_queue_config(root),
        retry=load_retry_config(root),
        lifecycle=load_lifecycle_config(root),
        sync=load_sync_config(root),
        security=load_security_config(root),
    )


def load_delivery_config_from_yaml(path: str) -> DeliveryConfig:
    """Load a complete DeliveryConfig from a YAML file."""

    with open(path, "r", encoding="utf-8") as f:
        root = yaml.safe_load(f)

    if not isinstance(root, dict):
        raise ValueError("Top-level YAML must be a mapping")

    return load_delivery_config(root, Path(path).parent)
