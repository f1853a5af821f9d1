from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any
import json

# Queue-sync frame:
#   [ver][type][json body]
# body = {"node": str, "pending": [ids], "received": [ids], "hash": str}
SYNC_VERSION = 1

SYNC_TYPE_REQUEST = 0x51
SYNC_TYPE_RESPONSE = 0x52

# A manifest never lists more ids than this per direction.
MAX_MANIFEST_IDS = 500


@dataclass(frozen=True)
class QueueSyncManifest:
    """
    Compact view of one side's queue state for a single peer.

    - pending_ids: ids we still hold queued for the peer
    - received_ids: ids we already received from the peer
    """

    node_id: str
    pending_ids: List[str] = field(default_factory=list)
    received_ids: List[str] = field(default_factory=list)
    queue_hash: str = ""
    kind: int = SYNC_TYPE_REQUEST

    @property
    def is_request(self) -> bool:
        return self.kind == SYNC_TYPE_REQUEST


def encode_queue_sync(manifest: QueueSyncManifest) -> bytes:
    if manifest.kind not in (SYNC_TYPE_REQUEST, SYNC_TYPE_RESPONSE):
        raise ValueError(f"unknown sync frame type {manifest.kind}")
    if len(manifest.pending_ids) > MAX_MANIFEST_IDS or len(manifest.received_ids) > MAX_MANIFEST_IDS:
        raise ValueError("manifest too large")

    body: Dict[str, Any] = {
        "node": manifest.node_id,
        "pending": list(manifest.pending_ids),
        "received": list(manifest.received_ids),
        "hash": manifest.queue_hash,
    }
    header = bytes([SYNC_VERSION, manifest.kind])
    return header + json.dumps(body, separators=(",", ":")).encode("utf-8")


def _clean_ids(raw: Any) -> Optional[List[str]]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        return None
    out: List[str] = []
    seen = set()
    for item in raw[:MAX_MANIFEST_IDS]:
        if isinstance(item, str) and item and item not in seen:
            seen.add(item)
            out.append(item)
    return out


def decode_queue_sync(data: bytes) -> Optional[QueueSyncManifest]:
    """
    Returns None for anything that is not a well-formed sync frame.
    """
    if len(data) < 3:
        return None

    version = data[0]
    kind = data[1]
    if version != SYNC_VERSION:
        return None
    if kind not in (SYNC_TYPE_REQUEST, SYNC_TYPE_RESPONSE):
        return None

    try:
        obj = json.loads(data[2:].decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return None
    if not isinstance(obj, dict):
        return None

    node_id = obj.get("node")
    if not isinstance(node_id, str) or not node_id:
        return None

    pending = _clean_ids(obj.get("pending"))
    received = _clean_ids(obj.get("received"))
    if pending is None or received is None:
        return None

    queue_hash = obj.get("hash", "")
    if not isinstance(queue_hash, str):
        queue_hash = ""

    return QueueSyncManifest(
        node_id=node_id,
        pending_ids=pending,
        received_ids=received,
        queue_hash=queue_hash,
        kind=kind,
    )


def is_queue_sync_frame(data: bytes) -> bool:
    return len(data) >= 2 and data[0] == SYNC_VERSION and data[1] in (SYNC_TYPE_REQUEST, SYNC_TYPE_RESPONSE)
