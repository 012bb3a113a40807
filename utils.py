import hashlib
import json
import time
import uuid
from datetime import datetime, timezone
from typing import List, Dict, Any

GENESIS_PREVIOUS_HASH = "0x" + "0" * 64
GENESIS_TX_ID = "tx_genesis_000"


def canonical_json(data: Any) -> bytes:
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def compute_hash(payload: dict, tx_id: str) -> str:
    block = canonical_json({
        "id": tx_id,
        "payload": payload,
    })
    return sha256_hex(block)


def verify_chain(transactions: List[Dict[str, Any]]) -> int:
    """Return the position of the first broken link, or -1 for an intact chain.

    Each entry needs ``id``, ``payload``, ``hash`` and ``previous_hash``.
    """
    prev = GENESIS_PREVIOUS_HASH
    for i, tx in enumerate(transactions):
        expected = compute_hash(tx["payload"], tx["id"])
        if tx["hash"] != expected or tx["previous_hash"] != prev:
            return i
        prev = tx["hash"]
    return -1


def new_transaction_id() -> str:
    return f"tx_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


def new_batch_id(species: str) -> str:
    prefix = "".join(c for c in species.upper() if c.isalnum())[:3] or "HRB"
    return f"BATCH_{prefix}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:4].upper()}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC so they compare with aware ones."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
