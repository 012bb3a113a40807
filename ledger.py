"""
Append-only, hash-chained transaction log.

``LedgerStore`` owns the ordered transaction sequence and the hash of its
tail. A transaction becomes visible to readers only after the backend has
flushed it, so a failed write leaves memory and disk in agreement.
"""
import contextlib
import json
import logging
import os
import tempfile
import threading
from datetime import datetime
from typing import List, Optional, Sequence, Tuple

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from database import make_engine, make_session_factory
from errors import StorageError
from models import LedgerEntry, LedgerMeta
from schemas import (
    GenesisPayload,
    LedgerMetadata,
    Transaction,
    TransactionType,
    parse_payload,
)
from utils import (
    GENESIS_PREVIOUS_HASH,
    GENESIS_TX_ID,
    compute_hash,
    new_transaction_id,
    utcnow,
    verify_chain,
)

logger = logging.getLogger(__name__)

GENESIS_MESSAGE = "Ayurvedic herb traceability chain genesis block"

Loaded = Tuple[LedgerMetadata, List[Transaction]]


class LedgerBackend:
    """Durable storage for the ordered transaction log."""

    def load(self) -> Optional[Loaded]:
        """Return the stored metadata and transactions, or None for a fresh ledger."""
        raise NotImplementedError

    def write(self, metadata: LedgerMetadata, transactions: Sequence[Transaction],
              new: Sequence[Transaction]) -> None:
        """Durably store ``new``, the tail of ``transactions``, before returning."""
        raise NotImplementedError


class MemoryBackend(LedgerBackend):
    def __init__(self):
        self.metadata: Optional[LedgerMetadata] = None
        self.transactions: List[Transaction] = []

    def load(self) -> Optional[Loaded]:
        if self.metadata is None:
            return None
        return self.metadata, list(self.transactions)

    def write(self, metadata, transactions, new):
        self.metadata = metadata
        self.transactions = list(transactions)


def _fsync_dir(directory: str) -> None:
    # persists the rename itself
    fd = os.open(directory, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


class JsonFileBackend(LedgerBackend):
    """Single JSON document ``{"transactions": [...], "metadata": {...}}``.

    Every write rewrites the whole file through a temporary sibling that is
    fsynced and then renamed over the old one, so a crash leaves either the
    previous or the new log on disk, never a truncated one.
    """

    def __init__(self, path: str):
        self.path = path

    def load(self) -> Optional[Loaded]:
        if not os.path.exists(self.path):
            return None
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                doc = json.load(f)
            metadata = LedgerMetadata.model_validate(doc["metadata"])
            transactions = [Transaction.model_validate(rec) for rec in doc["transactions"]]
        except (OSError, ValueError, KeyError, TypeError, PydanticValidationError) as e:
            raise StorageError(f"cannot read ledger file {self.path}: {e}") from e
        return metadata, transactions

    def write(self, metadata, transactions, new):
        doc = {
            "transactions": [tx.to_record() for tx in transactions],
            "metadata": metadata.model_dump(mode="json"),
        }
        directory = os.path.dirname(os.path.abspath(self.path))
        tmp_path = None
        try:
            os.makedirs(directory, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(prefix=".ledger-", suffix=".tmp", dir=directory)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(doc, f, indent=2, ensure_ascii=False)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
            tmp_path = None
            _fsync_dir(directory)
        except OSError as e:
            if tmp_path is not None:
                with contextlib.suppress(OSError):
                    os.unlink(tmp_path)
            raise StorageError(f"cannot write ledger file {self.path}: {e}") from e


class SqlBackend(LedgerBackend):
    """One row per transaction; each append is its own committed DB transaction."""

    def __init__(self, db_url: str):
        self.db_url = db_url
        try:
            self.SessionLocal = make_session_factory(make_engine(db_url))
        except SQLAlchemyError as e:
            raise StorageError(f"cannot open ledger database: {e}") from e

    def load(self) -> Optional[Loaded]:
        try:
            with self.SessionLocal() as db:
                meta = db.scalar(select(LedgerMeta))
                if meta is None:
                    return None
                rows = db.scalars(select(LedgerEntry).order_by(LedgerEntry.position.asc())).all()
                metadata = LedgerMetadata(chain_id=meta.chain_id, created_at=meta.created_at,
                                          network=meta.network)
                transactions = [Transaction(
                    id=row.tx_id,
                    type=row.type,
                    payload=json.loads(row.payload),
                    created_at=row.created_at,
                    hash=row.hash,
                    previous_hash=row.previous_hash,
                ) for row in rows]
        except (SQLAlchemyError, ValueError, PydanticValidationError) as e:
            raise StorageError(f"cannot read ledger database: {e}") from e
        return metadata, transactions

    def write(self, metadata, transactions, new):
        start = len(transactions) - len(new)
        with self.SessionLocal() as db:
            try:
                if start == 0:
                    db.add(LedgerMeta(
                        chain_id=metadata.chain_id,
                        created_at=metadata.created_at.isoformat(),
                        network=metadata.network,
                    ))
                for offset, tx in enumerate(new):
                    db.add(LedgerEntry(
                        position=start + offset,
                        tx_id=tx.id,
                        type=tx.type.value,
                        batch_id=tx.batch_id,
                        payload=json.dumps(tx.payload_data(), sort_keys=True),
                        created_at=tx.created_at.isoformat(),
                        previous_hash=tx.previous_hash,
                        hash=tx.hash,
                    ))
                db.commit()
            except SQLAlchemyError as e:
                db.rollback()
                raise StorageError(f"cannot write ledger database: {e}") from e


class LedgerStore:
    def __init__(self, backend: LedgerBackend, chain_id: str = "herb-tracechain",
                 verify_on_load: bool = True):
        self.backend = backend
        self.chain_id = chain_id
        self.verify_on_load = verify_on_load
        self.metadata: Optional[LedgerMetadata] = None
        self._lock = threading.Lock()
        self._transactions: Tuple[Transaction, ...] = ()
        self._last_hash: Optional[str] = None

    @classmethod
    def open(cls, backend: LedgerBackend, **kwargs) -> "LedgerStore":
        store = cls(backend, **kwargs)
        store.load()
        return store

    def load(self) -> None:
        with self._lock:
            loaded = self.backend.load()
            if loaded is None:
                metadata, transactions = self._genesis()
                self.backend.write(metadata, transactions, transactions)
                logger.info("created ledger %s with genesis transaction", metadata.chain_id)
            else:
                metadata, transactions = loaded
                if not transactions:
                    raise StorageError("ledger has metadata but no genesis transaction")
                if self.verify_on_load:
                    broken = verify_chain([tx.to_record() for tx in transactions])
                    if broken >= 0:
                        raise StorageError(f"ledger hash chain broken at position {broken}")
                logger.info("loaded ledger %s: %d transactions", metadata.chain_id, len(transactions))
            self.metadata = metadata
            self._transactions = tuple(transactions)
            self._last_hash = transactions[-1].hash

    def _genesis(self) -> Loaded:
        now = utcnow()
        payload = GenesisPayload(message=GENESIS_MESSAGE, chain_id=self.chain_id)
        genesis = Transaction(
            id=GENESIS_TX_ID,
            type=TransactionType.GENESIS,
            payload=payload,
            created_at=now,
            hash=compute_hash(payload.model_dump(mode="json"), GENESIS_TX_ID),
            previous_hash=GENESIS_PREVIOUS_HASH,
        )
        return LedgerMetadata(chain_id=self.chain_id, created_at=now), [genesis]

    def append(self, tx_type: TransactionType, payload) -> Transaction:
        """Chain, flush and publish one transaction; returns the committed record."""
        tx_type = TransactionType(tx_type)
        payload = parse_payload(tx_type, payload)
        with self._lock:
            if self._last_hash is None:
                raise StorageError("ledger is not open")
            tx_id = new_transaction_id()
            tx = Transaction(
                id=tx_id,
                type=tx_type,
                payload=payload,
                created_at=self._next_timestamp(),
                hash=compute_hash(payload.model_dump(mode="json"), tx_id),
                previous_hash=self._last_hash,
            )
            committed = self._transactions + (tx,)
            try:
                self.backend.write(self.metadata, committed, (tx,))
            except StorageError:
                logger.exception("flush failed for %s transaction %s", tx_type.value, tx_id)
                raise
            self._transactions = committed
            self._last_hash = tx.hash
        return tx

    def _next_timestamp(self) -> datetime:
        now = utcnow()
        last = self._transactions[-1].created_at
        return last if last > now else now

    @property
    def last_hash(self) -> Optional[str]:
        return self._last_hash

    def scan_all(self) -> Tuple[Transaction, ...]:
        return self._transactions

    def scan_by_type(self, tx_type: TransactionType) -> Tuple[Transaction, ...]:
        tx_type = TransactionType(tx_type)
        return tuple(tx for tx in self._transactions if tx.type == tx_type)

    def verify(self) -> bool:
        return verify_chain([tx.to_record() for tx in self._transactions]) < 0

    def __len__(self) -> int:
        return len(self._transactions)


def build_backend(settings) -> LedgerBackend:
    kind = settings.ledger_backend.lower()
    if kind == "json":
        return JsonFileBackend(settings.ledger_file_path)
    if kind == "sql":
        return SqlBackend(settings.database_url)
    if kind == "memory":
        return MemoryBackend()
    raise ValueError(f"unknown ledger backend: {settings.ledger_backend}")
