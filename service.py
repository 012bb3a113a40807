import logging
import threading
from typing import Any, Optional, Union

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from config import Settings
from errors import ValidationError
from ledger import LedgerStore
from rules import DEFAULT_RULES, RuleBook, latest_for_batch
from schemas import (
    ProcessingPayload,
    STAGE_ORDER,
    StageStatus,
    StageTransition,
    SubmitResult,
    TransactionType,
    parse_payload,
)
from utils import new_batch_id, utcnow

logger = logging.getLogger(__name__)


def _as_dict(data: Union[dict, BaseModel]) -> dict:
    if isinstance(data, BaseModel):
        return data.model_dump(exclude_none=True)
    return dict(data)


class TransactionService:
    """Single writer in front of the ledger.

    ``submit`` validates against a snapshot of the ledger and appends while
    holding the writer lock, so rules that read the ledger and the append
    that follows them are one step for concurrent callers.
    """

    def __init__(self, store: LedgerStore, rules: Optional[RuleBook] = None,
                 settings: Optional[Settings] = None):
        self.store = store
        self.rules = rules or DEFAULT_RULES
        self.settings = settings or Settings()
        self._lock = threading.RLock()

    def submit(self, tx_type: TransactionType, payload: Any) -> SubmitResult:
        try:
            tx_type = TransactionType(tx_type)
        except ValueError as e:
            raise ValidationError(f"unknown transaction type: {tx_type}", str(tx_type)) from e
        if tx_type == TransactionType.GENESIS:
            raise ValidationError("genesis transactions are created by the ledger only", tx_type.value)
        try:
            payload = parse_payload(tx_type, payload)
        except PydanticValidationError as e:
            raise ValidationError(f"invalid {tx_type.value} payload: {e}", tx_type.value) from e

        with self._lock:
            snapshot = self.store.scan_all()
            if tx_type == TransactionType.QUALITY_TEST:
                status, test_warnings = self.rules.quality_status(payload, snapshot)
                payload = payload.model_copy(update={"status": status, "warnings": test_warnings})

            result = self.rules.validate(tx_type, payload, snapshot)
            if not result.valid:
                logger.warning("rejected %s transaction: %s", tx_type.value, result.reason)
                raise ValidationError(result.reason, tx_type.value)

            tx = self.store.append(tx_type, payload)

        warnings = list(result.warnings)
        if tx_type == TransactionType.QUALITY_TEST:
            warnings.extend(tx.payload.warnings)
        logger.info("committed %s transaction %s (batch %s, hash %s)",
                    tx_type.value, tx.id, tx.batch_id, tx.hash)
        return SubmitResult(
            transaction_id=tx.id,
            tx_type=tx_type,
            hash=tx.hash,
            committed_at=tx.created_at,
            batch_id=tx.batch_id,
            warnings=warnings,
        )

    def submit_collection(self, data: Union[dict, BaseModel]) -> SubmitResult:
        data = _as_dict(data)
        if not data.get("batch_id"):
            data["batch_id"] = new_batch_id(str(data.get("species", "")))
        return self.submit(TransactionType.COLLECTION, data)

    def submit_quality_test(self, data: Union[dict, BaseModel]) -> SubmitResult:
        data = _as_dict(data)
        data.setdefault("tested_at", utcnow())
        # status and warnings are always derived
        data.pop("status", None)
        data.pop("warnings", None)
        return self.submit(TransactionType.QUALITY_TEST, data)

    def submit_processing(self, data: Union[dict, BaseModel]) -> SubmitResult:
        return self.submit(TransactionType.PROCESSING, _as_dict(data))

    def update_processing_stage(self, batch_id: str, stage: str, status: Union[str, StageStatus],
                                processor_id: str, processor_name: str, notes: str = "") -> SubmitResult:
        """Move one processing stage and record the transition in the history."""
        if stage not in STAGE_ORDER:
            raise ValidationError(f"unknown processing stage: {stage}", TransactionType.PROCESSING.value)
        try:
            status = StageStatus(status)
        except ValueError as e:
            raise ValidationError(f"unknown stage status: {status}", TransactionType.PROCESSING.value) from e
        with self._lock:
            previous = latest_for_batch(self.store.scan_all(), TransactionType.PROCESSING, batch_id)
            if previous is not None:
                base = previous.payload
            else:
                base = ProcessingPayload(batch_id=batch_id, processor_id=processor_id,
                                         processor_name=processor_name)
            entry = StageTransition(stage=stage, status=status, at=utcnow(), notes=notes or "")
            payload = base.model_copy(update={
                stage: status,
                "processor_id": processor_id,
                "processor_name": processor_name,
                "history": list(base.history) + [entry],
            })
            return self.submit(TransactionType.PROCESSING, payload)

    def issue_qr(self, batch_id: str) -> SubmitResult:
        """Attach the consumer verification URL to a fully processed batch."""
        with self._lock:
            previous = latest_for_batch(self.store.scan_all(), TransactionType.PROCESSING, batch_id)
            if previous is None or not previous.payload.is_complete:
                raise ValidationError(f"Cannot generate QR code for incomplete processing of batch {batch_id}",
                                      TransactionType.PROCESSING.value)
            if previous.payload.qr_reference:
                raise ValidationError(f"QR code already issued for batch {batch_id}",
                                      TransactionType.PROCESSING.value)
            payload = previous.payload.model_copy(
                update={"qr_reference": self.settings.verification_url(batch_id)})
            return self.submit(TransactionType.PROCESSING, payload)
