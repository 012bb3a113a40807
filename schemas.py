from datetime import datetime
from enum import Enum
from typing import Optional, Any, Dict, List, Union

from pydantic import BaseModel, ConfigDict, Field, field_serializer, model_validator


class TransactionType(str, Enum):
    COLLECTION = "collection"
    QUALITY_TEST = "quality_test"
    PROCESSING = "processing"
    GENESIS = "genesis"


class StageStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"


class QualityStatus(str, Enum):
    PASSED = "PASSED"
    PASSED_WITH_WARNINGS = "PASSED_WITH_WARNINGS"
    FAILED = "FAILED"

    @property
    def passed(self) -> bool:
        return self is not QualityStatus.FAILED


class BatchState(str, Enum):
    NEW = "NEW"
    TESTED = "TESTED"
    PROCESSING = "PROCESSING"
    COMPLETE = "COMPLETE"
    QR_ISSUED = "QR_ISSUED"


STAGE_ORDER = ("drying", "grinding", "packaging")


# ---------- Payloads ----------
class GPS(BaseModel):
    model_config = ConfigDict(frozen=True)

    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    altitude: Optional[float] = None


class CollectionPayload(BaseModel):
    model_config = ConfigDict(frozen=True)

    batch_id: str = Field(..., min_length=3, max_length=64)
    species: str = Field(..., min_length=2, max_length=100)
    gps: GPS
    harvested_at: datetime
    moisture: float = Field(..., ge=0, le=100)
    farmer_name: str = Field(..., min_length=2, max_length=100)
    farmer_id: str = Field(..., min_length=3, max_length=50)
    notes: Optional[str] = Field(None, max_length=500)
    photo: Optional[str] = None


class QualityTestPayload(BaseModel):
    model_config = ConfigDict(frozen=True)

    batch_id: str
    dna: str = Field(..., min_length=10, max_length=1000)
    pesticide_ppm: float = Field(..., ge=0)
    moisture: float = Field(..., ge=0, le=100)
    heavy_metals_ppm: Optional[float] = Field(None, ge=0)
    lab_name: str = Field(..., min_length=2, max_length=200)
    lab_id: str = Field(..., min_length=3, max_length=50)
    tested_at: datetime
    # derived by the service from the thresholds in rules.py
    status: Optional[QualityStatus] = None
    warnings: List[str] = Field(default_factory=list)
    report: Optional[str] = None


class StageTransition(BaseModel):
    model_config = ConfigDict(frozen=True)

    stage: str
    status: StageStatus
    at: datetime
    notes: str = ""


class ProcessingPayload(BaseModel):
    model_config = ConfigDict(frozen=True)

    batch_id: str
    drying: StageStatus = StageStatus.PENDING
    grinding: StageStatus = StageStatus.PENDING
    packaging: StageStatus = StageStatus.PENDING
    processor_name: str
    processor_id: str
    history: List[StageTransition] = Field(default_factory=list)
    qr_reference: Optional[str] = None

    def stage_status(self, stage: str) -> StageStatus:
        return getattr(self, stage)

    @property
    def is_complete(self) -> bool:
        return all(self.stage_status(s) == StageStatus.COMPLETED for s in STAGE_ORDER)

    @property
    def next_step(self) -> str:
        for s in STAGE_ORDER:
            if self.stage_status(s) != StageStatus.COMPLETED:
                return s
        return "complete"


class GenesisPayload(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    chain_id: str


Payload = Union[CollectionPayload, QualityTestPayload, ProcessingPayload, GenesisPayload]

PAYLOAD_MODELS = {
    TransactionType.COLLECTION: CollectionPayload,
    TransactionType.QUALITY_TEST: QualityTestPayload,
    TransactionType.PROCESSING: ProcessingPayload,
    TransactionType.GENESIS: GenesisPayload,
}


def parse_payload(tx_type: TransactionType, payload: Any) -> Payload:
    model = PAYLOAD_MODELS[TransactionType(tx_type)]
    if isinstance(payload, model):
        return payload
    if isinstance(payload, BaseModel):
        payload = payload.model_dump()
    return model.model_validate(payload)


# ---------- Ledger records ----------
class Transaction(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    type: TransactionType
    payload: Payload
    created_at: datetime
    hash: str
    previous_hash: str

    @model_validator(mode="before")
    @classmethod
    def _payload_by_type(cls, data: Any) -> Any:
        if isinstance(data, dict) and "type" in data and "payload" in data:
            data = {**data, "payload": parse_payload(data["type"], data["payload"])}
        return data

    @field_serializer("payload")
    def _dump_payload(self, payload: Payload) -> Dict[str, Any]:
        return payload.model_dump(mode="json")

    def payload_data(self) -> Dict[str, Any]:
        return self.payload.model_dump(mode="json")

    def to_record(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")

    @property
    def batch_id(self) -> Optional[str]:
        return getattr(self.payload, "batch_id", None)

    @property
    def submitter_id(self) -> Optional[str]:
        for attr in ("farmer_id", "lab_id", "processor_id"):
            value = getattr(self.payload, attr, None)
            if value is not None:
                return value
        return None


class LedgerMetadata(BaseModel):
    chain_id: str
    created_at: datetime
    network: str = "single-node simulation"


class ValidationResult(BaseModel):
    valid: bool
    reason: Optional[str] = None
    warnings: List[str] = Field(default_factory=list)


class SubmitResult(BaseModel):
    transaction_id: str
    tx_type: TransactionType
    hash: str
    status: str = "COMMITTED"
    committed_at: datetime
    batch_id: Optional[str] = None
    warnings: List[str] = Field(default_factory=list)


class ProvenanceBundle(BaseModel):
    batch_id: str
    collection: Transaction
    quality_test: Optional[Transaction] = None
    processing: Optional[Transaction] = None
    is_verified: bool
    transaction_count: int
    state: BatchState
    blockchain_hash: str
    last_updated: datetime
    verification_url: str

    @property
    def farmer(self) -> CollectionPayload:
        return self.collection.payload

    @property
    def lab(self) -> Optional[QualityTestPayload]:
        return self.quality_test.payload if self.quality_test else None

    @property
    def processor(self) -> Optional[ProcessingPayload]:
        return self.processing.payload if self.processing else None


class VerificationScore(BaseModel):
    score: int
    status: str
    points: List[str]


class BatchBrief(BaseModel):
    batch_id: str
    species: str
    farmer_name: str
    farmer_id: str
    harvested_at: datetime
    submitted_at: datetime
    transaction_hash: str
    state: BatchState
    is_verified: bool
    test_status: Optional[QualityStatus] = None


class BatchList(BaseModel):
    items: List[BatchBrief]
    total: int
    limit: int
    offset: int
    has_more: bool


class LedgerStats(BaseModel):
    total_transactions: int
    collection_events: int
    quality_tests: int
    processing_steps: int
    last_transaction: Optional[datetime] = None
    chain_id: str
    chain_intact: bool


# ---------- Request bodies (HTTP layer) ----------
class CollectionRequest(BaseModel):
    batch_id: Optional[str] = Field(None, pattern=r"^BATCH_[A-Z0-9_]+$")
    species: str
    gps: GPS
    harvested_at: datetime
    moisture: float
    farmer_name: str
    farmer_id: str
    notes: Optional[str] = None
    photo: Optional[str] = None


class QualityTestRequest(BaseModel):
    batch_id: str = Field(..., pattern=r"^BATCH_[A-Z0-9_]+$")
    dna: str
    pesticide_ppm: float
    moisture: float
    heavy_metals_ppm: Optional[float] = None
    lab_name: str
    lab_id: str
    tested_at: Optional[datetime] = None
    report: Optional[str] = None


class StageUpdateRequest(BaseModel):
    batch_id: str = Field(..., pattern=r"^BATCH_[A-Z0-9_]+$")
    stage: str = Field(..., pattern=r"^(drying|grinding|packaging)$")
    status: StageStatus
    processor_id: str
    processor_name: str
    notes: Optional[str] = Field(None, max_length=500)


class VerifyQrRequest(BaseModel):
    qr_data: str = Field(..., min_length=1, max_length=2048)
    customer_location: Optional[GPS] = None


class GenerateQrRequest(BaseModel):
    batch_id: str = Field(..., pattern=r"^BATCH_[A-Z0-9_]+$")
    processor_id: str
