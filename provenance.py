"""
Read side of the ledger: per-batch provenance bundles and dashboard queries.

Nothing here is cached. Every query folds a fresh snapshot of the log, so a
result is at most one write behind.

``is_verified`` only asks whether a quality test and a processing record
exist for the batch; it does not look at the test outcome.
"""
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from config import Settings
from errors import NotFoundError, ValidationError
from ledger import LedgerStore
from rules import SPECIES_PROFILES
from schemas import (
    BatchBrief,
    BatchList,
    BatchState,
    GPS,
    LedgerStats,
    ProvenanceBundle,
    Transaction,
    TransactionType,
    VerificationScore,
)
from utils import as_utc

logger = logging.getLogger(__name__)

_ASHWAGANDHA = SPECIES_PROFILES["ashwagandha"]

# (name, lat range, lng range), first match wins
REGIONS = [
    (_ASHWAGANDHA.region, _ASHWAGANDHA.lat_range, _ASHWAGANDHA.lng_range),
    ("Tamil Nadu, India", (8.0, 13.5), (76.0, 80.5)),
    ("Karnataka, India", (11.5, 18.5), (74.0, 78.5)),
    ("India", (6.0, 37.0), (68.0, 97.0)),
]


def region_name(gps: GPS) -> str:
    for name, (lat_lo, lat_hi), (lng_lo, lng_hi) in REGIONS:
        if lat_lo <= gps.lat <= lat_hi and lng_lo <= gps.lng <= lng_hi:
            return name
    return "Unknown Region"


_VERIFICATION_URL = re.compile(r"/batch/([A-Z0-9_]+)$")


def batch_id_from_qr(qr_data: str) -> str:
    """Pull the batch id out of a scanned verification URL."""
    match = _VERIFICATION_URL.search(qr_data.strip())
    if match is None:
        raise ValidationError("QR code does not contain a valid batch verification URL")
    return match.group(1)


def derive_state(quality_test: Optional[Transaction], processing: Optional[Transaction]) -> BatchState:
    if processing is not None:
        payload = processing.payload
        if payload.qr_reference:
            return BatchState.QR_ISSUED
        if payload.is_complete:
            return BatchState.COMPLETE
        return BatchState.PROCESSING
    if quality_test is not None:
        return BatchState.TESTED
    return BatchState.NEW


def verification_score(bundle: ProvenanceBundle) -> VerificationScore:
    score = 25
    points = ["Farm origin verified"]

    lab = bundle.lab
    if lab is not None and lab.status is not None and lab.status.passed:
        score += 35
        points.append("Quality tests passed")

    processor = bundle.processor
    if processor is not None and processor.is_complete:
        score += 25
        points.append("Processing completed")
    if processor is not None and processor.qr_reference:
        score += 15
        points.append("QR verification enabled")

    if score >= 90:
        status = "Fully Verified"
    elif score >= 70:
        status = "Well Verified"
    elif score >= 50:
        status = "Partially Verified"
    else:
        status = "Basic Verification"
    return VerificationScore(score=score, status=status, points=points)


@dataclass
class _BatchRecords:
    collection: Transaction
    quality_test: Optional[Transaction] = None
    processing: Optional[Transaction] = None
    count: int = 1
    last: Optional[Transaction] = None


def _index(transactions: Sequence[Transaction]) -> Dict[str, _BatchRecords]:
    """Fold the log into per-batch records, keeping the latest of each type."""
    batches: Dict[str, _BatchRecords] = {}
    for tx in transactions:
        batch_id = tx.batch_id
        if batch_id is None:
            continue
        if tx.type == TransactionType.COLLECTION:
            if batch_id in batches:
                batches[batch_id].collection = tx
                batches[batch_id].count += 1
            else:
                batches[batch_id] = _BatchRecords(collection=tx)
            batches[batch_id].last = tx
            continue
        records = batches.get(batch_id)
        if records is None:
            continue
        if tx.type == TransactionType.QUALITY_TEST:
            records.quality_test = tx
        elif tx.type == TransactionType.PROCESSING:
            records.processing = tx
        records.count += 1
        records.last = tx
    return batches


def _in_range(value: datetime, date_from: Optional[datetime], date_to: Optional[datetime]) -> bool:
    value = as_utc(value)
    if date_from is not None and value < as_utc(date_from):
        return False
    if date_to is not None and value > as_utc(date_to):
        return False
    return True


class ProvenanceAssembler:
    def __init__(self, store: LedgerStore, settings: Optional[Settings] = None):
        self.store = store
        self.settings = settings or Settings()

    def _bundle(self, batch_id: str, records: _BatchRecords) -> ProvenanceBundle:
        return ProvenanceBundle(
            batch_id=batch_id,
            collection=records.collection,
            quality_test=records.quality_test,
            processing=records.processing,
            is_verified=records.quality_test is not None and records.processing is not None,
            transaction_count=records.count,
            state=derive_state(records.quality_test, records.processing),
            blockchain_hash=records.collection.hash,
            last_updated=records.last.created_at,
            verification_url=self.settings.verification_url(batch_id),
        )

    def get_provenance(self, batch_id: str) -> ProvenanceBundle:
        records = _index(self.store.scan_all()).get(batch_id)
        if records is None:
            raise NotFoundError(batch_id)
        bundle = self._bundle(batch_id, records)
        logger.debug("provenance for batch %s: %d transactions", batch_id, bundle.transaction_count)
        return bundle

    def verify_qr(self, qr_data: str, location: Optional[GPS] = None) -> ProvenanceBundle:
        batch_id = batch_id_from_qr(qr_data)
        bundle = self.get_provenance(batch_id)
        logger.info("QR verification for batch %s", batch_id)
        if location is not None:
            logger.info("customer location for batch %s: %s, %s", batch_id, location.lat, location.lng)
        return bundle

    def bundles(self) -> List[ProvenanceBundle]:
        return [self._bundle(batch_id, records)
                for batch_id, records in _index(self.store.scan_all()).items()]

    def list_batches(self) -> List[Transaction]:
        return list(self.store.scan_by_type(TransactionType.COLLECTION))

    def list_by_type(self, tx_type: TransactionType, submitter_id: Optional[str] = None,
                     date_from: Optional[datetime] = None, date_to: Optional[datetime] = None,
                     q: Optional[str] = None) -> List[Transaction]:
        out = []
        needle = q.lower() if q else None
        for tx in self.store.scan_by_type(tx_type):
            if submitter_id is not None and tx.submitter_id != submitter_id:
                continue
            if not _in_range(tx.created_at, date_from, date_to):
                continue
            if needle is not None and needle not in _search_text(tx):
                continue
            out.append(tx)
        return out

    def search_batches(self, q: Optional[str] = None, farmer_id: Optional[str] = None,
                       date_from: Optional[datetime] = None, date_to: Optional[datetime] = None,
                       verified: Optional[bool] = None, limit: int = 20, offset: int = 0) -> BatchList:
        needle = q.lower() if q else None
        matches = []
        for bundle in self.bundles():
            farmer = bundle.farmer
            if farmer_id is not None and farmer.farmer_id != farmer_id:
                continue
            if needle is not None and needle not in _search_text(bundle.collection):
                continue
            if not _in_range(farmer.harvested_at, date_from, date_to):
                continue
            if verified is not None and bundle.is_verified != verified:
                continue
            matches.append(brief(bundle))

        matches.sort(key=lambda b: as_utc(b.harvested_at), reverse=True)
        page = matches[offset:offset + limit]
        return BatchList(items=page, total=len(matches), limit=limit, offset=offset,
                         has_more=offset + limit < len(matches))

    def available_for_testing(self) -> List[BatchBrief]:
        items = [brief(b) for b in self.bundles() if b.quality_test is None]
        items.sort(key=lambda b: b.submitted_at, reverse=True)
        return items

    def processor_overview(self) -> Dict[str, int]:
        bundles = self.bundles()
        passed = [b for b in bundles if b.lab is not None and b.lab.status is not None and b.lab.status.passed]
        return {
            "total": len(bundles),
            "quality_verified": len(passed),
            "ready_for_processing": sum(1 for b in passed if b.processing is None),
            "in_progress": sum(1 for b in bundles if b.state == BatchState.PROCESSING),
            "completed": sum(1 for b in bundles if b.state in (BatchState.COMPLETE, BatchState.QR_ISSUED)),
            "qr_generated": sum(1 for b in bundles if b.state == BatchState.QR_ISSUED),
        }

    def stats(self) -> LedgerStats:
        transactions = self.store.scan_all()
        counts = {t: 0 for t in TransactionType}
        for tx in transactions:
            counts[tx.type] += 1
        return LedgerStats(
            total_transactions=len(transactions),
            collection_events=counts[TransactionType.COLLECTION],
            quality_tests=counts[TransactionType.QUALITY_TEST],
            processing_steps=counts[TransactionType.PROCESSING],
            last_transaction=transactions[-1].created_at if transactions else None,
            chain_id=self.store.chain_id,
            chain_intact=self.store.verify(),
        )


def _search_text(tx: Transaction) -> str:
    payload = tx.payload
    parts = [tx.batch_id or ""]
    for attr in ("species", "farmer_name", "lab_name", "processor_name"):
        value = getattr(payload, attr, None)
        if value:
            parts.append(value)
    return " ".join(parts).lower()


def brief(bundle: ProvenanceBundle) -> BatchBrief:
    farmer = bundle.farmer
    lab = bundle.lab
    return BatchBrief(
        batch_id=bundle.batch_id,
        species=farmer.species,
        farmer_name=farmer.farmer_name,
        farmer_id=farmer.farmer_id,
        harvested_at=farmer.harvested_at,
        submitted_at=bundle.collection.created_at,
        transaction_hash=bundle.collection.hash,
        state=bundle.state,
        is_verified=bundle.is_verified,
        test_status=lab.status if lab is not None else None,
    )
