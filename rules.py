"""
Transaction rules for the herb ledger.

Every rule is a pure function of the submitted payload and a snapshot of
the committed transactions. The geo-fence is a hard rule; the harvest season
is advisory and only produces a warning.
"""
import logging
from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterable, List, Optional, Sequence, Tuple

from schemas import (
    CollectionPayload,
    GPS,
    ProcessingPayload,
    QualityStatus,
    QualityTestPayload,
    STAGE_ORDER,
    StageStatus,
    Transaction,
    TransactionType,
    ValidationResult,
    parse_payload,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SpeciesProfile:
    name: str
    region: str
    lat_range: Tuple[float, float]
    lng_range: Tuple[float, float]
    harvest_months: FrozenSet[int]

    def contains(self, gps: GPS) -> bool:
        lat_lo, lat_hi = self.lat_range
        lng_lo, lng_hi = self.lng_range
        return lat_lo <= gps.lat <= lat_hi and lng_lo <= gps.lng <= lng_hi


@dataclass(frozen=True)
class QualityThresholds:
    pesticide_max: float = 0.1        # ppm, WHO limit
    heavy_metals_max: float = 0.05    # ppm, WHO limit
    moisture_min: float = 8.0         # %
    moisture_max: float = 20.0        # %
    moisture_fail_below: float = 5.0
    moisture_fail_above: float = 25.0


SPECIES_PROFILES: Dict[str, SpeciesProfile] = {
    "ashwagandha": SpeciesProfile(
        name="Ashwagandha",
        region="Rajasthan, India",
        lat_range=(24.0, 30.0),
        lng_range=(69.0, 78.0),
        harvest_months=frozenset({10, 11, 12, 1, 2}),
    ),
}

DEFAULT_THRESHOLDS = QualityThresholds()

# per-species tuning, keyed like SPECIES_PROFILES
QUALITY_THRESHOLDS: Dict[str, QualityThresholds] = {}

_STAGE_RANK = {
    StageStatus.PENDING: 0,
    StageStatus.IN_PROGRESS: 1,
    StageStatus.COMPLETED: 2,
}


def _ok(warnings: Optional[List[str]] = None) -> ValidationResult:
    return ValidationResult(valid=True, warnings=warnings or [])


def _reject(reason: str) -> ValidationResult:
    return ValidationResult(valid=False, reason=reason)


def find_collection(transactions: Iterable[Transaction], batch_id: str) -> Optional[Transaction]:
    found = None
    for tx in transactions:
        if tx.type == TransactionType.COLLECTION and tx.payload.batch_id == batch_id:
            found = tx
    return found


def latest_for_batch(transactions: Sequence[Transaction], tx_type: TransactionType,
                     batch_id: str) -> Optional[Transaction]:
    for tx in reversed(transactions):
        if tx.type == tx_type and tx.batch_id == batch_id:
            return tx
    return None


def determine_test_status(pesticide_ppm: float, heavy_metals_ppm: Optional[float], moisture: float,
                          thresholds: QualityThresholds = DEFAULT_THRESHOLDS) -> Tuple[QualityStatus, List[str]]:
    warnings = []
    passed = True

    if pesticide_ppm > thresholds.pesticide_max:
        warnings.append(f"Pesticide level ({pesticide_ppm} ppm) exceeds WHO limit ({thresholds.pesticide_max} ppm)")
        passed = False

    metals = heavy_metals_ppm or 0.0
    if metals > thresholds.heavy_metals_max:
        warnings.append(f"Heavy metals level ({metals} ppm) exceeds WHO limit ({thresholds.heavy_metals_max} ppm)")
        passed = False

    if moisture < thresholds.moisture_min or moisture > thresholds.moisture_max:
        warnings.append(
            f"Moisture content ({moisture}%) outside acceptable range "
            f"({thresholds.moisture_min}-{thresholds.moisture_max}%)"
        )
        if moisture < thresholds.moisture_fail_below or moisture > thresholds.moisture_fail_above:
            passed = False

    if not passed:
        return QualityStatus.FAILED, warnings
    if warnings:
        return QualityStatus.PASSED_WITH_WARNINGS, warnings
    return QualityStatus.PASSED, warnings


class RuleBook:
    """Species profiles and quality thresholds bound to the validation rules."""

    def __init__(self, profiles: Dict[str, SpeciesProfile] = None,
                 thresholds: Dict[str, QualityThresholds] = None,
                 default_thresholds: QualityThresholds = DEFAULT_THRESHOLDS):
        self.profiles = SPECIES_PROFILES if profiles is None else profiles
        self.thresholds = QUALITY_THRESHOLDS if thresholds is None else thresholds
        self.default_thresholds = default_thresholds

    def profile_for(self, species: str) -> Optional[SpeciesProfile]:
        name = species.lower()
        for key, profile in self.profiles.items():
            if key in name:
                return profile
        return None

    def thresholds_for(self, species: Optional[str]) -> QualityThresholds:
        if species:
            name = species.lower()
            for key, thresholds in self.thresholds.items():
                if key in name:
                    return thresholds
        return self.default_thresholds

    def quality_status(self, payload: QualityTestPayload,
                       transactions: Sequence[Transaction]) -> Tuple[QualityStatus, List[str]]:
        collection = find_collection(transactions, payload.batch_id)
        species = collection.payload.species if collection else None
        return determine_test_status(
            payload.pesticide_ppm, payload.heavy_metals_ppm, payload.moisture,
            self.thresholds_for(species),
        )

    def validate(self, tx_type: TransactionType, payload, transactions: Sequence[Transaction]) -> ValidationResult:
        try:
            tx_type = TransactionType(tx_type)
        except ValueError:
            return _reject(f"unknown transaction type: {tx_type}")
        payload = parse_payload(tx_type, payload)
        if tx_type == TransactionType.COLLECTION:
            return self.validate_collection(payload, transactions)
        if tx_type == TransactionType.QUALITY_TEST:
            return self.validate_quality_test(payload, transactions)
        if tx_type == TransactionType.PROCESSING:
            return self.validate_processing(payload, transactions)
        return _reject("genesis transactions are created by the ledger only")

    def validate_collection(self, payload: CollectionPayload,
                            transactions: Sequence[Transaction]) -> ValidationResult:
        if find_collection(transactions, payload.batch_id) is not None:
            return _reject(f"batch {payload.batch_id} already exists")

        profile = self.profile_for(payload.species)
        if profile is None:
            return _ok()

        gps = payload.gps
        if not profile.contains(gps):
            logger.warning("geo-fence rejected %s at (%s, %s)", payload.species, gps.lat, gps.lng)
            return _reject(
                f"GPS coordinates ({gps.lat}, {gps.lng}) outside valid cultivation region "
                f"for {profile.name} ({profile.region})"
            )

        warnings = []
        month = payload.harvested_at.month
        if month not in profile.harvest_months:
            season = ", ".join(str(m) for m in sorted(profile.harvest_months))
            msg = f"{profile.name} harvested in month {month}, outside harvest season (months {season})"
            logger.warning("seasonal check for batch %s: %s", payload.batch_id, msg)
            warnings.append(msg)
        return _ok(warnings)

    def validate_quality_test(self, payload: QualityTestPayload,
                              transactions: Sequence[Transaction]) -> ValidationResult:
        if find_collection(transactions, payload.batch_id) is None:
            return _reject(f"batch {payload.batch_id} not found")
        return _ok()

    def validate_processing(self, payload: ProcessingPayload,
                            transactions: Sequence[Transaction]) -> ValidationResult:
        batch_id = payload.batch_id
        if find_collection(transactions, batch_id) is None:
            return _reject(f"batch {batch_id} not found")

        test = latest_for_batch(transactions, TransactionType.QUALITY_TEST, batch_id)
        if test is None:
            return _reject(f"Cannot process batch {batch_id} without quality verification")
        status = test.payload.status
        if status is None:
            status, _ = self.quality_status(test.payload, transactions)
        if not status.passed:
            return _reject(f"Cannot process batch {batch_id}: quality test {status.value}")

        for prev_stage, stage in zip(STAGE_ORDER, STAGE_ORDER[1:]):
            if (payload.stage_status(stage) != StageStatus.PENDING
                    and payload.stage_status(prev_stage) != StageStatus.COMPLETED):
                return _reject(f"Cannot start {stage} before completing {prev_stage}")

        previous = latest_for_batch(transactions, TransactionType.PROCESSING, batch_id)
        if previous is not None:
            before = previous.payload
            for stage in STAGE_ORDER:
                old, new = before.stage_status(stage), payload.stage_status(stage)
                if _STAGE_RANK[new] < _STAGE_RANK[old]:
                    return _reject(f"Stage {stage} cannot move back from {old.value} to {new.value}")
            if list(payload.history[:len(before.history)]) != list(before.history):
                return _reject("Processing history is append-only")
            if before.qr_reference and payload.qr_reference != before.qr_reference:
                return _reject(f"QR reference for batch {batch_id} is already issued")

        if payload.qr_reference and not payload.is_complete:
            return _reject(f"Cannot issue QR code for batch {batch_id} before processing is complete")
        return _ok()


DEFAULT_RULES = RuleBook()


def validate(tx_type: TransactionType, payload, transactions: Sequence[Transaction] = ()) -> ValidationResult:
    return DEFAULT_RULES.validate(tx_type, payload, transactions)
