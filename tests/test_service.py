from concurrent.futures import ThreadPoolExecutor

import pytest

from errors import StorageError, ValidationError
from ledger import LedgerStore, MemoryBackend
from schemas import QualityStatus, StageStatus, TransactionType
from service import TransactionService


class TestSubmitCollection:

    def test_commit_returns_typed_result(self, service, store, make_collection):
        result = service.submit_collection(make_collection())
        assert result.status == "COMMITTED"
        assert result.tx_type == TransactionType.COLLECTION
        assert result.batch_id == "BATCH_ASH_001"
        assert result.hash == store.last_hash
        assert result.transaction_id == store.scan_all()[-1].id
        assert result.warnings == []

    def test_batch_id_is_generated_when_missing(self, service, make_collection):
        data = make_collection()
        del data["batch_id"]
        result = service.submit_collection(data)
        assert result.batch_id.startswith("BATCH_ASH_")

    def test_geo_fence_rejection_appends_nothing(self, service, store, make_collection):
        with pytest.raises(ValidationError) as excinfo:
            service.submit_collection(make_collection(gps={"lat": 10.0, "lng": 10.0}))
        assert "outside valid cultivation region" in excinfo.value.reason
        assert excinfo.value.tx_type == "collection"
        assert len(store) == 1

    def test_off_season_harvest_commits_with_warning(self, service, store, make_collection):
        result = service.submit_collection(make_collection(harvested_at="2025-07-01T06:00:00Z"))
        assert result.status == "COMMITTED"
        assert len(result.warnings) == 1
        assert len(store) == 2

    def test_malformed_payload_is_a_validation_error(self, service, store, make_collection):
        data = make_collection()
        del data["species"]
        with pytest.raises(ValidationError):
            service.submit_collection(data)
        assert len(store) == 1

    def test_genesis_is_not_submittable(self, service):
        with pytest.raises(ValidationError):
            service.submit(TransactionType.GENESIS, {"message": "x", "chain_id": "y"})


class TestSubmitQualityTest:

    def test_unknown_batch_appends_nothing(self, service, store, make_quality_test):
        with pytest.raises(ValidationError, match="not found"):
            service.submit_quality_test(make_quality_test(batch_id="BATCH_MISSING"))
        assert len(store) == 1

    def test_status_is_derived(self, service, store, make_collection, make_quality_test):
        service.submit_collection(make_collection())
        result = service.submit_quality_test(make_quality_test(status="FAILED", warnings=["forged"]))
        payload = store.scan_all()[-1].payload
        assert payload.status == QualityStatus.PASSED
        assert payload.warnings == []
        assert result.warnings == []

    def test_failing_test_is_still_recorded(self, service, store, make_collection, make_quality_test):
        service.submit_collection(make_collection())
        result = service.submit_quality_test(make_quality_test(pesticide_ppm=0.2))
        payload = store.scan_all()[-1].payload
        assert payload.status == QualityStatus.FAILED
        assert any("Pesticide" in w for w in result.warnings)

    def test_tested_at_defaults_to_now(self, service, store, make_collection, make_quality_test):
        service.submit_collection(make_collection())
        data = make_quality_test()
        del data["tested_at"]
        service.submit_quality_test(data)
        assert store.scan_all()[-1].payload.tested_at is not None


class TestProcessing:

    def test_processing_without_test_is_rejected(self, service, store, make_collection):
        service.submit_collection(make_collection())
        with pytest.raises(ValidationError, match="quality verification"):
            service.update_processing_stage("BATCH_ASH_001", "drying", "in-progress", "PROC_1", "Processor")
        assert len(store) == 2

    def test_grinding_before_drying_is_rejected(self, service, store, tested_batch):
        service.update_processing_stage(tested_batch, "drying", "in-progress", "PROC_1", "Processor")
        size = len(store)
        with pytest.raises(ValidationError) as excinfo:
            service.update_processing_stage(tested_batch, "grinding", "in-progress", "PROC_1", "Processor")
        assert "drying" in excinfo.value.reason
        assert len(store) == size

    def test_stage_updates_build_history(self, service, store, tested_batch, stage_walker):
        stage_walker(service, tested_batch)
        payload = store.scan_all()[-1].payload
        assert payload.is_complete
        assert [(h.stage, h.status) for h in payload.history] == [
            ("drying", StageStatus.IN_PROGRESS), ("drying", StageStatus.COMPLETED),
            ("grinding", StageStatus.IN_PROGRESS), ("grinding", StageStatus.COMPLETED),
            ("packaging", StageStatus.IN_PROGRESS), ("packaging", StageStatus.COMPLETED),
        ]

    def test_unknown_stage_is_rejected(self, service, tested_batch):
        with pytest.raises(ValidationError):
            service.update_processing_stage(tested_batch, "roasting", "completed", "PROC_1", "Processor")

    def test_issue_qr_after_completion(self, service, store, settings, tested_batch, stage_walker):
        stage_walker(service, tested_batch)
        service.issue_qr(tested_batch)
        payload = store.scan_all()[-1].payload
        assert payload.qr_reference == settings.verification_url(tested_batch)

    def test_issue_qr_before_completion_is_rejected(self, service, tested_batch, stage_walker):
        stage_walker(service, tested_batch, upto="grinding")
        with pytest.raises(ValidationError, match="incomplete"):
            service.issue_qr(tested_batch)

    def test_issue_qr_only_once(self, service, tested_batch, stage_walker):
        stage_walker(service, tested_batch)
        service.issue_qr(tested_batch)
        with pytest.raises(ValidationError, match="already issued"):
            service.issue_qr(tested_batch)


class TestConcurrency:

    def test_concurrent_submissions_are_serialized(self, service, store, make_collection):
        n = 120

        def submit(i):
            return service.submit_collection(make_collection(batch_id=f"BATCH_TUL_{i:03d}", species="Tulsi"))

        with ThreadPoolExecutor(max_workers=6) as pool:
            results = list(pool.map(submit, range(n)))

        assert len(store) == n + 1
        assert len({r.transaction_id for r in results}) == n
        assert store.verify()

    def test_duplicate_batches_race_to_one_commit(self, service, store, make_collection):
        def submit(_):
            try:
                service.submit_collection(make_collection(species="Tulsi"))
                return True
            except ValidationError:
                return False

        with ThreadPoolExecutor(max_workers=6) as pool:
            outcomes = list(pool.map(submit, range(12)))

        assert outcomes.count(True) == 1
        assert len(store.scan_by_type(TransactionType.COLLECTION)) == 1


def test_storage_failure_propagates(make_collection):
    class Broken(MemoryBackend):
        armed = False

        def write(self, metadata, transactions, new):
            if self.armed:
                raise StorageError("read-only filesystem")
            super().write(metadata, transactions, new)

    backend = Broken()
    store = LedgerStore.open(backend)
    backend.armed = True
    service = TransactionService(store)
    with pytest.raises(StorageError):
        service.submit_collection(make_collection())
    assert len(store) == 1


class TestUnknownInput:

    def test_unknown_transaction_type(self, service, store):
        with pytest.raises(ValidationError) as excinfo:
            service.submit("verification", {})
        assert "unknown transaction type" in excinfo.value.reason
        assert len(store) == 1

    def test_unknown_stage_status(self, service, store, tested_batch):
        size = len(store)
        with pytest.raises(ValidationError) as excinfo:
            service.update_processing_stage(tested_batch, "drying", "done", "PROC_1", "Processor")
        assert "unknown stage status" in excinfo.value.reason
        assert excinfo.value.tx_type == "processing"
        assert len(store) == size
