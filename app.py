import io
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

import qrcode

from config import Settings
from errors import NotFoundError, StorageError, ValidationError
from ledger import LedgerStore, build_backend
from provenance import ProvenanceAssembler, brief, region_name, verification_score
from schemas import (
    BatchList,
    CollectionRequest,
    GenerateQrRequest,
    LedgerStats,
    QualityTestRequest,
    StageUpdateRequest,
    SubmitResult,
    TransactionType,
    VerifyQrRequest,
)
from service import TransactionService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")


# ---------- Dependencies ----------
def get_service(request: Request) -> TransactionService:
    return request.app.state.service


def get_provenance(request: Request) -> ProvenanceAssembler:
    return request.app.state.provenance


# ---------- Farmer ----------
@router.post("/farmer/collections", response_model=SubmitResult, status_code=201)
def submit_collection(body: CollectionRequest, service: TransactionService = Depends(get_service)):
    return service.submit_collection(body)


@router.get("/farmer/batches", response_model=BatchList)
def farmer_batches(
    farmer_id: str = Query(...),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    prov: ProvenanceAssembler = Depends(get_provenance),
):
    return prov.search_batches(farmer_id=farmer_id, limit=limit, offset=offset)


@router.get("/farmer/batch/{batch_id}")
def farmer_batch(batch_id: str, prov: ProvenanceAssembler = Depends(get_provenance)):
    bundle = prov.get_provenance(batch_id)
    return {
        "batch": bundle.collection.to_record(),
        "has_quality_test": bundle.quality_test is not None,
        "has_processing": bundle.processing is not None,
        "is_complete": bundle.is_verified,
    }


# ---------- Lab ----------
@router.post("/lab/tests", response_model=SubmitResult, status_code=201)
def submit_quality_test(body: QualityTestRequest, service: TransactionService = Depends(get_service)):
    return service.submit_quality_test(body)


@router.get("/lab/tests")
def lab_tests(lab_id: str = Query(...), prov: ProvenanceAssembler = Depends(get_provenance)):
    tests = prov.list_by_type(TransactionType.QUALITY_TEST, submitter_id=lab_id)
    tests.reverse()
    return {"count": len(tests), "tests": [tx.to_record() for tx in tests]}


@router.get("/lab/batches-available")
def batches_available(prov: ProvenanceAssembler = Depends(get_provenance)):
    batches = prov.available_for_testing()
    return {"count": len(batches), "batches": [b.model_dump(mode="json") for b in batches]}


# ---------- Processor ----------
@router.get("/processor/batches")
def processor_batches(prov: ProvenanceAssembler = Depends(get_provenance)):
    items = [brief(b) for b in prov.bundles()]
    return {
        "count": len(items),
        "batches": [b.model_dump(mode="json") for b in items],
        "summary": prov.processor_overview(),
    }


@router.post("/processor/update-status", response_model=SubmitResult)
def update_status(body: StageUpdateRequest, service: TransactionService = Depends(get_service)):
    return service.update_processing_stage(
        batch_id=body.batch_id,
        stage=body.stage,
        status=body.status,
        processor_id=body.processor_id,
        processor_name=body.processor_name,
        notes=body.notes or "",
    )


@router.post("/processor/generate-qr", response_model=SubmitResult)
def generate_qr(body: GenerateQrRequest, service: TransactionService = Depends(get_service)):
    return service.issue_qr(body.batch_id)


@router.get("/processor/batch/{batch_id}/status")
def processing_status(batch_id: str, prov: ProvenanceAssembler = Depends(get_provenance)):
    bundle = prov.get_provenance(batch_id)
    processor = bundle.processor
    lab = bundle.lab
    return {
        "batch_id": batch_id,
        "state": bundle.state.value,
        "quality_status": lab.status.value if lab is not None and lab.status is not None else None,
        "is_complete": processor is not None and processor.is_complete,
        "qr_generated": processor is not None and bool(processor.qr_reference),
        "next_step": processor.next_step if processor is not None else "drying",
    }


# ---------- Customer ----------
@router.get("/customer/batch/{batch_id}")
def customer_batch(batch_id: str, prov: ProvenanceAssembler = Depends(get_provenance)):
    bundle = prov.get_provenance(batch_id)
    return {
        "provenance": bundle.model_dump(mode="json"),
        "region": region_name(bundle.farmer.gps),
        "verification": verification_score(bundle).model_dump(),
    }


@router.get("/customer/batch/{batch_id}/qrcode")
def customer_batch_qrcode(batch_id: str, prov: ProvenanceAssembler = Depends(get_provenance)):
    bundle = prov.get_provenance(batch_id)
    img = qrcode.make(bundle.verification_url)
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return Response(content=buf.getvalue(), media_type="image/png")


@router.post("/customer/verify")
def verify_qr(body: VerifyQrRequest, prov: ProvenanceAssembler = Depends(get_provenance)):
    bundle = prov.verify_qr(body.qr_data, body.customer_location)
    return {
        "batch_id": bundle.batch_id,
        "verified": True,
        "state": bundle.state.value,
        "redirect_url": f"/api/customer/batch/{bundle.batch_id}",
    }


@router.get("/customer/search", response_model=BatchList)
def customer_search(
    q: Optional[str] = Query(None, description="match on batch id, species or farmer name"),
    date_from: Optional[datetime] = Query(None),
    date_to: Optional[datetime] = Query(None),
    verified: Optional[bool] = Query(None),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    prov: ProvenanceAssembler = Depends(get_provenance),
):
    return prov.search_batches(q=q, date_from=date_from, date_to=date_to,
                               verified=verified, limit=limit, offset=offset)


@router.get("/customer/stats", response_model=LedgerStats)
def customer_stats(prov: ProvenanceAssembler = Depends(get_provenance)):
    return prov.stats()


@router.get("/ledger/verify")
def verify_ledger(request: Request):
    store: LedgerStore = request.app.state.store
    return {"verified": store.verify(), "transactions": len(store)}


# ---------- Error mapping ----------
async def _validation_error(request: Request, exc: ValidationError):
    return JSONResponse(status_code=400, content={"detail": exc.reason})


async def _not_found(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


async def _storage_error(request: Request, exc: StorageError):
    logger.error("storage failure on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": "ledger storage failure"})


# ---------- App ----------
def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or Settings.from_env()

    app = FastAPI(title="Herb TraceChain", version="0.1.0")
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    def on_startup():
        logging.basicConfig(level=settings.log_level.upper(),
                            format="%(asctime)s %(levelname)s %(name)s: %(message)s")
        store = LedgerStore.open(build_backend(settings), chain_id=settings.chain_id)
        app.state.store = store
        app.state.service = TransactionService(store, settings=settings)
        app.state.provenance = ProvenanceAssembler(store, settings=settings)

    app.add_exception_handler(ValidationError, _validation_error)
    app.add_exception_handler(NotFoundError, _not_found)
    app.add_exception_handler(StorageError, _storage_error)
    app.include_router(router)
    return app


app = create_app()
