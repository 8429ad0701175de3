"""FastAPI application hosting the server-resident pipeline functions."""
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from functools import lru_cache
from typing import Optional

from fastapi import BackgroundTasks, Depends, FastAPI, Header, HTTPException
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, ConfigDict, Field

from receipt_pipeline.config import config
from receipt_pipeline.errors import MissingCredential, NotFound, PersistenceFailure
from receipt_pipeline.fetch.functions import FunctionInvoker
from receipt_pipeline.fetch.gemini import GeminiClient
from receipt_pipeline.jobs.enrichment import PriceComparer
from receipt_pipeline.jobs.extraction import ExtractionWorker
from receipt_pipeline.jobs.reaper import reap_stale_receipts
from receipt_pipeline.parse.comparisons import comparisons_to_row
from receipt_pipeline.store.images import ImageStorage
from receipt_pipeline.store.receipts import ReceiptStore

logger = logging.getLogger(__name__)


# ── Components (built lazily so the app imports without credentials) ────

@lru_cache
def get_store() -> ReceiptStore:
    return ReceiptStore()


@lru_cache
def get_images() -> ImageStorage:
    return ImageStorage(client=get_store().client)


@lru_cache
def get_gemini() -> GeminiClient:
    return GeminiClient()


@lru_cache
def get_invoker() -> FunctionInvoker:
    return FunctionInvoker()


def get_health_store() -> Optional[ReceiptStore]:
    try:
        return get_store()
    except ValueError as e:
        logger.warning(f"Health check without store: {e}")
        return None


def get_worker() -> ExtractionWorker:
    return ExtractionWorker(get_store(), get_images(), get_gemini(), get_invoker())


def get_comparer() -> PriceComparer:
    return PriceComparer(get_store(), get_gemini())


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    if get_invoker.cache_info().currsize:
        await get_invoker().aclose()
    if get_gemini.cache_info().currsize:
        await get_gemini().aclose()
    logger.info("Shutting down")


app = FastAPI(title="Receipt Pipeline Functions", version="0.1.0", lifespan=lifespan)

# API Key security (if configured)
API_KEY_HEADER = APIKeyHeader(name="X-API-KEY", auto_error=False)


def verify_api_key(
    api_key: Optional[str] = Depends(API_KEY_HEADER),
    authorization: Optional[str] = Header(default=None),
) -> bool:
    """Accept ``X-API-KEY`` or ``Authorization: Bearer`` when a key is configured."""
    expected_key = config.API_KEY
    if expected_key:
        bearer = None
        if authorization and authorization.lower().startswith("bearer "):
            bearer = authorization[7:].strip()
        if expected_key not in (api_key, bearer):
            raise HTTPException(status_code=403, detail="Invalid API key")
    return True


class FunctionRequest(BaseModel):
    """Body of a function invocation."""

    model_config = ConfigDict(populate_by_name=True)

    receipt_id: Optional[str] = Field(default=None, alias="receiptId")


class FunctionAccepted(BaseModel):
    """Acknowledgement returned once work is scheduled."""

    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    receipt_id: str = Field(alias="receiptId")


def _require_receipt_id(request: FunctionRequest) -> str:
    if not request.receipt_id or not request.receipt_id.strip():
        raise HTTPException(status_code=400, detail="Receipt ID is required")
    return request.receipt_id.strip()


@app.get("/health")
async def health(store: Optional[ReceiptStore] = Depends(get_health_store)):
    """Health check endpoint (no auth required)."""
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "supabase_connected": await store.test_connection() if store is not None else False,
    }


@app.post("/functions/process-receipt", status_code=202, response_model=FunctionAccepted)
async def process_receipt(
    request: FunctionRequest,
    background_tasks: BackgroundTasks,
    worker: ExtractionWorker = Depends(get_worker),
    _: bool = Depends(verify_api_key),
):
    """Schedule extraction and acknowledge immediately."""
    receipt_id = _require_receipt_id(request)
    background_tasks.add_task(_run_extraction, worker, receipt_id)
    return FunctionAccepted(receipt_id=receipt_id)


@app.post("/functions/compare-prices", status_code=202, response_model=FunctionAccepted)
async def compare_prices(
    request: FunctionRequest,
    background_tasks: BackgroundTasks,
    comparer: PriceComparer = Depends(get_comparer),
    _: bool = Depends(verify_api_key),
):
    """Schedule batched price comparison and acknowledge immediately."""
    receipt_id = _require_receipt_id(request)
    background_tasks.add_task(_run_comparison, comparer, receipt_id)
    return FunctionAccepted(receipt_id=receipt_id)


@app.post("/receipts/{receipt_id}/price-comparisons")
async def compare_prices_on_demand(
    receipt_id: str,
    gemini_api_key: Optional[str] = Header(default=None, alias="X-Gemini-Api-Key"),
    comparer: PriceComparer = Depends(get_comparer),
    _: bool = Depends(verify_api_key),
):
    """Per-item comparison with the caller's own credential; waits for the result."""
    try:
        comparisons = await comparer.compare_items(receipt_id, gemini_api_key)
    except MissingCredential as e:
        raise HTTPException(status_code=401, detail=str(e))
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except PersistenceFailure as e:
        logger.error(f"On-demand comparison for receipt {receipt_id} not saved: {e}")
        raise HTTPException(status_code=502, detail=str(e))
    return {
        "success": True,
        "receiptId": receipt_id,
        "comparisonsFound": len(comparisons),
        "priceComparisons": comparisons_to_row(comparisons),
    }


@app.post("/admin/reap-stale")
async def reap_stale(
    older_than_minutes: Optional[int] = None,
    store: ReceiptStore = Depends(get_store),
    _: bool = Depends(verify_api_key),
):
    """Move receipts stuck in processing to error."""
    try:
        reaped = await reap_stale_receipts(store, older_than_minutes)
    except PersistenceFailure as e:
        raise HTTPException(status_code=502, detail=str(e))
    return {"reaped": reaped, "count": len(reaped)}


async def _run_extraction(worker: ExtractionWorker, receipt_id: str) -> None:
    """Background task; the worker has already recorded any failure on the receipt."""
    try:
        result = await worker.process(receipt_id)
        logger.info(f"process-receipt finished for {receipt_id}: {result.status}")
    except Exception as e:
        logger.error(f"process-receipt failed for {receipt_id}: {e}")


async def _run_comparison(comparer: PriceComparer, receipt_id: str) -> None:
    """Background task; enrichment failures never reach the receipt's status."""
    try:
        comparisons = await comparer.compare_receipt(receipt_id)
        logger.info(f"compare-prices finished for {receipt_id}: {len(comparisons)} items with alternatives")
    except Exception as e:
        logger.error(f"compare-prices failed for {receipt_id}: {e}")


if __name__ == "__main__":
    import uvicorn
    from receipt_pipeline.logging_conf import setup_logging

    setup_logging()
    config.validate()
    uvicorn.run(app, host="0.0.0.0", port=8000)
