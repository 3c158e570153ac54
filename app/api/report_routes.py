"""HARVEST — Report Dataset API Routes."""

from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from app.core.errors import NotFoundError, PersistenceError, ValidationError
from app.core.logging import get_logger
from app.models.report_models import (
    Aggregation,
    DatasetKey,
    DatasetStatus,
    EntityType,
    ReportDatasetMetadata,
)
from app.scheduler.context import OrchestrationContext
from app.scheduler.jobs import (
    UPDATE_REPORT_DATASET_FOR_ACCOUNT,
    UPDATE_REPORT_DATASETS,
)

logger = get_logger("api.reports")

router = APIRouter(tags=["Reports"])


def get_context(request: Request) -> OrchestrationContext:
    return request.app.state.context


# ── Request / Response Models ──


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ReprocessRequest(_CamelModel):
    """Request body for POST /reports/reprocess."""

    account_id: str
    country_code: str
    window_start: datetime
    aggregation: Aggregation
    entity_type: EntityType = EntityType.TARGET


class TriggerUpdateRequest(_CamelModel):
    """Request body for POST /reports/trigger-update. Empty means all accounts."""

    account_id: Optional[str] = None
    country_code: Optional[str] = None


def _serialize(row: ReportDatasetMetadata) -> Dict[str, Any]:
    return row.model_dump(mode="json", exclude={"id"})


# ── Endpoints ──


@router.get("/reports/datasets")
async def list_datasets(
    account_id: str = Query(..., description="Ads account id"),
    country_code: Optional[str] = Query(None),
    aggregation: Optional[Aggregation] = Query(None),
    entity_type: Optional[EntityType] = Query(None),
    status: Optional[DatasetStatus] = Query(None),
    offset: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=1000),
    context: OrchestrationContext = Depends(get_context),
):
    """List dataset windows for an account, newest first."""
    try:
        rows = context.store.list_rows(
            account_id=account_id,
            country_code=country_code,
            aggregation=aggregation,
            entity_type=entity_type,
            status=status,
            offset=offset,
            limit=limit,
        )
    except PersistenceError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return {"status": "success", "count": len(rows), "datasets": [_serialize(r) for r in rows]}


@router.post("/reports/reprocess")
async def reprocess_dataset(
    request: ReprocessRequest,
    context: OrchestrationContext = Depends(get_context),
):
    """Request a fresh report for one window, ignoring refresh checkpoints."""
    try:
        key = DatasetKey.build(
            account_id=request.account_id,
            country_code=request.country_code,
            window_start=request.window_start,
            aggregation=request.aggregation,
            entity_type=request.entity_type,
        )
        outcome = await context.lifecycle.reprocess(key)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except PersistenceError as e:
        raise HTTPException(status_code=503, detail=str(e))

    row = context.store.get(key)
    return {
        "status": "success",
        "outcome": outcome.value,
        "dataset": _serialize(row) if row else None,
    }


@router.post("/reports/trigger-update")
async def trigger_update(
    request: TriggerUpdateRequest,
    context: OrchestrationContext = Depends(get_context),
):
    """Enqueue a dataset update for one account or for every enabled one."""
    if request.account_id:
        if not request.country_code:
            raise HTTPException(status_code=400, detail="countryCode is required with accountId")
        job_ids = [
            context.queue.emit(
                UPDATE_REPORT_DATASET_FOR_ACCOUNT,
                {"accountId": request.account_id, "countryCode": request.country_code},
            )
        ]
    else:
        job_ids = [context.queue.emit(UPDATE_REPORT_DATASETS, {})]
    logger.info(f"Manual update triggered: {len(job_ids)} job(s)")
    return {"status": "queued", "job_ids": job_ids}


@router.post("/ingest/stream", tags=["Ingest"])
async def ingest_stream(
    payload: Union[List[Any], Dict[str, Any]],
    context: OrchestrationContext = Depends(get_context),
):
    """Accept one Marketing Stream record or a batch of them."""
    try:
        result = context.stream_router.route(payload)
    except PersistenceError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return {
        "status": "success",
        "accepted": result.accepted,
        "invalid": result.invalid,
        "unroutable": result.unroutable,
    }
