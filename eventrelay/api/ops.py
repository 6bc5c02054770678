"""
Outbox Operator API

Endpoints for relay control and dead-letter tooling.
"""

import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel

from ..core.system import EventSystem

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin/outbox", tags=["outbox"])


class OperatorRequest(BaseModel):
    """Optional operator identity for audit logging."""
    operator_id: Optional[str] = None
    reason: Optional[str] = None


def get_event_system(request: Request) -> EventSystem:
    return request.app.state.event_system


# Relay Endpoints

@router.get("/stats")
async def outbox_stats(request: Request):
    """Get outbox statistics."""
    system = get_event_system(request)
    stats = await system.relay.get_stats()
    return stats.model_dump(mode="json")


@router.post("/process")
async def process_outbox(request: Request):
    """Run one relay tick now."""
    system = get_event_system(request)
    processed = await system.relay.process_outbox_events()
    return {"processed": processed}


@router.post("/retry")
async def retry_failed(
    request: Request,
    max_age_ms: Optional[int] = Query(None, ge=0),
):
    """Reset retryable failed events to pending."""
    system = get_event_system(request)
    count = await system.relay.retry_failed_events(max_age_ms)
    return {"status": "queued_for_retry", "count": count}


@router.get("/events")
async def list_events(
    request: Request,
    correlation_id: Optional[str] = None,
    aggregate: Optional[str] = None,
    aggregate_id: Optional[str] = None,
    limit: int = Query(100, ge=1, le=1000),
):
    """Trace outbox rows by correlation id or by aggregate."""
    system = get_event_system(request)

    if correlation_id:
        events = await system.store.find_by_correlation_id(correlation_id, limit)
    elif aggregate and aggregate_id:
        events = await system.store.find_by_aggregate(aggregate, aggregate_id, limit)
    else:
        raise HTTPException(
            status_code=400,
            detail="Provide correlation_id, or aggregate and aggregate_id"
        )

    return {"events": [e.to_dict() for e in events], "count": len(events)}


# DLQ Management Endpoints

@router.get("/dlq")
async def list_dlq_entries(
    request: Request,
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    correlation_id: Optional[str] = None,
):
    """List Dead Letter Queue entries."""
    manager = get_event_system(request).dlq

    entries = await manager.get_entries(
        limit=limit,
        offset=offset,
        correlation_id=correlation_id
    )

    total = await manager.get_count(correlation_id)

    return {
        "entries": [e.to_dict() for e in entries],
        "total": total,
        "limit": limit,
        "offset": offset
    }


@router.get("/dlq/stats")
async def dlq_stats(request: Request):
    """Get DLQ statistics."""
    return await get_event_system(request).dlq.get_stats()


@router.post("/dlq/{entry_id}/replay")
async def replay_dlq_entry(
    request: Request,
    entry_id: UUID,
    body: Optional[OperatorRequest] = None,
):
    """Queue a copy of a DLQ entry for delivery."""
    manager = get_event_system(request).dlq

    replay = await manager.replay_entry(
        entry_id=entry_id,
        operator_id=body.operator_id if body else None
    )

    return {
        "status": "queued_for_replay",
        "entry_id": str(entry_id),
        "replay_id": str(replay.id)
    }


@router.delete("/dlq/{entry_id}")
async def purge_dlq_entry(
    request: Request,
    entry_id: UUID,
    operator_id: Optional[str] = None,
):
    """Permanently delete a DLQ entry."""
    manager = get_event_system(request).dlq

    success = await manager.purge_entry(entry_id=entry_id, operator_id=operator_id)

    if not success:
        raise HTTPException(status_code=404, detail="DLQ entry not found")

    return {"status": "purged", "entry_id": str(entry_id)}


@router.post("/dlq/purge")
async def purge_old_dlq(
    request: Request,
    days: int = Query(30, ge=0),
    operator_id: Optional[str] = None,
):
    """Purge DLQ entries older than the given number of days."""
    manager = get_event_system(request).dlq

    count = await manager.purge_old(days=days, operator_id=operator_id)

    return {"status": "purged", "days": days, "count": count}
