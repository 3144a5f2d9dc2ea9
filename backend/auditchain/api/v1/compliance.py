"""Retention, anonymization and reprocessing endpoints for compliance tooling."""

from __future__ import annotations

from datetime import datetime, timedelta

from fastapi import APIRouter, Query

from auditchain.api.deps import Service
from auditchain.db.base import utcnow
from auditchain.schemas.audit import ComplianceReport, ReprocessResult, RetentionResult

router = APIRouter(prefix="/compliance", tags=["compliance"])


@router.post(
    "/anonymize/{actor_id}",
    response_model=RetentionResult,
    summary="Irreversibly anonymize an actor's personal data",
)
async def anonymize_actor(actor_id: str, service: Service) -> RetentionResult:
    affected = await service.anonymize(actor_id)
    return RetentionResult(operation="anonymize", affected=affected)


@router.post("/sweep", response_model=RetentionResult, summary="Expire overdue events now")
async def sweep_expired(service: Service) -> RetentionResult:
    affected = await service.sweep_expired()
    return RetentionResult(operation="sweep", affected=affected)


@router.post(
    "/purge",
    response_model=RetentionResult,
    summary="Physically delete long-expired events",
)
async def purge_expired(
    service: Service,
    min_age_days: int | None = Query(default=None, ge=1),
) -> RetentionResult:
    """Destructive. Only the oldest contiguous run of expired events is removed."""
    affected = await service.purge_expired(min_age_days)
    return RetentionResult(operation="purge", affected=affected)


@router.post("/reprocess", response_model=ReprocessResult, summary="Retry failed deliveries")
async def reprocess_failed(service: Service) -> ReprocessResult:
    return await service.reprocess_failed()


@router.get("/report", response_model=ComplianceReport, summary="Compliance report for a period")
async def compliance_report(
    service: Service,
    from_: datetime | None = Query(default=None, alias="from"),
    to: datetime | None = Query(default=None),
    report_type: str = Query(default="periodic", max_length=64),
) -> ComplianceReport:
    """Defaults to the last 30 days."""
    end = to or utcnow()
    return await service.compliance_report(from_ or end - timedelta(days=30), end, report_type)
