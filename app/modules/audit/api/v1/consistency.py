"""
Consistency API Endpoints

Provides:
- GET /consistency/{tenant_id}/orphans - Orphaned credit report
- POST /consistency/{tenant_id}/orphans/clean - Delete orphaned credit rows
- GET /consistency/{tenant_id}/ledger - Replay every balance's transaction chain
"""

from typing import Annotated, Any, Optional
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from app.modules.audit.domain.consistency import ConsistencyAuditor
from app.shared.db.session import get_db

logger = structlog.get_logger()
router = APIRouter(tags=["Consistency"])


class CleanOrphansRequest(BaseModel):
    initiated_by: Optional[str] = None


@router.get("/{tenant_id}/orphans")
async def orphan_report(
    tenant_id: UUID, db: Annotated[AsyncSession, Depends(get_db)]
) -> Any:
    return await ConsistencyAuditor(db).orphan_report(tenant_id)


@router.post("/{tenant_id}/orphans/clean")
async def clean_orphans(
    tenant_id: UUID,
    body: CleanOrphansRequest,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> Any:
    """Destructive. Deletes balance rows whose entity no longer resolves."""
    logger.info(
        "orphan_cleanup_requested",
        tenant_id=str(tenant_id),
        initiated_by=body.initiated_by,
    )
    return await ConsistencyAuditor(db).clean_orphans(
        tenant_id, initiated_by=body.initiated_by
    )


@router.get("/{tenant_id}/ledger")
async def verify_ledger(
    tenant_id: UUID,
    db: Annotated[AsyncSession, Depends(get_db)],
    strict: bool = False,
) -> Any:
    return await ConsistencyAuditor(db).verify_ledger(tenant_id, strict=strict)
