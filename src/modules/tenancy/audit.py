"""Append-only audit trail for impersonation and scope changes."""

import logging
import uuid
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from src.models.enums import AuditAction
from src.models.tenant_audit_log import TenantAuditLog

logger = logging.getLogger(__name__)


async def record_audit(
    db: AsyncSession,
    action: AuditAction,
    *,
    actor_user_id: uuid.UUID | None,
    tenant_id: uuid.UUID | None,
    old_value: dict[str, Any] | None = None,
    new_value: dict[str, Any] | None = None,
) -> TenantAuditLog:
    """Insert one audit row in the caller's transaction.

    The row commits or rolls back together with the state change it
    describes, so there is never a start without its audit entry.
    """
    entry = TenantAuditLog(
        tenant_id=tenant_id,
        action=action.value,
        actor_user_id=actor_user_id,
        old_value=old_value,
        new_value=new_value,
    )
    db.add(entry)
    await db.flush()
    logger.info(
        "Audit %s actor=%s tenant=%s", action.value, actor_user_id, tenant_id
    )
    return entry
