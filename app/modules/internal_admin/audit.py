"""
Bitácora de auditoría de la consola interna.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
from uuid import UUID

from sqlalchemy import select, and_, desc, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.modules.internal_admin.models import InternalAuditLog

logger = logging.getLogger(__name__)

SECRET_KEYS = {"password", "password_encrypted", "access_token", "access_token_encrypted", "encrypted_value", "token"}


def _scrub(metadata: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Quita secretos de la metadata antes de persistirla."""
    if metadata is None:
        return None
    clean = {}
    for key, value in metadata.items():
        if key in SECRET_KEYS:
            continue
        if isinstance(value, dict):
            value = _scrub(value)
        elif isinstance(value, (UUID, datetime)):
            value = str(value)
        clean[key] = value
    return clean


async def record_audit(
    db: AsyncSession,
    actor_id: Optional[UUID],
    action_type: str,
    tenant_id: Optional[UUID] = None,
    entity_type: Optional[str] = None,
    entity_id: Optional[Any] = None,
    metadata: Optional[Dict[str, Any]] = None,
    commit: bool = True,
) -> InternalAuditLog:
    """Registrar una acción administrativa."""
    entry = InternalAuditLog(
        actor_internal_user_id=actor_id,
        action_type=action_type,
        tenant_id=tenant_id,
        entity_type=entity_type,
        entity_id=str(entity_id) if entity_id is not None else None,
        metadata_json=_scrub(metadata),
    )
    db.add(entry)
    if commit:
        await db.commit()
        await db.refresh(entry)
    else:
        await db.flush()
    logger.info(f"[Audit] {action_type} tenant={tenant_id} entity={entity_type}:{entity_id} actor={actor_id}")
    return entry


async def list_audit_logs(
    db: AsyncSession,
    tenant_id: Optional[UUID] = None,
    action_type: Optional[str] = None,
    actor_id: Optional[UUID] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    limit: int = 50,
    offset: int = 0,
) -> Tuple[List[InternalAuditLog], int]:
    """Listar entradas de auditoría, más recientes primero."""
    conditions = []
    if tenant_id:
        conditions.append(InternalAuditLog.tenant_id == tenant_id)
    if action_type:
        conditions.append(InternalAuditLog.action_type == action_type)
    if actor_id:
        conditions.append(InternalAuditLog.actor_internal_user_id == actor_id)
    if date_from:
        conditions.append(InternalAuditLog.created_at >= date_from)
    if date_to:
        conditions.append(InternalAuditLog.created_at <= date_to)

    query = select(InternalAuditLog)
    count_query = select(func.count(InternalAuditLog.id))
    if conditions:
        query = query.where(and_(*conditions))
        count_query = count_query.where(and_(*conditions))

    total = (await db.execute(count_query)).scalar_one()
    result = await db.execute(
        query.order_by(desc(InternalAuditLog.created_at)).offset(offset).limit(limit)
    )
    return list(result.scalars().all()), total
