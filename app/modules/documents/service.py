"""
Servicio de la cola de documentos electrónicos.

Máquina de estados:
    PENDING --envío exitoso--> SENT --proveedor acepta--> ACCEPTED (terminal)
    PENDING --envío exitoso--> SENT --proveedor rechaza--> REJECTED
    SENT/REJECTED/FAILED --reintento de operador--> RETRY --reenvío--> SENT
    falla de envío (cualquier etapa) --> FAILED

retry_document solo marca la intención; el reenvío real lo hace
process_pending_documents, disparado externamente (Celery beat / cron).
"""
import base64
import json
import logging
from typing import Awaitable, Callable, Dict, List, Optional, Tuple
from uuid import UUID
from datetime import datetime

from fastapi import HTTPException, status
from sqlalchemy import select, update, and_, or_, desc, func, cast, String
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.common.time_utils import utcnow
from app.modules.ebilling import service as ledger
from app.modules.ebilling.models import AlertType, AlertSeverity
from app.modules.internal_admin.audit import record_audit
from app.modules.internal_admin.models import AuditAction
from app.modules.matias.client import MatiasClient, get_matias_client
from app.modules.matias.models import TenantIntegrationConfig
from app.modules.matias.schemas import DocumentResponse, StatusResponse
from app.modules.matias.service import get_integration_config
from .models import QueuedDocument, DocumentFile, DocumentSequence, DocumentKind, DocumentStatus, FileKind
from .schemas import QueueDocumentRequest, SubmitResult, ProcessSummary, DocumentStats

logger = logging.getLogger(__name__)

ClientFactory = Callable[[AsyncSession, UUID], Awaitable[Optional[MatiasClient]]]

SUBMITTERS = {
    DocumentKind.POS.value: "submit_pos",
    DocumentKind.INVOICE.value: "submit_invoice",
    DocumentKind.POS_CREDIT_NOTE.value: "submit_credit_note",
    DocumentKind.POS_DEBIT_NOTE.value: "submit_debit_note",
    DocumentKind.SUPPORT_DOC.value: "submit_support_document",
    DocumentKind.SUPPORT_ADJUSTMENT.value: "submit_support_adjustment_note",
}

NOTE_KINDS = (DocumentKind.POS_CREDIT_NOTE.value, DocumentKind.POS_DEBIT_NOTE.value)
SUPPORT_KINDS = (DocumentKind.SUPPORT_DOC.value, DocumentKind.SUPPORT_ADJUSTMENT.value)
SUBMITTABLE_STATUSES = (DocumentStatus.PENDING.value, DocumentStatus.RETRY.value)

PROVIDER_ACCEPTED = {"accepted", "aceptado", "aceptada", "valid", "validated", "validado", "exitoso", "success"}
PROVIDER_REJECTED = {"rejected", "rechazado", "rechazada", "invalid", "error", "failed", "fallido"}

# Alerta HIGH_REJECT_RATE
REJECT_RATE_WINDOW = 50
REJECT_RATE_MIN_SAMPLE = 10
REJECT_RATE_THRESHOLD = 0.2

FILE_MIME_TYPES = {
    FileKind.PDF.value: "application/pdf",
    FileKind.ATTACHED_ZIP.value: "application/zip",
}


# ===== NUMERACIÓN =====

def select_series(config: TenantIntegrationConfig, kind: str) -> Tuple[Optional[str], str, Optional[int], Optional[int]]:
    """(resolución, prefijo, número inicial, número final) según el tipo de documento."""
    if kind in NOTE_KINDS:
        return (
            config.credit_note_resolution_number,
            config.credit_note_prefix or "",
            config.credit_note_starting_number,
            config.credit_note_ending_number,
        )
    if kind in SUPPORT_KINDS:
        return (
            config.support_doc_resolution_number,
            config.support_doc_prefix or "",
            config.support_doc_starting_number,
            config.support_doc_ending_number,
        )
    return (
        config.default_resolution_number,
        config.default_prefix or "",
        config.starting_number,
        config.ending_number,
    )


async def _get_sequence(db: AsyncSession, tenant_id: UUID, resolution_number: str, prefix: str, lock: bool = False):
    query = select(DocumentSequence).where(
        and_(
            DocumentSequence.tenant_id == tenant_id,
            DocumentSequence.resolution_number == resolution_number,
            DocumentSequence.prefix == prefix,
        )
    )
    if lock:
        query = query.with_for_update()
    result = await db.execute(query)
    return result.scalar_one_or_none()


async def get_next_document_number(
    db: AsyncSession,
    tenant_id: UUID,
    resolution_number: str,
    prefix: str,
    starting_number: Optional[int] = None,
    ending_number: Optional[int] = None,
    client: Optional[MatiasClient] = None,
) -> int:
    """
    Siguiente consecutivo de la serie, sin huecos.

    La fila de la secuencia queda bloqueada (FOR UPDATE) hasta que el llamador
    confirme la transacción junto con el documento. Primer número de la serie:
    número inicial configurado, si no el último emitido en el proveedor + 1,
    si no 1. No se confirma la transacción aquí.
    """
    sequence = await _get_sequence(db, tenant_id, resolution_number, prefix, lock=True)

    if sequence is None:
        start = 1
        if starting_number and starting_number > 0:
            start = starting_number
            logger.info(f"[MATIAS] Using configured starting number: {start}")
        elif client is not None:
            last = await client.get_last_document(resolution_number, prefix)
            if last is not None:
                start = last + 1
                logger.info(f"[MATIAS] Continuing series {prefix} after provider number {last}")

        if ending_number and start > ending_number:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"El número {start} excede el rango de la resolución (máximo: {ending_number})",
            )

        db.add(DocumentSequence(
            tenant_id=tenant_id,
            resolution_number=resolution_number,
            prefix=prefix,
            current_number=start,
            range_start=starting_number,
            range_end=ending_number,
        ))
        await db.flush()
        return start

    next_number = sequence.current_number + 1
    if sequence.range_end and next_number > sequence.range_end:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"El número {next_number} excede el rango de la resolución (máximo: {sequence.range_end})",
        )

    sequence.current_number = next_number
    await db.flush()
    return next_number


# ===== ENCOLAR =====

async def queue_document(
    db: AsyncSession,
    request: QueueDocumentRequest,
    client_factory: Optional[ClientFactory] = None,
) -> QueuedDocument:
    """
    Registrar un documento PENDING con su consecutivo asignado.

    Falla con 400 si la integración no está habilitada o no hay resolución
    para la serie, y con 402 si la cuota está agotada bajo política `block`.
    """
    config = await get_integration_config(db, request.tenant_id)
    if not config or not config.is_enabled:
        logger.info(f"[MATIAS] Not enabled for tenant {request.tenant_id}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Facturación electrónica no habilitada para el tenant",
        )

    quota = await ledger.check_quota(db, request.tenant_id)
    if not quota.allowed:
        logger.info(f"[MATIAS] Document blocked due to quota: {quota.reason} ({quota.used}/{quota.limit})")
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail=f"Cuota de documentos agotada ({quota.used}/{quota.limit})",
        )

    kind = request.kind.value
    resolution_number, prefix, starting_number, ending_number = select_series(config, kind)
    if not resolution_number:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"No hay resolución de numeración configurada para {kind}",
        )

    client = None
    if not starting_number and await _get_sequence(db, request.tenant_id, resolution_number, prefix) is None:
        client = await (client_factory or get_matias_client)(db, request.tenant_id)

    document_number = await get_next_document_number(
        db,
        request.tenant_id,
        resolution_number,
        prefix,
        starting_number=starting_number,
        ending_number=ending_number,
        client=client,
    )

    payload = dict(request.payload)
    payload.update({
        "resolution_number": resolution_number,
        "prefix": prefix,
        "document_number": str(document_number),
    })

    document = QueuedDocument(
        tenant_id=request.tenant_id,
        kind=kind,
        source_type=request.source_type.value,
        source_id=request.source_id,
        order_number=request.order_number,
        original_document_id=request.original_document_id,
        resolution_number=resolution_number,
        prefix=prefix,
        document_number=document_number,
        status=DocumentStatus.PENDING.value,
        max_retries=settings.MATIAS_MAX_RETRIES,
        is_overage=quota.is_overage,
        request_json=payload,
    )
    db.add(document)
    await db.commit()
    await db.refresh(document)

    logger.info(f"[MATIAS] Queued {kind} {prefix}{document_number} for tenant {request.tenant_id}")
    return document


# ===== ENVÍO =====

async def get_document(db: AsyncSession, document_id: UUID) -> QueuedDocument:
    result = await db.execute(
        select(QueuedDocument)
        .where(QueuedDocument.id == document_id)
        .execution_options(populate_existing=True)
    )
    document = result.scalar_one_or_none()
    if not document:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Documento no encontrado")
    return document


async def build_payload(db: AsyncSession, document: QueuedDocument) -> Dict:
    """Cuerpo a enviar: el del llamador con la numeración asignada y, en notas, la referencia al original."""
    payload = dict(document.request_json or {})
    payload["resolution_number"] = document.resolution_number
    payload["prefix"] = document.prefix or ""
    payload["document_number"] = str(document.document_number)

    if document.original_document_id and "billing_reference" not in payload:
        original = await db.get(QueuedDocument, document.original_document_id)
        if original and original.cufe:
            reference = f"{original.prefix or ''}{original.document_number}"
            payload["billing_reference"] = {
                "number": reference,
                "uuid": original.cufe,
                "issue_date": (original.accepted_at or original.created_at).date().isoformat(),
                "scheme_name": "CUFE-SHA384",
            }
    return payload


def _error_message(response: DocumentResponse) -> str:
    if response.message:
        return response.message
    if response.errors:
        return json.dumps(response.errors, ensure_ascii=False)
    return "Document rejected by MATIAS"


async def _count_usage(db: AsyncSession, document: QueuedDocument) -> None:
    """Descontar cuota una sola vez por documento. Confirma la transacción."""
    result = await db.execute(
        update(QueuedDocument)
        .where(and_(QueuedDocument.id == document.id, QueuedDocument.usage_counted.is_(False)))
        .values(usage_counted=True)
        .returning(QueuedDocument.id)
        .execution_options(synchronize_session=False)
    )
    if result.scalar_one_or_none() is None:
        await db.commit()
        return
    document.usage_counted = True
    increment = await ledger.increment_usage(db, document.tenant_id, document.kind)
    if increment and increment.is_overage and not document.is_overage:
        document.is_overage = True
        await db.commit()


async def _claim_for_submission(db: AsyncSession, document_id: UUID, payload: Dict) -> bool:
    """PENDING/RETRY -> SENT en una sola sentencia. False si otro proceso ya lo tomó."""
    result = await db.execute(
        update(QueuedDocument)
        .where(and_(QueuedDocument.id == document_id, QueuedDocument.status.in_(SUBMITTABLE_STATUSES)))
        .values(status=DocumentStatus.SENT.value, request_json=payload, submitted_at=utcnow())
        .returning(QueuedDocument.id)
        .execution_options(synchronize_session=False)
    )
    claimed = result.scalar_one_or_none() is not None
    await db.commit()
    return claimed


async def submit_document(
    db: AsyncSession,
    document_id: UUID,
    client: Optional[MatiasClient] = None,
) -> SubmitResult:
    """
    Enviar un documento PENDING o RETRY al proveedor.

    Éxito -> SENT (o ACCEPTED si el proveedor ya lo reporta validado) y se
    cuenta el consumo; cualquier falla -> FAILED con el error del proveedor.
    Un documento en otro estado (ya aceptado, o tomado antes por otro
    proceso) no se reenvía: se devuelve su estado actual.
    """
    document = await get_document(db, document_id)

    claimed = False
    if document.status in SUBMITTABLE_STATUSES:
        payload = await build_payload(db, document)
        claimed = await _claim_for_submission(db, document_id, payload)
        document = await get_document(db, document_id)

    if not claimed:
        logger.debug(f"[MATIAS] Document {document_id} not submitted, current status {document.status}")
        in_flight = document.status in (DocumentStatus.SENT.value, DocumentStatus.ACCEPTED.value)
        return _result(document, success=in_flight, error=None if in_flight else document.last_error_message)

    client = client or await get_matias_client(db, document.tenant_id)
    if client is None:
        document.status = DocumentStatus.FAILED.value
        document.last_error_message = "Could not initialize MATIAS client"
        await db.commit()
        logger.warning(f"[MATIAS] Could not initialize client for tenant {document.tenant_id}")
        return _result(document, success=False, error=document.last_error_message)

    response: DocumentResponse = await getattr(client, SUBMITTERS[document.kind])(payload)

    if response.accepted and not response.cufe:
        status_response = await client.get_status(
            resolution=document.resolution_number,
            prefix=document.prefix,
            number=str(document.document_number),
        )
        if status_response.success:
            response.cufe = status_response.cufe
            response.qr_code = response.qr_code or status_response.qr_code

    document.response_json = response.raw
    document.last_http_status = response.status_code or None

    if response.accepted:
        document.status = DocumentStatus.ACCEPTED.value
        document.track_id = response.track_id or document.track_id
        document.cufe = response.cufe
        document.qr_code = response.qr_code
        document.accepted_at = utcnow()
        document.last_error_message = None
        label = "already validated" if response.already_validated else "accepted"
        logger.info(f"[MATIAS] Document {document.prefix}{document.document_number} {label}")
        await _count_usage(db, document)
        return _result(document, success=True)

    if response.success:
        document.track_id = response.track_id
        document.last_error_message = None
        logger.info(f"[MATIAS] Document {document.prefix}{document.document_number} sent, track {response.track_id}")
        await _count_usage(db, document)
        return _result(document, success=True)

    document.status = DocumentStatus.FAILED.value
    document.last_error_message = _error_message(response)
    await db.commit()
    logger.warning(
        f"[MATIAS] Document {document.prefix}{document.document_number} failed "
        f"({response.error_kind}): {document.last_error_message}"
    )
    await check_reject_rate(db, document.tenant_id)
    return _result(document, success=False, error=document.last_error_message)


def _result(document: QueuedDocument, success: bool, error: Optional[str] = None) -> SubmitResult:
    return SubmitResult(
        success=success,
        document_id=document.id,
        status=document.status,
        document_number=document.document_number,
        prefix=document.prefix,
        cufe=document.cufe,
        qr_code=document.qr_code,
        track_id=document.track_id,
        error=error,
    )


async def queue_and_submit(
    db: AsyncSession,
    request: QueueDocumentRequest,
    client_factory: Optional[ClientFactory] = None,
) -> SubmitResult:
    """Emisión síncrona: encolar y enviar de inmediato (CUFE/QR para el recibo)."""
    document = await queue_document(db, request, client_factory=client_factory)
    client = await (client_factory or get_matias_client)(db, request.tenant_id)
    return await submit_document(db, document.id, client=client)


async def process_pending_documents(
    db: AsyncSession,
    client_factory: Optional[ClientFactory] = None,
) -> ProcessSummary:
    """
    Enviar un lote de PENDING y luego uno de RETRY que no haya superado
    max_retries. Un cliente por tenant en el lote.
    """
    factory = client_factory or get_matias_client
    summary = ProcessSummary()
    clients: Dict[UUID, Optional[MatiasClient]] = {}

    within_retry_limit = QueuedDocument.retry_count <= QueuedDocument.max_retries
    for condition, batch_size in (
        (QueuedDocument.status == DocumentStatus.PENDING.value, settings.DOCUMENT_BATCH_SIZE),
        (and_(QueuedDocument.status == DocumentStatus.RETRY.value, within_retry_limit), settings.RETRY_BATCH_SIZE),
    ):
        result = await db.execute(
            select(QueuedDocument.id, QueuedDocument.tenant_id)
            .where(condition)
            .order_by(QueuedDocument.created_at)
            .limit(batch_size)
        )
        for document_id, tenant_id in result.all():
            if tenant_id not in clients:
                clients[tenant_id] = await factory(db, tenant_id)

            outcome = await submit_document(db, document_id, client=clients[tenant_id])
            summary.processed += 1
            if outcome.success:
                summary.succeeded += 1
            else:
                summary.failed += 1

    if summary.processed:
        logger.info(f"[MATIAS] Processed {summary.processed} documents ({summary.succeeded} ok, {summary.failed} failed)")
    return summary


# ===== CONCILIACIÓN =====

def classify_provider_status(response: StatusResponse) -> Optional[str]:
    """ACCEPTED, REJECTED o None si la DIAN aún no responde."""
    if response.is_valid is True:
        return DocumentStatus.ACCEPTED.value
    provider_status = (response.status or "").strip().lower()
    if provider_status in PROVIDER_ACCEPTED:
        return DocumentStatus.ACCEPTED.value
    if provider_status in PROVIDER_REJECTED or response.is_valid is False:
        return DocumentStatus.REJECTED.value
    return None


async def reconcile_document(
    db: AsyncSession,
    document_id: UUID,
    client: Optional[MatiasClient] = None,
) -> QueuedDocument:
    """Consultar al proveedor el estado de un documento SENT y aplicarlo."""
    document = await get_document(db, document_id)

    if document.status == DocumentStatus.ACCEPTED.value:
        return document
    if document.status != DocumentStatus.SENT.value:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Solo se concilian documentos SENT (estado actual: {document.status})",
        )

    client = client or await get_matias_client(db, document.tenant_id)
    if client is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Integración MATIAS no disponible para el tenant",
        )

    if document.track_id:
        response = await client.get_status_by_track_id(document.track_id)
    else:
        response = await client.get_status(
            resolution=document.resolution_number,
            prefix=document.prefix,
            number=str(document.document_number),
        )

    if not response.success:
        logger.info(f"[MATIAS] Status poll for {document.id} failed: {response.error}")
        return document

    outcome = classify_provider_status(response)
    if outcome is None:
        return document

    # Solo desde SENT: una aceptación concurrente gana
    values = {"status": outcome, "response_json": response.raw}
    if outcome == DocumentStatus.ACCEPTED.value:
        values.update(cufe=response.cufe or document.cufe, qr_code=response.qr_code or document.qr_code, accepted_at=utcnow())
    else:
        values["last_error_message"] = response.status_message or "Rejected by DIAN"

    result = await db.execute(
        update(QueuedDocument)
        .where(and_(QueuedDocument.id == document.id, QueuedDocument.status == DocumentStatus.SENT.value))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        await db.rollback()
        return await get_document(db, document.id)

    document = await get_document(db, document.id)
    logger.info(f"[MATIAS] Document {document.prefix}{document.document_number} reconciled as {outcome}")

    if outcome == DocumentStatus.ACCEPTED.value:
        await _count_usage(db, document)
    else:
        await db.commit()
        await check_reject_rate(db, document.tenant_id)
    return await get_document(db, document.id)


async def reconcile_sent_documents(
    db: AsyncSession,
    limit: Optional[int] = None,
    client_factory: Optional[ClientFactory] = None,
) -> ProcessSummary:
    factory = client_factory or get_matias_client
    summary = ProcessSummary()
    clients: Dict[UUID, Optional[MatiasClient]] = {}

    result = await db.execute(
        select(QueuedDocument.id, QueuedDocument.tenant_id)
        .where(QueuedDocument.status == DocumentStatus.SENT.value)
        .order_by(QueuedDocument.submitted_at)
        .limit(limit or settings.DOCUMENT_BATCH_SIZE)
    )
    for document_id, tenant_id in result.all():
        if tenant_id not in clients:
            clients[tenant_id] = await factory(db, tenant_id)
        if clients[tenant_id] is None:
            summary.failed += 1
            continue

        document = await reconcile_document(db, document_id, client=clients[tenant_id])
        summary.processed += 1
        if document.status == DocumentStatus.ACCEPTED.value:
            summary.succeeded += 1
        elif document.status == DocumentStatus.REJECTED.value:
            summary.failed += 1

    return summary


async def check_reject_rate(db: AsyncSession, tenant_id: UUID) -> bool:
    """Crear alerta HIGH_REJECT_RATE si la proporción reciente de rechazos supera el umbral."""
    result = await db.execute(
        select(QueuedDocument.status)
        .where(
            and_(
                QueuedDocument.tenant_id == tenant_id,
                QueuedDocument.status.in_([
                    DocumentStatus.ACCEPTED.value,
                    DocumentStatus.REJECTED.value,
                    DocumentStatus.FAILED.value,
                ]),
            )
        )
        .order_by(desc(QueuedDocument.updated_at))
        .limit(REJECT_RATE_WINDOW)
    )
    statuses = result.scalars().all()
    if len(statuses) < REJECT_RATE_MIN_SAMPLE:
        return False

    bad = sum(1 for s in statuses if s != DocumentStatus.ACCEPTED.value)
    rate = bad / len(statuses)
    if rate < REJECT_RATE_THRESHOLD:
        return False

    await ledger.create_alert(
        db,
        tenant_id,
        AlertType.HIGH_REJECT_RATE,
        AlertSeverity.WARNING,
        f"{rate * 100:.0f}% of the last {len(statuses)} documents were rejected or failed",
    )
    return True


# ===== OPERACIÓN =====

async def retry_document(db: AsyncSession, document_id: UUID, actor_id: Optional[UUID]) -> QueuedDocument:
    """
    Marcar un documento para reenvío. Un documento ACCEPTED no se reintenta,
    ni uno que ya agotó sus max_retries reintentos.
    No envía: el siguiente process_pending_documents lo toma.
    """
    document = await get_document(db, document_id)
    previous_status = document.status

    result = await db.execute(
        update(QueuedDocument)
        .where(and_(
            QueuedDocument.id == document_id,
            QueuedDocument.status != DocumentStatus.ACCEPTED.value,
            QueuedDocument.retry_count < QueuedDocument.max_retries,
        ))
        .values(status=DocumentStatus.RETRY.value, retry_count=QueuedDocument.retry_count + 1)
        .returning(QueuedDocument.retry_count)
        .execution_options(synchronize_session=False)
    )
    retry_count = result.scalar_one_or_none()
    if retry_count is None:
        await db.rollback()
        current = await get_document(db, document_id)
        if current.status == DocumentStatus.ACCEPTED.value:
            detail = "No se puede reintentar un documento aceptado"
        else:
            detail = f"El documento agotó sus reintentos ({current.retry_count}/{current.max_retries})"
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)

    await record_audit(
        db,
        actor_id,
        AuditAction.DOC_RETRY.value,
        tenant_id=document.tenant_id,
        entity_type="document",
        entity_id=document_id,
        metadata={"kind": document.kind, "previous_status": previous_status, "retry_count": retry_count},
        commit=False,
    )
    await db.commit()
    logger.info(f"[MATIAS] Document {document_id} marked for retry ({previous_status} -> RETRY, attempt {retry_count})")
    return await get_document(db, document_id)


async def list_documents(
    db: AsyncSession,
    tenant_id: Optional[UUID] = None,
    kind: Optional[DocumentKind] = None,
    doc_status: Optional[DocumentStatus] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    query: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> Tuple[List[QueuedDocument], int]:
    """
    Página de documentos y total en la misma consulta (count(*) OVER ()),
    ordenados por fecha de creación descendente.
    """
    conditions = []
    if tenant_id:
        conditions.append(QueuedDocument.tenant_id == tenant_id)
    if kind:
        conditions.append(QueuedDocument.kind == kind.value)
    if doc_status:
        conditions.append(QueuedDocument.status == doc_status.value)
    if date_from:
        conditions.append(QueuedDocument.created_at >= date_from)
    if date_to:
        conditions.append(QueuedDocument.created_at <= date_to)
    if query:
        pattern = f"%{query.strip()}%"
        conditions.append(
            or_(
                QueuedDocument.track_id.ilike(pattern),
                QueuedDocument.order_number.ilike(pattern),
                cast(QueuedDocument.document_number, String).ilike(pattern),
            )
        )

    stmt = select(QueuedDocument, func.count().over().label("total"))
    if conditions:
        stmt = stmt.where(and_(*conditions))
    stmt = stmt.order_by(desc(QueuedDocument.created_at)).offset(offset).limit(limit)

    rows = (await db.execute(stmt)).all()
    if rows:
        return [row[0] for row in rows], rows[0].total

    if offset == 0:
        return [], 0

    # Página fuera de rango: el total se obtiene aparte
    count_stmt = select(func.count(QueuedDocument.id))
    if conditions:
        count_stmt = count_stmt.where(and_(*conditions))
    total = (await db.execute(count_stmt)).scalar_one()
    return [], total


async def get_document_details(db: AsyncSession, document_id: UUID) -> Tuple[QueuedDocument, List[DocumentFile]]:
    document = await get_document(db, document_id)
    result = await db.execute(
        select(DocumentFile).where(DocumentFile.document_id == document_id).order_by(DocumentFile.created_at)
    )
    return document, list(result.scalars().all())


async def _get_cached_file(db: AsyncSession, document_id: UUID, kind: str) -> Optional[DocumentFile]:
    result = await db.execute(
        select(DocumentFile).where(and_(DocumentFile.document_id == document_id, DocumentFile.kind == kind))
    )
    return result.scalar_one_or_none()


async def _download_document_file(
    db: AsyncSession,
    document_id: UUID,
    kind: str,
    client: Optional[MatiasClient],
) -> Tuple[bytes, str]:
    """Caché primero; en fallo de caché se descarga, se guarda en base64 y luego se devuelve."""
    document = await get_document(db, document_id)
    if not document.track_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="El documento no tiene track ID")

    cached = await _get_cached_file(db, document_id, kind)
    if cached and cached.base64_data:
        return base64.b64decode(cached.base64_data), cached.mime_type or FILE_MIME_TYPES[kind]

    client = client or await get_matias_client(db, document.tenant_id)
    if client is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Integración MATIAS no disponible para el tenant",
        )

    if kind == FileKind.PDF.value:
        data = await client.download_pdf(document.track_id)
    else:
        data = await client.download_attached(document.track_id)
    if not data:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="No se pudo descargar el archivo del proveedor")

    mime_type = FILE_MIME_TYPES[kind]
    encoded = base64.b64encode(data).decode("ascii")
    if cached:
        cached.base64_data = encoded
        cached.mime_type = mime_type
    else:
        db.add(DocumentFile(document_id=document_id, kind=kind, base64_data=encoded, mime_type=mime_type))
    try:
        await db.commit()
    except IntegrityError:
        # Otra petición cacheó el mismo archivo
        await db.rollback()
    return data, mime_type


async def download_document_pdf(
    db: AsyncSession, document_id: UUID, client: Optional[MatiasClient] = None
) -> Tuple[bytes, str]:
    return await _download_document_file(db, document_id, FileKind.PDF.value, client)


async def download_document_attached(
    db: AsyncSession, document_id: UUID, client: Optional[MatiasClient] = None
) -> Tuple[bytes, str]:
    return await _download_document_file(db, document_id, FileKind.ATTACHED_ZIP.value, client)


async def get_document_stats(db: AsyncSession, tenant_id: Optional[UUID] = None) -> DocumentStats:
    condition = QueuedDocument.tenant_id == tenant_id if tenant_id else None

    status_query = select(QueuedDocument.status, func.count(QueuedDocument.id)).group_by(QueuedDocument.status)
    kind_query = select(QueuedDocument.kind, func.count(QueuedDocument.id)).group_by(QueuedDocument.kind)
    if condition is not None:
        status_query = status_query.where(condition)
        kind_query = kind_query.where(condition)

    by_status = {row[0]: int(row[1]) for row in (await db.execute(status_query)).all()}
    by_kind = {row[0]: int(row[1]) for row in (await db.execute(kind_query)).all()}
    total = sum(by_status.values())
    bad = by_status.get(DocumentStatus.REJECTED.value, 0) + by_status.get(DocumentStatus.FAILED.value, 0)

    return DocumentStats(
        by_status=by_status,
        by_kind=by_kind,
        total=total,
        reject_rate=round(bad / total * 100, 2) if total else 0.0,
    )
