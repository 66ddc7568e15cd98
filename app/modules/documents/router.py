"""
API Router para la consola de documentos electrónicos.
"""
from typing import Optional
from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Response

from app.dependencies.dbDependecies import async_db_dependency
from app.modules.internal_admin.dependencies import require_any_internal, require_support, require_billing
from app.modules.internal_admin.models import InternalUser

from . import service
from .models import DocumentKind, DocumentStatus
from .schemas import (
    DocumentFileOut,
    DocumentListResponse,
    DocumentStats,
    QueuedDocumentDetail,
    QueuedDocumentOut,
)

router = APIRouter(
    prefix="/ebilling/documents",
    tags=["Internal Admin - Documents"],
    responses={404: {"description": "Not found"}},
)


@router.get("", response_model=DocumentListResponse)
async def list_documents(
    db: async_db_dependency,
    tenant_id: Optional[UUID] = Query(None, description="Filtrar por tenant"),
    kind: Optional[DocumentKind] = Query(None, description="Filtrar por tipo"),
    status: Optional[DocumentStatus] = Query(None, description="Filtrar por estado"),
    date_from: Optional[datetime] = Query(None),
    date_to: Optional[datetime] = Query(None),
    q: Optional[str] = Query(None, description="Buscar por track ID, número de orden o consecutivo"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    _: InternalUser = Depends(require_any_internal),
):
    documents, total = await service.list_documents(
        db,
        tenant_id=tenant_id,
        kind=kind,
        doc_status=status,
        date_from=date_from,
        date_to=date_to,
        query=q,
        limit=limit,
        offset=offset,
    )
    return DocumentListResponse(
        documents=[QueuedDocumentOut.model_validate(d) for d in documents],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/stats", response_model=DocumentStats)
async def get_document_stats(
    db: async_db_dependency,
    tenant_id: Optional[UUID] = Query(None),
    _: InternalUser = Depends(require_billing),
):
    """Conteos por estado y tipo, con tasa de rechazo."""
    return await service.get_document_stats(db, tenant_id)


@router.get("/{document_id}", response_model=QueuedDocumentDetail)
async def get_document(
    document_id: UUID,
    db: async_db_dependency,
    _: InternalUser = Depends(require_support),
):
    """Detalle completo: request/response del proveedor y archivos cacheados."""
    document, files = await service.get_document_details(db, document_id)
    detail = QueuedDocumentDetail.model_validate(document)
    detail.files = [
        DocumentFileOut(
            id=f.id,
            kind=f.kind,
            mime_type=f.mime_type,
            url=f.url,
            has_data=bool(f.base64_data),
            created_at=f.created_at,
        )
        for f in files
    ]
    return detail


@router.post("/{document_id}/retry", response_model=QueuedDocumentOut)
async def retry_document(
    document_id: UUID,
    db: async_db_dependency,
    user: InternalUser = Depends(require_support),
):
    """
    Marcar el documento para reenvío.

    El reenvío lo realiza el procesador en segundo plano; este endpoint no
    contacta al proveedor.
    """
    return await service.retry_document(db, document_id, actor_id=user.id)


@router.post("/{document_id}/reconcile", response_model=QueuedDocumentOut)
async def reconcile_document(
    document_id: UUID,
    db: async_db_dependency,
    _: InternalUser = Depends(require_support),
):
    return await service.reconcile_document(db, document_id)


@router.get("/{document_id}/pdf")
async def download_pdf(
    document_id: UUID,
    db: async_db_dependency,
    _: InternalUser = Depends(require_support),
):
    content, mime_type = await service.download_document_pdf(db, document_id)
    return Response(
        content=content,
        media_type=mime_type,
        headers={"Content-Disposition": f'attachment; filename="{document_id}.pdf"'},
    )


@router.get("/{document_id}/attached")
async def download_attached(
    document_id: UUID,
    db: async_db_dependency,
    _: InternalUser = Depends(require_support),
):
    content, mime_type = await service.download_document_attached(db, document_id)
    return Response(
        content=content,
        media_type=mime_type,
        headers={"Content-Disposition": f'attachment; filename="{document_id}.zip"'},
    )
