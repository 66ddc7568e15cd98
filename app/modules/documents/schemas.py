"""
Pydantic schemas para la cola de documentos electrónicos.
"""
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field
from datetime import datetime
from uuid import UUID

from .models import DocumentKind, SourceType, DocumentStatus, FileKind


class QueueDocumentRequest(BaseModel):
    """Documento que un servicio de ventas/compras entrega para emisión."""
    tenant_id: UUID
    kind: DocumentKind = Field(..., description="Tipo de documento")
    source_type: SourceType = Field(..., description="Origen: venta, devolución, compra o ajuste")
    source_id: str = Field(..., min_length=1, max_length=64, description="ID de la entidad origen")
    order_number: Optional[str] = Field(None, max_length=100, description="Número de orden visible")
    original_document_id: Optional[UUID] = Field(None, description="Documento referenciado (notas)")
    payload: Dict[str, Any] = Field(default_factory=dict, description="Cuerpo UBL específico del tipo")


class DocumentFileOut(BaseModel):
    id: UUID
    kind: FileKind
    mime_type: Optional[str] = None
    url: Optional[str] = None
    has_data: bool = False
    created_at: Optional[datetime] = None


class QueuedDocumentOut(BaseModel):
    id: UUID
    tenant_id: UUID
    kind: DocumentKind
    source_type: SourceType
    source_id: str
    order_number: Optional[str] = None
    original_document_id: Optional[UUID] = None
    resolution_number: Optional[str] = None
    prefix: Optional[str] = None
    document_number: Optional[int] = None
    track_id: Optional[str] = None
    cufe: Optional[str] = None
    qr_code: Optional[str] = None
    status: DocumentStatus
    retry_count: int
    max_retries: int
    last_error_message: Optional[str] = None
    last_http_status: Optional[int] = None
    is_overage: bool = False
    submitted_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class QueuedDocumentDetail(QueuedDocumentOut):
    request_json: Optional[Dict[str, Any]] = None
    response_json: Optional[Dict[str, Any]] = None
    files: List[DocumentFileOut] = []


class DocumentListResponse(BaseModel):
    documents: List[QueuedDocumentOut]
    total: int
    limit: int
    offset: int


class DocumentStats(BaseModel):
    by_status: Dict[str, int]
    by_kind: Dict[str, int]
    total: int
    reject_rate: float = Field(0.0, description="Porcentaje REJECTED + FAILED sobre el total")


class SubmitResult(BaseModel):
    """Resultado de un envío al proveedor."""
    success: bool
    document_id: Optional[UUID] = None
    status: Optional[DocumentStatus] = None
    document_number: Optional[int] = None
    prefix: Optional[str] = None
    cufe: Optional[str] = None
    qr_code: Optional[str] = None
    track_id: Optional[str] = None
    error: Optional[str] = None


class ProcessSummary(BaseModel):
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
