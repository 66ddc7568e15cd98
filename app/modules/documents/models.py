"""
Cola de documentos electrónicos enviados a MATIAS.
"""
from sqlalchemy import Column, String, Boolean, DateTime, Integer, Text, JSON, ForeignKey, UniqueConstraint, Index
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.sql import func
from uuid import uuid4
from enum import Enum

from app.database.database import Base
from app.common.mixins import TenantMixin, TimestampMixin


class DocumentKind(str, Enum):
    POS = "POS"
    INVOICE = "INVOICE"
    POS_CREDIT_NOTE = "POS_CREDIT_NOTE"
    POS_DEBIT_NOTE = "POS_DEBIT_NOTE"
    SUPPORT_DOC = "SUPPORT_DOC"
    SUPPORT_ADJUSTMENT = "SUPPORT_ADJUSTMENT"


class SourceType(str, Enum):
    SALE = "sale"
    REFUND = "refund"
    PURCHASE = "purchase"
    ADJUSTMENT = "adjustment"


class DocumentStatus(str, Enum):
    """
    PENDING -> SENT -> ACCEPTED (terminal) | REJECTED
    SENT/REJECTED/FAILED -> RETRY (reintento de operador) -> SENT
    Cualquier falla de envío -> FAILED
    """
    PENDING = "PENDING"
    SENT = "SENT"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    RETRY = "RETRY"
    FAILED = "FAILED"


class FileKind(str, Enum):
    PDF = "pdf"
    ATTACHED_ZIP = "attached_zip"
    XML = "xml"
    QR = "qr"


class QueuedDocument(Base, TenantMixin, TimestampMixin):
    """
    Un intento de emisión de documento electrónico y su ciclo de vida.
    Un documento ACCEPTED nunca cambia de estado.
    """
    __tablename__ = "matias_document_queue"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    kind = Column(String(30), nullable=False, index=True)
    source_type = Column(String(20), nullable=False)
    source_id = Column(String(64), nullable=False)
    order_number = Column(String(100), nullable=True)
    original_document_id = Column(UUID(as_uuid=True), ForeignKey("matias_document_queue.id"), nullable=True)

    # Numeración DIAN
    resolution_number = Column(String(50), nullable=True)
    prefix = Column(String(10), nullable=True)
    document_number = Column(Integer, nullable=True)

    # Respuesta del proveedor
    track_id = Column(String(255), nullable=True, index=True)
    cufe = Column(String(255), nullable=True)
    qr_code = Column(Text, nullable=True)

    status = Column(String(20), nullable=False, default=DocumentStatus.PENDING.value, index=True)
    retry_count = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)
    last_error_message = Column(Text, nullable=True)
    last_http_status = Column(Integer, nullable=True)
    usage_counted = Column(Boolean, nullable=False, default=False)
    is_overage = Column(Boolean, nullable=False, default=False)

    request_json = Column(JSON, nullable=True)
    response_json = Column(JSON, nullable=True)

    submitted_at = Column(DateTime(timezone=True), nullable=True)
    accepted_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_document_queue_tenant_created", "tenant_id", "created_at"),
    )


class DocumentFile(Base):
    """Binario asociado (PDF, ZIP de adjuntos). Se cachea en la primera descarga."""
    __tablename__ = "matias_document_files"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    document_id = Column(UUID(as_uuid=True), ForeignKey("matias_document_queue.id", ondelete="CASCADE"), nullable=False)
    kind = Column(String(20), nullable=False)
    url = Column(Text, nullable=True)
    path = Column(Text, nullable=True)
    base64_data = Column(Text, nullable=True)
    mime_type = Column(String(100), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("document_id", "kind", name="uq_document_file_kind"),
    )


class DocumentSequence(Base, TenantMixin):
    """Consecutivo por (tenant, resolución, prefijo). Sin huecos: se bloquea la fila al avanzar."""
    __tablename__ = "electronic_document_sequences"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    resolution_number = Column(String(50), nullable=False)
    prefix = Column(String(10), nullable=False, default="")
    current_number = Column(Integer, nullable=False)
    range_start = Column(Integer, nullable=True)
    range_end = Column(Integer, nullable=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("tenant_id", "resolution_number", "prefix", name="uq_document_sequence_series"),
    )
