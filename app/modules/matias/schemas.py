"""
Pydantic schemas para la integración MATIAS.
"""
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field, field_validator
from datetime import datetime
from uuid import UUID
from enum import Enum

from app.common.validators import (
    validate_colombia_nit_base,
    validate_document_prefix,
    validate_resolution_number,
    normalize_prefix,
)


class ErrorKind(str, Enum):
    """Clasificación de fallas esperadas del proveedor."""
    NETWORK = "network"
    TIMEOUT = "timeout"
    HTTP = "http"
    UNEXPECTED_FORMAT = "unexpected_format"
    INVALID_JSON = "invalid_json"
    AUTHENTICATION = "authentication"
    NOT_CONFIGURED = "not_configured"


# ===== RESPUESTAS DEL PROVEEDOR =====

class ProviderResponse(BaseModel):
    """Resultado normalizado de una llamada autenticada al proveedor."""
    success: bool
    status_code: int = 0
    data: Optional[Any] = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None


class DocumentResponse(BaseModel):
    """Forma común para todos los endpoints de envío de documentos."""
    success: bool
    message: Optional[str] = None
    track_id: Optional[str] = None
    document_number: Optional[str] = None
    cufe: Optional[str] = None
    qr_code: Optional[str] = None
    is_valid: bool = False
    already_validated: bool = False
    errors: Optional[Any] = None
    error_kind: Optional[ErrorKind] = None
    status_code: int = 0
    raw: Optional[Dict[str, Any]] = None

    @property
    def accepted(self) -> bool:
        """El proveedor ya reporta el documento validado ante la DIAN."""
        return self.already_validated or (self.success and (self.is_valid or bool(self.cufe)))


class StatusResponse(BaseModel):
    """Estado de aceptación consultado al proveedor."""
    success: bool
    status: Optional[str] = None
    status_message: Optional[str] = None
    document_key: Optional[str] = None
    cufe: Optional[str] = None
    qr_code: Optional[str] = None
    is_valid: Optional[bool] = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    raw: Optional[Dict[str, Any]] = None


class ConnectionTestResult(BaseModel):
    success: bool
    message: str


# ===== CONFIGURACIÓN POR TENANT =====

class MatiasConfigBase(BaseModel):
    """Campos en texto plano de la configuración."""
    base_url: Optional[str] = Field(None, description="URL base del API (vacío = URL por defecto)")
    email: Optional[str] = Field(None, description="Cuenta del API MATIAS")

    default_resolution_number: Optional[str] = Field(None, description="Resolución de facturas/POS")
    default_prefix: Optional[str] = Field(None, description="Prefijo de facturas/POS")
    starting_number: Optional[int] = Field(None, ge=1)
    ending_number: Optional[int] = Field(None, ge=1)

    credit_note_resolution_number: Optional[str] = None
    credit_note_prefix: Optional[str] = None
    credit_note_starting_number: Optional[int] = Field(None, ge=1)
    credit_note_ending_number: Optional[int] = Field(None, ge=1)

    support_doc_resolution_number: Optional[str] = None
    support_doc_prefix: Optional[str] = None
    support_doc_starting_number: Optional[int] = Field(None, ge=1)
    support_doc_ending_number: Optional[int] = Field(None, ge=1)

    pos_terminal_number: Optional[str] = None
    pos_sales_code: Optional[str] = None
    pos_cashier_type: Optional[str] = None
    pos_address: Optional[str] = None

    software_id: Optional[str] = None
    software_pin: Optional[str] = None
    manufacturer_name: Optional[str] = None
    manufacturer_nit: Optional[str] = None

    is_enabled: Optional[bool] = None
    auto_submit_sales: Optional[bool] = None

    @field_validator("default_prefix", "credit_note_prefix", "support_doc_prefix")
    @classmethod
    def validate_prefix(cls, v):
        if v is None or v == "":
            return None
        if not validate_document_prefix(v):
            raise ValueError("Prefijo inválido: 1 a 4 caracteres alfanuméricos")
        return normalize_prefix(v)

    @field_validator(
        "default_resolution_number",
        "credit_note_resolution_number",
        "support_doc_resolution_number",
    )
    @classmethod
    def validate_resolution(cls, v):
        if v is None or v == "":
            return None
        if not validate_resolution_number(v):
            raise ValueError("Número de resolución inválido: solo dígitos")
        return v.strip()

    @field_validator("manufacturer_nit")
    @classmethod
    def validate_nit(cls, v):
        if v is None or v == "":
            return None
        if not validate_colombia_nit_base(v):
            raise ValueError("NIT inválido. Debe tener entre 8 y 10 dígitos sin dígito de verificación")
        return v.replace(".", "").replace(" ", "")


class MatiasConfigUpdate(MatiasConfigBase):
    """
    Guardar configuración. La contraseña solo se re-cifra si se envía;
    cualquier guardado invalida el token cacheado.
    """
    password: Optional[str] = Field(None, min_length=1, description="Contraseña del API (se almacena cifrada)")


class MatiasConfigOut(MatiasConfigBase):
    """Vista enmascarada: nunca expone secretos ni su texto cifrado."""
    id: UUID
    tenant_id: UUID
    has_password: bool
    has_token: bool
    token_expires_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True
