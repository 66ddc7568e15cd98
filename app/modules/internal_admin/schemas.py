"""
Pydantic schemas de la consola interna.
"""
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, EmailStr, Field
from datetime import datetime
from uuid import UUID

from .models import InternalRole


# ===== AUTH =====

class InternalLoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class InternalUserOut(BaseModel):
    id: UUID
    email: str
    name: str
    role: InternalRole
    is_active: bool
    last_login_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class InternalTokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: InternalUserOut


# ===== INTEGRACIÓN POR TENANT =====

class IntegrationStatus(BaseModel):
    """Estado de la integración de un tenant, sin secretos."""
    tenant_id: UUID
    is_configured: bool
    status: str = Field(..., description="not_configured | disabled | configured")
    base_url: Optional[str] = None
    email: Optional[str] = None
    has_password: bool = False
    has_token: bool = False
    token_expires_at: Optional[datetime] = None
    default_resolution_number: Optional[str] = None
    default_prefix: Optional[str] = None
    starting_number: Optional[int] = None
    ending_number: Optional[int] = None
    credit_note_resolution_number: Optional[str] = None
    credit_note_prefix: Optional[str] = None
    credit_note_starting_number: Optional[int] = None
    credit_note_ending_number: Optional[int] = None
    support_doc_resolution_number: Optional[str] = None
    support_doc_prefix: Optional[str] = None


class IntegrationIssue(BaseModel):
    tenant_id: UUID
    issue: str = Field(..., description="no_token | token_expired")
    message: str


# ===== CONFIGURACIÓN DE PLATAFORMA =====

class PlatformMatiasConfig(BaseModel):
    base_url: str
    email: str = ""
    has_password: bool = False
    is_enabled: bool = False
    skip_ssl: bool = False


class PlatformMatiasConfigUpdate(BaseModel):
    base_url: Optional[str] = Field(None, max_length=500)
    email: Optional[str] = Field(None, max_length=255)
    password: Optional[str] = Field(None, min_length=1, description="Solo se actualiza si se envía")
    is_enabled: bool = False
    skip_ssl: bool = False


# ===== AUDITORÍA =====

class AuditLogOut(BaseModel):
    id: UUID
    actor_internal_user_id: Optional[UUID] = None
    action_type: str
    tenant_id: Optional[UUID] = None
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = Field(None, validation_alias="metadata_json")
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class AuditLogList(BaseModel):
    logs: List[AuditLogOut]
    total: int
    limit: int
    offset: int
