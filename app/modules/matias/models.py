"""
Configuración de integración MATIAS por tenant.

Un registro por tenant; se crea al guardar la configuración por primera vez y
nunca se elimina, solo se deshabilita. Contraseña y token van cifrados.
"""
from sqlalchemy import Column, String, Boolean, DateTime, Integer, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from uuid import uuid4

from app.database.database import Base
from app.common.mixins import TenantMixin, TimestampMixin


class TenantIntegrationConfig(Base, TenantMixin, TimestampMixin):
    __tablename__ = "tenant_integration_configs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)

    # Conexión
    base_url = Column(String(500), nullable=True)
    email = Column(String(255), nullable=True)
    password_encrypted = Column(Text, nullable=True)
    access_token_encrypted = Column(Text, nullable=True)
    token_expires_at = Column(DateTime(timezone=True), nullable=True)

    # Serie de facturas / POS
    default_resolution_number = Column(String(50), nullable=True)
    default_prefix = Column(String(10), nullable=True)
    starting_number = Column(Integer, nullable=True)
    ending_number = Column(Integer, nullable=True)

    # Serie de notas crédito / débito
    credit_note_resolution_number = Column(String(50), nullable=True)
    credit_note_prefix = Column(String(10), nullable=True)
    credit_note_starting_number = Column(Integer, nullable=True)
    credit_note_ending_number = Column(Integer, nullable=True)

    # Serie de documento soporte
    support_doc_resolution_number = Column(String(50), nullable=True)
    support_doc_prefix = Column(String(10), nullable=True)
    support_doc_starting_number = Column(Integer, nullable=True)
    support_doc_ending_number = Column(Integer, nullable=True)

    # Datos POS electrónico
    pos_terminal_number = Column(String(50), nullable=True)
    pos_sales_code = Column(String(50), nullable=True)
    pos_cashier_type = Column(String(50), nullable=True)
    pos_address = Column(String(255), nullable=True)

    # Software / fabricante
    software_id = Column(String(100), nullable=True)
    software_pin = Column(String(100), nullable=True)
    manufacturer_name = Column(String(255), nullable=True)
    manufacturer_nit = Column(String(20), nullable=True)

    is_enabled = Column(Boolean, default=False, nullable=False)
    auto_submit_sales = Column(Boolean, default=False, nullable=False)

    __table_args__ = (
        UniqueConstraint("tenant_id", name="uq_integration_config_tenant"),
    )
