"""
Validadores específicos para facturación electrónica DIAN (Colombia)
"""
import re
from typing import Optional


def validate_colombia_nit_base(nit: str) -> bool:
    """
    Valida NIT colombiano base (sin dígito de verificación).
    - Entre 8 y 10 dígitos
    - Solo números
    - No puede empezar con 0
    Ejemplo: 901886184
    """
    cleaned = re.sub(r'[\.\s]', '', nit)

    if not cleaned.isdigit():
        return False

    if not 8 <= len(cleaned) <= 10:
        return False

    if cleaned.startswith('0'):
        return False

    return True


def format_colombia_nit_base(nit: str) -> str:
    """
    Formatea NIT base removiendo puntos y espacios
    """
    if not validate_colombia_nit_base(nit):
        return nit  # Retorna sin cambios si no es válido

    return re.sub(r'[\.\s]', '', nit)


def validate_document_prefix(prefix: str) -> bool:
    """
    Valida el prefijo de una resolución de numeración DIAN.
    - 1 a 4 caracteres alfanuméricos
    Ejemplo: SETP, FE, NC
    """
    return bool(re.fullmatch(r'[A-Za-z0-9]{1,4}', prefix.strip()))


def validate_resolution_number(resolution: str) -> bool:
    """
    Valida el número de resolución de facturación DIAN (solo dígitos, hasta 20).
    Ejemplo: 18760000001
    """
    cleaned = resolution.strip()
    return cleaned.isdigit() and 1 <= len(cleaned) <= 20


def normalize_prefix(prefix: Optional[str]) -> Optional[str]:
    """Prefijo en mayúsculas y sin espacios; None se conserva."""
    if prefix is None:
        return None
    return prefix.strip().upper()
