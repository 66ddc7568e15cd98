"""
Dependencias de autenticación de operadores internos.

Modelo de roles único y explícito: el rol es el almacenado en internal_users,
sin mapeos desde roles de usuarios de tenants.
"""
from typing import List
from uuid import UUID

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy import select

from app.dependencies.dbDependecies import async_db_dependency
from app.modules.internal_admin.models import InternalUser, InternalRole, ALL_INTERNAL_ROLES
from app.modules.internal_admin.utils import decode_internal_token

security = HTTPBearer(auto_error=False)


class InternalAuthDependencies:
    """Dependencias reutilizables para la consola interna."""

    @staticmethod
    async def get_current_internal_user(
        db: async_db_dependency,
        credentials: HTTPAuthorizationCredentials = Depends(security),
    ) -> InternalUser:
        """Obtener el operador interno desde el token JWT."""
        if credentials is None:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Autenticación requerida",
                headers={"WWW-Authenticate": "Bearer"},
            )

        payload = decode_internal_token(credentials.credentials)

        try:
            user_id = UUID(payload["sub"])
        except (ValueError, TypeError):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="No se pudieron validar las credenciales",
                headers={"WWW-Authenticate": "Bearer"},
            )

        result = await db.execute(select(InternalUser).where(InternalUser.id == user_id))
        user = result.scalar_one_or_none()
        if user is None or not user.is_active:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Operador inactivo o inexistente",
                headers={"WWW-Authenticate": "Bearer"},
            )
        return user

    @staticmethod
    def require_role(allowed_roles: List[str]):
        """
        Crear dependencia que requiere roles específicos.

        Usage:
            @router.post("/x", dependencies=[Depends(InternalAuthDependencies.require_role(["superadmin"]))])
        """
        async def role_checker(
            user: InternalUser = Depends(InternalAuthDependencies.get_current_internal_user),
        ) -> InternalUser:
            if user.role not in allowed_roles:
                raise HTTPException(
                    status_code=status.HTTP_403_FORBIDDEN,
                    detail=f"Permisos insuficientes. Roles requeridos: {', '.join(allowed_roles)}",
                )
            return user

        return role_checker


# Aliases
require_any_internal = InternalAuthDependencies.require_role(ALL_INTERNAL_ROLES)
require_superadmin = InternalAuthDependencies.require_role([InternalRole.SUPERADMIN.value])
require_support = InternalAuthDependencies.require_role(
    [InternalRole.SUPERADMIN.value, InternalRole.SUPPORT_AGENT.value]
)
require_billing = InternalAuthDependencies.require_role(
    [InternalRole.SUPERADMIN.value, InternalRole.BILLING_OPS.value]
)
