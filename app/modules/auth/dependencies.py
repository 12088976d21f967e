"""
Dependencias de autenticación para FastAPI.

Los tokens los emite el servicio de identidad. Llevan `sub` (usuario), `role`
y, opcionalmente, `clinic_id`. Si el token no fija la clínica se toma del
header X-Clinic-ID.
"""
from typing import List
from uuid import UUID
from fastapi import Depends, HTTPException, status, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
import jwt

from app.modules.auth.schemas import AuthContext, UserRole
from app.modules.auth.utils import decode_token

# Security scheme
security = HTTPBearer()


class AuthDependencies:
    """Dependencias de autenticación reutilizables."""

    @staticmethod
    def get_auth_context(
        request: Request,
        credentials: HTTPAuthorizationCredentials = Depends(security)
    ) -> AuthContext:
        """
        Obtener contexto de autenticación con la clínica activa.
        """
        credentials_exception = HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="No se pudieron validar las credenciales",
            headers={"WWW-Authenticate": "Bearer"},
        )

        try:
            payload = decode_token(credentials.credentials)
            user_id = UUID(payload.get("sub"))
        except (jwt.PyJWTError, TypeError, ValueError):
            raise credentials_exception

        try:
            user_role = UserRole(payload["role"]) if payload.get("role") else None
        except ValueError:
            raise credentials_exception

        token_clinic = payload.get("clinic_id")
        header_clinic = getattr(request.state, "clinic_id", None) or request.headers.get("X-Clinic-ID")

        try:
            clinic_id = UUID(str(token_clinic)) if token_clinic else None
            requested = UUID(str(header_clinic)) if header_clinic else None
        except ValueError:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="ID de clínica inválido"
            )

        if clinic_id and requested and clinic_id != requested:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="No tienes acceso a esta clínica"
            )

        return AuthContext(
            user_id=user_id,
            clinic_id=clinic_id or requested,
            user_role=user_role
        )

    @staticmethod
    def require_role(allowed_roles: List[UserRole]):
        """
        Dependencia para requerir roles específicos dentro de una clínica.
        """
        def role_checker(auth_context: AuthContext = Depends(AuthDependencies.get_auth_context)):
            if not auth_context.clinic_id:
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail="Se requiere seleccionar una clínica"
                )

            if auth_context.user_role not in allowed_roles:
                raise HTTPException(
                    status_code=status.HTTP_403_FORBIDDEN,
                    detail=f"Se requiere uno de estos roles: {', '.join(r.value for r in allowed_roles)}"
                )

            return auth_context
        return role_checker

    @staticmethod
    def require_staff():
        """Administración de la clínica: admin o staff."""
        return AuthDependencies.require_role([UserRole.ADMIN, UserRole.STAFF])

    @staticmethod
    def require_clinical():
        """Checkpoint clínico: proveedores y administradores."""
        return AuthDependencies.require_role([UserRole.ADMIN, UserRole.PROVIDER])

    @staticmethod
    def require_any_role():
        return AuthDependencies.require_role(list(UserRole))


# Instancias de dependencias
get_auth_context = AuthDependencies.get_auth_context
require_staff = AuthDependencies.require_staff
require_clinical = AuthDependencies.require_clinical
require_any_role = AuthDependencies.require_any_role
