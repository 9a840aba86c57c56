from __future__ import annotations

from typing import Optional, Sequence

from payportal.logging import get_logger
from payportal.service.auth import AuthContext
from payportal.service.errors import AuthenticationError, AuthorizationError

logger = get_logger(__name__)


class RoleGuard:
    """Checks the role claim carried by the token; every decision is audited."""

    def require(
        self,
        ctx: Optional[AuthContext],
        allowed_roles: Sequence[str],
        *,
        method: str = "",
        path: str = "",
    ) -> AuthContext:
        if ctx is None:
            logger.warning(
                "role_access_denied", reason="not_authenticated", method=method, path=path
            )
            raise AuthenticationError(
                "Authentication required", error_code="not_authenticated"
            )
        if not ctx.role:
            logger.warning(
                "role_access_denied",
                reason="no_role",
                user_id=ctx.user_id,
                username=ctx.username,
                method=method,
                path=path,
            )
            raise AuthorizationError(
                "Access denied. No role assigned.", error_code="no_role"
            )
        if ctx.role not in allowed_roles:
            logger.warning(
                "role_access_denied",
                reason="insufficient_permissions",
                user_id=ctx.user_id,
                username=ctx.username,
                role=ctx.role,
                required=list(allowed_roles),
                method=method,
                path=path,
            )
            raise AuthorizationError(
                "Access denied. Insufficient permissions.",
                error_code="insufficient_permissions",
                detail={"required": list(allowed_roles), "current": ctx.role},
            )
        logger.info(
            "role_access_granted",
            user_id=ctx.user_id,
            username=ctx.username,
            role=ctx.role,
            method=method,
            path=path,
        )
        return ctx
