"""Custom-role permission lookup."""

import logging
import uuid
from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.models.custom_role import Permission, RolePermission, UserCustomRole

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PermissionGrants:
    has_custom_role: bool
    permissions: frozenset[str] = field(default_factory=frozenset)


class PermissionService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def has_custom_role(self, user_id: uuid.UUID) -> bool:
        result = await self.db.execute(
            select(UserCustomRole.id).where(UserCustomRole.user_id == user_id).limit(1)
        )
        return result.scalar_one_or_none() is not None

    async def get_user_permissions(
        self, user_id: uuid.UUID, *, is_platform_admin: bool = False
    ) -> frozenset[str]:
        """Permission codes granted through the user's custom roles.

        Platform admins receive every defined permission code.
        """
        if is_platform_admin:
            result = await self.db.execute(select(Permission.code))
        else:
            result = await self.db.execute(
                select(Permission.code)
                .join(RolePermission, RolePermission.permission_id == Permission.id)
                .join(UserCustomRole, UserCustomRole.role_id == RolePermission.role_id)
                .where(UserCustomRole.user_id == user_id)
                .distinct()
            )
        return frozenset(result.scalars().all())

    async def check_permission(
        self, user_id: uuid.UUID, permission: str, *, is_platform_admin: bool = False
    ) -> bool:
        if is_platform_admin:
            return True
        return permission in await self.get_user_permissions(user_id)

    async def get_grants(
        self, user_id: uuid.UUID | None, *, is_platform_admin: bool = False
    ) -> PermissionGrants:
        if user_id is None:
            return PermissionGrants(has_custom_role=False)
        has_role = await self.has_custom_role(user_id)
        if not has_role and not is_platform_admin:
            return PermissionGrants(has_custom_role=False)
        permissions = await self.get_user_permissions(user_id, is_platform_admin=is_platform_admin)
        return PermissionGrants(has_custom_role=has_role, permissions=permissions)
