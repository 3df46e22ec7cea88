"""Partner account provisioning service.

Creates a partner and its first admin user in one transaction when Zoho
approves a new Vendor, and sub users when Zoho adds a contact under one.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.partner_portal.reconciliation.errors import DuplicateRecordError, InputValidationError
from src.partner_portal.reconciliation.models import PartnerModel, UserModel
from src.partner_portal.reconciliation.schemas import PartnerRead, UserRead, UserRole

logger = structlog.get_logger(__name__)


def split_contact_name(full_name: str) -> tuple[str, str]:
    """Split "First Last Name" into ("First", "Last Name")."""
    parts = full_name.split()
    if not parts:
        return "", ""
    return parts[0], " ".join(parts[1:])


class AccountProvisioner:
    """Transactional partner + admin user creation.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    async def provision_partner(
        self, external_id: str, name: str, email: str
    ) -> tuple[PartnerRead, UserRead]:
        """Create an approved, active partner and its admin user atomically.

        Args:
            external_id: Zoho Vendor id.
            name: Vendor display name (also split into the admin's names).
            email: Partner contact email, used as the admin login.

        Returns:
            Tuple of (partner, admin user).

        Raises:
            InputValidationError: name or email is blank.
            DuplicateRecordError: partner external id or user email already taken.
        """
        name = name.strip()
        email = email.strip().lower()
        if not name or not email:
            raise InputValidationError("Partner name and email are required")

        first_name, last_name = split_contact_name(name)

        async for session in self._session_factory():
            partner = PartnerModel(
                external_id=external_id,
                name=name,
                email=email,
                approved=True,
                status="active",
            )
            session.add(partner)
            try:
                await session.flush()
                user = UserModel(
                    partner_id=partner.id,
                    email=email,
                    first_name=first_name or name,
                    last_name=last_name,
                    role=UserRole.ADMIN.value,
                    is_active=True,
                )
                session.add(user)
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                logger.warning(
                    "provisioning.duplicate",
                    external_id=external_id,
                    email=email,
                )
                raise DuplicateRecordError(
                    "Partner or user already exists",
                    external_id=external_id,
                ) from exc

            await session.refresh(partner)
            await session.refresh(user)
            logger.info(
                "provisioning.partner_created",
                partner_id=str(partner.id),
                user_id=str(user.id),
                external_id=external_id,
            )
            return (
                PartnerRead(
                    id=str(partner.id),
                    external_id=partner.external_id,
                    name=partner.name,
                    email=partner.email,
                    approved=partner.approved,
                    status=partner.status,
                    created_at=partner.created_at,
                ),
                UserRead(
                    id=str(user.id),
                    partner_id=str(partner.id),
                    email=user.email,
                    first_name=user.first_name,
                    last_name=user.last_name,
                    role=UserRole.ADMIN,
                    is_active=user.is_active,
                    created_at=user.created_at,
                ),
            )

    async def provision_sub_user(self, partner_id: str, name: str, email: str) -> UserRead:
        """Create an active ``sub`` user under an existing partner.

        Raises:
            InputValidationError: name or email is blank.
            DuplicateRecordError: the email already belongs to a user.
        """
        name = name.strip()
        email = email.strip().lower()
        if not name or not email:
            raise InputValidationError("Contact name and email are required")

        first_name, last_name = split_contact_name(name)

        async for session in self._session_factory():
            user = UserModel(
                partner_id=uuid.UUID(partner_id),
                email=email,
                first_name=first_name,
                last_name=last_name,
                role=UserRole.SUB.value,
                is_active=True,
            )
            session.add(user)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                logger.warning("provisioning.duplicate_user", partner_id=partner_id, email=email)
                raise DuplicateRecordError("User already exists", email=email) from exc

            await session.refresh(user)
            logger.info("provisioning.sub_user_created", partner_id=partner_id, user_id=str(user.id))
            return UserRead(
                id=str(user.id),
                partner_id=partner_id,
                email=user.email,
                first_name=user.first_name,
                last_name=user.last_name,
                role=UserRole.SUB,
                is_active=user.is_active,
                created_at=user.created_at,
            )
