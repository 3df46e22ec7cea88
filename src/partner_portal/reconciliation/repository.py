"""Portal repository -- async persistence for partners, leads, deals and audit rows.

Provides PortalRepository with the session_factory callable pattern. Handles
serialization between Pydantic schemas and SQLAlchemy models.

Lead and deal updates are compare-and-set on the ``version`` column: the
caller passes the version it read, and a concurrent writer that got there
first turns the update into ConcurrencyConflictError instead of a silent
overwrite. Unique-key violations surface as DuplicateRecordError.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Callable
from datetime import datetime
from enum import Enum
from typing import Any

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.partner_portal.reconciliation.errors import (
    ConcurrencyConflictError,
    DuplicateRecordError,
    EntityNotFoundError,
)
from src.partner_portal.reconciliation.models import (
    ActivityLogModel,
    DealModel,
    DealStageHistoryModel,
    LeadModel,
    LeadStatusHistoryModel,
    NotificationModel,
    PartnerModel,
    UserModel,
)
from src.partner_portal.reconciliation.schemas import (
    ActivityCreate,
    ActivityRead,
    DealCreate,
    DealRead,
    DealStageHistoryRead,
    DealUpdate,
    HistoryEntry,
    LeadCreate,
    LeadRead,
    LeadStatusHistoryRead,
    LeadUpdate,
    PartnerRead,
    SyncState,
    UserRead,
    UserRole,
)

logger = structlog.get_logger(__name__)

_UUID_COLUMNS = frozenset({"partner_id", "created_by_user_id", "converted_from_lead_id"})


# ── Serialization Helpers ───────────────────────────────────────────────────


def _uuid_or_none(value: str | None) -> uuid.UUID | None:
    return uuid.UUID(value) if value else None


def _str_or_none(value: uuid.UUID | None) -> str | None:
    return str(value) if value else None


def _parse_uuid(value: str) -> uuid.UUID | None:
    """Parse a caller-supplied id; a malformed id matches no row."""
    try:
        return uuid.UUID(value)
    except (TypeError, ValueError):
        return None


def _column_values(data: dict[str, Any]) -> dict[str, Any]:
    """Convert schema values into column values (UUIDs, enum values)."""
    values: dict[str, Any] = {}
    for key, value in data.items():
        if key in _UUID_COLUMNS:
            value = _uuid_or_none(value)
        elif isinstance(value, Enum):
            value = value.value
        values[key] = value
    return values


def _model_to_partner(model: PartnerModel) -> PartnerRead:
    return PartnerRead(
        id=str(model.id),
        external_id=model.external_id,
        name=model.name,
        email=model.email,
        approved=bool(model.approved),
        status=model.status,
        last_sync_at=model.last_sync_at,
        created_at=model.created_at,
    )


def _model_to_user(model: UserModel) -> UserRead:
    return UserRead(
        id=str(model.id),
        partner_id=str(model.partner_id),
        email=model.email,
        first_name=model.first_name,
        last_name=model.last_name,
        role=UserRole(model.role),
        is_active=bool(model.is_active),
        created_at=model.created_at,
    )


def _model_to_lead(model: LeadModel) -> LeadRead:
    """Convert LeadModel to LeadRead schema."""
    return LeadRead(
        id=str(model.id),
        external_id=model.external_id,
        partner_id=str(model.partner_id),
        created_by_user_id=_str_or_none(model.created_by_user_id),
        first_name=model.first_name,
        last_name=model.last_name,
        email=model.email,
        phone=model.phone,
        company=model.company,
        status=model.status,
        external_status_raw=model.external_status_raw,
        lead_source=model.lead_source,
        sync_state=SyncState(model.sync_state),
        last_sync_at=model.last_sync_at,
        version=model.version,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def _model_to_deal(model: DealModel) -> DealRead:
    """Convert DealModel to DealRead schema."""
    return DealRead(
        id=str(model.id),
        external_id=model.external_id,
        partner_id=str(model.partner_id),
        created_by_user_id=_str_or_none(model.created_by_user_id),
        converted_from_lead_id=_str_or_none(model.converted_from_lead_id),
        name=model.name,
        first_name=model.first_name,
        last_name=model.last_name,
        email=model.email,
        phone=model.phone,
        company=model.company,
        stage=model.stage,
        external_stage_raw=model.external_stage_raw,
        approval_date=model.approval_date,
        sync_state=SyncState(model.sync_state),
        last_sync_at=model.last_sync_at,
        version=model.version,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def _model_to_activity(model: ActivityLogModel) -> ActivityRead:
    return ActivityRead(
        id=str(model.id),
        partner_id=_str_or_none(model.partner_id),
        user_id=_str_or_none(model.user_id),
        entity_type=model.entity_type,
        entity_id=model.entity_id,
        action=model.action,
        description=model.description,
        metadata=model.metadata_json or {},
        created_at=model.created_at,
    )


# ── Repository ──────────────────────────────────────────────────────────────


class PortalRepository:
    """Async persistence for the reconciliation engine.

    Args:
        session_factory: Async callable that yields AsyncSession instances.
    """

    def __init__(
        self, session_factory: Callable[..., AsyncGenerator[AsyncSession, None]]
    ) -> None:
        self._session_factory = session_factory

    # ── Partners & Users ────────────────────────────────────────────────────

    async def get_partner(self, partner_id: str) -> PartnerRead | None:
        row_id = _parse_uuid(partner_id)
        if row_id is None:
            return None
        async for session in self._session_factory():
            model = await session.get(PartnerModel, row_id)
            return _model_to_partner(model) if model else None

    async def get_partner_by_external_id(self, external_id: str) -> PartnerRead | None:
        """Look up a partner by its Zoho Vendor id."""
        async for session in self._session_factory():
            result = await session.execute(
                select(PartnerModel).where(PartnerModel.external_id == external_id)
            )
            model = result.scalar_one_or_none()
            return _model_to_partner(model) if model else None

    async def list_syncable_partners(self) -> list[PartnerRead]:
        """Approved partners linked to a Zoho Vendor, ordered by name."""
        async for session in self._session_factory():
            result = await session.execute(
                select(PartnerModel)
                .where(
                    PartnerModel.approved.is_(True),
                    PartnerModel.external_id.is_not(None),
                )
                .order_by(PartnerModel.name)
            )
            return [_model_to_partner(m) for m in result.scalars().all()]

    async def mark_partner_synced(self, partner_id: str, synced_at: datetime) -> None:
        async for session in self._session_factory():
            await session.execute(
                update(PartnerModel)
                .where(PartnerModel.id == uuid.UUID(partner_id))
                .values(last_sync_at=synced_at)
            )
            await session.commit()

    async def get_partner_admin_user_id(self, partner_id: str) -> str | None:
        """Return the partner's designated admin: first active admin by creation time."""
        async for session in self._session_factory():
            result = await session.execute(
                select(UserModel.id)
                .where(
                    UserModel.partner_id == uuid.UUID(partner_id),
                    UserModel.role == UserRole.ADMIN.value,
                    UserModel.is_active.is_(True),
                )
                .order_by(UserModel.created_at)
                .limit(1)
            )
            return _str_or_none(result.scalar_one_or_none())

    async def get_user(self, user_id: str) -> UserRead | None:
        user_uuid = _parse_uuid(user_id)
        if user_uuid is None:
            return None
        async for session in self._session_factory():
            model = await session.get(UserModel, user_uuid)
            return _model_to_user(model) if model else None

    async def get_user_by_email(self, email: str) -> UserRead | None:
        """Case-insensitive login email lookup across all partners."""
        async for session in self._session_factory():
            result = await session.execute(
                select(UserModel).where(func.lower(UserModel.email) == email.strip().lower())
            )
            model = result.scalar_one_or_none()
            return _model_to_user(model) if model else None

    # ── Leads ───────────────────────────────────────────────────────────────

    async def get_lead(self, lead_id: str) -> LeadRead | None:
        row_id = _parse_uuid(lead_id)
        if row_id is None:
            return None
        async for session in self._session_factory():
            model = await session.get(LeadModel, row_id)
            return _model_to_lead(model) if model else None

    async def get_lead_by_external_id(self, external_id: str) -> LeadRead | None:
        async for session in self._session_factory():
            result = await session.execute(
                select(LeadModel).where(LeadModel.external_id == external_id)
            )
            model = result.scalar_one_or_none()
            return _model_to_lead(model) if model else None

    async def find_lead_by_email(self, partner_id: str, email: str) -> LeadRead | None:
        """Case-insensitive email lookup scoped to one partner (newest first)."""
        async for session in self._session_factory():
            result = await session.execute(
                select(LeadModel)
                .where(
                    LeadModel.partner_id == uuid.UUID(partner_id),
                    func.lower(LeadModel.email) == email.strip().lower(),
                )
                .order_by(LeadModel.created_at.desc())
                .limit(1)
            )
            model = result.scalar_one_or_none()
            return _model_to_lead(model) if model else None

    async def find_lead_by_name_and_company(
        self,
        partner_id: str,
        first_name: str,
        last_name: str,
        company: str,
    ) -> LeadRead | None:
        async for session in self._session_factory():
            result = await session.execute(
                select(LeadModel)
                .where(
                    LeadModel.partner_id == uuid.UUID(partner_id),
                    LeadModel.first_name == first_name,
                    LeadModel.last_name == last_name,
                    LeadModel.company == company,
                )
                .order_by(LeadModel.created_at.desc())
                .limit(1)
            )
            model = result.scalar_one_or_none()
            return _model_to_lead(model) if model else None

    async def find_latest_lead_by_name(
        self,
        partner_id: str,
        first_name: str,
        last_name: str,
    ) -> LeadRead | None:
        """Most recently created lead with this exact first + last name."""
        async for session in self._session_factory():
            result = await session.execute(
                select(LeadModel)
                .where(
                    LeadModel.partner_id == uuid.UUID(partner_id),
                    LeadModel.first_name == first_name,
                    LeadModel.last_name == last_name,
                )
                .order_by(LeadModel.created_at.desc())
                .limit(1)
            )
            model = result.scalar_one_or_none()
            return _model_to_lead(model) if model else None

    async def create_lead(self, data: LeadCreate) -> LeadRead:
        """Insert a lead.

        Raises:
            DuplicateRecordError: external_id already taken.
        """
        async for session in self._session_factory():
            model = LeadModel(**_column_values(data.model_dump()))
            session.add(model)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise DuplicateRecordError(
                    "Lead already exists", external_id=data.external_id
                ) from exc
            await session.refresh(model)
            return _model_to_lead(model)

    async def update_lead(
        self, lead_id: str, data: LeadUpdate, expected_version: int
    ) -> LeadRead:
        """Compare-and-set update of the fields explicitly set on ``data``.

        Raises:
            EntityNotFoundError: lead no longer exists.
            ConcurrencyConflictError: lead version changed since it was read.
            DuplicateRecordError: external_id collides with another lead.
        """
        lead_uuid = uuid.UUID(lead_id)
        async for session in self._session_factory():
            stmt = (
                update(LeadModel)
                .where(LeadModel.id == lead_uuid, LeadModel.version == expected_version)
                .values(
                    **_column_values(data.model_dump(exclude_unset=True)),
                    version=LeadModel.version + 1,
                    updated_at=func.now(),
                )
                .returning(LeadModel)
                .execution_options(synchronize_session=False)
            )
            try:
                model = (await session.scalars(stmt)).one_or_none()
            except IntegrityError as exc:
                await session.rollback()
                raise DuplicateRecordError(
                    "Lead update violates a unique key", lead_id=lead_id
                ) from exc
            if model is None:
                await session.rollback()
                current = await session.get(LeadModel, lead_uuid)
                if current is None:
                    raise EntityNotFoundError("Lead not found", lead_id=lead_id)
                raise ConcurrencyConflictError(
                    "Lead was modified concurrently",
                    lead_id=lead_id,
                    expected_version=expected_version,
                    current_version=current.version,
                )
            await session.commit()
            return _model_to_lead(model)

    async def delete_lead(self, lead_id: str) -> bool:
        """Hard-delete a lead. Returns False if it was already gone."""
        async for session in self._session_factory():
            result = await session.execute(
                delete(LeadModel).where(LeadModel.id == uuid.UUID(lead_id))
            )
            await session.commit()
            return result.rowcount > 0

    # ── Lead Status History ─────────────────────────────────────────────────

    async def delete_lead_status_history(self, lead_id: str) -> int:
        async for session in self._session_factory():
            result = await session.execute(
                delete(LeadStatusHistoryModel).where(
                    LeadStatusHistoryModel.lead_id == uuid.UUID(lead_id)
                )
            )
            await session.commit()
            return result.rowcount

    async def insert_lead_status_history(
        self, lead_id: str, entry: HistoryEntry
    ) -> LeadStatusHistoryRead:
        """Insert a history row; the unique lead_id rejects a second row."""
        async for session in self._session_factory():
            model = LeadStatusHistoryModel(
                lead_id=uuid.UUID(lead_id),
                old_status=entry.old_value,
                new_status=entry.new_value,
                changed_by=_uuid_or_none(entry.changed_by),
                notes=entry.notes,
            )
            session.add(model)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise DuplicateRecordError(
                    "Lead already has a status history row", lead_id=lead_id
                ) from exc
            await session.refresh(model)
            return LeadStatusHistoryRead(
                id=str(model.id),
                lead_id=lead_id,
                old_status=model.old_status,
                new_status=model.new_status,
                changed_by=_str_or_none(model.changed_by),
                notes=model.notes,
                created_at=model.created_at,
            )

    async def list_lead_status_history(self, lead_id: str) -> list[LeadStatusHistoryRead]:
        async for session in self._session_factory():
            result = await session.execute(
                select(LeadStatusHistoryModel).where(
                    LeadStatusHistoryModel.lead_id == uuid.UUID(lead_id)
                )
            )
            return [
                LeadStatusHistoryRead(
                    id=str(m.id),
                    lead_id=lead_id,
                    old_status=m.old_status,
                    new_status=m.new_status,
                    changed_by=_str_or_none(m.changed_by),
                    notes=m.notes,
                    created_at=m.created_at,
                )
                for m in result.scalars().all()
            ]

    # ── Deals ───────────────────────────────────────────────────────────────

    async def get_deal(self, deal_id: str) -> DealRead | None:
        row_id = _parse_uuid(deal_id)
        if row_id is None:
            return None
        async for session in self._session_factory():
            model = await session.get(DealModel, row_id)
            return _model_to_deal(model) if model else None

    async def get_deal_by_external_id(self, external_id: str) -> DealRead | None:
        async for session in self._session_factory():
            result = await session.execute(
                select(DealModel).where(DealModel.external_id == external_id)
            )
            model = result.scalar_one_or_none()
            return _model_to_deal(model) if model else None

    async def create_deal(self, data: DealCreate) -> DealRead:
        """Insert a deal.

        Raises:
            DuplicateRecordError: a deal with this external_id already exists.
        """
        async for session in self._session_factory():
            model = DealModel(**_column_values(data.model_dump()))
            session.add(model)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise DuplicateRecordError(
                    "Deal already exists", external_id=data.external_id
                ) from exc
            await session.refresh(model)
            return _model_to_deal(model)

    async def update_deal(
        self, deal_id: str, data: DealUpdate, expected_version: int
    ) -> DealRead:
        """Compare-and-set update of the fields explicitly set on ``data``.

        Raises:
            EntityNotFoundError: deal does not exist.
            ConcurrencyConflictError: deal version changed since it was read.
        """
        deal_uuid = uuid.UUID(deal_id)
        async for session in self._session_factory():
            stmt = (
                update(DealModel)
                .where(DealModel.id == deal_uuid, DealModel.version == expected_version)
                .values(
                    **_column_values(data.model_dump(exclude_unset=True)),
                    version=DealModel.version + 1,
                    updated_at=func.now(),
                )
                .returning(DealModel)
                .execution_options(synchronize_session=False)
            )
            model = (await session.scalars(stmt)).one_or_none()
            if model is None:
                await session.rollback()
                current = await session.get(DealModel, deal_uuid)
                if current is None:
                    raise EntityNotFoundError("Deal not found", deal_id=deal_id)
                raise ConcurrencyConflictError(
                    "Deal was modified concurrently",
                    deal_id=deal_id,
                    expected_version=expected_version,
                    current_version=current.version,
                )
            await session.commit()
            return _model_to_deal(model)

    # ── Deal Stage History ──────────────────────────────────────────────────

    async def delete_deal_stage_history(self, deal_id: str) -> int:
        async for session in self._session_factory():
            result = await session.execute(
                delete(DealStageHistoryModel).where(
                    DealStageHistoryModel.deal_id == uuid.UUID(deal_id)
                )
            )
            await session.commit()
            return result.rowcount

    async def insert_deal_stage_history(
        self, deal_id: str, entry: HistoryEntry
    ) -> DealStageHistoryRead:
        """Insert a history row; the unique deal_id rejects a second row."""
        async for session in self._session_factory():
            model = DealStageHistoryModel(
                deal_id=uuid.UUID(deal_id),
                old_stage=entry.old_value,
                new_stage=entry.new_value,
                changed_by=_uuid_or_none(entry.changed_by),
                notes=entry.notes,
            )
            session.add(model)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise DuplicateRecordError(
                    "Deal already has a stage history row", deal_id=deal_id
                ) from exc
            await session.refresh(model)
            return DealStageHistoryRead(
                id=str(model.id),
                deal_id=deal_id,
                old_stage=model.old_stage,
                new_stage=model.new_stage,
                changed_by=_str_or_none(model.changed_by),
                notes=model.notes,
                created_at=model.created_at,
            )

    async def list_deal_stage_history(self, deal_id: str) -> list[DealStageHistoryRead]:
        async for session in self._session_factory():
            result = await session.execute(
                select(DealStageHistoryModel).where(
                    DealStageHistoryModel.deal_id == uuid.UUID(deal_id)
                )
            )
            return [
                DealStageHistoryRead(
                    id=str(m.id),
                    deal_id=deal_id,
                    old_stage=m.old_stage,
                    new_stage=m.new_stage,
                    changed_by=_str_or_none(m.changed_by),
                    notes=m.notes,
                    created_at=m.created_at,
                )
                for m in result.scalars().all()
            ]

    # ── Activity Log ────────────────────────────────────────────────────────

    async def insert_activity(self, data: ActivityCreate) -> ActivityRead:
        async for session in self._session_factory():
            model = ActivityLogModel(
                partner_id=_uuid_or_none(data.partner_id),
                user_id=_uuid_or_none(data.user_id),
                entity_type=data.entity_type,
                entity_id=data.entity_id,
                action=data.action,
                description=data.description,
                metadata_json=data.metadata,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return _model_to_activity(model)

    async def get_latest_activity(self, action: str) -> ActivityRead | None:
        async for session in self._session_factory():
            result = await session.execute(
                select(ActivityLogModel)
                .where(ActivityLogModel.action == action)
                .order_by(ActivityLogModel.created_at.desc())
                .limit(1)
            )
            model = result.scalar_one_or_none()
            return _model_to_activity(model) if model else None

    async def list_activities(
        self, action: str, limit: int = 10, offset: int = 0
    ) -> tuple[list[ActivityRead], int]:
        """Page through activity entries for one action, newest first.

        Returns:
            Tuple of (entries, total matching count).
        """
        async for session in self._session_factory():
            total = await session.scalar(
                select(func.count())
                .select_from(ActivityLogModel)
                .where(ActivityLogModel.action == action)
            )
            result = await session.execute(
                select(ActivityLogModel)
                .where(ActivityLogModel.action == action)
                .order_by(ActivityLogModel.created_at.desc())
                .limit(limit)
                .offset(offset)
            )
            return [_model_to_activity(m) for m in result.scalars().all()], int(total or 0)

    # ── Notifications ───────────────────────────────────────────────────────

    async def insert_notification(
        self, user_id: str, message: str, metadata: dict[str, Any]
    ) -> str:
        async for session in self._session_factory():
            model = NotificationModel(
                user_id=uuid.UUID(user_id),
                message=message,
                metadata_json=metadata,
            )
            session.add(model)
            await session.commit()
            await session.refresh(model)
            return str(model.id)
