"""Shared test doubles and fixtures for the reconciliation engine.

Provides:
- InMemoryPortalRepository: PortalRepository double with version
  compare-and-set and unique history owners, like the database
- FakeCRMClient: canned Zoho search results, records create/update calls
- FakeProvisioner / RecordingNotifier: account provisioning and notifications
- Fixtures wiring them into ConversionMatcher, WebhookIngestor and SyncReconciler
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from src.partner_portal.reconciliation.crm.adapter import CRMClient
from src.partner_portal.reconciliation.errors import (
    ConcurrencyConflictError,
    DuplicateRecordError,
    EntityNotFoundError,
    InputValidationError,
)
from src.partner_portal.reconciliation.matching import ConversionMatcher
from src.partner_portal.reconciliation.notifications import NotificationSink
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
    UserRead,
    UserRole,
)
from src.partner_portal.reconciliation.sync import SyncReconciler
from src.partner_portal.reconciliation.webhooks import WebhookIngestor
from src.partner_portal.services.account_provisioning import split_contact_name

_EPOCH = datetime(2026, 1, 1, tzinfo=timezone.utc)


# ── In-Memory Repository ─────────────────────────────────────────────────────


class InMemoryPortalRepository:
    """In-memory PortalRepository for testing without database.

    ``failures`` maps a method name to an exception that method raises.
    """

    def __init__(self) -> None:
        self.partners: dict[str, PartnerRead] = {}
        self.users: dict[str, UserRead] = {}
        self.leads: dict[str, LeadRead] = {}
        self.deals: dict[str, DealRead] = {}
        self.lead_history: dict[str, list[LeadStatusHistoryRead]] = {}
        self.deal_history: dict[str, list[DealStageHistoryRead]] = {}
        self.activities: list[ActivityRead] = []
        self.notifications: list[dict[str, Any]] = []
        self.synced_partners: list[str] = []
        self.failures: dict[str, BaseException] = {}
        self._tick = 0

    def _now(self) -> datetime:
        self._tick += 1
        return _EPOCH + timedelta(seconds=self._tick)

    def _maybe_fail(self, method: str) -> None:
        exc = self.failures.get(method)
        if exc is not None:
            raise exc

    # ── Seeding ─────────────────────────────────────────────────────────────

    def add_partner(
        self,
        name: str = "Acme Partners",
        external_id: str | None = "V1",
        approved: bool = True,
        email: str | None = None,
    ) -> PartnerRead:
        partner = PartnerRead(
            id=str(uuid.uuid4()),
            external_id=external_id,
            name=name,
            email=email or f"{name.split()[0].lower()}@example.com",
            approved=approved,
            status="active" if approved else "pending",
            created_at=self._now(),
        )
        self.partners[partner.id] = partner
        return partner

    def add_user(
        self,
        partner_id: str,
        role: UserRole = UserRole.SUB,
        email: str | None = None,
        is_active: bool = True,
        first_name: str = "Test",
        last_name: str = "User",
    ) -> UserRead:
        user = UserRead(
            id=str(uuid.uuid4()),
            partner_id=partner_id,
            email=email or f"user-{len(self.users) + 1}@example.com",
            first_name=first_name,
            last_name=last_name,
            role=role,
            is_active=is_active,
            created_at=self._now(),
        )
        self.users[user.id] = user
        return user

    def add_lead(self, partner_id: str, **fields: Any) -> LeadRead:
        defaults: dict[str, Any] = {
            "first_name": "Ada",
            "last_name": "Lovelace",
            "email": "ada@example.com",
        }
        defaults.update(fields)
        lead = LeadRead(
            id=str(uuid.uuid4()),
            partner_id=partner_id,
            created_at=self._now(),
            **defaults,
        )
        self.leads[lead.id] = lead
        return lead

    # ── Partners & Users ────────────────────────────────────────────────────

    async def get_partner(self, partner_id: str) -> PartnerRead | None:
        return self.partners.get(partner_id)

    async def get_partner_by_external_id(self, external_id: str) -> PartnerRead | None:
        for partner in self.partners.values():
            if partner.external_id == external_id:
                return partner
        return None

    async def list_syncable_partners(self) -> list[PartnerRead]:
        self._maybe_fail("list_syncable_partners")
        partners = [p for p in self.partners.values() if p.approved and p.external_id]
        return sorted(partners, key=lambda p: p.name)

    async def mark_partner_synced(self, partner_id: str, synced_at: datetime) -> None:
        self.partners[partner_id] = self.partners[partner_id].model_copy(
            update={"last_sync_at": synced_at}
        )
        self.synced_partners.append(partner_id)

    async def get_partner_admin_user_id(self, partner_id: str) -> str | None:
        admins = [
            u for u in self.users.values()
            if u.partner_id == partner_id and u.role == UserRole.ADMIN and u.is_active
        ]
        if not admins:
            return None
        return min(admins, key=lambda u: u.created_at).id

    async def get_user(self, user_id: str) -> UserRead | None:
        return self.users.get(user_id)

    async def get_user_by_email(self, email: str) -> UserRead | None:
        email = email.strip().lower()
        for user in self.users.values():
            if user.email.lower() == email:
                return user
        return None

    # ── Leads ───────────────────────────────────────────────────────────────

    async def get_lead(self, lead_id: str) -> LeadRead | None:
        return self.leads.get(lead_id)

    async def get_lead_by_external_id(self, external_id: str) -> LeadRead | None:
        for lead in self.leads.values():
            if lead.external_id == external_id:
                return lead
        return None

    def _newest(self, leads: list[LeadRead]) -> LeadRead | None:
        if not leads:
            return None
        return max(leads, key=lambda lead: lead.created_at)

    async def find_lead_by_email(self, partner_id: str, email: str) -> LeadRead | None:
        email = email.strip().lower()
        return self._newest([
            lead for lead in self.leads.values()
            if lead.partner_id == partner_id and lead.email.lower() == email
        ])

    async def find_lead_by_name_and_company(
        self, partner_id: str, first_name: str, last_name: str, company: str
    ) -> LeadRead | None:
        return self._newest([
            lead for lead in self.leads.values()
            if lead.partner_id == partner_id
            and lead.first_name == first_name
            and lead.last_name == last_name
            and lead.company == company
        ])

    async def find_latest_lead_by_name(
        self, partner_id: str, first_name: str, last_name: str
    ) -> LeadRead | None:
        return self._newest([
            lead for lead in self.leads.values()
            if lead.partner_id == partner_id
            and lead.first_name == first_name
            and lead.last_name == last_name
        ])

    async def create_lead(self, data: LeadCreate) -> LeadRead:
        self._maybe_fail("create_lead")
        if data.external_id and await self.get_lead_by_external_id(data.external_id):
            raise DuplicateRecordError("Lead already exists", external_id=data.external_id)
        now = self._now()
        lead = LeadRead(id=str(uuid.uuid4()), created_at=now, updated_at=now, **data.model_dump())
        self.leads[lead.id] = lead
        return lead

    async def update_lead(
        self, lead_id: str, data: LeadUpdate, expected_version: int
    ) -> LeadRead:
        self._maybe_fail("update_lead")
        current = self.leads.get(lead_id)
        if current is None:
            raise EntityNotFoundError("Lead not found", lead_id=lead_id)
        if current.version != expected_version:
            raise ConcurrencyConflictError(
                "Lead was modified concurrently",
                lead_id=lead_id,
                expected_version=expected_version,
                current_version=current.version,
            )
        changes = data.model_dump(exclude_unset=True)
        new_external_id = changes.get("external_id")
        if new_external_id:
            other = await self.get_lead_by_external_id(new_external_id)
            if other is not None and other.id != lead_id:
                raise DuplicateRecordError("Lead update violates a unique key", lead_id=lead_id)
        updated = current.model_copy(
            update={**changes, "version": current.version + 1, "updated_at": self._now()}
        )
        self.leads[lead_id] = updated
        return updated

    async def delete_lead(self, lead_id: str) -> bool:
        self._maybe_fail("delete_lead")
        self.lead_history.pop(lead_id, None)
        return self.leads.pop(lead_id, None) is not None

    # ── Lead Status History ─────────────────────────────────────────────────

    async def delete_lead_status_history(self, lead_id: str) -> int:
        self._maybe_fail("delete_lead_status_history")
        return len(self.lead_history.pop(lead_id, []))

    async def insert_lead_status_history(
        self, lead_id: str, entry: HistoryEntry
    ) -> LeadStatusHistoryRead:
        if self.lead_history.get(lead_id):
            raise DuplicateRecordError("Lead already has a status history row", lead_id=lead_id)
        row = LeadStatusHistoryRead(
            id=str(uuid.uuid4()),
            lead_id=lead_id,
            old_status=entry.old_value,
            new_status=entry.new_value,
            changed_by=entry.changed_by,
            notes=entry.notes,
            created_at=self._now(),
        )
        self.lead_history[lead_id] = [row]
        return row

    async def list_lead_status_history(self, lead_id: str) -> list[LeadStatusHistoryRead]:
        return list(self.lead_history.get(lead_id, []))

    # ── Deals ───────────────────────────────────────────────────────────────

    async def get_deal(self, deal_id: str) -> DealRead | None:
        return self.deals.get(deal_id)

    async def get_deal_by_external_id(self, external_id: str) -> DealRead | None:
        for deal in self.deals.values():
            if deal.external_id == external_id:
                return deal
        return None

    async def create_deal(self, data: DealCreate) -> DealRead:
        self._maybe_fail("create_deal")
        if await self.get_deal_by_external_id(data.external_id):
            raise DuplicateRecordError("Deal already exists", external_id=data.external_id)
        now = self._now()
        deal = DealRead(id=str(uuid.uuid4()), created_at=now, updated_at=now, **data.model_dump())
        self.deals[deal.id] = deal
        return deal

    async def update_deal(
        self, deal_id: str, data: DealUpdate, expected_version: int
    ) -> DealRead:
        self._maybe_fail("update_deal")
        current = self.deals.get(deal_id)
        if current is None:
            raise EntityNotFoundError("Deal not found", deal_id=deal_id)
        if current.version != expected_version:
            raise ConcurrencyConflictError(
                "Deal was modified concurrently",
                deal_id=deal_id,
                expected_version=expected_version,
                current_version=current.version,
            )
        updated = current.model_copy(
            update={
                **data.model_dump(exclude_unset=True),
                "version": current.version + 1,
                "updated_at": self._now(),
            }
        )
        self.deals[deal_id] = updated
        return updated

    # ── Deal Stage History ──────────────────────────────────────────────────

    async def delete_deal_stage_history(self, deal_id: str) -> int:
        return len(self.deal_history.pop(deal_id, []))

    async def insert_deal_stage_history(
        self, deal_id: str, entry: HistoryEntry
    ) -> DealStageHistoryRead:
        if self.deal_history.get(deal_id):
            raise DuplicateRecordError("Deal already has a stage history row", deal_id=deal_id)
        row = DealStageHistoryRead(
            id=str(uuid.uuid4()),
            deal_id=deal_id,
            old_stage=entry.old_value,
            new_stage=entry.new_value,
            changed_by=entry.changed_by,
            notes=entry.notes,
            created_at=self._now(),
        )
        self.deal_history[deal_id] = [row]
        return row

    async def list_deal_stage_history(self, deal_id: str) -> list[DealStageHistoryRead]:
        return list(self.deal_history.get(deal_id, []))

    # ── Activity Log ────────────────────────────────────────────────────────

    async def insert_activity(self, data: ActivityCreate) -> ActivityRead:
        self._maybe_fail("insert_activity")
        entry = ActivityRead(id=str(uuid.uuid4()), created_at=self._now(), **data.model_dump())
        self.activities.append(entry)
        return entry

    async def get_latest_activity(self, action: str) -> ActivityRead | None:
        matching = [a for a in self.activities if a.action == action]
        return matching[-1] if matching else None

    async def list_activities(
        self, action: str, limit: int = 10, offset: int = 0
    ) -> tuple[list[ActivityRead], int]:
        matching = [a for a in reversed(self.activities) if a.action == action]
        return matching[offset:offset + limit], len(matching)

    def activities_for(self, action: str) -> list[ActivityRead]:
        return [a for a in self.activities if a.action == action]

    # ── Notifications ───────────────────────────────────────────────────────

    async def insert_notification(
        self, user_id: str, message: str, metadata: dict[str, Any]
    ) -> str:
        notification_id = str(uuid.uuid4())
        self.notifications.append(
            {"id": notification_id, "user_id": user_id, "message": message, "metadata": metadata}
        )
        return notification_id


# ── CRM / Provisioning / Notification Doubles ────────────────────────────────


class FakeCRMClient(CRMClient):
    """CRMClient returning canned records per Vendor id."""

    def __init__(self) -> None:
        self.leads: dict[str, list[dict[str, Any]]] = {}
        self.deals: dict[str, list[dict[str, Any]]] = {}
        self.errors: dict[str, BaseException] = {}
        self.created: list[dict[str, Any]] = []
        self.updated: list[tuple[str, dict[str, Any]]] = []
        self.write_error: BaseException | None = None
        self.search_calls: list[tuple[str, str]] = []

    async def get_access_token(self) -> str:
        return "test-token"

    async def search_leads_by_partner(self, partner_external_id: str) -> list[dict[str, Any]]:
        self.search_calls.append(("leads", partner_external_id))
        if partner_external_id in self.errors:
            raise self.errors[partner_external_id]
        return list(self.leads.get(partner_external_id, []))

    async def search_deals_by_partner(self, partner_external_id: str) -> list[dict[str, Any]]:
        self.search_calls.append(("deals", partner_external_id))
        return list(self.deals.get(partner_external_id, []))

    async def create_lead(self, data: dict[str, Any]) -> str:
        if self.write_error is not None:
            raise self.write_error
        self.created.append(data)
        return f"zl-{len(self.created)}"

    async def update_lead(self, external_id: str, data: dict[str, Any]) -> None:
        if self.write_error is not None:
            raise self.write_error
        self.updated.append((external_id, data))


class FakeProvisioner:
    """AccountProvisioner double writing into InMemoryPortalRepository."""

    def __init__(self, repository: InMemoryPortalRepository) -> None:
        self._repository = repository
        self.calls: list[tuple[str, str, str]] = []
        self.sub_calls: list[tuple[str, str, str]] = []

    async def provision_partner(
        self, external_id: str, name: str, email: str
    ) -> tuple[PartnerRead, UserRead]:
        self.calls.append((external_id, name, email))
        if not name.strip() or not email.strip():
            raise InputValidationError("Partner name and email are required")
        if await self._repository.get_partner_by_external_id(external_id):
            raise DuplicateRecordError("Partner or user already exists", external_id=external_id)
        email = email.strip().lower()
        if any(u.email == email for u in self._repository.users.values()):
            raise DuplicateRecordError("Partner or user already exists", external_id=external_id)
        partner = self._repository.add_partner(name=name, external_id=external_id, email=email)
        user = self._repository.add_user(partner.id, role=UserRole.ADMIN, email=email)
        return partner, user

    async def provision_sub_user(self, partner_id: str, name: str, email: str) -> UserRead:
        self.sub_calls.append((partner_id, name, email))
        if not name.strip() or not email.strip():
            raise InputValidationError("Contact name and email are required")
        email = email.strip().lower()
        if await self._repository.get_user_by_email(email):
            raise DuplicateRecordError("User already exists", email=email)
        first_name, last_name = split_contact_name(name)
        return self._repository.add_user(
            partner_id, role=UserRole.SUB, email=email, first_name=first_name, last_name=last_name
        )


class RecordingNotifier(NotificationSink):
    def __init__(self) -> None:
        self.sent: list[tuple[str, str, dict[str, Any]]] = []
        self.error: BaseException | None = None

    async def notify(self, user_id: str, message: str, metadata: dict[str, Any]) -> None:
        if self.error is not None:
            raise self.error
        self.sent.append((user_id, message, metadata))


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture
def repo() -> InMemoryPortalRepository:
    return InMemoryPortalRepository()


@pytest.fixture
def crm() -> FakeCRMClient:
    return FakeCRMClient()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def matcher(repo) -> ConversionMatcher:
    return ConversionMatcher(repo)


@pytest.fixture
def ingestor(repo, matcher, notifier) -> WebhookIngestor:
    return WebhookIngestor(
        repository=repo,
        matcher=matcher,
        provisioner=FakeProvisioner(repo),
        notifier=notifier,
    )


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def reconciler(repo, crm, sleeps) -> SyncReconciler:
    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    return SyncReconciler(
        repository=repo,
        crm_client=crm,
        partner_delay_seconds=1.0,
        partner_timeout_seconds=5.0,
        sleep=fake_sleep,
    )


@pytest.fixture
def partner(repo) -> PartnerRead:
    """Approved partner linked to Zoho Vendor V1."""
    return repo.add_partner(name="Acme Partners", external_id="V1")


@pytest.fixture
def admin(repo, partner) -> UserRead:
    return repo.add_user(partner.id, role=UserRole.ADMIN, email="admin@acme.example")


@pytest.fixture
def sub_user(repo, partner) -> UserRead:
    return repo.add_user(partner.id, role=UserRole.SUB, email="rep@acme.example")
