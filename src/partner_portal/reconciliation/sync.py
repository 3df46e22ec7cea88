"""Full CRM reconciliation -- SyncReconciler.

Walks every approved partner linked to a Zoho Vendor and mirrors the
partner's Zoho leads and deals into portal storage. Partners are processed
sequentially with a fixed pause between them to stay under Zoho's rate
limits, each under its own timeout.

Failure isolation has two levels:
- record: a malformed or failing record is skipped and counted, the batch goes on
- partner: a failing (or timed out) partner is recorded on its result and in
  the run's global error list, later partners still run

Only one run may be in flight at a time; a second start raises
SyncAlreadyRunningError.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Any

import structlog

from src.partner_portal.core.monitoring import (
    crm_lead_conversions_total,
    crm_sync_duration_seconds,
    crm_sync_records_total,
    crm_sync_runs_total,
)
from src.partner_portal.reconciliation.crm.adapter import CRMClient
from src.partner_portal.reconciliation.crm.field_mapping import (
    DEFAULT_LEAD_SOURCE,
    deal_from_zoho,
    lead_from_zoho,
)
from src.partner_portal.reconciliation.crm.stage_map import to_portal_stage
from src.partner_portal.reconciliation.crm.status_map import (
    is_converted_status,
    normalize_portal_status,
    to_portal_status,
)
from src.partner_portal.reconciliation.errors import (
    MalformedRecordError,
    SyncAlreadyRunningError,
)
from src.partner_portal.reconciliation.history import HistoryInvariantEnforcer
from src.partner_portal.reconciliation.schemas import (
    ActivityAction,
    ActivityCreate,
    DealCreate,
    DealRead,
    DealUpdate,
    EntitySyncCounts,
    HistoryEntry,
    LeadCreate,
    LeadRead,
    LeadUpdate,
    PartnerRead,
    PartnerSyncResult,
    SyncRunResult,
    SyncState,
    SyncTotals,
    SyncTrigger,
)
from src.partner_portal.reconciliation.versioning import compare_and_set

logger = structlog.get_logger(__name__)

CREATED = "created"
UPDATED = "updated"
SKIPPED = "skipped"

_DEAL_CONTACT_FIELDS = ("first_name", "last_name", "email", "phone", "company", "approval_date")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncReconciler:
    """Reconciles portal leads and deals against Zoho, one partner at a time.

    Args:
        repository: PortalRepository.
        crm_client: CRMClient used for the per-partner searches.
        partner_delay_seconds: Pause between two partners.
        partner_timeout_seconds: Upper bound for one partner's pass.
        sleep: Awaitable sleep, injectable for tests.
    """

    def __init__(
        self,
        repository: Any,
        crm_client: CRMClient,
        partner_delay_seconds: float = 1.0,
        partner_timeout_seconds: float = 300.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._repository = repository
        self._crm = crm_client
        self._partner_delay_seconds = partner_delay_seconds
        self._partner_timeout_seconds = partner_timeout_seconds
        self._sleep = sleep
        self._deal_history = HistoryInvariantEnforcer.for_deal_stage(repository)
        self._lock = asyncio.Lock()
        self._last_result: SyncRunResult | None = None

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    @property
    def last_result(self) -> SyncRunResult | None:
        """Result of the most recent run in this process, if any."""
        return self._last_result

    # ── Full Run ────────────────────────────────────────────────────────────

    async def run_all(
        self,
        trigger: SyncTrigger = SyncTrigger.MANUAL,
        triggered_by: str | None = None,
    ) -> SyncRunResult:
        """Reconcile every syncable partner.

        Args:
            trigger: What started the run (recorded in logs, metrics, activity).
            triggered_by: Operator id for manual runs.

        Returns:
            Aggregate SyncRunResult, also on partial failure.

        Raises:
            SyncAlreadyRunningError: another run is in flight.
        """
        if self._lock.locked():
            logger.warning("sync.already_running", trigger=trigger.value)
            raise SyncAlreadyRunningError("A CRM sync run is already in progress")

        async with self._lock:
            started = time.perf_counter()
            result = await self._run(trigger, triggered_by)
            duration = time.perf_counter() - started

            if result.success:
                status = "success"
            elif result.successful_syncs:
                status = "partial"
            else:
                status = "failed"
            crm_sync_runs_total.labels(trigger=trigger.value, status=status).inc()
            crm_sync_duration_seconds.labels(trigger=trigger.value).observe(duration)

            self._last_result = result
            logger.info(
                "sync.run_complete",
                trigger=trigger.value,
                status=status,
                total_partners=result.total_partners,
                successful_syncs=result.successful_syncs,
                errors=len(result.errors),
                duration_seconds=round(duration, 2),
            )
            return result

    async def _run(self, trigger: SyncTrigger, triggered_by: str | None) -> SyncRunResult:
        result = SyncRunResult(success=False, trigger=trigger, started_at=_utcnow())
        logger.info("sync.run_started", trigger=trigger.value, triggered_by=triggered_by)

        try:
            partners = await self._repository.list_syncable_partners()
        except Exception as exc:
            logger.error("sync.list_partners_failed", error=str(exc))
            result.errors.append(f"Failed to load partners: {exc}")
            partners = []

        result.total_partners = len(partners)
        for index, partner in enumerate(partners):
            if index > 0 and self._partner_delay_seconds > 0:
                await self._sleep(self._partner_delay_seconds)

            partner_result = await self._sync_partner_isolated(partner)
            result.results.append(partner_result)
            if partner_result.success:
                result.successful_syncs += 1
            else:
                result.errors.extend(f"{partner.name}: {error}" for error in partner_result.errors)

        result.summary = _summarize(result.results)
        result.finished_at = _utcnow()
        result.success = not result.errors

        try:
            await self._repository.insert_activity(
                ActivityCreate(
                    entity_type="sync",
                    action=ActivityAction.SYNC_COMPLETED.value,
                    description=(
                        f"CRM sync ({trigger.value}) finished: "
                        f"{result.successful_syncs}/{result.total_partners} partners synced"
                    ),
                    metadata={
                        **result.model_dump(mode="json"),
                        "triggered_by": triggered_by,
                    },
                )
            )
        except Exception as exc:
            logger.error("sync.activity_log_failed", error=str(exc))
            result.errors.append(f"Failed to record sync activity: {exc}")
            result.success = False

        return result

    async def _sync_partner_isolated(self, partner: PartnerRead) -> PartnerSyncResult:
        try:
            return await asyncio.wait_for(
                self.sync_partner(partner), timeout=self._partner_timeout_seconds
            )
        except asyncio.TimeoutError:
            message = f"Timed out after {self._partner_timeout_seconds:g}s"
            logger.error("sync.partner_timeout", partner_id=partner.id, partner_name=partner.name)
        except Exception as exc:
            message = str(exc) or exc.__class__.__name__
            logger.error(
                "sync.partner_failed",
                partner_id=partner.id,
                partner_name=partner.name,
                error=message,
            )
        return PartnerSyncResult(
            partner_id=partner.id,
            partner_name=partner.name,
            external_id=partner.external_id,
            success=False,
            errors=[message],
        )

    # ── Per Partner ─────────────────────────────────────────────────────────

    async def sync_partner(self, partner: PartnerRead) -> PartnerSyncResult:
        """Reconcile one partner's leads, then its deals.

        Record-level failures are folded into the returned counts. Errors
        fetching from Zoho or reading the partner admin propagate.
        """
        if not partner.external_id:
            raise ValueError(f"Partner {partner.id} has no Zoho Vendor id")

        log = logger.bind(partner_id=partner.id, vendor_id=partner.external_id)
        admin_id = await self._repository.get_partner_admin_user_id(partner.id)
        if admin_id is None:
            log.warning("sync.partner_admin_missing")

        result = PartnerSyncResult(
            partner_id=partner.id,
            partner_name=partner.name,
            external_id=partner.external_id,
        )

        lead_records = await self._crm.search_leads_by_partner(partner.external_id)
        result.leads = await self._sync_records(
            "lead", lead_records, lambda record, now: self._sync_lead(partner, record, admin_id, now)
        )

        deal_records = await self._crm.search_deals_by_partner(partner.external_id)
        result.deals = await self._sync_records(
            "deal", deal_records, lambda record, now: self._sync_deal(partner, record, admin_id, now)
        )

        await self._repository.mark_partner_synced(partner.id, _utcnow())
        log.info(
            "sync.partner_complete",
            leads=result.leads.model_dump(exclude={"errors"}),
            deals=result.deals.model_dump(exclude={"errors"}),
        )
        return result

    async def _sync_records(
        self,
        entity: str,
        records: list[dict[str, Any]],
        sync_one: Callable[[dict[str, Any], datetime], Awaitable[str]],
    ) -> EntitySyncCounts:
        counts = EntitySyncCounts(total=len(records))
        now = _utcnow()
        for record in records:
            try:
                outcome = await sync_one(record, now)
            except MalformedRecordError as exc:
                outcome = SKIPPED
                counts.errors.append(exc.message)
                logger.warning(f"sync.{entity}_malformed", error=exc.message, **exc.details)
            except Exception as exc:
                outcome = SKIPPED
                counts.errors.append(f"{entity} {record.get('id')}: {exc}")
                logger.error(f"sync.{entity}_failed", external_id=record.get("id"), error=str(exc))

            if outcome == CREATED:
                counts.created += 1
            elif outcome == UPDATED:
                counts.updated += 1
            else:
                counts.skipped += 1
            crm_sync_records_total.labels(entity=entity, outcome=outcome).inc()
        return counts

    # ── Leads ───────────────────────────────────────────────────────────────

    async def _sync_lead(
        self,
        partner: PartnerRead,
        record: dict[str, Any],
        admin_id: str | None,
        now: datetime,
    ) -> str:
        external = lead_from_zoho(record)

        local = await self._repository.get_lead_by_external_id(external.external_id)
        if local is None:
            local = await self._repository.find_lead_by_email(partner.id, external.email)
            if local is not None and local.external_id not in (None, external.external_id):
                # Same email, different Zoho lead.
                local = None

        if is_converted_status(external.status_raw):
            if local is not None:
                await self._remove_converted_lead(local, external.status_raw)
            return SKIPPED

        status = to_portal_status(external.status_raw)

        if local is None:
            await self._repository.create_lead(
                LeadCreate(
                    partner_id=partner.id,
                    created_by_user_id=admin_id,
                    external_id=external.external_id,
                    first_name=external.first_name,
                    last_name=external.last_name,
                    email=external.email,
                    phone=external.phone,
                    company=external.company,
                    status=status.value,
                    external_status_raw=external.status_raw,
                    lead_source=external.lead_source or DEFAULT_LEAD_SOURCE,
                    sync_state=SyncState.SYNCED,
                    last_sync_at=now,
                )
            )
            return CREATED

        def build(current: LeadRead) -> LeadUpdate:
            changes: dict[str, Any] = {
                "first_name": external.first_name,
                "last_name": external.last_name,
                "email": external.email,
                "phone": external.phone,
                "company": external.company,
                "status": status.value,
                "external_status_raw": external.status_raw,
                "sync_state": SyncState.SYNCED,
                "last_sync_at": now,
            }
            if current.external_id is None:
                changes["external_id"] = external.external_id
            return LeadUpdate(**changes)

        base, _ = await compare_and_set(
            local, self._repository.get_lead, self._repository.update_lead, build
        )
        if base.external_id is None:
            logger.info(
                "sync.lead_external_id_backfilled",
                lead_id=base.id,
                external_id=external.external_id,
            )
        return UPDATED

    async def _remove_converted_lead(self, lead: LeadRead, raw_status: str | None) -> None:
        await self._repository.delete_lead_status_history(lead.id)
        await self._repository.delete_lead(lead.id)
        await self._repository.insert_activity(
            ActivityCreate(
                partner_id=lead.partner_id,
                user_id=lead.created_by_user_id,
                entity_type="lead",
                entity_id=lead.id,
                action=ActivityAction.LEAD_CONVERTED.value,
                description=f"Lead {lead.first_name} {lead.last_name} converted in Zoho",
                metadata={
                    "lead_id": lead.id,
                    "old_status": normalize_portal_status(lead.status).value,
                    "external_status_raw": raw_status,
                    "source": "sync",
                },
            )
        )
        crm_lead_conversions_total.labels(source="sync", strategy="status").inc()
        logger.info("sync.lead_converted", lead_id=lead.id, external_id=lead.external_id)

    # ── Deals ───────────────────────────────────────────────────────────────

    async def _sync_deal(
        self,
        partner: PartnerRead,
        record: dict[str, Any],
        admin_id: str | None,
        now: datetime,
    ) -> str:
        external = deal_from_zoho(record)
        stage = to_portal_stage(external.stage_raw)

        local = await self._repository.get_deal_by_external_id(external.external_id)
        if local is None:
            created = await self._repository.create_deal(
                DealCreate(
                    external_id=external.external_id,
                    partner_id=partner.id,
                    created_by_user_id=admin_id,
                    name=external.name,
                    first_name=external.first_name,
                    last_name=external.last_name,
                    email=external.email,
                    phone=external.phone,
                    company=external.company,
                    stage=stage.value,
                    external_stage_raw=external.stage_raw,
                    approval_date=external.approval_date,
                    sync_state=SyncState.SYNCED,
                    last_sync_at=now,
                )
            )
            await self._deal_history.replace(
                created.id,
                HistoryEntry(
                    new_value=created.stage,
                    changed_by=admin_id,
                    notes="Deal created by CRM sync",
                ),
            )
            return CREATED

        def build(current: DealRead) -> DealUpdate:
            changes: dict[str, Any] = {
                "name": external.name,
                "stage": stage.value,
                "external_stage_raw": external.stage_raw,
                "sync_state": SyncState.SYNCED,
                "last_sync_at": now,
            }
            for field in _DEAL_CONTACT_FIELDS:
                value = getattr(external, field)
                if value is not None:
                    changes[field] = value
            if current.partner_id != partner.id:
                changes["partner_id"] = partner.id
            return DealUpdate(**changes)

        base, updated = await compare_and_set(
            local, self._repository.get_deal, self._repository.update_deal, build
        )
        if updated is not None and base.stage != updated.stage:
            await self._deal_history.replace(
                updated.id,
                HistoryEntry(
                    old_value=base.stage,
                    new_value=updated.stage,
                    changed_by=updated.created_by_user_id,
                    notes=f"Stage updated by CRM sync: {external.stage_raw}",
                ),
            )
        return UPDATED


def _summarize(results: list[PartnerSyncResult]) -> SyncTotals:
    totals = SyncTotals()
    for item in results:
        totals.total_leads += item.leads.total
        totals.total_deals += item.deals.total
        totals.leads_created += item.leads.created
        totals.leads_updated += item.leads.updated
        totals.leads_skipped += item.leads.skipped
        totals.deals_created += item.deals.created
        totals.deals_updated += item.deals.updated
        totals.deals_skipped += item.deals.skipped
        totals.errors += len(item.errors) + len(item.leads.errors) + len(item.deals.errors)
    return totals
