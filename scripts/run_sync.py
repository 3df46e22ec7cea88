#!/usr/bin/env python3
"""CLI script to run a full CRM sync once.

Usage:
    uv run python scripts/run_sync.py
    uv run python scripts/run_sync.py --partner-external-id 4876876000000123456
    uv run python scripts/run_sync.py --delay 0 --json

Connects directly to the database using DATABASE_URL and to Zoho using the
ZOHO_* credentials from environment or .env file. Exits with status 1 when
the run reports errors.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys

# Ensure project root is on sys.path so we can import src.partner_portal
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dotenv import load_dotenv  # noqa: E402

# Load .env from project root
load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))


async def run(partner_external_id: str | None, delay: float | None, as_json: bool) -> bool:
    """Run the sync and print a summary. Returns True when no errors occurred."""
    from src.partner_portal.api.middleware.logging import configure_structlog
    from src.partner_portal.config import get_settings
    from src.partner_portal.core.database import close_db, get_session
    from src.partner_portal.reconciliation.crm.zoho import ZohoClient
    from src.partner_portal.reconciliation.repository import PortalRepository
    from src.partner_portal.reconciliation.schemas import SyncTrigger
    from src.partner_portal.reconciliation.sync import SyncReconciler

    configure_structlog()
    settings = get_settings()
    if not settings.zoho_configured():
        print("Zoho credentials missing: set ZOHO_CLIENT_ID, ZOHO_CLIENT_SECRET, ZOHO_REFRESH_TOKEN")
        return False

    repository = PortalRepository(session_factory=get_session)
    crm_client = ZohoClient.from_settings(settings)
    reconciler = SyncReconciler(
        repository=repository,
        crm_client=crm_client,
        partner_delay_seconds=(
            settings.SYNC_PARTNER_DELAY_SECONDS if delay is None else delay
        ),
        partner_timeout_seconds=settings.SYNC_PARTNER_TIMEOUT_SECONDS,
    )

    try:
        if partner_external_id:
            partner = await repository.get_partner_by_external_id(partner_external_id)
            if partner is None:
                print(f"No partner with Zoho Vendor id {partner_external_id}")
                return False
            result = await reconciler.sync_partner(partner)
            if as_json:
                print(result.model_dump_json(indent=2))
            else:
                print(f"Partner: {result.partner_name}")
                print(f"  Leads: {result.leads.model_dump(exclude={'errors'})}")
                print(f"  Deals: {result.deals.model_dump(exclude={'errors'})}")
                for error in result.leads.errors + result.deals.errors:
                    print(f"  ! {error}")
            return not (result.leads.errors or result.deals.errors)

        result = await reconciler.run_all(SyncTrigger.CLI)
    finally:
        await crm_client.close()
        await close_db()

    if as_json:
        print(json.dumps(result.model_dump(mode="json"), indent=2))
    else:
        summary = result.summary
        print(f"Sync finished: {result.successful_syncs}/{result.total_partners} partners")
        print(
            f"  Leads: {summary.total_leads} total, {summary.leads_created} created, "
            f"{summary.leads_updated} updated, {summary.leads_skipped} skipped"
        )
        print(
            f"  Deals: {summary.total_deals} total, {summary.deals_created} created, "
            f"{summary.deals_updated} updated, {summary.deals_skipped} skipped"
        )
        for error in result.errors:
            print(f"  ! {error}")
    return result.success


def main() -> None:
    parser = argparse.ArgumentParser(description="Run a full Zoho CRM sync once")
    parser.add_argument(
        "--partner-external-id",
        default=None,
        help="Only sync the partner with this Zoho Vendor id",
    )
    parser.add_argument(
        "--delay",
        type=float,
        default=None,
        help="Seconds between partners (default: SYNC_PARTNER_DELAY_SECONDS)",
    )
    parser.add_argument("--json", action="store_true", help="Print the full result as JSON")
    args = parser.parse_args()

    ok = asyncio.run(run(args.partner_external_id, args.delay, args.json))
    sys.exit(0 if ok else 1)


if __name__ == "__main__":
    main()
