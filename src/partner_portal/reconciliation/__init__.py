"""CRM reconciliation and conversion engine.

Keeps local partners, leads and deals consistent with Zoho CRM through two
paths that share one repository and one set of invariants:
- WebhookIngestor: incremental partner / lead-status / deal events
- SyncReconciler: daily full per-partner reconciliation (SyncScheduler)

Supporting pieces: ConversionMatcher (lead -> deal detection and deletion),
HistoryInvariantEnforcer (single current history row), PortalRepository.
"""
