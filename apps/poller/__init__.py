"""
Poller App - Incremental Order Sync

Responsibilities:
- One periodic worker per organization (interval jobs via APScheduler)
- Bearer token caching per organization (iiko access_token)
- Resumable incremental fetch by revision, with TOO_OLD_REVISION recovery
- Transactional persistence of delivery orders to SQLite
- Publish Redis Pub/Sub events after every committed batch

Output:
- SQLite tables: orders, revisions
- Redis event: channel=orders:{tenant_id}, payload={type, tenant_id, revision, orders, ts}
"""
