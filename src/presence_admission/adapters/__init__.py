"""Adapters: external integrations for the presence admission pipeline.

Contains:
- orm.py           SQLAlchemy table models
- repositories.py  SQLAlchemy policy, device and attendance repositories
- audit_log.py     Append-only audit log repository
- redis_store.py   Redis counter and cache stores
- memory_store.py  Process-local stores for single-node runs and tests
- metrics.py       Prometheus admission counters
- alerts.py        Kafka review/rejection alert dispatcher
- face_client.py   Face recognition factor over HTTP
"""

__all__: list[str] = []
