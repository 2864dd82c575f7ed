"""
Telemetry Module
================

Error tracking for the report cache service.

Components:
- sentry.py: Error tracking for the API and the refresh worker

Environment Variables:
- SENTRY_DSN: Sentry project DSN (tracking disabled when unset)
- ENVIRONMENT: Environment name

Related modules:
- reportcache/main.py: Initializes Sentry on startup
- reportcache/workers/arq_worker.py: Initializes Sentry on worker startup
- reportcache/services/refresh_orchestrator.py: Reports per-job failures
"""

from reportcache.telemetry.sentry import (
    init_sentry,
    capture_exception,
    capture_message,
)

__all__ = [
    "init_sentry",
    "capture_exception",
    "capture_message",
]
