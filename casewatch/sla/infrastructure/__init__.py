"""
SLA Infrastructure Layer
=========================

Infrastructure implementations for SLA tracking:
- Models: SQLAlchemy ORM models
- Repositories: Case store
- External: Config watcher, notifiers, scheduler
"""

from casewatch.sla.infrastructure.models import CaseModel
from casewatch.sla.infrastructure.repositories import SQLAlchemyCaseStore
from casewatch.sla.infrastructure.external import (
    SLAConfigManager,
    CircuitBreaker,
    SlackNotifier,
    EmailNotifier,
    LogNotifier,
    SLAScheduler,
    build_notifier,
)

__all__ = [
    "CaseModel",
    "SQLAlchemyCaseStore",
    "SLAConfigManager",
    "CircuitBreaker",
    "SlackNotifier",
    "EmailNotifier",
    "LogNotifier",
    "SLAScheduler",
    "build_notifier",
]
