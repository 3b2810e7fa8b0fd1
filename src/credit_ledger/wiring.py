from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Optional

from .config import Settings
from .db.base import BaseDBManager
from .db.memory import InMemoryDBManager
from .logging.audit_logger import AuditLogger
from .models.base import utcnow
from .notifications.queue import AsyncNotificationQueue, InMemoryNotificationQueue
from .services.admin_service import AdminOverride
from .services.grant_sources import AdReward, DailyCollection
from .services.ledger_core import LedgerCore
from .services.notification_service import NotificationService
from .services.quota_tracker import QuotaTracker
from .services.redeem_registry import RedeemCodeRegistry


logger = logging.getLogger(__name__)


@dataclass
class LedgerServices:
    settings: Settings
    db: BaseDBManager
    audit: AuditLogger
    ledger: LedgerCore
    quota: QuotaTracker
    registry: RedeemCodeRegistry
    collection: DailyCollection
    ads: AdReward
    admin: AdminOverride
    notifications: NotificationService
    queue: AsyncNotificationQueue


def create_db_manager(settings: Settings) -> BaseDBManager:
    if settings.mongo_uri:
        # Imported lazily so the in-memory setup does not need a driver
        from .db.mongo import MongoDBManager

        logger.info("Using MongoDB ledger storage (%s)", settings.mongo_db)
        return MongoDBManager.from_client_uri(settings.mongo_uri, settings.mongo_db)
    logger.warning("CREDIT_MONGO_URI not set; using in-memory ledger storage")
    return InMemoryDBManager()


def build_services(
    settings: Settings,
    db: Optional[BaseDBManager] = None,
    clock: Callable[[], datetime] = utcnow,
    queue: Optional[AsyncNotificationQueue] = None,
    audit_file: Optional[Path] = None,
) -> LedgerServices:
    db = db or create_db_manager(settings)
    queue = queue or InMemoryNotificationQueue()
    audit = AuditLogger(db=db, file_path=audit_file or Path(settings.audit_log_path))
    retry = {"max_retries": settings.max_retries, "backoff_seconds": settings.retry_backoff_seconds}

    ledger = LedgerCore(db, audit, signup_bonus=settings.signup_bonus, clock=clock, **retry)
    quota = QuotaTracker(ledger, audit, daily_limit=settings.daily_limit)
    registry = RedeemCodeRegistry(
        db,
        ledger,
        audit,
        code_length=settings.code_length,
        default_max_uses=settings.default_max_uses,
        **retry,
    )
    collection = DailyCollection(
        db,
        ledger,
        registry,
        audit,
        credits=settings.collection_credits,
        cooldown=timedelta(hours=settings.collection_cooldown_hours),
        **retry,
    )
    ads = AdReward(db, ledger, audit, **retry)
    notifications = NotificationService(queue)
    admin = AdminOverride(
        db,
        ledger,
        quota,
        registry,
        audit,
        notifications=notifications,
        admin_ids=settings.admin_ids,
    )
    return LedgerServices(
        settings=settings,
        db=db,
        audit=audit,
        ledger=ledger,
        quota=quota,
        registry=registry,
        collection=collection,
        ads=ads,
        admin=admin,
        notifications=notifications,
        queue=queue,
    )
