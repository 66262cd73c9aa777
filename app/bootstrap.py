"""Wire the engine together from Settings."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from app.collaborators import NotificationService, WebhookCaller
from app.config import ROOT, Settings, load_env_file
from app.email import EmailSender, get_provider
from app.logging_setup import configure_logging
from app.template_render import render_config
from audit_emitter import AuditEmitter
from conversion_engine import ConversionEngine
from event_bus import EventBus
from record_store import RecordStore
from schema_registry import SchemaRegistry
from storage_engine import InMemoryStorage
from workflow_engine import WorkflowEngine
from workflow_store import WorkflowStore


logger = logging.getLogger("forge.bootstrap")


@dataclass
class Platform:
    settings: Settings
    storage: Any
    audit: AuditEmitter
    schemas: SchemaRegistry
    bus: EventBus
    records: RecordStore
    conversions: ConversionEngine
    workflows: WorkflowStore
    engine: WorkflowEngine
    email: EmailSender
    notifications: NotificationService

    def close(self) -> None:
        self.engine.shutdown()
        if self.settings.use_db:
            from app.db import close_pool

            close_pool()


def build_storage(settings: Settings) -> Any:
    if not settings.use_db:
        return InMemoryStorage(lock_timeout=settings.storage_lock_timeout)
    from app.db import init_pool
    from app.storage_db import PostgresStorage

    storage = PostgresStorage(init_pool(settings), settings.db_statement_timeout_ms)
    storage.ensure_schema()
    return storage


def build_platform(settings: Settings | None = None, *, storage: Any = None, collaborators: dict | None = None) -> Platform:
    if settings is None:
        load_env_file(ROOT / ".env")
        settings = Settings.from_env()
        configure_logging(settings)
    storage = storage if storage is not None else build_storage(settings)
    audit = AuditEmitter(storage)
    schemas = SchemaRegistry(storage, audit)
    bus = EventBus()
    records = RecordStore(storage, schemas, bus, audit)
    conversions = ConversionEngine(storage, schemas, records, audit)
    workflows = WorkflowStore(storage)
    email = EmailSender(get_provider(settings), settings.email_from)
    notifications = NotificationService(storage)
    wired = {
        "sendEmail": email,
        "webhook": WebhookCaller(timeout=settings.collaborator_timeout),
        "notification": notifications,
    }
    wired.update(collaborators or {})
    engine = WorkflowEngine(
        workflows,
        records,
        wired,
        renderer=render_config,
        max_depth=settings.workflow_max_depth,
        action_timeout=settings.collaborator_timeout,
    )
    engine.attach(bus)
    logger.info(
        "platform_ready env=%s storage=%s max_depth=%s", settings.env, type(storage).__name__, settings.workflow_max_depth
    )
    return Platform(settings, storage, audit, schemas, bus, records, conversions, workflows, engine, email, notifications)
