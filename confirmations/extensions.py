# confirmations/extensions.py
from dataclasses import dataclass
from typing import Optional

from flask import current_app

from .links import LinkGenerator
from .storage import MemoryStore, RecordStore, create_store
from .utils.webhook import WebhookNotifier

EXTENSION_KEY = "confirmations"


@dataclass
class Services:
    store: RecordStore
    fallback: RecordStore
    generator: LinkGenerator
    notifier: WebhookNotifier


class ConfirmationServices:
    """Builds the store, fallback store, link generator and notifier for an app."""

    def __init__(self, app=None, store: Optional[RecordStore] = None):
        if app is not None:
            self.init_app(app, store=store)

    def init_app(self, app, store: Optional[RecordStore] = None):
        cfg = app.config
        limit = cfg["WEBHOOK_LOG_LIMIT"]
        if store is None:
            store = create_store(cfg["STORAGE_BACKEND"], cfg.get("DATA_DIR"), limit)
        fallback = MemoryStore(limit)
        app.extensions[EXTENSION_KEY] = Services(
            store=store,
            fallback=fallback,
            generator=LinkGenerator(store, fallback, tracking_enabled=cfg["LINK_TRACKING_ENABLED"]),
            notifier=WebhookNotifier(store, timeout=cfg["WEBHOOK_TIMEOUT"]),
        )

    @property
    def current(self) -> Services:
        return current_app.extensions[EXTENSION_KEY]


services = ConfirmationServices()
