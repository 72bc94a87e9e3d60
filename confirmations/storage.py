# confirmations/storage.py
"""
Record storage for confirmations, links, webhook logs and webhook settings.

Each resource is an independent JSON document that is read, modified in memory
and written back whole. Two implementations share the same operations:
`JsonFileStore` (one file per resource under a data directory) and
`MemoryStore` (process-local, used for tests and as the link fallback).

Reads never raise: a missing or unparsable resource comes back as the default
value, and `load()` reports which of the two it was. Writes return False
instead of raising.

Mutations hold a per-instance lock. Two stores pointed at the same directory
(or two processes) still race between read and write and can lose updates.
"""
from __future__ import annotations

import copy
import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from enum import Enum
from pathlib import Path
from typing import Any, Callable, List, NamedTuple, Optional, Type, TypeVar

from pydantic import ValidationError

from .models import Confirmation, Link, Record, WebhookLog, WebhookSettings, utcnow_iso

logger = logging.getLogger(__name__)

CONFIRMATIONS = "confirmations"
LINKS = "links"
WEBHOOK_LOGS = "webhook-logs"
WEBHOOK_SETTINGS = "webhook-settings"
RESOURCES = (CONFIRMATIONS, LINKS, WEBHOOK_LOGS, WEBHOOK_SETTINGS)

DEFAULT_WEBHOOK_LOG_LIMIT = 100

R = TypeVar("R", bound=Record)


class ReadOutcome(Enum):
    OK = "ok"
    MISSING = "missing"
    CORRUPT = "corrupt"


class Loaded(NamedTuple):
    value: Any
    outcome: ReadOutcome


class RecordStore(ABC):
    """Operations over the four resources; subclasses supply raw load/write/remove."""

    def __init__(self, webhook_log_limit: int = DEFAULT_WEBHOOK_LOG_LIMIT):
        self.webhook_log_limit = webhook_log_limit
        self._lock = threading.RLock()

    @abstractmethod
    def load(self, resource: str) -> Loaded:
        """Return the raw JSON value of a resource. Must not raise."""

    @abstractmethod
    def _write(self, resource: str, value: Any) -> None:
        """Persist the whole resource; may raise OSError/TypeError/ValueError."""

    @abstractmethod
    def _remove(self, resource: str) -> None:
        """Delete the resource if present; may raise OSError."""

    def save(self, resource: str, value: Any) -> bool:
        try:
            self._write(resource, value)
            return True
        except (OSError, TypeError, ValueError):
            logger.exception("Failed to write %s", resource)
            return False

    def _read_list(self, resource: str, model: Type[R]) -> List[R]:
        value, outcome = self.load(resource)
        if outcome is ReadOutcome.MISSING:
            return []
        if outcome is ReadOutcome.OK and not isinstance(value, list):
            logger.warning("Expected a list in %s, got %s; treating as empty", resource, type(value).__name__)
            return []
        if outcome is ReadOutcome.CORRUPT:
            return []

        records = []
        for index, item in enumerate(value):
            try:
                records.append(model.model_validate(item))
            except ValidationError as e:
                logger.warning("Skipping bad %s record #%d: %s", resource, index, e)
        return records

    def _append(self, resource: str, model: Type[R], record: R) -> bool:
        with self._lock:
            records = self._read_list(resource, model)
            records.append(record)
            return self.save(resource, [r.model_dump(by_alias=True) for r in records])

    # Confirmations

    def get_confirmations(self) -> List[Confirmation]:
        return self._read_list(CONFIRMATIONS, Confirmation)

    def add_confirmation(self, confirmation: Confirmation) -> bool:
        # no duplicate-token check; tokens are only probabilistically unique
        return self._append(CONFIRMATIONS, Confirmation, confirmation)

    def find_confirmation(self, token: str) -> Optional[Confirmation]:
        return next((c for c in self.get_confirmations() if c.token == token), None)

    # Links

    def get_links(self) -> List[Link]:
        return self._read_list(LINKS, Link)

    def add_link(self, link: Link) -> bool:
        return self._append(LINKS, Link, link)

    def find_link(self, unique_id: str) -> Optional[Link]:
        return next((link for link in self.get_links() if link.unique_id == unique_id), None)

    def _update_link(self, unique_id: str, mutate: Callable[[Link], None]) -> bool:
        with self._lock:
            links = self._read_list(LINKS, Link)
            for link in links:
                if link.unique_id == unique_id:
                    mutate(link)
                    return self.save(LINKS, [l.model_dump(by_alias=True) for l in links])
            return False

    def update_link_click(self, unique_id: str) -> bool:
        return self._update_link(unique_id, Link.mark_clicked)

    def update_link_confirmation(self, unique_id: str) -> bool:
        return self._update_link(unique_id, Link.mark_confirmed)

    # Webhook logs

    def get_webhook_logs(self) -> List[WebhookLog]:
        return self._read_list(WEBHOOK_LOGS, WebhookLog)

    def add_webhook_log(self, entry: WebhookLog) -> bool:
        entry.timestamp = utcnow_iso()
        with self._lock:
            logs = self._read_list(WEBHOOK_LOGS, WebhookLog)
            logs.append(entry)
            logs = logs[-self.webhook_log_limit:]
            return self.save(WEBHOOK_LOGS, [log.model_dump(by_alias=True) for log in logs])

    def clear_webhook_logs(self) -> bool:
        with self._lock:
            try:
                self._remove(WEBHOOK_LOGS)
            except OSError:
                logger.exception("Failed to clear webhook logs")
                return False
        return True

    # Webhook settings

    def get_webhook_settings(self) -> WebhookSettings:
        value, outcome = self.load(WEBHOOK_SETTINGS)
        if outcome is not ReadOutcome.OK:
            return WebhookSettings()
        try:
            return WebhookSettings.model_validate(value)
        except ValidationError as e:
            logger.warning("Ignoring bad webhook settings: %s", e.errors())
            return WebhookSettings()

    def save_webhook_settings(self, settings: WebhookSettings) -> bool:
        with self._lock:
            return self.save(WEBHOOK_SETTINGS, settings.model_dump(by_alias=True))

    def clear_all(self) -> bool:
        with self._lock:
            try:
                for resource in RESOURCES:
                    self._remove(resource)
            except OSError:
                logger.exception("Failed to clear stored data")
                return False
        return True


class JsonFileStore(RecordStore):
    def __init__(self, data_dir, webhook_log_limit: int = DEFAULT_WEBHOOK_LOG_LIMIT):
        super().__init__(webhook_log_limit)
        self.data_dir = Path(data_dir)

    def path_for(self, resource: str) -> Path:
        return self.data_dir / f"{resource}.json"

    def load(self, resource: str) -> Loaded:
        path = self.path_for(resource)
        if not path.is_file():
            logger.debug("%s not found, using default", path)
            return Loaded(None, ReadOutcome.MISSING)
        try:
            with path.open(encoding="utf-8") as f:
                return Loaded(json.load(f), ReadOutcome.OK)
        except (OSError, ValueError) as e:
            logger.warning("Could not read %s, treating as empty: %s", path, e)
            return Loaded(None, ReadOutcome.CORRUPT)

    def _write(self, resource: str, value: Any) -> None:
        path = self.path_for(resource)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        data = json.dumps(value, indent=2)
        fd, tmp = tempfile.mkstemp(dir=self.data_dir, prefix=f".{resource}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(data)
            os.replace(tmp, path)
        except OSError:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def _remove(self, resource: str) -> None:
        path = self.path_for(resource)
        if path.exists():
            path.unlink()


class MemoryStore(RecordStore):
    """Keeps JSON snapshots in a dict owned by the instance."""

    def __init__(self, webhook_log_limit: int = DEFAULT_WEBHOOK_LOG_LIMIT):
        super().__init__(webhook_log_limit)
        self._documents = {}

    def load(self, resource: str) -> Loaded:
        if resource not in self._documents:
            return Loaded(None, ReadOutcome.MISSING)
        return Loaded(copy.deepcopy(self._documents[resource]), ReadOutcome.OK)

    def _write(self, resource: str, value: Any) -> None:
        # round-trip so only JSON-serializable data is accepted, as on disk
        self._documents[resource] = json.loads(json.dumps(value))

    def _remove(self, resource: str) -> None:
        self._documents.pop(resource, None)


def create_store(backend: str, data_dir=None, webhook_log_limit: int = DEFAULT_WEBHOOK_LOG_LIMIT) -> RecordStore:
    backend = (backend or "file").lower()
    if backend == "memory":
        return MemoryStore(webhook_log_limit)
    if backend == "file":
        if not data_dir:
            raise ValueError("DATA_DIR is required for the file storage backend")
        return JsonFileStore(data_dir, webhook_log_limit)
    raise ValueError(f"Unknown storage backend: {backend}")
