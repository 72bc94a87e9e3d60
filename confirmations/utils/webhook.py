# confirmations/utils/webhook.py
import json
import logging
from typing import Any, Dict, Optional

import requests

from ..models import WebhookLog, WebhookSettings, utcnow_iso
from ..storage import RecordStore

logger = logging.getLogger(__name__)

LINK_CLICKED = "link_clicked"
CONFIRMATION_RECEIVED = "confirmation_received"
WEBHOOK_TEST = "webhook_test"

SECRET_HEADER = "X-Webhook-Secret"
STATUS_FAILED = "failed"
STATUS_CLICK_TRACKED = "click-tracked"


def build_envelope(event: str, data: Dict[str, Any], timestamp: Optional[str] = None) -> Dict[str, Any]:
    return {"event": event, "timestamp": timestamp or utcnow_iso(), "data": data}


def _headers(settings: WebhookSettings) -> dict:
    headers = {"Content-Type": "application/json"}
    if settings.secret:
        # shared value sent as-is; receivers compare it, nothing is signed
        headers[SECRET_HEADER] = settings.secret
    return headers


class WebhookNotifier:
    def __init__(self, store: RecordStore, timeout: float = 10.0):
        self.store = store
        self.timeout = timeout

    def send(self, event: str, data: Dict[str, Any], settings: WebhookSettings,
             timestamp: Optional[str] = None) -> requests.Response:
        """Single POST of the event envelope. Raises requests.RequestException on transport errors."""
        payload = build_envelope(event, data, timestamp)
        logger.debug("POST %s payload=%s", settings.url, json.dumps(payload)[:1000])
        return requests.post(settings.url, json=payload, headers=_headers(settings), timeout=self.timeout)

    def notify(self, event: str, data: Dict[str, Any], settings: WebhookSettings,
               click_tracking: bool = False, timestamp: Optional[str] = None) -> None:
        if not settings.active:
            return

        payload = build_envelope(event, data, timestamp)
        try:
            resp = self.send(event, data, settings, timestamp=payload["timestamp"])
        except requests.RequestException as e:
            logger.warning("Webhook %s to %s failed: %s", event, settings.url, e)
            self._log(settings.url, STATUS_FAILED, {"event": event, "error": str(e)})
            return

        logger.info("Webhook %s delivered to %s: %s", event, settings.url, resp.status_code)
        status = STATUS_CLICK_TRACKED if click_tracking else resp.status_code
        self._log(settings.url, status, payload)

    def _log(self, url: str, status, payload) -> None:
        if not self.store.add_webhook_log(WebhookLog(url=url, status=status, payload=payload)):
            logger.error("Could not record webhook attempt to %s", url)
