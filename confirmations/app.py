# confirmations/app.py
import logging
from typing import Callable, Dict, FrozenSet, Tuple

import requests
from flask import Blueprint, current_app, jsonify, request
from pydantic import ValidationError

from .exceptions import ActionError
from .extensions import services
from .links import is_valid_email, link_stats, parse_recipients
from .models import Confirmation, Link, WebhookLog, WebhookSettings, utcnow_iso
from .utils.webhook import CONFIRMATION_RECEIVED, LINK_CLICKED, WEBHOOK_TEST

logger = logging.getLogger(__name__)

bp = Blueprint("confirmations", __name__)

GET = frozenset({"GET"})
POST = frozenset({"POST"})

ACTIONS: Dict[str, Tuple[FrozenSet[str], Callable]] = {}


def action(name: str, methods: FrozenSet[str] = GET):
    def decorator(fn):
        ACTIONS[name] = (methods, fn)
        return fn
    return decorator


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ActionError("Request body must be a JSON object")
    return data


def _unique_id(body: dict) -> str:
    unique_id = body.get("uniqueId")
    if not isinstance(unique_id, str) or not unique_id:
        raise ActionError("uniqueId is required")
    return unique_id


def _parse(model, body: dict):
    try:
        return model.model_validate(body)
    except ValidationError as e:
        problems = "; ".join(f"{'.'.join(map(str, err['loc'])) or 'body'}: {err['msg']}" for err in e.errors())
        raise ActionError(f"Invalid {model.__name__}: {problems}")


def _client_ip() -> str:
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.remote_addr or ""


def _webhooks_on() -> bool:
    return current_app.config["WEBHOOKS_ENABLED"]


def _tracking_on() -> bool:
    return current_app.config["LINK_TRACKING_ENABLED"]


def _text(body: dict, key: str) -> str:
    value = body.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ActionError(f"{key} must be a string")
    return value.strip()


def _base_url(body: dict) -> str:
    return _text(body, "baseUrl") or current_app.config["PUBLIC_BASE_URL"] or request.host_url


@bp.route("/", methods=["GET"])
def health():
    return jsonify({"status": "ok"}), 200


@bp.route("/api/confirmations", methods=["GET", "POST", "PUT", "DELETE"])
def dispatch():
    name = request.args.get("action", "")
    entry = ACTIONS.get(name)
    if entry is None:
        logger.warning("Invalid action %r", name)
        return jsonify({"error": "Invalid action"}), 400

    methods, handler = entry
    if request.method not in methods:
        return jsonify({"error": "Method not allowed"}), 405

    try:
        return handler()
    except ActionError as e:
        logger.info("Rejected %s: %s", name, e.message)
        return jsonify(e.to_dict()), e.status
    except Exception:
        logger.exception("Action %s failed", name)
        return jsonify({"error": "Internal server error"}), 500


# Confirmations

@action("get-confirmations")
def get_confirmations():
    confirmations = services.current.store.get_confirmations()
    return jsonify({"confirmations": [c.model_dump(by_alias=True) for c in confirmations]}), 200


@action("get-confirmation")
def get_confirmation():
    token = request.args.get("token", "")
    if not token:
        raise ActionError("token is required")
    confirmation = services.current.store.find_confirmation(token)
    return jsonify({"confirmation": confirmation.model_dump(by_alias=True) if confirmation else None}), 200


@action("add-confirmation", POST)
def add_confirmation():
    svc = services.current
    confirmation = _parse(Confirmation, _json_body())
    confirmation.confirmed_at = confirmation.confirmed_at or utcnow_iso()
    confirmation.ip_address = confirmation.ip_address or _client_ip()
    confirmation.user_agent = confirmation.user_agent or request.headers.get("User-Agent", "")

    if not svc.store.add_confirmation(confirmation):
        return jsonify({"error": "Failed to store confirmation"}), 500

    if _webhooks_on():
        data = confirmation.model_dump(by_alias=True)
        data.pop("uniqueId", None)
        svc.notifier.notify(CONFIRMATION_RECEIVED, data, svc.store.get_webhook_settings(),
                            timestamp=confirmation.confirmed_at)

    return jsonify({"success": True, "confirmation": confirmation.model_dump(by_alias=True)}), 200


# Links

@action("get-links")
def get_links():
    links = services.current.generator.all_links()
    return jsonify({"linkDatabase": [link.model_dump(by_alias=True) for link in links]}), 200


@action("add-link", POST)
def add_link():
    link = _parse(Link, _json_body())
    link.created_at = link.created_at or utcnow_iso()
    if not services.current.store.add_link(link):
        return jsonify({"error": "Failed to store link"}), 500
    return jsonify({"success": True, "linkData": link.model_dump(by_alias=True)}), 200


@action("update-link-click", POST)
def update_link_click():
    svc = services.current
    body = _json_body()
    unique_id = _unique_id(body)
    if not _tracking_on():
        return jsonify({"success": False}), 200

    updated = svc.store.update_link_click(unique_id) or svc.fallback.update_link_click(unique_id)
    if updated and _webhooks_on():
        link = svc.store.find_link(unique_id) or svc.fallback.find_link(unique_id)
        data = {
            "uniqueId": unique_id,
            "token": link.token if link else body.get("token", ""),
            "name": link.name if link else body.get("name", ""),
            "email": link.email if link else body.get("email", ""),
            "userAgent": request.headers.get("User-Agent", ""),
            "referrer": body.get("referrer") or request.referrer or "",
            "ipAddress": _client_ip(),
        }
        svc.notifier.notify(LINK_CLICKED, data, svc.store.get_webhook_settings(), click_tracking=True)

    return jsonify({"success": updated}), 200


@action("update-link-confirmation", POST)
def update_link_confirmation():
    svc = services.current
    unique_id = _unique_id(_json_body())
    if not _tracking_on():
        return jsonify({"success": False}), 200
    updated = svc.store.update_link_confirmation(unique_id) or svc.fallback.update_link_confirmation(unique_id)
    return jsonify({"success": updated}), 200


@action("generate-link", POST)
def generate_link():
    body = _json_body()
    name = _text(body, "name")
    email = _text(body, "email")
    if not name or not email:
        raise ActionError("Both name and email are required")
    if not is_valid_email(email):
        raise ActionError("Invalid email address")

    link = services.current.generator.generate_confirmation_link(name, email, _base_url(body))
    return jsonify({"success": True, "linkData": link.model_dump(by_alias=True)}), 200


@action("generate-links", POST)
def generate_links():
    body = _json_body()
    text = body.get("recipients") or ""
    if not isinstance(text, str):
        raise ActionError('recipients must be text with one "Name <email>" per line')
    recipients, errors = parse_recipients(text)
    if errors:
        raise ActionError("Invalid recipient list", errors=errors)
    if not recipients:
        raise ActionError("No recipients given")

    links = services.current.generator.generate_bulk(recipients, _base_url(body))
    return jsonify({"success": True, "links": [link.model_dump(by_alias=True) for link in links]}), 200


@action("get-link-stats")
def get_link_stats():
    svc = services.current
    stats = link_stats(svc.generator.all_links(), svc.store.get_confirmations())
    return jsonify({"stats": stats}), 200


# Webhooks

@action("get-webhook-settings")
def get_webhook_settings():
    settings = services.current.store.get_webhook_settings()
    return jsonify({"webhookSettings": settings.model_dump(by_alias=True)}), 200


@action("save-webhook-settings", POST)
def save_webhook_settings():
    settings = _parse(WebhookSettings, _json_body())
    settings.url = settings.url.strip()
    settings.secret = settings.secret.strip()
    if settings.enabled and not settings.url:
        raise ActionError("A webhook URL is required when webhooks are enabled")
    if not services.current.store.save_webhook_settings(settings):
        return jsonify({"error": "Failed to save webhook settings"}), 500
    return jsonify({"success": True}), 200


@action("get-webhook-logs")
def get_webhook_logs():
    logs = services.current.store.get_webhook_logs()
    return jsonify({"webhookLogs": [log.model_dump(by_alias=True) for log in logs]}), 200


@action("add-webhook-log", POST)
def add_webhook_log():
    body = _json_body()
    entry = WebhookLog(url=str(body.get("url") or ""), status=body.get("status"), payload=body.get("payload"))
    if not services.current.store.add_webhook_log(entry):
        return jsonify({"error": "Failed to store webhook log"}), 500
    return jsonify({"success": True}), 200


@action("clear-webhook-logs", POST)
def clear_webhook_logs():
    return jsonify({"success": services.current.store.clear_webhook_logs()}), 200


@action("test-webhook", POST)
def test_webhook():
    svc = services.current
    body = request.get_json(silent=True)
    if isinstance(body, dict) and body:
        settings = _parse(WebhookSettings, body)
    else:
        settings = svc.store.get_webhook_settings()
    if not settings.url:
        raise ActionError("A webhook URL is required")

    data = {"message": "This is a test webhook from your confirmation page system."}
    try:
        resp = svc.notifier.send(WEBHOOK_TEST, data, settings)
    except requests.RequestException as e:
        logger.warning("Test webhook to %s failed: %s", settings.url, e)
        return jsonify({"success": False, "error": str(e)}), 200
    return jsonify({"success": resp.ok, "status": resp.status_code}), 200


@action("clear-all", POST)
def clear_all():
    svc = services.current
    cleared = svc.store.clear_all()
    svc.fallback.clear_all()
    return jsonify({"success": cleared}), 200
