import time
from urllib.parse import parse_qs, urlsplit

import pytest

from confirmations import create_app
from confirmations.extensions import services
from confirmations.models import WebhookSettings
from confirmations.storage import MemoryStore

API = "/api/confirmations"


def call(client, action, body=None, method="post"):
    return getattr(client, method)(f"{API}?action={action}", json=body)


def test_health(client):
    resp = client.get("/")
    assert resp.status_code == 200
    assert resp.get_json() == {"status": "ok"}


def test_end_to_end_link_click_and_confirmation(client):
    resp = call(client, "add-link", {"uniqueId": "X1", "token": "tok1", "name": "Ada", "email": "ada@example.com"})
    assert resp.status_code == 200
    assert resp.get_json()["success"] is True
    assert resp.get_json()["linkData"]["uniqueId"] == "X1"

    links = client.get(f"{API}?action=get-links").get_json()["linkDatabase"]
    assert [(l["uniqueId"], l["clicked"], l["confirmed"]) for l in links] == [("X1", False, False)]

    assert call(client, "update-link-click", {"uniqueId": "X1"}).get_json() == {"success": True}
    link = client.get(f"{API}?action=get-links").get_json()["linkDatabase"][0]
    assert link["clicked"] is True
    assert link["clickedAt"]

    resp = call(client, "add-confirmation", {
        "token": "tok1",
        "uniqueId": "X1",
        "name": "Ada",
        "email": "ada@example.com",
        "participationConsent": True,
        "photoConsent": True,
    })
    assert resp.status_code == 200
    assert resp.get_json()["success"] is True

    assert call(client, "update-link-confirmation", {"uniqueId": "X1"}).get_json() == {"success": True}

    confirmations = client.get(f"{API}?action=get-confirmations").get_json()["confirmations"]
    assert len(confirmations) == 1
    assert confirmations[0]["uniqueId"] == "X1"
    assert confirmations[0]["confirmedAt"]
    assert confirmations[0]["ipAddress"] == "127.0.0.1"

    link = client.get(f"{API}?action=get-links").get_json()["linkDatabase"][0]
    assert link["confirmed"] is True
    assert link["clickedAt"] <= link["confirmedAt"]


def test_unknown_or_missing_action_is_400(client):
    for url in (f"{API}?action=drop-tables", API):
        resp = client.get(url)
        assert resp.status_code == 400
        assert resp.get_json() == {"error": "Invalid action"}
    assert client.delete(f"{API}?action=nope").status_code == 400


def test_mutating_action_requires_post(client):
    resp = client.get(f"{API}?action=add-confirmation")
    assert resp.status_code == 405


@pytest.mark.parametrize("action, body", [
    ("add-confirmation", {"token": "t1", "name": "Ada"}),
    ("add-link", {"uniqueId": "L1", "token": "t1"}),
    ("save-webhook-settings", {"enabled": False, "url": "", "secret": ""}),
    ("add-webhook-log", {"url": "https://hook", "status": 200, "payload": {"event": "x"}}),
    ("clear-all", None),
    ("generate-link", {"name": "Ada", "email": "ada@example.com"}),
    ("generate-links", {"recipients": "Ada <ada@example.com>"}),
])
def test_mutating_actions_succeed(client, action, body):
    resp = call(client, action, body)
    assert resp.status_code == 200
    assert resp.get_json()["success"] is True


def test_updates_on_unknown_link_report_false(client, store):
    call(client, "add-link", {"uniqueId": "X1"})
    assert call(client, "update-link-click", {"uniqueId": "missing"}).get_json() == {"success": False}
    assert call(client, "update-link-confirmation", {"uniqueId": "missing"}).get_json() == {"success": False}
    assert store.find_link("X1").clicked is False


@pytest.mark.parametrize("action, body", [
    ("add-confirmation", {"name": "no token"}),
    ("add-link", {"token": "no unique id"}),
    ("update-link-click", {}),
    ("update-link-confirmation", {"uniqueId": 5}),
    ("add-confirmation", ["not", "an", "object"]),
    ("save-webhook-settings", {"enabled": True, "url": "  "}),
    ("generate-link", {"name": "Ada"}),
    ("generate-link", {"name": "Ada", "email": "not-an-email"}),
])
def test_malformed_input_is_400(client, action, body):
    resp = call(client, action, body)
    assert resp.status_code == 400
    assert resp.get_json()["error"]


def test_generate_links_reports_line_errors(client, store):
    resp = call(client, "generate-links", {"recipients": "Ada <ada@example.com>\nbroken line"})
    assert resp.status_code == 400
    assert resp.get_json()["errors"] == ['Line 2: Invalid format (should be "Name <email@domain.com>")']
    assert store.get_links() == []


def test_generate_link_uses_configured_base_url(client, store):
    data = call(client, "generate-link", {"name": "Ada Lovelace", "email": "ada@example.com"}).get_json()["linkData"]
    assert data["url"].startswith("https://forms.example.org/?")
    query = parse_qs(urlsplit(data["url"]).query)
    assert query["name"] == ["Ada Lovelace"]
    assert query["id"] == [data["uniqueId"]]
    assert store.find_link(data["uniqueId"]) is not None


def test_generate_link_prefers_base_url_from_body(client):
    body = {"name": "Ada", "email": "ada@example.com", "baseUrl": "https://other.example.org"}
    data = call(client, "generate-link", body).get_json()["linkData"]
    assert data["url"].startswith("https://other.example.org/?")


def test_store_failure_is_500(client, store, monkeypatch):
    monkeypatch.setattr(store, "add_confirmation", lambda c: False)
    resp = call(client, "add-confirmation", {"token": "t"})
    assert resp.status_code == 500
    assert resp.get_json()["error"]


def test_unexpected_error_is_generic_500(client, store, monkeypatch):
    def boom():
        raise RuntimeError("disk on fire")

    monkeypatch.setattr(store, "get_confirmations", boom)
    resp = client.get(f"{API}?action=get-confirmations")
    assert resp.status_code == 500
    assert resp.get_json() == {"error": "Internal server error"}


def test_clear_all_then_every_get_is_empty(client):
    call(client, "add-confirmation", {"token": "t"})
    call(client, "add-link", {"uniqueId": "X1"})
    call(client, "add-webhook-log", {"url": "u", "status": "failed"})
    call(client, "save-webhook-settings", {"enabled": True, "url": "https://hook", "secret": "s"})

    assert call(client, "clear-all").get_json() == {"success": True}

    assert client.get(f"{API}?action=get-confirmations").get_json() == {"confirmations": []}
    assert client.get(f"{API}?action=get-links").get_json() == {"linkDatabase": []}
    assert client.get(f"{API}?action=get-webhook-logs").get_json() == {"webhookLogs": []}
    assert client.get(f"{API}?action=get-webhook-settings").get_json() == {
        "webhookSettings": {"enabled": False, "url": "", "secret": ""}
    }


def test_webhook_settings_round_trip(client):
    settings = {"enabled": True, "url": "https://hook", "secret": "s"}
    call(client, "save-webhook-settings", settings)
    assert client.get(f"{API}?action=get-webhook-settings").get_json() == {"webhookSettings": settings}


def test_add_webhook_log_assigns_timestamp(client):
    call(client, "add-webhook-log", {"url": "https://hook", "status": 201, "payload": {"event": "x"}})
    logs = client.get(f"{API}?action=get-webhook-logs").get_json()["webhookLogs"]
    assert logs[0]["status"] == 201
    assert logs[0]["timestamp"]


def test_link_stats(client):
    call(client, "add-link", {"uniqueId": "A"})
    call(client, "add-link", {"uniqueId": "B"})
    call(client, "update-link-click", {"uniqueId": "A"})
    call(client, "update-link-confirmation", {"uniqueId": "A"})

    stats = client.get(f"{API}?action=get-link-stats").get_json()["stats"]
    assert stats["totalLinks"] == 2
    assert stats["totalClicks"] == 1
    assert stats["conversionRate"] == 100


def test_cors_preflight(client):
    resp = client.options(f"{API}?action=add-link", headers={
        "Origin": "https://admin.example.org",
        "Access-Control-Request-Method": "POST",
        "Access-Control-Request-Headers": "Content-Type",
    })
    assert resp.status_code == 200
    assert resp.headers["Access-Control-Allow-Origin"] == "*"
    assert "POST" in resp.headers["Access-Control-Allow-Methods"]
    assert "content-type" in resp.headers["Access-Control-Allow-Headers"].lower()


def test_cors_header_on_plain_requests(client):
    resp = client.get(f"{API}?action=get-links", headers={"Origin": "https://admin.example.org"})
    assert resp.headers["Access-Control-Allow-Origin"] == "*"


def test_confirmation_sends_webhook_when_enabled(client, store, posted):
    call(client, "save-webhook-settings", {"enabled": True, "url": "https://hook", "secret": "s"})
    call(client, "add-confirmation", {"token": "t", "name": "Ada", "email": "ada@example.com"},)

    assert len(posted.calls) == 1
    envelope = posted.calls[0]["json"]
    assert envelope["event"] == "confirmation_received"
    assert envelope["data"]["token"] == "t"
    assert posted.calls[0]["headers"]["X-Webhook-Secret"] == "s"
    assert store.get_webhook_logs()[0].status == 200


def test_confirmation_survives_webhook_failure(client, store, posted):
    import requests

    posted.error = requests.Timeout("timed out")
    call(client, "save-webhook-settings", {"enabled": True, "url": "https://hook"})
    resp = call(client, "add-confirmation", {"token": "t"})

    assert resp.status_code == 200
    assert len(store.get_confirmations()) == 1
    assert store.get_webhook_logs()[0].status == "failed"


def test_click_sends_tracking_webhook(client, store, posted):
    call(client, "save-webhook-settings", {"enabled": True, "url": "https://hook"})
    call(client, "add-link", {"uniqueId": "X1", "token": "tok", "name": "Ada", "email": "ada@example.com"})
    call(client, "update-link-click", {"uniqueId": "X1"})

    data = posted.calls[0]["json"]["data"]
    assert posted.calls[0]["json"]["event"] == "link_clicked"
    assert (data["uniqueId"], data["token"], data["name"]) == ("X1", "tok", "Ada")
    assert store.get_webhook_logs()[0].status == "click-tracked"


def test_no_webhook_when_settings_disabled(client, posted):
    call(client, "add-confirmation", {"token": "t"})
    assert posted.calls == []


def test_test_webhook_action(client, posted):
    posted.status = 204
    resp = call(client, "test-webhook", {"enabled": False, "url": "https://hook", "secret": ""})
    assert resp.get_json() == {"success": True, "status": 204}
    assert posted.calls[0]["json"]["event"] == "webhook_test"


def test_test_webhook_without_url_is_400(client):
    assert call(client, "test-webhook").status_code == 400


def test_webhooks_feature_flag_off(store, posted):
    store.save_webhook_settings(WebhookSettings(enabled=True, url="https://hook"))
    client = create_app({"TESTING": True, "WEBHOOKS_ENABLED": False}, store=store).test_client()
    call(client, "add-confirmation", {"token": "t"})
    assert posted.calls == []


def test_tracking_feature_flag_off(store):
    app = create_app({"TESTING": True, "LINK_TRACKING_ENABLED": False}, store=store)
    client = app.test_client()
    call(client, "add-link", {"uniqueId": "X1"})

    assert call(client, "update-link-click", {"uniqueId": "X1"}).get_json() == {"success": False}
    assert store.find_link("X1").clicked is False

    data = call(client, "generate-link", {"name": "Ada", "email": "ada@example.com", "baseUrl": "https://x"}).get_json()
    assert "id" not in parse_qs(urlsplit(data["linkData"]["url"]).query)


def test_memory_backend_from_config():
    app = create_app({"TESTING": True, "STORAGE_BACKEND": "memory"})
    with app.app_context():
        assert isinstance(services.current.store, MemoryStore)


def test_string_false_does_not_enable_webhooks(client, store):
    resp = call(client, "save-webhook-settings", {"enabled": "false", "url": "https://hook"})
    assert resp.status_code == 200
    assert store.get_webhook_settings().enabled is False


def test_unparseable_boolean_is_400(client, store):
    resp = call(client, "save-webhook-settings", {"enabled": "sometimes", "url": "https://hook"})
    assert resp.status_code == 400
    assert "enabled" in resp.get_json()["error"]
    assert store.get_webhook_settings().enabled is False


def test_string_false_consent_is_stored_as_false(client, store):
    call(client, "add-confirmation", {"token": "t", "participationConsent": "false", "photoConsent": "false"})
    confirmation = store.find_confirmation("t")
    assert confirmation.participation_consent is False
    assert confirmation.photo_consent is False


def test_revisiting_a_confirmed_link_keeps_click_before_confirm(client, store):
    call(client, "add-link", {"uniqueId": "X1"})
    call(client, "update-link-click", {"uniqueId": "X1"})
    call(client, "update-link-confirmation", {"uniqueId": "X1"})
    time.sleep(0.01)
    call(client, "update-link-click", {"uniqueId": "X1"})

    link = client.get(f"{API}?action=get-links").get_json()["linkDatabase"][0]
    assert link["clickedAt"] <= link["confirmedAt"]


def test_get_confirmation_by_token(client):
    call(client, "add-confirmation", {"token": "tok1", "name": "Ada"})

    found = client.get(f"{API}?action=get-confirmation&token=tok1").get_json()
    assert found["confirmation"]["name"] == "Ada"
    assert client.get(f"{API}?action=get-confirmation&token=other").get_json() == {"confirmation": None}
    assert client.get(f"{API}?action=get-confirmation").status_code == 400


def test_clear_webhook_logs_action(client, store):
    call(client, "add-link", {"uniqueId": "X1"})
    call(client, "add-webhook-log", {"url": "u", "status": "failed"})

    assert call(client, "clear-webhook-logs").get_json() == {"success": True}
    assert client.get(f"{API}?action=get-webhook-logs").get_json() == {"webhookLogs": []}
    assert store.find_link("X1") is not None
    assert client.get(f"{API}?action=clear-webhook-logs").status_code == 405


@pytest.mark.parametrize("body", [
    {"name": "Ada", "email": "ada@example.com", "baseUrl": 123},
    {"name": ["Ada"], "email": "ada@example.com"},
])
def test_non_string_generate_link_fields_are_400(client, body):
    resp = call(client, "generate-link", body)
    assert resp.status_code == 400
    assert "must be a string" in resp.get_json()["error"]


def test_non_string_base_url_in_bulk_generation_is_400(client, store):
    resp = call(client, "generate-links", {"recipients": "Ada <ada@example.com>", "baseUrl": 123})
    assert resp.status_code == 400
    assert store.get_links() == []
