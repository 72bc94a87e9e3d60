import pytest
import requests

from confirmations import create_app
from confirmations.storage import JsonFileStore


class FakeResponse:
    def __init__(self, status_code=200):
        self.status_code = status_code

    @property
    def ok(self):
        return 200 <= self.status_code < 300


@pytest.fixture
def store(tmp_path):
    return JsonFileStore(tmp_path / "data")


@pytest.fixture
def app(store):
    app = create_app({"TESTING": True, "PUBLIC_BASE_URL": "https://forms.example.org"}, store=store)
    return app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def posted(monkeypatch):
    """Captures outbound webhook POSTs; set `posted.status` or `posted.error` to change the outcome."""
    calls = []

    def fake_post(url, json=None, headers=None, timeout=None):
        calls.append({"url": url, "json": json, "headers": headers or {}, "timeout": timeout})
        if fake_post.error is not None:
            raise fake_post.error
        return FakeResponse(fake_post.status)

    fake_post.calls = calls
    fake_post.status = 200
    fake_post.error = None
    monkeypatch.setattr(requests, "post", fake_post)
    return fake_post
