from __future__ import annotations

from webhook_relay.settings import Settings


def test_defaults():
    settings = Settings()

    assert str(settings.sink_url) == "https://httpbin.org/post"
    assert settings.sink_token == "demo-token"
    assert settings.delivery_max_attempts >= 1
    assert settings.sink_required_response_fields == []


def test_required_response_fields_from_env(monkeypatch):
    monkeypatch.setenv("SINK_REQUIRED_RESPONSE_FIELDS", " ok, receipt_id ,,")

    settings = Settings()

    assert settings.sink_required_response_fields == ["ok", "receipt_id"]


def test_sink_settings_from_env(monkeypatch):
    monkeypatch.setenv("SINK_URL", "http://consumer.internal/hooks")
    monkeypatch.setenv("SINK_TOKEN", "secret")
    monkeypatch.setenv("DELIVERY_MAX_ATTEMPTS", "2")

    settings = Settings()

    assert str(settings.sink_url) == "http://consumer.internal/hooks"
    assert settings.sink_token == "secret"
    assert settings.delivery_max_attempts == 2


def test_dispatch_drain_timeout_from_env(monkeypatch):
    assert Settings().dispatch_drain_timeout_seconds == 10.0
    monkeypatch.setenv("DISPATCH_DRAIN_TIMEOUT_SECONDS", "2.5")

    assert Settings().dispatch_drain_timeout_seconds == 2.5
