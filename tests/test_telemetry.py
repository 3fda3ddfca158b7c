from __future__ import annotations

import httpx
import pytest
import pytest_asyncio
from httpx import Request, Response

from config import DatadogConfig
from live_memory import compute_live_memory
from telemetry import DatadogTelemetry, confusion_value, is_high_load


@pytest_asyncio.fixture
async def telemetry():
    client = DatadogTelemetry(api_key="dd-test", config=DatadogConfig(), site="datadoghq.eu")
    yield client
    await client.close()


def _recorder(calls, status_code=202):
    async def mock_post(url, **kwargs):
        calls.append((url, kwargs))
        return Response(status_code, json={}, request=Request("POST", url))
    return mock_post


def test_confusion_values():
    assert confusion_value(compute_live_memory([])) == 0
    assert confusion_value(compute_live_memory(["rephrase"])) == 1
    assert confusion_value(compute_live_memory(["frustration"])) == 2


def test_high_load_detection():
    assert is_high_load(compute_live_memory(["rephrase", "rephrase"]))
    assert is_high_load(compute_live_memory(["frustration", "quick_reply"]))
    assert not is_high_load(compute_live_memory(["rephrase", "quick_reply"]))


@pytest.mark.asyncio
async def test_send_posts_metrics_only_for_normal_load(telemetry, monkeypatch):
    calls = []
    monkeypatch.setattr(telemetry.http, "post", _recorder(calls))

    await telemetry.send(compute_live_memory(["rephrase"]), "hi", 123.0, "llama-3.3-70b-versatile")

    assert len(calls) == 1
    url, kwargs = calls[0]
    assert url == "https://api.datadoghq.eu/api/v1/series"
    assert kwargs["headers"]["DD-API-KEY"] == "dd-test"
    load, latency = kwargs["json"]["series"]
    assert load["metric"] == "cogniflux.cognitive_load"
    assert load["points"][0][1] == 1
    assert load["tags"] == ["user_level:intermediate", "env:hackathon"]
    assert latency["metric"] == "cogniflux.response_time"
    assert latency["points"][0][1] == 123.0
    assert latency["tags"] == ["model:llama-3.3-70b-versatile"]


@pytest.mark.asyncio
async def test_send_adds_alert_log_for_high_load(telemetry, monkeypatch):
    calls = []
    monkeypatch.setattr(telemetry.http, "post", _recorder(calls))

    await telemetry.send(compute_live_memory(["frustration"]), "this is broken", 50.0, "m")

    assert [url for url, _ in calls] == [
        "https://api.datadoghq.eu/api/v1/series",
        "https://http-intake.logs.datadoghq.eu/api/v2/logs",
    ]
    (entry,) = calls[1][1]["json"]
    assert entry["status"] == "warn"
    assert entry["message"] == "High Cognitive Load Detected: User is beginner"
    assert entry["structured_data"] == {
        "user_message": "this is broken",
        "signals": ["frustration"],
        "confusion_score": "high",
    }


@pytest.mark.asyncio
async def test_send_swallows_http_errors(telemetry, monkeypatch):
    async def mock_post(url, **kwargs):
        raise httpx.ConnectError("down")

    monkeypatch.setattr(telemetry.http, "post", mock_post)
    await telemetry.send(compute_live_memory([]), "hi", 1.0, "m")


@pytest.mark.asyncio
async def test_send_swallows_error_status(telemetry, monkeypatch):
    calls = []
    monkeypatch.setattr(telemetry.http, "post", _recorder(calls, status_code=403))

    await telemetry.send(compute_live_memory(["frustration"]), "hi", 1.0, "m")

    assert len(calls) == 2


@pytest.mark.asyncio
async def test_rejected_series_still_posts_alert_log(telemetry, monkeypatch):
    calls = []

    async def mock_post(url, **kwargs):
        calls.append(url)
        status_code = 403 if url.endswith("/series") else 202
        return Response(status_code, json={}, request=Request("POST", url))

    monkeypatch.setattr(telemetry.http, "post", mock_post)

    await telemetry.send(compute_live_memory(["frustration"]), "hi", 1.0, "m")

    assert calls == [
        "https://api.datadoghq.eu/api/v1/series",
        "https://http-intake.logs.datadoghq.eu/api/v2/logs",
    ]


@pytest.mark.asyncio
async def test_send_failure_counts_errors(telemetry, monkeypatch):
    calls = []
    monkeypatch.setattr(telemetry.http, "post", _recorder(calls))

    await telemetry.send_failure("completion")

    (series,) = calls[0][1]["json"]["series"]
    assert series["metric"] == "cogniflux.chat_error"
    assert series["type"] == "count"
    assert "kind:completion" in series["tags"]


@pytest.mark.asyncio
async def test_without_api_key_nothing_is_sent(monkeypatch):
    client = DatadogTelemetry(api_key=None, config=DatadogConfig())
    calls = []
    monkeypatch.setattr(client.http, "post", _recorder(calls))
    try:
        await client.send(compute_live_memory(["frustration"]), "hi", 1.0, "m")
        await client.send_failure("internal")
    finally:
        await client.close()
    assert calls == []
    assert client.site == "datadoghq.com"
