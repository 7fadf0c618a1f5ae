import pytest


@pytest.mark.asyncio
async def test_healthcheck(service_client):
    response = await service_client.get("/health")
    assert response.status == 200
    payload = await response.json()
    assert payload["status"] == "ok"
    assert payload["service"] == "webhook-relay"
    assert response.headers["X-Trace-Id"]


@pytest.mark.asyncio
async def test_trace_headers_are_echoed(service_client):
    trace_id = "0b7c5a2e-6f7d-4b1e-9a43-2f7d0c1e5a11"
    response = await service_client.get("/api/v1/events/999", headers={"X-Trace-Id": trace_id})

    assert response.status == 404
    assert response.headers["X-Trace-Id"] == trace_id
    assert response.headers["X-Request-Id"]
