"""
HTTP-level tests for the audit and compliance routers, health and metrics.

Drives the FastAPI app through httpx's ASGI transport with the service
graph wired to the per-test database and fake Redis.
"""
from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy import update

from auditchain.db.models.audit import AuditEvent
from auditchain.main import create_app
from factories import draft

pytestmark = pytest.mark.asyncio

EVENTS = "/api/v1/audit/events"


async def _post(client, **overrides):
    resp = await client.post(EVENTS, json=draft(**overrides))
    assert resp.status_code == 201, resp.text
    return resp.json()


# ─── Ingestion ────────────────────────────────────────────────────────────────

async def test_submit_returns_committed_event(client):
    resp = await client.post(EVENTS, json=draft())

    assert resp.status_code == 201
    body = resp.json()
    assert body["sequence"] == 1
    assert body["prev_hash"] == ""
    assert body["status"] == "VALIDATED"
    assert resp.headers["X-Correlation-ID"]


async def test_submit_missing_fields_returns_422(client):
    resp = await client.post(EVENTS, json={"actor_id": "u1"})

    assert resp.status_code == 422
    error = resp.json()["error"]
    assert error["code"] == "EVT_001"
    assert "event_type" in error["detail"]["missing"]


async def test_submit_unknown_type_returns_422(client):
    resp = await client.post(EVENTS, json=draft(event_type="made.up"))
    assert resp.status_code == 422
    assert resp.json()["error"]["code"] == "EVT_001"


async def test_correlation_id_is_echoed(client):
    resp = await client.get("/health", headers={"X-Correlation-ID": "req-123"})
    assert resp.headers["X-Correlation-ID"] == "req-123"


# ─── Queries ──────────────────────────────────────────────────────────────────

async def test_get_event_and_not_found(client):
    created = await _post(client)

    resp = await client.get(f"{EVENTS}/{created['id']}")
    assert resp.status_code == 200
    assert resp.json()["self_hash"] == created["self_hash"]

    missing = await client.get(f"{EVENTS}/does-not-exist")
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "EVT_002"


async def test_list_events_by_filter(client):
    await _post(client)
    await _post(client, actor_id="u2", actor_name="Bea", action="Opened invoice")

    by_actor = await client.get(EVENTS, params={"actor_id": "u2"})
    by_text = await client.get(EVENTS, params={"q": "invoice"})
    everything = await client.get(EVENTS)

    assert by_actor.json()["total"] == 1
    assert by_text.json()["items"][0]["actor_id"] == "u2"
    assert everything.json()["total"] == 2


async def test_list_events_rejects_combined_filters(client):
    resp = await client.get(EVENTS, params={"actor_id": "u1", "q": "x"})
    assert resp.status_code == 422


async def test_timeline_and_personal_data(client):
    await _post(client, event_type="data.accessed", target_type="customer", target_id="c1")
    await _post(client, target_type="customer", target_id="c1")

    timeline = await client.get("/api/v1/audit/timeline/customer/c1")
    personal = await client.get("/api/v1/audit/actors/u1/personal-data")

    assert [e["sequence"] for e in timeline.json()] == [1, 2]
    assert len(personal.json()) == 1


async def test_verify_endpoint(client):
    await _post(client)
    await _post(client)

    resp = await client.get("/api/v1/audit/verify")

    assert resp.status_code == 200
    assert resp.json() == {
        "valid": True,
        "checked": 2,
        "broken_at_index": None,
        "broken_event_id": None,
        "reason": None,
    }


async def test_strict_verify_rejects_broken_chain(client, service, session_factory):
    first = await _post(client)
    await _post(client)
    await service.audit_logger.drain()
    assert (await client.get("/api/v1/audit/verify", params={"strict": True})).json()["valid"]

    async with session_factory() as session:
        await session.execute(
            update(AuditEvent).where(AuditEvent.id == first["id"]).values(action="Rewritten")
        )
        await session.commit()
    lenient = await client.get("/api/v1/audit/verify")
    strict = await client.get("/api/v1/audit/verify", params={"strict": True})

    assert lenient.status_code == 200
    assert lenient.json()["valid"] is False
    assert strict.status_code == 409
    assert strict.json()["error"]["code"] == "CHN_002"
    assert strict.json()["error"]["detail"]["event_id"] == first["id"]


async def test_event_integrity_endpoint(client):
    created = await _post(client)

    resp = await client.get(f"{EVENTS}/{created['id']}/integrity")
    missing = await client.get(f"{EVENTS}/missing/integrity")

    assert resp.status_code == 200
    body = resp.json()
    assert body["event_id"] == created["id"]
    assert (body["valid"], body["digest_valid"], body["link_valid"]) == (True, True, True)
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "EVT_002"


async def test_trace_endpoint(client):
    await _post(client, trace_id="trace-a", action="first")
    await _post(client, trace_id="trace-b")
    await _post(client, trace_id="trace-a", action="second")

    resp = await client.get("/api/v1/audit/traces/trace-a")

    assert resp.status_code == 200
    assert [e["action"] for e in resp.json()] == ["first", "second"]


async def test_stats_endpoints(client):
    await _post(client)
    await _post(client, event_type="data.accessed")

    stats = await client.get("/api/v1/audit/stats")
    by_type = await client.get("/api/v1/audit/stats/by-type")
    actors = await client.get("/api/v1/audit/stats/actors", params={"limit": 5})

    assert stats.json()["total"] == 2
    assert {row["event_type"] for row in by_type.json()} == {"auth.login.success", "data.accessed"}
    assert actors.json()[0]["actor_id"] == "u1"


# ─── Lifecycle ────────────────────────────────────────────────────────────────

async def test_transition_then_invalid_transition(client, service):
    created = await _post(client)
    await service.audit_logger.drain()
    url = f"{EVENTS}/{created['id']}/transition"

    ok = await client.post(url, json={"status": "ARCHIVED"})
    assert ok.status_code == 200
    assert ok.json()["status"] == "ARCHIVED"

    rejected = await client.post(url, json={"status": "PROCESSED"})
    assert rejected.status_code == 409
    assert rejected.json()["error"]["code"] == "EVT_003"


# ─── Compliance ───────────────────────────────────────────────────────────────

async def test_anonymize_endpoint(client, service):
    await _post(client, event_type="data.accessed", source_ip="10.0.0.7")
    await service.audit_logger.drain()

    resp = await client.post("/api/v1/compliance/anonymize/u1")

    assert resp.json() == {"operation": "anonymize", "affected": 1}
    personal = await client.get("/api/v1/audit/actors/u1/personal-data")
    assert personal.json()[0]["source_ip"] == "MASKED"


async def test_sweep_purge_and_reprocess_endpoints(client):
    await _post(client)

    sweep = await client.post("/api/v1/compliance/sweep")
    purge = await client.post("/api/v1/compliance/purge", params={"min_age_days": 30})
    reprocess = await client.post("/api/v1/compliance/reprocess")

    assert sweep.json() == {"operation": "sweep", "affected": 0}
    assert purge.json() == {"operation": "purge", "affected": 0}
    assert reprocess.status_code == 200
    assert set(reprocess.json()) == {"attempted", "recovered"}


async def test_anonymize_endpoint_reports_unpurged_cache(client, service, redis, monkeypatch):
    await _post(client, event_type="data.accessed", source_ip="10.0.0.7")
    await service.audit_logger.drain()

    async def broken_smembers(key):
        raise RedisConnectionError("Connection reset by peer")

    monkeypatch.setattr(redis, "smembers", broken_smembers)
    resp = await client.post("/api/v1/compliance/anonymize/u1")

    assert resp.status_code == 503
    error = resp.json()["error"]
    assert error["code"] == "INF_002"
    assert error["detail"]["actor_id"] == "u1"
    assert error["detail"]["anonymized_count"] == 1
    personal = await client.get("/api/v1/audit/actors/u1/personal-data")
    assert personal.json()[0]["source_ip"] == "MASKED"


async def test_compliance_report_endpoint(client):
    await _post(client)
    await _post(client, event_type="auth.access.denied")

    resp = await client.get("/api/v1/compliance/report", params={"report_type": "audit"})

    assert resp.status_code == 200
    body = resp.json()
    assert body["report_type"] == "audit"
    assert body["summary"]["total_events"] == 2
    assert body["summary"]["status"] == "PARTIALLY_COMPLIANT"
    assert [v["kind"] for v in body["violations"]] == ["UNAUTHORIZED_ACCESS"]
    assert body["chain"]["valid"] is True


async def test_compliance_report_rejects_inverted_period(client):
    resp = await client.get(
        "/api/v1/compliance/report",
        params={"from": "2026-02-01T00:00:00Z", "to": "2026-01-01T00:00:00Z"},
    )
    assert resp.status_code == 422
    assert resp.json()["error"]["code"] == "EVT_001"


# ─── Health & metrics ─────────────────────────────────────────────────────────

async def test_health(client):
    resp = await client.get("/health")

    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "HEALTHY"
    assert body["database"] == "ok"
    assert body["cache"]["enabled"] is True


async def test_metrics_exposes_counters(client):
    await _post(client)
    resp = await client.get("/metrics")
    assert resp.status_code == 200
    assert "auditchain_events_committed_total" in resp.text


# ─── Request context ──────────────────────────────────────────────────────────

async def test_traceparent_fills_missing_trace_ids(client):
    trace_id = "4bf92f3577b34da6a3ce929d0e0e4736"
    resp = await client.post(
        EVENTS,
        json=draft(),
        headers={"traceparent": f"00-{trace_id}-00f067aa0ba902b7-01"},
    )

    assert resp.status_code == 201
    assert resp.json()["trace_id"] == trace_id
    assert resp.json()["span_id"] == "00f067aa0ba902b7"


async def test_explicit_trace_id_wins_over_header(client):
    resp = await client.post(
        EVENTS,
        json=draft(trace_id="caller-trace"),
        headers={"traceparent": "00-4bf92f3577b34da6a3ce929d0e0e4736-00f067aa0ba902b7-01"},
    )
    assert resp.json()["trace_id"] == "caller-trace"


async def test_invalid_query_uses_error_envelope(client):
    resp = await client.get(EVENTS, params={"page": 0})

    assert resp.status_code == 422
    error = resp.json()["error"]
    assert error["code"] == "EVT_001"
    assert error["detail"]["errors"][0]["loc"] == ["query", "page"]
    assert resp.headers["X-Correlation-ID"]


# ─── Rate limiting ────────────────────────────────────────────────────────────

async def test_rate_limit_uses_error_envelope(service, settings):
    app = create_app(settings=settings.model_copy(update={"rate_limit_default": "1/minute"}))
    app.state.audit_service = service

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as limited:
        assert (await limited.get("/health")).status_code == 200
        resp = await limited.get("/health")

    assert resp.status_code == 429
    error = resp.json()["error"]
    assert error["code"] == "GEN_003"
    assert error["detail"]["limit"]
    assert resp.headers["X-Correlation-ID"]
