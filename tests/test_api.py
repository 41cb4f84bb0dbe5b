"""Tests for API routes."""
from __future__ import annotations

import asyncio
import json
import time
from types import SimpleNamespace
from unittest.mock import patch

import httpx
import pytest

from topicmesh.api.routes import research as research_routes
from topicmesh.config import Settings
from topicmesh.models.schemas import ResearchRequest
from topicmesh.services.runtime import build_runtime


def searxng_handler(request: httpx.Request) -> httpx.Response:
    query = request.url.params.get("q", "")
    engine = (request.url.params.get("engines") or "duckduckgo").split(",")[0]
    slug = query.replace(" ", "-")
    return httpx.Response(
        200,
        json={
            "query": query,
            "results": [
                {
                    "title": f"Quantum computing reference {n}",
                    "url": f"https://{engine.replace(' ', '')}.example.org/{slug}/{n}",
                    "content": (
                        "Quantum computing relies on qubits, superposition and entanglement to solve "
                        f"specific problems faster than classical hardware, entry {n}."
                    ),
                    "engine": engine,
                    "score": 1.0,
                }
                for n in range(2)
            ],
        },
    )


def api_settings(**overrides) -> Settings:
    values = {
        "searxng_base_url": "http://searx.test",
        "max_depth": 1,
        "retry_base_delay_seconds": 0.0,
        "retry_jitter": False,
        "cache_enabled": False,
        "document_index_enabled": False,
        "synthesis_enabled": False,
        "heartbeat_interval_seconds": 0.1,
    }
    values.update(overrides)
    return Settings(**values)


def mock_runtime(handler=searxng_handler, **overrides):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return build_runtime(api_settings(**overrides), http_client=client)


@pytest.fixture
def app():
    """App whose runtime talks to an in-memory SearXNG."""
    with patch("topicmesh.main.build_runtime", side_effect=lambda config: mock_runtime()):
        from topicmesh.main import app

        yield app


@pytest.fixture
def client(app):
    from fastapi.testclient import TestClient

    with TestClient(app) as test_client:
        yield test_client


def test_health(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert data["service"] == "topicmesh"
    assert data["search_breaker"] == "closed"


def test_start_and_fetch_research(client):
    response = client.post("/api/research", json={"topic": "quantum computing", "topic_id": "qc-api"})
    assert response.status_code == 200
    assert response.json() == {"topic_id": "qc-api", "status": "started"}

    data = {"status": "running"}
    for _ in range(100):
        data = client.get("/api/research/qc-api").json()
        if data["status"] != "running":
            break
        time.sleep(0.05)

    assert data["status"] == "completed"
    tree = data["result"]["research_tree"]
    assert tree["topic"] == "quantum computing"
    assert tree["status"] == "completed"
    assert data["result"]["total_nodes"] == 1


def test_generated_topic_id(client):
    response = client.post("/api/research", json={"topic": "Graph Theory"})
    assert response.status_code == 200
    assert response.json()["topic_id"].startswith("graph-theory-")


def test_topic_with_slash_gets_routable_id(client):
    topic_id = client.post("/api/research", json={"topic": "TCP/IP basics"}).json()["topic_id"]

    assert topic_id.startswith("tcp-ip-basics-")
    assert client.get(f"/api/research/{topic_id}").status_code == 200


def test_rejects_topic_id_outside_url_alphabet(client):
    response = client.post("/api/research", json={"topic": "TCP/IP", "topic_id": "tcp/ip"})
    assert response.status_code == 422


def test_rejects_empty_topic(client):
    response = client.post("/api/research", json={"topic": ""})
    assert response.status_code == 422


def test_unknown_research_is_404(client):
    assert client.get("/api/research/missing").status_code == 404
    assert client.delete("/api/research/missing").status_code == 404
    assert client.get("/api/research/missing/stream").status_code == 404


def fake_request(runtime, jobs):
    async def is_disconnected() -> bool:
        return False

    return SimpleNamespace(
        app=SimpleNamespace(state=SimpleNamespace(runtime=runtime, jobs=jobs)),
        is_disconnected=is_disconnected,
    )


async def collect(response) -> list[dict]:
    items = []
    async for item in response.body_iterator:
        items.append(item)
    return items


@pytest.mark.asyncio
async def test_stream_replays_finished_research():
    runtime = mock_runtime()
    jobs = research_routes.ResearchJobs()
    await runtime.research.start_recursive_research("quantum computing", "qc-replay")

    response = await research_routes.stream_research("qc-replay", fake_request(runtime, jobs))
    items = await asyncio.wait_for(collect(response), timeout=5)

    assert items[-1]["event"] == "complete"
    assert json.loads(items[-1]["data"])["data"]["status"] == "completed"
    assert "status" in {item["event"] for item in items}
    await runtime.aclose()


@pytest.mark.asyncio
async def test_stream_follows_running_research():
    runtime = mock_runtime()
    jobs = research_routes.ResearchJobs()
    jobs.start(runtime, "qc-live", ResearchRequest(topic="quantum computing"))

    response = await research_routes.stream_research("qc-live", fake_request(runtime, jobs))
    items = await asyncio.wait_for(collect(response), timeout=10)

    events = [item["event"] for item in items]
    assert events[-1] == "complete"
    assert "content" in events
    assert runtime.broadcaster.subscriber_count("qc-live") == 0
    await jobs.shutdown()
    await runtime.aclose()


@pytest.mark.asyncio
async def test_finished_jobs_are_pruned():
    runtime = mock_runtime()
    jobs = research_routes.ResearchJobs()
    jobs.start(runtime, "qc-prune", ResearchRequest(topic="quantum computing"))
    assert len(jobs) == 1

    async def drained():
        while len(jobs):
            await asyncio.sleep(0.01)

    await asyncio.wait_for(drained(), timeout=10)

    assert jobs.is_running("qc-prune") is False
    assert jobs.cancel("qc-prune") is False
    assert runtime.research.get_history("qc-prune").status == "completed"
    await runtime.aclose()


@pytest.mark.asyncio
async def test_cancel_running_research():
    async def slow_handler(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(10)
        return searxng_handler(request)

    runtime = mock_runtime(slow_handler)
    jobs = research_routes.ResearchJobs()
    jobs.start(runtime, "qc-cancel", ResearchRequest(topic="quantum computing"))
    await asyncio.sleep(0.05)

    assert jobs.is_running("qc-cancel")
    assert jobs.cancel("qc-cancel") is True
    await asyncio.wait_for(jobs.shutdown(), timeout=5)

    result = runtime.research.get_history("qc-cancel")
    assert result.status == "error"
    assert result.error == "Research cancelled by client"
    assert jobs.is_running("qc-cancel") is False
    await runtime.aclose()
