# tests/test_routes.py
"""HTTP API routes over ASGI, backed by a real (not started) coordinator"""

import httpx
import pytest
import pytest_asyncio
from fastapi import FastAPI

from recon.routers import recon_routes
from recon.services.pipeline_coordinator import create_pipeline_coordinator

HUNTER_BODY = {
    "data": {
        "pattern": "{first}",
        "emails": [
            {
                "value": "jane@acme.com",
                "first_name": "Jane",
                "last_name": "Doe",
                "sources": [{"domain": "blog.example.com", "uri": "https://blog.example.com/team",
                             "extracted_on": "2021-04-02"}],
            }
        ],
    }
}


def _collaborators(request: httpx.Request) -> httpx.Response:
    if request.url.host == "hunter.test":
        return httpx.Response(200, json=HUNTER_BODY)
    return httpx.Response(503, text="unavailable")


@pytest_asyncio.fixture
async def coordinator(test_settings, session_factory, publisher):
    coordinator = create_pipeline_coordinator(
        test_settings,
        session_factory,
        publisher=publisher,
        http_transport=httpx.MockTransport(_collaborators),
    )
    yield coordinator
    await coordinator.stop()


@pytest_asyncio.fixture
async def client(coordinator):
    app = FastAPI()
    app.include_router(recon_routes.router)
    app.state.coordinator = coordinator

    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        yield client


class TestDomainRoutes:

    @pytest.mark.asyncio
    async def test_add_and_list_domains(self, client):
        response = await client.post("/api/domain", json={"domain": " Acme.COM "})

        assert response.status_code == 200
        assert response.json()["domain"] == "acme.com"

        listed = (await client.get("/api/domains")).json()
        assert listed["domains"][0]["name"] == "acme.com"

    @pytest.mark.asyncio
    async def test_blank_domain_rejected(self, client):
        response = await client.post("/api/domain", json={"domain": "   "})
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_autodiscover_failure_in_body(self, client):
        response = await client.post("/api/domain/related", json={"domain": "acme.com"})

        body = response.json()
        assert response.status_code == 200
        assert body["success"] is False
        assert "503" in body["error"]


class TestReconRoutes:

    @pytest.mark.asyncio
    async def test_start_recon_and_list(self, client):
        response = await client.post("/api/recon/start", json={"domain": "acme.com"})

        body = response.json()
        assert body["success"] is True
        assert body["results"]["targetsCount"] == 1

        targets = (await client.get("/api/targets", params={"domain": "acme.com"})).json()["targets"]
        assert targets == [{
            "email": "jane@acme.com",
            "name": "Jane Doe",
            "profile": None,
            "linkedin_url": None,
            "domain_name": "acme.com",
            "tenure_start": "2021-04-02",
            "status": "pending",
        }]

        sources = (await client.get("/api/targets/jane@acme.com/sources")).json()["sources"]
        assert [s["url"] for s in sources] == ["https://blog.example.com/team"]
        assert sources[0]["status"] == "pending"

        stats = (await client.get("/api/queue/source-scraping")).json()
        assert stats["counts"]["queued"] == 1

    @pytest.mark.asyncio
    async def test_recon_without_hunter_key(self, client, coordinator):
        coordinator.hunter.api_key = None

        response = await client.post("/api/recon/start", json={"domain": "acme.com"})

        assert response.status_code == 500

    @pytest.mark.asyncio
    async def test_unknown_target_sources(self, client):
        response = await client.get("/api/targets/ghost@acme.com/sources")
        assert response.status_code == 404


class TestQueueRoutes:

    @pytest.mark.asyncio
    async def test_unknown_stage(self, client):
        assert (await client.get("/api/queue/nope")).status_code == 400
        assert (await client.delete("/api/queue/nope")).status_code == 400

    @pytest.mark.asyncio
    async def test_clear_queue(self, client):
        await client.post("/api/recon/start", json={"domain": "acme.com"})

        response = await client.delete("/api/queue/source-scraping")

        assert response.json() == {"success": True, "stage": "source-scraping", "cleared": 1}

    @pytest.mark.asyncio
    async def test_rescrape_missing_source(self, client):
        assert (await client.post("/api/sources/999/rescrape")).status_code == 404

    @pytest.mark.asyncio
    async def test_queue_sources_empty(self, client):
        response = await client.post("/api/sources/queue", json={})
        assert response.json()["count"] == 0


class TestGenerationRoutes:

    @pytest.mark.asyncio
    async def test_profile_and_pretext_requests(self, client, coordinator):
        await client.post("/api/recon/start", json={"domain": "acme.com"})
        await client.post("/api/prompts", json={"name": "invoice", "template": "Write to {name}"})

        profile = (await client.post("/api/targets/jane@acme.com/profile")).json()
        assert profile["stage"] == "profile-generation"
        assert profile["created"] is True

        pretext = await client.post("/api/targets/jane@acme.com/pretexts", json={"promptName": "invoice"})
        assert pretext.json()["stage"] == "pretext-generation"

        missing = await client.post("/api/targets/jane@acme.com/pretexts", json={"promptName": "nope"})
        assert missing.status_code == 404

    @pytest.mark.asyncio
    async def test_review_pretext(self, client, coordinator):
        await client.post("/api/recon/start", json={"domain": "acme.com"})
        pretext_id = await coordinator.store.create_pretext("jane@acme.com", None, "prompt", "Hi", "Body")

        first = await client.post(f"/api/pretexts/{pretext_id}/review", json={"approved": False})
        second = await client.post(f"/api/pretexts/{pretext_id}/review", json={"approved": True})

        assert first.json() == {"success": True, "id": pretext_id, "status": "rejected"}
        assert second.status_code == 409
