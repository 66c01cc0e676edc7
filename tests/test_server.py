"""Tests for the HTTP command surface."""

import pytest
from aiohttp import test_utils

from autopilot.server import CommandServer


@pytest.fixture
async def client(scheduler, runner, store):
    server = CommandServer(scheduler, runner, store)
    async with test_utils.TestClient(test_utils.TestServer(server.build_app())) as http:
        yield http


@pytest.fixture
async def check_price(store, driver):
    driver.extracts[".price"] = "$19.99"
    await store.upsert({"name": "CheckPrice", "steps": [{"type": "extract", "selector": ".price"}]})


class TestJobRoutes:
    """Test job management over HTTP."""

    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/health")

        assert response.status == 200
        body = await response.json()
        assert body["status"] == "healthy"
        assert body["jobs"] == 0

    @pytest.mark.asyncio
    async def test_create_and_list(self, client, check_price):
        response = await client.post("/jobs", json={
            "functionName": "CheckPrice",
            "scheduleType": "interval",
            "intervalMinutes": 30,
        })
        assert response.status == 200
        job_id = (await response.json())["job"]["id"]

        listed = await (await client.get("/jobs")).json()
        assert [j["id"] for j in listed["jobs"]] == [job_id]

    @pytest.mark.asyncio
    async def test_invalid_job_is_bad_request(self, client):
        response = await client.post("/jobs", json={"functionName": "CheckPrice", "intervalMinutes": 0})

        assert response.status == 400
        body = await response.json()
        assert body["errorType"] == "ValidationError"
        assert body["field"] == "intervalMinutes"

    @pytest.mark.asyncio
    async def test_malformed_body(self, client):
        response = await client.post("/jobs", data="{not json", headers={"Content-Type": "application/json"})

        assert response.status == 400

    @pytest.mark.asyncio
    async def test_bad_context_id(self, client):
        response = await client.post("/jobs", json={"functionName": "F", "contextId": "tab-one"})

        assert response.status == 400
        assert (await response.json())["field"] == "contextId"

    @pytest.mark.asyncio
    async def test_unknown_job(self, client):
        response = await client.delete("/jobs/job_missing")

        assert response.status == 404

    @pytest.mark.asyncio
    async def test_run_disable_enable(self, client, check_price):
        created = await (await client.post("/jobs", json={"functionName": "CheckPrice", "intervalMinutes": 5})).json()
        job_id = created["job"]["id"]

        run = await (await client.post(f"/jobs/{job_id}/run")).json()
        assert run["success"]
        assert run["result"]["data"] == ["$19.99"]

        disabled = await (await client.post(f"/jobs/{job_id}/disable")).json()
        assert disabled["job"]["enabled"] is False

        enabled = await (await client.post(f"/jobs/{job_id}/enable")).json()
        assert enabled["job"]["enabled"] is True

    @pytest.mark.asyncio
    async def test_scheduler_command(self, client):
        response = await client.post("/scheduler", json={"action": "list"})

        assert (await response.json()) == {"success": True, "jobs": []}

    @pytest.mark.asyncio
    async def test_dom_change_event_requires_job(self, client):
        response = await client.post("/events/dom-change", json={"contextId": 1})

        assert response.status == 400

    @pytest.mark.asyncio
    async def test_tab_event(self, client, driver, check_price):
        driver.texts[1] = "Flash sale"
        await client.post("/jobs", json={"functionName": "CheckPrice", "scheduleType": "keyword", "keyword": "sale"})

        body = await (await client.post("/events/tab", json={"reason": "tab-activated"})).json()

        assert body["success"]
        assert len(body["results"]) == 1


class TestFunctionRoutes:
    """Test function library over HTTP."""

    @pytest.mark.asyncio
    async def test_save_and_run(self, client, driver):
        saved = await (await client.post("/functions", json={
            "name": "Search",
            "inputs": [{"name": "query", "required": True}],
            "steps": [{"type": "type", "selector": "#q", "value": "{{query}}"}],
        })).json()
        assert saved == {"success": True, "name": "Search", "renamed": False}

        response = await client.post("/functions/Search/run", json={"inputs": {"query": "desk"}, "contextId": 1})

        assert response.status == 200
        assert driver.calls_of("type") == [("type", 1, "#q", "desk")]

    @pytest.mark.asyncio
    async def test_save_many(self, client):
        body = await (await client.post("/functions", json={
            "functions": [{"name": "A"}, {"name": "A"}],
        })).json()

        assert body["saved"] == ["A", "AV2"]

        listed = await (await client.get("/functions")).json()
        assert sorted(f["name"] for f in listed["functions"]) == ["A", "AV2"]

    @pytest.mark.asyncio
    async def test_invalid_function(self, client):
        response = await client.post("/functions", json={"name": "Bad", "steps": [{"type": "warp"}]})

        assert response.status == 400

    @pytest.mark.asyncio
    async def test_run_unknown_function(self, client):
        response = await client.post("/functions/Missing/run", json={})

        assert response.status == 404


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
