from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from printvault.apps.api.main import create_app
from printvault.tests.utils.auth import admin_headers, auth_headers
from printvault.tests.utils.seed import page_layout, seed_assignment


def _client() -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=create_app()), base_url="http://test")


@pytest.mark.asyncio
async def test_submit_job_and_read_status() -> None:
    async with _client() as client:
        submitted = await client.post(
            "/v1/jobs",
            headers=admin_headers(),
            json={"owner_id": "gina", "layout_pages": [page_layout(), page_layout()], "assigned_quota": 3},
        )
        assert submitted.status_code == 202
        job_id = submitted.json()["data"]["job_id"]

        status = await client.get(f"/v1/jobs/{job_id}", headers=auth_headers("gina"))
        assert status.status_code == 200
        data = status.json()["data"]
        # Inline mode renders and merges before the submit call returns.
        assert data["status"] == "completed"
        assert data["completed_pages"] == 2
        assert data["output_document_id"]
        assert data["heal"]["skipped"] == "resolved"

        foreign = await client.get(f"/v1/jobs/{job_id}", headers=auth_headers("hank"))
        assert foreign.status_code == 404
        admin_view = await client.get(f"/v1/jobs/{job_id}", headers=admin_headers())
        assert admin_view.status_code == 200

        assigned = await client.get("/v1/assigned", headers=auth_headers("gina"))
        items = assigned.json()["data"]["items"]
        assert [item["kind"] for item in items] == ["document"]
        assert items[0]["document_id"] == data["output_document_id"]
        assert items[0]["remaining_prints"] == 3


@pytest.mark.asyncio
async def test_submit_rejects_bad_layouts_and_non_admins() -> None:
    async with _client() as client:
        empty = await client.post(
            "/v1/jobs",
            headers=admin_headers(),
            json={"owner_id": "gina", "layout_pages": [], "assigned_quota": 1},
        )
        assert empty.status_code == 422
        assert empty.json()["error"]["code"] == "INVALID_LAYOUT"

        no_quota = await client.post(
            "/v1/jobs",
            headers=admin_headers(),
            json={"owner_id": "gina", "layout_pages": [page_layout()], "assigned_quota": 0},
        )
        assert no_quota.status_code == 422

        user = await client.post(
            "/v1/jobs",
            headers=auth_headers("gina"),
            json={"owner_id": "gina", "layout_pages": [page_layout()], "assigned_quota": 1},
        )
        assert user.status_code == 403

        missing = await client.get("/v1/jobs/unknown", headers=auth_headers("gina"))
        assert missing.status_code == 404


@pytest.mark.asyncio
async def test_assigned_summary_counts_prints() -> None:
    await seed_assignment(owner_id="ivy", quota=3, title="Transcript")
    await seed_assignment(owner_id="ivy", quota=2, title="Diploma")
    async with _client() as client:
        summary = await client.get("/v1/assigned/summary", headers=auth_headers("ivy"))
        assert summary.status_code == 200
        assert summary.json()["data"] == {
            "documents": 2,
            "total_assigned": 5,
            "total_used": 0,
            "remaining": 5,
            "pending_jobs": 0,
        }
        listing = await client.get("/v1/assigned", headers=auth_headers("ivy"))
        titles = sorted(item["title"] for item in listing.json()["data"]["items"])
        assert titles == ["Diploma", "Transcript"]


@pytest.mark.asyncio
async def test_ops_endpoints() -> None:
    async with _client() as client:
        health = await client.get("/v1/health")
        assert health.status_code == 200
        assert health.json()["data"] == {"status": "ok"}

        await client.post(
            "/v1/jobs",
            headers=admin_headers(),
            json={"owner_id": "gina", "layout_pages": [page_layout()], "assigned_quota": 1},
        )

        ops = await client.get("/v1/ops/health", headers=admin_headers())
        assert ops.status_code == 200
        data = ops.json()["data"]
        assert data["status"] == "ok"
        assert data["queue"] == "inline"
        assert data["queue_depth"] == {"render": 0, "merge": 0}

        denied = await client.get("/v1/ops/health", headers=auth_headers("gina"))
        assert denied.status_code == 403

        metrics = await client.get("/v1/ops/metrics", headers=admin_headers())
        assert metrics.status_code == 200
        counters = metrics.json()["data"]["counters"]
        assert counters["render_jobs_submitted_total"] == 1
        assert counters["merges_completed_total"] == 1
        assert metrics.json()["data"]["gauges"]["queue_depth.render"] == 0.0
