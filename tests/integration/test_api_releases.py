"""Integration tests for the REST API against a real database.

Tests cover:
- Kickoff and release reads
- Driving a release through every stage with ticks and callbacks
- Submissions and rollout control over HTTP
- Cycle, slot, task and stage data endpoints
- Error payloads of rejected requests
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

from httpx import AsyncClient

PILOT = {"X-Actor-Id": "pilot-1", "X-Actor-Role": "RELEASE_PILOT"}
MEMBER = {"X-Actor-Id": "dev-1", "X-Actor-Role": "MEMBER"}

KICKOFF: dict[str, Any] = {
    "tenant_id": "acme",
    "release_key": "2.0.0",
    "platform_targets": [{"platform": "ANDROID", "version": "2.0.0"}],
}


async def create_release(client: AsyncClient, **overrides: Any) -> dict[str, Any]:
    response = await client.post("/releases", json={**KICKOFF, **overrides}, headers=PILOT)
    assert response.status_code == 201, response.text
    return response.json()


async def tick(client: AsyncClient, release_id: str) -> dict[str, Any]:
    response = await client.post(f"/releases/{release_id}/tick", headers=PILOT)
    assert response.status_code == 200, response.text
    return response.json()


async def task_of(client: AsyncClient, release_id: str, task_type: str) -> dict[str, Any]:
    response = await client.get(f"/releases/{release_id}/tasks")
    return [task for task in response.json() if task["task_type"] == task_type][-1]


async def report_build(client: AsyncClient, task_id: str, job: str) -> dict[str, Any]:
    response = await client.post(
        "/callbacks/ci",
        json={
            "task_id": task_id,
            "platform": "ANDROID",
            "job_url": f"https://ci.example.com/jobs/{job}",
            "status": "COMPLETED",
            "artifact_path": f"s3://builds/{job}.aab",
        },
        headers={"X-Actor-Id": "ci-bot", "X-Actor-Role": "SYSTEM"},
    )
    assert response.status_code == 200, response.text
    return response.json()


async def run_build_task(client: AsyncClient, release_id: str, task_type: str, job: str) -> dict[str, Any]:
    """Tick until the build task is parked, report its build, and tick once more."""
    await tick(client, release_id)
    await tick(client, release_id)
    task = await task_of(client, release_id, task_type)
    await report_build(client, task["id"], job)
    return await tick(client, release_id)


class TestKickoffEndpoints:
    async def test_kickoff(self, api_client: AsyncClient) -> None:
        release = await create_release(api_client)

        assert release["release_key"] == "2.0.0"
        assert release["status"] == "PENDING"
        assert release["phase"] == "NOT_STARTED"
        assert release["cron_status"] == "PENDING"
        assert release["platform_targets"] == [
            {"platform": "ANDROID", "target": "PLAY_STORE", "version": "2.0.0"}
        ]

    async def test_duplicate_key(self, api_client: AsyncClient) -> None:
        await create_release(api_client)

        response = await api_client.post("/releases", json=KICKOFF, headers=PILOT)

        assert response.status_code == 422
        body = response.json()
        assert body["error"] == "ValidationError"
        assert body["context"] == {"tenant_id": "acme", "release_key": "2.0.0"}

    async def test_mismatched_target(self, api_client: AsyncClient) -> None:
        response = await api_client.post(
            "/releases",
            json={**KICKOFF, "platform_targets": [{"platform": "IOS", "target": "PLAY_STORE", "version": "2.0.0"}]},
        )
        assert response.status_code == 422
        assert response.json()["error"] == "ValidationError"

    async def test_malformed_body(self, api_client: AsyncClient) -> None:
        response = await api_client.post("/releases", json={"tenant_id": "acme", "release_key": "2.0.0"})
        assert response.status_code == 422
        assert isinstance(response.json()["detail"], list)

    async def test_list_and_get(self, api_client: AsyncClient) -> None:
        first = await create_release(api_client)
        await create_release(api_client, release_key="2.1.0")
        await create_release(api_client, tenant_id="globex")

        listed = await api_client.get("/releases", params={"tenant_id": "acme"})
        fetched = await api_client.get(f"/releases/{first['release_id']}")

        assert {r["release_key"] for r in listed.json()} == {"2.0.0", "2.1.0"}
        assert fetched.json()["release_id"] == first["release_id"]

    async def test_unknown_release(self, api_client: AsyncClient) -> None:
        release_id = uuid.uuid4()
        response = await api_client.get(f"/releases/{release_id}")
        assert response.status_code == 404
        assert response.json()["context"] == {"entity": "release", "entity_id": str(release_id)}


class TestReleaseJourney:
    async def test_release_from_kickoff_to_completion(self, api_client: AsyncClient) -> None:
        release = await create_release(api_client)
        release_id = release["release_id"]

        first = await tick(api_client, release_id)
        assert first["phase"] == "REGRESSION"
        kickoff_tasks = await api_client.get(f"/releases/{release_id}/tasks", params={"stage": "KICKOFF"})
        assert len(kickoff_tasks.json()) == 5

        await tick(api_client, release_id)
        waiting = await api_client.get(f"/releases/{release_id}/tasks", params={"status": "AWAITING_CALLBACK"})
        assert [t["task_type"] for t in waiting.json()] == ["TRIGGER_REGRESSION_BUILDS"]
        report = await report_build(api_client, waiting.json()[0]["id"], "rc1")
        assert report["consumed"] is True
        assert report["task_status"] == "COMPLETED"

        regression_done = await tick(api_client, release_id)
        assert regression_done["phase"] == "AWAITING_POST_REGRESSION"
        approval = await api_client.get(f"/releases/{release_id}/approval")
        assert approval.json()["can_approve"] is True

        triggered = await api_client.post(f"/releases/{release_id}/trigger-next-stage", headers=PILOT)
        assert triggered.json()["phase"] == "POST_REGRESSION"

        post_done = await run_build_task(api_client, release_id, "CREATE_AAB_BUILD", "aab")
        assert post_done["phase"] == "AWAITING_SUBMISSION"
        readiness = await api_client.get(f"/releases/{release_id}/promotion-readiness")
        assert readiness.json() == {"can_promote": True, "issues": []}

        await api_client.post(f"/releases/{release_id}/trigger-next-stage", headers=PILOT)
        distribution = await tick(api_client, release_id)
        assert distribution["phase"] == "SUBMISSION"
        assert distribution["cron_status"] == "COMPLETED"

        submissions = (await api_client.get(f"/releases/{release_id}/submissions")).json()
        assert [(s["platform"], s["status"]) for s in submissions] == [("ANDROID", "PENDING")]
        assert submissions[0]["build_id"] is not None
        submission_id = submissions[0]["id"]

        submitted = await api_client.post(
            f"/submissions/{submission_id}/submit", json={"rollout_percentage": 20}, headers=PILOT
        )
        assert submitted.json()["status"] == "IN_REVIEW"
        view = (await api_client.get(f"/releases/{release_id}")).json()
        assert view["status"] == "SUBMITTED"
        assert view["phase"] == "SUBMITTED_PENDING_APPROVAL"

        for status in ("APPROVED", "LIVE"):
            response = await api_client.post(f"/submissions/{submission_id}/store-status", json={"status": status})
            assert response.status_code == 200, response.text
        assert response.json()["rollout_percentage"] == 20.0

        rolled = await api_client.patch(
            f"/releases/{release_id}/rollout",
            json={"platform": "ANDROID", "rollout_percentage": 50, "reason": "crash-free"},
            headers=PILOT,
        )
        assert rolled.json()["rollout_percentage"] == 50.0

        paused = await api_client.patch(
            f"/releases/{release_id}/rollout/pause", json={"platform": "ANDROID", "reason": "spike"}
        )
        assert paused.status_code == 400
        assert paused.json()["error"] == "InvalidPlatformOperation"

        completed = await api_client.post(f"/releases/{release_id}/complete", headers=PILOT)
        assert completed.json()["status"] == "COMPLETED"
        assert completed.json()["phase"] == "COMPLETED"

        activity = await api_client.get(f"/releases/{release_id}/activity", params={"action": "release_completed"})
        assert [entry["actor"] for entry in activity.json()] == ["pilot-1"]

    async def test_forced_approval_needs_privilege(self, api_client: AsyncClient) -> None:
        release = await create_release(api_client, integrations=["TEST_MANAGEMENT"])
        release_id = release["release_id"]
        done = await run_build_task(api_client, release_id, "TRIGGER_REGRESSION_BUILDS", "rc1")
        assert done["phase"] == "AWAITING_POST_REGRESSION"

        blocked = await api_client.post(f"/releases/{release_id}/trigger-next-stage", headers=PILOT)
        assert blocked.status_code == 409
        assert blocked.json()["error"] == "InvalidTransition"

        forbidden = await api_client.post(
            f"/releases/{release_id}/trigger-next-stage", json={"force_approve": True}, headers=MEMBER
        )
        assert forbidden.status_code == 403

        forced = await api_client.post(
            f"/releases/{release_id}/trigger-next-stage", json={"force_approve": True}, headers=PILOT
        )
        assert forced.status_code == 200
        assert forced.json()["current_stage"] == "POST_REGRESSION"

    async def test_stage_data_unblocks_approval(self, api_client: AsyncClient) -> None:
        release = await create_release(api_client, integrations=["TEST_MANAGEMENT"])
        release_id = release["release_id"]
        await run_build_task(api_client, release_id, "TRIGGER_REGRESSION_BUILDS", "rc1")

        merged = await api_client.patch(
            f"/releases/{release_id}/stage-data",
            json={"data": {"test_management": {"passed": True}}},
            headers=PILOT,
        )
        approval = await api_client.get(f"/releases/{release_id}/approval")

        assert merged.json() == {"test_management": {"passed": True}}
        assert approval.json()["requirements"]["test_management_passed"] is True


class TestControlEndpoints:
    async def test_pause_resume_archive(self, api_client: AsyncClient) -> None:
        release_id = (await create_release(api_client))["release_id"]
        await tick(api_client, release_id)

        paused = await api_client.post(f"/releases/{release_id}/pause", json={"reason": "freeze"}, headers=PILOT)
        assert paused.json()["phase"] == "PAUSED_BY_USER"

        resumed = await api_client.post(f"/releases/{release_id}/resume", headers=PILOT)
        assert resumed.json()["status"] == "IN_PROGRESS"

        again = await api_client.post(f"/releases/{release_id}/resume", headers=PILOT)
        assert again.status_code == 409

        archived = await api_client.post(f"/releases/{release_id}/archive", headers=PILOT)
        assert archived.json()["phase"] == "ARCHIVED"

        active = await api_client.get("/releases", params={"include_archived": False})
        assert active.json() == []

    async def test_task_endpoints(self, api_client: AsyncClient) -> None:
        release_id = (await create_release(api_client))["release_id"]
        await tick(api_client, release_id)
        fork = await task_of(api_client, release_id, "FORK_BRANCH")

        fetched = await api_client.get(f"/tasks/{fork['id']}")
        retry = await api_client.post(f"/tasks/{fork['id']}/retry", headers=PILOT)
        missing = await api_client.get(f"/tasks/{uuid.uuid4()}")

        assert fetched.json()["output"]["branch_name"] == "release/2.0.0"
        assert retry.status_code == 409
        assert missing.status_code == 404

    async def test_cycle_endpoints(self, api_client: AsyncClient) -> None:
        release_id = (await create_release(api_client))["release_id"]
        await tick(api_client, release_id)
        cycles = (await api_client.get(f"/releases/{release_id}/cycles")).json()
        assert [(c["cycle_tag"], c["status"]) for c in cycles] == [("RC1", "IN_PROGRESS")]
        cycle_id = cycles[0]["id"]

        busy = await api_client.post(f"/releases/{release_id}/cycles", headers=PILOT)
        assert busy.status_code == 409
        assert busy.json()["error"] == "CycleAlreadyActive"

        unsettled = await api_client.post(f"/releases/{release_id}/cycles/{cycle_id}/complete", headers=PILOT)
        assert unsettled.status_code == 409

        no_reason = await api_client.post(
            f"/releases/{release_id}/cycles/{cycle_id}/abandon", json={"reason": ""}, headers=PILOT
        )
        assert no_reason.status_code == 422

        abandoned = await api_client.post(
            f"/releases/{release_id}/cycles/{cycle_id}/abandon", json={"reason": "bad build"}, headers=PILOT
        )
        assert abandoned.json()["status"] == "ABANDONED"
        assert abandoned.json()["abandoned_reason"] == "bad build"

        restarted = await api_client.post(f"/releases/{release_id}/cycles", headers=PILOT)
        assert restarted.status_code == 201
        assert restarted.json()["cycle_tag"] == "RC2"
        assert restarted.json()["is_latest"] is True

    async def test_regression_slots(self, api_client: AsyncClient) -> None:
        release_id = (await create_release(api_client))["release_id"]
        later = datetime.now(timezone.utc) + timedelta(days=4)
        sooner = datetime.now(timezone.utc) + timedelta(days=2)

        response = await api_client.post(
            f"/releases/{release_id}/regression-slots",
            json={"slots": [{"date": later.isoformat()}, {"date": sooner.isoformat(), "config": {"suite": "smoke"}}]},
            headers=PILOT,
        )

        assert response.status_code == 200
        slots = response.json()
        assert [slot["config"] for slot in slots] == [{"suite": "smoke"}, {}]
        view = (await api_client.get(f"/releases/{release_id}")).json()
        assert len(view["upcoming_regressions"]) == 2

    async def test_manual_upload_endpoints(self, api_client: AsyncClient) -> None:
        release_id = (await create_release(api_client, has_manual_build_upload=True))["release_id"]
        await tick(api_client, release_id)

        uploaded = await api_client.post(
            f"/releases/{release_id}/builds",
            json={"platform": "ANDROID", "build_stage": "REGRESSION", "artifact_path": "uploads/app.aab"},
            headers=PILOT,
        )
        builds = await api_client.get(f"/releases/{release_id}/builds", params={"build_stage": "REGRESSION"})

        assert uploaded.status_code == 201
        assert uploaded.json()["task_status"] == "COMPLETED"
        assert [(b["source"], b["platform"]) for b in builds.json()] == [("MANUAL", "ANDROID")]
        assert builds.json()[0]["task_id"] == uploaded.json()["task_id"]

    async def test_ci_callback_on_manual_release(self, api_client: AsyncClient) -> None:
        release_id = (await create_release(api_client, has_manual_build_upload=True))["release_id"]
        await tick(api_client, release_id)
        task = await task_of(api_client, release_id, "TRIGGER_REGRESSION_BUILDS")

        response = await api_client.post(
            "/callbacks/ci",
            json={
                "task_id": task["id"],
                "platform": "ANDROID",
                "job_url": "https://ci.example.com/jobs/1",
                "status": "COMPLETED",
            },
        )

        assert response.status_code == 409
        assert response.json()["error"] == "InvalidTransition"
