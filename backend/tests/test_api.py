"""HTTP API tests: workflows, enrollments, event intake, appointment triggers and health."""

import pytest

SMS = {"id": "sms", "type": "send_sms", "order": 1, "config": {"message": "Hi {{first_name}}"}}
WORKFLOWS = "/api/v1/workflows/"
ENROLLMENTS = "/api/v1/enrollments/"
EVENTS = "/api/v1/events/"
TRIGGERS = "/api/v1/appointment-triggers/"


async def create_workflow(client, headers, **overrides):
    body = {"name": "Toxins follow-up", "trigger": "toxins", "actions": [SMS], "status": "active"}
    body.update(overrides)
    response = await client.post(WORKFLOWS, json=body, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()


async def enroll(client, headers, workflow_id, client_id="client-1"):
    return await client.post(
        f"{WORKFLOWS}{workflow_id}/enrollments",
        json={"client_id": client_id, "facts": {"firstName": "Ana"}},
        headers=headers,
    )


# ─── Workflows ───

@pytest.mark.integration
class TestWorkflowEndpoints:

    async def test_create_and_get(self, client, org_headers):
        created = await create_workflow(client, org_headers, status="draft")

        assert created["status"] == "draft"
        assert created["duplicate_prevention_days"] == 30
        assert created["total_runs"] == 0

        response = await client.get(f"{WORKFLOWS}{created['id']}", headers=org_headers)
        assert response.status_code == 200
        assert response.json()["name"] == "Toxins follow-up"

    async def test_missing_organization_header(self, client):
        response = await client.get(WORKFLOWS)
        assert response.status_code == 400
        assert "X-Organization-ID" in response.json()["detail"]

    async def test_invalid_definition_is_422(self, client, org_headers):
        response = await client.post(
            WORKFLOWS,
            json={"name": "Bad", "trigger": "filler", "actions": [{"type": "send_sms", "order": 1, "config": {}}]},
            headers=org_headers,
        )
        assert response.status_code == 422
        body = response.json()
        assert body["error_code"]
        assert "request_id" in body

    async def test_other_organization_gets_404(self, client, org_headers):
        created = await create_workflow(client, org_headers)
        response = await client.get(f"{WORKFLOWS}{created['id']}", headers={"X-Organization-ID": "org-other"})
        assert response.status_code == 404
        assert response.json()["error_code"] == "NotFoundError"

    async def test_list_and_filter(self, client, org_headers):
        await create_workflow(client, org_headers, name="A")
        await create_workflow(client, org_headers, name="B", status="draft")

        response = await client.get(WORKFLOWS, params={"status_filter": "active"}, headers=org_headers)
        body = response.json()
        assert body["total"] == 1
        assert body["workflows"][0]["name"] == "A"

    async def test_update(self, client, org_headers):
        created = await create_workflow(client, org_headers)
        response = await client.put(
            f"{WORKFLOWS}{created['id']}",
            json={"name": "Renamed", "duplicate_prevention_days": 14},
            headers=org_headers,
        )
        assert response.status_code == 200
        assert response.json()["name"] == "Renamed"
        assert response.json()["duplicate_prevention_days"] == 14

    async def test_update_can_clear_directory(self, client, org_headers):
        created = await create_workflow(client, org_headers, directory_id="dir-1")
        url = f"{WORKFLOWS}{created['id']}"

        renamed = await client.put(url, json={"name": "Renamed"}, headers=org_headers)
        assert renamed.json()["directory_id"] == "dir-1"

        cleared = await client.put(url, json={"directory_id": None}, headers=org_headers)
        assert cleared.status_code == 200
        assert cleared.json()["directory_id"] is None
        assert cleared.json()["name"] == "Renamed"

    async def test_status_change_pauses_enrollments(self, client, org_headers):
        created = await create_workflow(client, org_headers)
        enrollment = (await enroll(client, org_headers, created["id"])).json()

        response = await client.put(
            f"{WORKFLOWS}{created['id']}/status", json={"status": "inactive"}, headers=org_headers
        )
        assert response.status_code == 200
        assert response.json()["status"] == "inactive"

        current = await client.get(f"{ENROLLMENTS}{enrollment['id']}", headers=org_headers)
        assert current.json()["status"] == "paused"

    async def test_manual_enrollment_and_guard(self, client, org_headers):
        created = await create_workflow(client, org_headers)

        first = await enroll(client, org_headers, created["id"])
        assert first.status_code == 201
        body = first.json()
        assert body["status"] == "active"
        assert body["current_step"] == "sms"
        assert body["metadata"]["facts"]["first_name"] == "Ana"

        again = await enroll(client, org_headers, created["id"])
        assert again.status_code == 409
        assert again.json()["error_code"] == "ConflictError"

    async def test_workflow_logs(self, client, org_headers):
        created = await create_workflow(client, org_headers)
        await enroll(client, org_headers, created["id"])

        response = await client.get(f"{WORKFLOWS}{created['id']}/logs", headers=org_headers)
        assert response.status_code == 200
        assert response.json() == {"logs": [], "total": 0}

        foreign = await client.get(f"{WORKFLOWS}{created['id']}/logs", headers={"X-Organization-ID": "org-other"})
        assert foreign.status_code == 404

    async def test_dry_run(self, client, org_headers):
        created = await create_workflow(
            client, org_headers,
            conditions=[{"field": "appointment_type", "operator": "contains", "value": "botox"}],
        )

        response = await client.post(
            f"{WORKFLOWS}{created['id']}/test",
            json={"client_id": "client-1", "facts": {"appointmentType": "Botox Touch-up"}},
            headers=org_headers,
        )

        assert response.status_code == 200
        body = response.json()
        assert body["would_enroll"] is True
        assert body["conditions"] == [
            {"field": "appointment_type", "operator": "contains", "value": "botox", "met": True}
        ]
        assert body["steps"] == [
            {"step_id": "sms", "type": "send_sms", "order": 1, "offset_ms": 0, "content": "Hi Ana"}
        ]
        listing = await client.get(ENROLLMENTS, params={"workflow_id": created["id"]}, headers=org_headers)
        assert listing.json()["total"] == 0

    async def test_stats(self, client, org_headers):
        created = await create_workflow(client, org_headers)
        await enroll(client, org_headers, created["id"], "client-1")
        await enroll(client, org_headers, created["id"], "client-2")

        response = await client.get(f"{WORKFLOWS}{created['id']}/stats", headers=org_headers)
        stats = response.json()
        assert stats["total_runs"] == 2
        assert stats["enrollments"]["active"] == 2


# ─── Enrollments ───

@pytest.mark.integration
class TestEnrollmentEndpoints:

    async def test_list_get_and_logs(self, client, org_headers):
        created = await create_workflow(client, org_headers)
        enrollment = (await enroll(client, org_headers, created["id"])).json()

        listing = await client.get(ENROLLMENTS, params={"workflow_id": created["id"]}, headers=org_headers)
        assert listing.json()["total"] == 1

        detail = await client.get(f"{ENROLLMENTS}{enrollment['id']}", headers=org_headers)
        assert detail.json()["client_id"] == "client-1"

        logs = await client.get(f"{ENROLLMENTS}{enrollment['id']}/logs", headers=org_headers)
        assert logs.status_code == 200
        assert logs.json() == {"logs": [], "total": 0}

    async def test_pause_resume_cancel(self, client, org_headers):
        created = await create_workflow(client, org_headers)
        enrollment_id = (await enroll(client, org_headers, created["id"])).json()["id"]
        base = f"{ENROLLMENTS}{enrollment_id}"

        paused = await client.post(f"{base}/pause", headers=org_headers)
        assert paused.json()["status"] == "paused"
        assert paused.json()["next_execution_at"] is None

        resumed = await client.post(f"{base}/resume", headers=org_headers)
        assert resumed.json()["status"] == "active"
        assert resumed.json()["next_execution_at"] is not None

        cancelled = await client.post(f"{base}/cancel", headers=org_headers)
        assert cancelled.json()["status"] == "cancelled"

        # Terminal enrollments cannot be paused again
        refused = await client.post(f"{base}/pause", headers=org_headers)
        assert refused.status_code == 409

    async def test_unknown_enrollment_404(self, client, org_headers):
        response = await client.get(f"{ENROLLMENTS}missing", headers=org_headers)
        assert response.status_code == 404


# ─── Events ───

@pytest.mark.integration
class TestEventEndpoints:

    async def test_completed_appointment_enrolls(self, client, org_headers):
        created = await create_workflow(client, org_headers)
        event = {
            "kind": "appointment_completed",
            "client_id": "client-1",
            "appointment_id": "appt-1",
            "appointment_type": "Botox Touch-up",
        }

        response = await client.post(EVENTS, json=event, headers=org_headers)

        assert response.status_code == 202
        body = response.json()
        assert body["matched_workflows"] == [created["id"]]
        assert len(body["enrollment_ids"]) == 1
        assert body["duplicate_event"] is False

        replay = await client.post(EVENTS, json=event, headers=org_headers)
        assert replay.status_code == 202
        assert replay.json()["duplicate_event"] is True
        assert replay.json()["enrollment_ids"] == []

    async def test_unknown_kind_rejected(self, client, org_headers):
        response = await client.post(EVENTS, json={"kind": "birthday", "client_id": "c"}, headers=org_headers)
        assert response.status_code == 422


# ─── Appointment triggers ───

@pytest.mark.integration
class TestAppointmentTriggerEndpoints:

    async def test_routed_event_is_queryable(self, client, org_headers):
        await create_workflow(client, org_headers)
        event = {
            "kind": "appointment_completed",
            "client_id": "client-1",
            "appointment_id": "appt-7",
            "appointment_type": "Botox Touch-up",
        }
        routed = (await client.post(EVENTS, json=event, headers=org_headers)).json()

        recent = await client.get(TRIGGERS, headers=org_headers)
        assert recent.status_code == 200
        assert recent.json()["total"] == 1
        row = recent.json()["triggers"][0]
        assert row["appointment_id"] == "appt-7"
        assert row["appointment_type"] == "toxins"
        assert row["enrollment_ids"] == routed["enrollment_ids"]

        by_appointment = await client.get(f"{TRIGGERS}appointments/appt-7", headers=org_headers)
        assert [t["trigger"] for t in by_appointment.json()["triggers"]] == ["appointment_completed"]

        stats = await client.get(f"{TRIGGERS}stats", headers=org_headers)
        assert stats.json() == {
            "total_triggers": 1,
            "triggers_by_type": {"toxins": 1},
            "total_enrollments": 1,
            "recent_triggers": 1,
        }

    async def test_unknown_appointment_404(self, client, org_headers):
        response = await client.get(f"{TRIGGERS}appointments/missing", headers=org_headers)
        assert response.status_code == 404
        assert response.json()["error_code"] == "NotFoundError"


# ─── Health ───

@pytest.mark.integration
class TestHealth:

    async def test_liveness(self, client):
        response = await client.get("/api/health/")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    async def test_database_check(self, client):
        response = await client.get("/api/health/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "database": "ok"}

    async def test_request_id_header(self, client):
        response = await client.get("/api/health/")
        assert response.headers.get("X-Request-ID")
