"""Tests for the HTTP API: auth middleware, routes, and the push stub."""

import asyncio
import json

import httpx
import jwt
import pytest

from sigor.alerts.push import READY_MESSAGE
from sigor.occurrences.store import OccurrenceStore
from sigor.server import DEV_USER, create_app

SECRET = "test-secret-that-is-long-enough-for-hs256"


def _token(sub="disp-1", roles=("dispatcher_medical",), organization_id="org-med", **claims):
    payload = {
        "sub": sub,
        "aud": "authenticated",
        "email": f"{sub}@sigor.test",
        "user_metadata": {"full_name": sub.title()},
        "app_metadata": {"roles": list(roles), "organization_id": organization_id},
        **claims,
    }
    return jwt.encode(payload, SECRET, algorithm="HS256")


def _auth(**kwargs):
    return {"Authorization": f"Bearer {_token(**kwargs)}"}


async def _eventually(predicate, timeout=1.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


def _sse_events(text):
    """Parse a server-sent event body into (event, data) pairs."""
    events = []
    for frame in text.strip().split("\n\n"):
        fields = dict(line.split(": ", 1) for line in frame.splitlines())
        events.append((fields["event"], json.loads(fields["data"])))
    return events


@pytest.fixture
def app(backend):
    return create_app(backend=backend, secret="")


@pytest.fixture
async def client(app):
    """Dev-mode client: every request runs as the synthetic administrator."""
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://sigor.test") as c:
        yield c


@pytest.fixture
async def secured(backend):
    app = create_app(backend=backend, secret=SECRET)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://sigor.test") as c:
        yield c


async def _create_occurrence(client, **overrides):
    body = {
        "organization_id": "org-med",
        "type": "medical",
        "priority": "critical",
        "title": "Unconscious person",
        "location_address": "Praça da Sé",
        **overrides,
    }
    response = await client.post("/occurrences", json=body)
    assert response.status_code == 201, response.text
    return response.json()


class TestAuth:
    async def test_health_is_public(self, secured):
        response = await secured.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    async def test_missing_token(self, secured):
        response = await secured.get("/dashboard")
        assert response.status_code == 401
        assert response.json() == {"error": "Unauthorized"}

    async def test_bad_token(self, secured):
        response = await secured.get("/dashboard", headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401

    async def test_wrong_audience(self, secured):
        response = await secured.get("/dashboard", headers=_auth(aud="someone-else"))
        assert response.status_code == 401

    async def test_valid_token(self, secured, fleet):
        response = await secured.get("/dashboard", headers=_auth())
        assert response.status_code == 200
        body = response.json()
        assert body["kind"] == "dispatcher"
        assert body["user"]["id"] == "disp-1"

    async def test_dev_mode_user(self, client, fleet):
        response = await client.get("/dashboard")
        assert response.status_code == 200
        assert response.json()["kind"] == "admin"
        assert response.json()["user"]["id"] == DEV_USER.user_id


class TestOccurrenceRoutes:
    async def test_full_dispatch_flow(self, client, fleet):
        occurrence = await _create_occurrence(client)
        assert occurrence["status"] == "pending"
        assert occurrence["created_by"] == DEV_USER.user_id

        response = await client.post(
            f"/occurrences/{occurrence['id']}/dispatch",
            json={"vehicle_id": fleet.ambulance.id, "notes": "Cardiac kit"},
        )
        assert response.status_code == 201
        dispatch = response.json()

        for status in ("en_route", "on_scene", "completed"):
            response = await client.post(
                f"/dispatches/{dispatch['id']}/status", json={"status": status}
            )
            assert response.status_code == 200, response.text
        assert response.json()["completed_at"] is not None

        history = (await client.get(f"/occurrences/{occurrence['id']}/history")).json()
        assert history["count"] == 3
        assert [h["new_status"] for h in history["history"]] == [
            "en_route",
            "on_scene",
            "completed",
        ]

    async def test_validation_error_is_400(self, client):
        response = await client.post(
            "/occurrences",
            json={"organization_id": "org-med", "type": "medical", "priority": "?", "title": "x"},
        )
        assert response.status_code == 400
        assert "error" in response.json()

    async def test_client_cannot_set_status_or_id(self, client, backend):
        first = await _create_occurrence(client)
        body = {"organization_id": "org-med", "type": "medical", "priority": "low", "title": "x"}
        for extra in ({"status": "completed"}, {"id": first["id"], "title": "Overwrite"}):
            response = await client.post("/occurrences", json={**body, **extra})
            assert response.status_code == 400
            assert response.json()["error"].startswith("Unknown occurrence fields")

        [stored] = await OccurrenceStore(backend).list_all()
        assert (stored.status, stored.title) == ("pending", "Unconscious person")

    async def test_invalid_json_is_400(self, client):
        response = await client.post("/occurrences", content=b"[1, 2]")
        assert response.status_code == 400

    async def test_dispatch_requires_vehicle(self, client, fleet):
        occurrence = await _create_occurrence(client)
        response = await client.post(f"/occurrences/{occurrence['id']}/dispatch", json={})
        assert response.status_code == 400
        assert response.json() == {"error": "vehicle_id is required"}

    async def test_status_requires_status(self, client):
        response = await client.post("/dispatches/d1/status", json={})
        assert response.status_code == 400

    async def test_backwards_transition_is_400(self, client, fleet):
        occurrence = await _create_occurrence(client)
        dispatch = (
            await client.post(
                f"/occurrences/{occurrence['id']}/dispatch", json={"vehicle_id": fleet.spare.id}
            )
        ).json()
        await client.post(f"/dispatches/{dispatch['id']}/status", json={"status": "on_scene"})
        response = await client.post(
            f"/dispatches/{dispatch['id']}/status", json={"status": "en_route"}
        )
        assert response.status_code == 400
        assert response.json()["error"] == "Invalid status transition: on_scene -> en_route"

    async def test_cancel(self, client, fleet):
        occurrence = await _create_occurrence(client)
        response = await client.post(
            f"/occurrences/{occurrence['id']}/cancel", json={"notes": "Prank call"}
        )
        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"

        again = await client.post(f"/occurrences/{occurrence['id']}/cancel")
        assert again.status_code == 400


class TestChatRoutes:
    async def test_stream_delivers_new_messages(self, secured, backend, fleet):
        headers = _auth(sub="crew-1", roles=("medical_team",))
        before = backend.feed.subscription_count
        stream = asyncio.create_task(secured.get("/chat/vehicle/veh-1/stream", headers=headers))
        await _eventually(lambda: backend.feed.subscription_count == before + 1)

        await secured.post("/chat/vehicle/veh-1", json={"message": "Fuel low"}, headers=headers)
        await secured.post("/chat/vehicle/veh-2", json={"message": "Elsewhere"}, headers=headers)
        backend.feed.close()
        response = await asyncio.wait_for(stream, timeout=2.0)

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        [(event, data)] = _sse_events(response.text)
        assert event == "message"
        assert data["message"] == "Fuel low"
        assert data["author_name"] == "Carla Medic"

    async def test_stream_unknown_room_type(self, client):
        response = await client.get("/chat/station/s1/stream")
        assert response.status_code == 404

    async def test_post_and_list(self, client):
        response = await client.post("/chat/occurrence/o1", json={"message": " On our way "})
        assert response.status_code == 201
        assert response.json()["message"] == "On our way"

        listing = (await client.get("/chat/occurrence/o1")).json()
        assert listing["count"] == 1
        assert listing["messages"][0]["message"] == "On our way"

    async def test_empty_message(self, client):
        response = await client.post("/chat/vehicle/veh-1", json={"message": "  "})
        assert response.status_code == 400
        assert response.json() == {"error": "Message is empty"}

    async def test_unknown_room_type(self, client):
        response = await client.get("/chat/station/s1")
        assert response.status_code == 404


class TestCrewRoutes:
    async def test_join_and_leave(self, client, backend, fleet):
        joined = await client.post("/crew/join", json={"vehicle_id": fleet.spare.id})
        assert joined.status_code == 201
        assert joined.json()["user_id"] == DEV_USER.user_id
        assert joined.json()["is_active"] is True

        left = await client.post("/crew/leave")
        assert left.status_code == 200
        assert left.json()["is_active"] is False
        assert left.json()["left_at"] is not None

    async def test_join_requires_vehicle(self, client):
        response = await client.post("/crew/join", json={})
        assert response.status_code == 400

    async def test_join_unknown_vehicle(self, client, fleet):
        response = await client.post("/crew/join", json={"vehicle_id": "ghost"})
        assert response.status_code == 400
        assert response.json() == {"error": "Vehicle not found: ghost"}

    async def test_leave_without_assignment(self, client):
        response = await client.post("/crew/leave")
        assert response.status_code == 400


class TestAlertRoutes:
    async def _open_stream(self, client, app):
        stream = asyncio.create_task(client.get("/alerts/stream"))
        await _eventually(lambda: app.state.alert_pipelines.get(DEV_USER.user_id))
        [pipeline] = app.state.alert_pipelines[DEV_USER.user_id]
        return stream, pipeline

    async def test_crew_receives_dispatch_alert(self, client, app, backend, fleet):
        await client.post("/crew/join", json={"vehicle_id": fleet.ambulance.id})
        stream, pipeline = await self._open_stream(client, app)
        assert pipeline.current_vehicle_id == fleet.ambulance.id

        occurrence = await _create_occurrence(client)
        await client.post(
            f"/occurrences/{occurrence['id']}/dispatch", json={"vehicle_id": fleet.ambulance.id}
        )
        await _eventually(lambda: pipeline.current_alert is not None)

        dismissed = await client.post("/alerts/dismiss")
        assert dismissed.json() == {"dismissed": 1}

        backend.feed.close()
        response = await asyncio.wait_for(stream, timeout=2.0)
        assert response.headers["content-type"].startswith("text/event-stream")
        events = _sse_events(response.text)
        assert [name for name, _ in events] == ["ready", "alert", "dismiss"]
        assert events[0][1] == {"vehicle_id": fleet.ambulance.id}
        alert = events[1][1]
        assert alert["occurrence_code"] == occurrence["code"]
        assert alert["vehicle_identifier"] == "USA-01"
        assert alert["navigation_url"].startswith("https://www.google.com/maps/search/")
        assert app.state.alert_pipelines[DEV_USER.user_id] == set()

    async def test_joining_after_connect_retargets(self, client, app, backend, fleet):
        stream, pipeline = await self._open_stream(client, app)
        assert pipeline.current_vehicle_id is None

        await client.post("/crew/join", json={"vehicle_id": fleet.spare.id})
        await _eventually(lambda: pipeline.current_vehicle_id == fleet.spare.id)

        backend.feed.close()
        response = await asyncio.wait_for(stream, timeout=2.0)
        assert _sse_events(response.text) == [("ready", {"vehicle_id": None})]

    async def test_dismiss_without_stream(self, client):
        response = await client.post("/alerts/dismiss")
        assert response.json() == {"dismissed": 0}


class TestPreferenceRoutes:
    async def test_get_and_patch(self, client):
        prefs = (await client.get("/preferences")).json()
        assert prefs["sound_volume"] == 0.5

        response = await client.patch("/preferences", json={"sound_volume": 0.2})
        assert response.status_code == 200
        assert response.json()["sound_volume"] == 0.2

    async def test_patch_unknown_field(self, client):
        response = await client.patch("/preferences", json={"theme": "dark"})
        assert response.status_code == 400


class TestDashboardRoutes:
    async def test_html_page(self, client, fleet):
        response = await client.get("/dashboard.html")
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/html")
        assert "<html" in response.text


class TestShiftReportRoute:
    async def test_pdf_download(self, client, fleet):
        response = await client.get(
            "/reports/shifts.pdf", params={"start": "2026-10-01", "end": "2026-10-18"}
        )
        assert response.status_code == 200
        assert response.headers["content-type"] == "application/pdf"
        assert 'filename="shift-report-' in response.headers["content-disposition"]
        assert response.content.startswith(b"%PDF")

    @pytest.mark.parametrize(
        "params",
        [{}, {"start": "2026-10-01"}, {"start": "yesterday", "end": "2026-10-01"}],
    )
    async def test_bad_dates(self, client, params):
        response = await client.get("/reports/shifts.pdf", params=params)
        assert response.status_code == 400

    async def test_start_after_end(self, client):
        response = await client.get(
            "/reports/shifts.pdf", params={"start": "2026-10-18", "end": "2026-10-01"}
        )
        assert response.status_code == 400

    async def test_crew_members_are_forbidden(self, secured):
        response = await secured.get(
            "/reports/shifts.pdf",
            params={"start": "2026-10-01", "end": "2026-10-18"},
            headers=_auth(sub="crew-1", roles=("medical_team",)),
        )
        assert response.status_code == 403


class TestPushNotification:
    async def test_preflight(self, secured):
        response = await secured.options("/push-notification")
        assert response.status_code == 200
        assert response.text == "ok"
        assert response.headers["access-control-allow-origin"] == "*"

    async def test_acknowledges_without_auth(self, secured):
        response = await secured.post(
            "/push-notification",
            json={"subscription": {"endpoint": "x"}, "message": "m", "title": "t"},
        )
        assert response.status_code == 200
        assert response.json() == {"success": True, "message": READY_MESSAGE}
        assert response.headers["access-control-allow-origin"] == "*"

    async def test_malformed_body(self, secured):
        response = await secured.post("/push-notification", content=b"{not json")
        assert response.status_code == 500
        assert "error" in response.json()
        assert response.headers["access-control-allow-origin"] == "*"
