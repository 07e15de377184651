"""Tests for role dashboards and the stats strip."""

from datetime import timedelta
from unittest.mock import patch

import pytest

from sigor import dashboard
from sigor.auth import UserContext, set_current_user
from sigor.core.config import local_now
from sigor.fleet.models import Organization
from sigor.fleet.store import CrewStore, OrganizationStore, VehicleStore
from sigor.occurrences import lifecycle
from sigor.occurrences.models import Occurrence
from sigor.occurrences.store import OccurrenceStore


def _user(*roles, user_id="u1", organization_id="org-med"):
    return UserContext(user_id=user_id, roles=frozenset(roles), organization_id=organization_id)


async def _seed(backend, fleet):
    """Two pending (one critical), one dispatched, one completed."""
    store = OccurrenceStore(backend)
    made = []
    for priority, type_, status in [
        ("critical", "medical", "pending"),
        ("low", "medical", "pending"),
        ("high", "fire", "dispatched"),
        ("medium", "police", "completed"),
    ]:
        made.append(
            await store.create(
                Occurrence(
                    code=f"OC-{len(made)}",
                    organization_id=fleet.organization.id,
                    type=type_,
                    priority=priority,
                    status=status,
                    title=f"{type_} call",
                    created_by="disp-1",
                )
            )
        )
    return made


class TestDashboardKind:
    @pytest.mark.parametrize(
        "roles,kind",
        [
            (("admin", "dispatcher_fire"), "admin"),
            (("dispatcher_police",), "dispatcher"),
            (("firefighter",), "team"),
            (("observer",), "observer"),
            ((), "dispatcher"),
        ],
    )
    def test_role_priority(self, roles, kind):
        assert dashboard.dashboard_kind(_user(*roles)) == kind


class TestAdminDashboard:
    async def test_counts_and_breakdowns(self, backend, fleet):
        await _seed(backend, fleet)
        data = await dashboard.get_admin_dashboard(backend)

        assert data["total_users"] == 2
        assert data["total_organizations"] == 1
        assert data["total_vehicles"] == 2
        assert data["total_occurrences"] == 4
        assert data["active_occurrences"] == 3
        assert data["critical_occurrences"] == 1
        assert data["occurrences_by_type"] == [
            {"type": "police", "name": "Police", "value": 1},
            {"type": "medical", "name": "Medical", "value": 2},
            {"type": "fire", "name": "Fire", "value": 1},
        ]
        assert [p["priority"] for p in data["occurrences_by_priority"]] == [
            "low",
            "medium",
            "high",
            "critical",
        ]

    async def test_weekly_trend(self, backend, fleet):
        await _seed(backend, fleet)
        trend = (await dashboard.get_admin_dashboard(backend))["weekly_trend"]
        assert len(trend) == 7
        assert trend[-1]["date"] == local_now().date().isoformat()
        assert trend[0]["date"] == (local_now().date() - timedelta(days=6)).isoformat()
        assert trend[-1]["occurrences"] == 4

    async def test_failed_read_degrades_to_default(self, backend, fleet, caplog):
        with patch.object(VehicleStore, "count", side_effect=RuntimeError("down")):
            data = await dashboard.get_admin_dashboard(backend)
        assert data["total_vehicles"] == 0
        assert data["total_users"] == 2
        assert "vehicles fetch failed" in caplog.text


class TestDispatcherDashboard:
    async def test_queue_and_available_vehicles(self, backend, fleet):
        made = await _seed(backend, fleet)
        await VehicleStore(backend).set_status(fleet.spare.id, "busy")

        data = await dashboard.get_dispatcher_dashboard(backend, "org-med")
        assert [o["id"] for o in data["pending_occurrences"]] == [
            made[0].id,
            made[2].id,
            made[1].id,
        ]
        assert data["pending_occurrences"][0]["priority_label"] == "Critical"
        assert [v["id"] for v in data["available_vehicles"]] == [fleet.ambulance.id]
        assert data["critical_count"] == 1
        assert data["high_count"] == 1

    async def test_other_organizations_hidden(self, backend, fleet):
        await _seed(backend, fleet)
        data = await dashboard.get_dispatcher_dashboard(backend, "org-elsewhere")
        assert data["pending_occurrences"] == []
        assert data["available_vehicles"] == []


class TestObserverDashboard:
    async def test_overview(self, backend, fleet):
        await _seed(backend, fleet)
        data = await dashboard.get_observer_dashboard(backend)
        assert (data["total"], data["active"], data["completed"]) == (4, 3, 1)
        assert data["by_organization"] == [{"name": "Metro Medical Service", "value": 4}]
        assert data["recent_occurrences"][0]["organization_name"] == "Metro Medical Service"
        assert {s["status"] for s in data["by_status"]} == {"pending", "dispatched", "completed"}

    async def test_missing_organization_is_unknown(self, backend, fleet):
        await _seed(backend, fleet)
        await OrganizationStore(backend).delete(
            Organization(id="org-med", name="x", type="medical", code="x")
        )
        data = await dashboard.get_observer_dashboard(backend)
        assert data["by_organization"] == [{"name": "Unknown", "value": 4}]

    async def test_recent_is_capped(self, backend, fleet):
        store = OccurrenceStore(backend)
        for i in range(12):
            await store.create(
                Occurrence(
                    code=f"OC-{i}",
                    organization_id="org-med",
                    type="other",
                    priority="low",
                    title="t",
                    created_by="disp-1",
                )
            )
        data = await dashboard.get_observer_dashboard(backend)
        assert len(data["recent_occurrences"]) == 10


class TestTeamDashboard:
    async def test_no_vehicle(self, backend, fleet):
        assert await dashboard.get_team_dashboard(backend, "crew-1") == {
            "vehicle": None,
            "dispatches": [],
        }

    async def test_open_dispatches_of_my_vehicle(self, backend, fleet, dispatcher):
        await CrewStore(backend).join_vehicle("crew-1", fleet.ambulance.id)
        occurrence = await lifecycle.create_occurrence(
            backend, organization_id="org-med", type="medical", priority="high", title="Fall"
        )
        await lifecycle.dispatch_vehicle(backend, occurrence.id, fleet.ambulance.id, "disp-1")

        data = await dashboard.get_team_dashboard(backend, "crew-1")
        assert data["vehicle"]["identifier"] == "USA-01"
        assert data["joined_at"]
        [row] = data["dispatches"]
        assert row["occurrence"]["title"] == "Fall"


class TestStats:
    async def test_counters(self, backend, fleet):
        await _seed(backend, fleet)
        await VehicleStore(backend).set_status(fleet.spare.id, "busy")
        stats = await dashboard.get_stats(backend, "org-med")
        assert stats == {
            "total": 4,
            "pending": 2,
            "in_progress": 1,
            "completed": 1,
            "vehicles_available": 1,
            "vehicles_busy": 1,
        }


class TestGetDashboard:
    async def test_requires_user(self, backend):
        with pytest.raises(RuntimeError):
            await dashboard.get_dashboard(backend)

    async def test_dispatcher_view(self, backend, fleet, dispatcher):
        await _seed(backend, fleet)
        result = await dashboard.get_dashboard(backend)
        assert result["kind"] == "dispatcher"
        assert result["user"] == {
            "id": "disp-1",
            "name": "Dana Dispatcher",
            "roles": ["Medical Dispatcher"],
        }
        assert result["stats"]["total"] == 4
        assert len(result["data"]["pending_occurrences"]) == 3

    @pytest.mark.parametrize("roles", [("admin",), ("observer",), ("medical_team",), ()])
    async def test_renders_html_for_every_kind(self, backend, fleet, roles):
        await _seed(backend, fleet)
        set_current_user(_user(*roles, user_id="crew-1"))
        html = await dashboard.render_dashboard_html(backend)
        assert "<html" in html
        assert "SIGOR" in html

    async def test_html_escapes_titles(self, backend, fleet, dispatcher):
        await lifecycle.create_occurrence(
            backend,
            organization_id="org-med",
            type="other",
            priority="high",
            title="<script>alert(1)</script>",
        )
        html = await dashboard.render_dashboard_html(backend)
        assert "<script>alert(1)</script>" not in html
        assert "&lt;script&gt;" in html
