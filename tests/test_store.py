"""Tests for the Backend, BaseStore, and fleet stores in in-memory mode."""

from datetime import UTC, datetime, timedelta, timezone

import pytest

from sigor.core.store import Backend, ConflictError, NotFoundError, to_iso
from sigor.fleet.models import CrewAssignment, Vehicle
from sigor.fleet.store import CrewStore, ProfileStore, StationStore, VehicleStore


class TestBackend:
    async def test_falls_back_to_memory_without_endpoint(self):
        async with Backend() as backend:
            assert backend.in_memory
            with pytest.raises(RuntimeError):
                backend.container("vehicles")

    async def test_watch_is_noop_in_memory(self, backend):
        backend.watch("dispatches")
        assert backend._watchers == []

    async def test_exit_closes_subscriptions(self):
        async with Backend() as backend:
            sub = backend.feed.subscribe("vehicles")
        assert sub.closed

    async def test_tables_are_per_backend(self, backend):
        async with Backend() as other:
            await VehicleStore(other).create(
                Vehicle(base_id="b", organization_id="o", identifier="X-1")
            )
            assert await VehicleStore(other).count() == 1
        assert await VehicleStore(backend).count() == 0


class TestBaseStore:
    async def test_create_publishes_insert(self, backend):
        sub = backend.feed.subscribe("vehicles", event="insert")
        created = await VehicleStore(backend).create(
            Vehicle(base_id="b", organization_id="o", identifier="USA-09")
        )
        sub.close()
        events = [e async for e in sub]
        assert [e.new["id"] for e in events] == [created.id]

    async def test_create_rejects_existing_id(self, backend, fleet):
        store = VehicleStore(backend)
        sub = backend.feed.subscribe("vehicles", event="insert")
        with pytest.raises(ConflictError, match="veh-1"):
            await store.create(
                Vehicle(id="veh-1", base_id="b", organization_id="o", identifier="FAKE-1")
            )
        sub.close()

        assert (await store.get("veh-1")).identifier == "USA-01"
        assert [e async for e in sub] == []

    async def test_replace_stamps_updated_at_and_carries_old_row(self, backend, fleet):
        store = VehicleStore(backend)
        sub = backend.feed.subscribe("vehicles", event="update")
        vehicle = await store.get(fleet.ambulance.id)
        assert vehicle.updated_at is None
        vehicle.status = "maintenance"
        updated = await store.replace(vehicle)
        sub.close()

        assert updated.updated_at is not None
        event = [e async for e in sub][0]
        assert event.old["status"] == "available"
        assert event.new["status"] == "maintenance"

    async def test_delete_publishes_old_row(self, backend, fleet):
        store = VehicleStore(backend)
        sub = backend.feed.subscribe("vehicles", event="delete")
        await store.delete(fleet.spare)
        sub.close()
        assert await store.get(fleet.spare.id) is None
        assert [e.old["identifier"] async for e in sub] == ["USA-02"]

    async def test_get_missing_returns_none(self, backend):
        assert await VehicleStore(backend).get("nope") is None

    async def test_get_many_skips_missing_and_duplicates(self, backend, fleet):
        found = await ProfileStore(backend).get_many(["crew-1", "crew-1", "ghost", ""])
        assert list(found) == ["crew-1"]

    async def test_count_and_list_all(self, backend, fleet):
        store = VehicleStore(backend)
        assert await store.count() == 2
        assert len(await store.list_all()) == 2

    def test_to_iso_normalizes_to_utc(self):
        local = datetime(2026, 10, 18, 6, 0, tzinfo=timezone(timedelta(hours=-3)))
        assert to_iso(local).startswith("2026-10-18T09:00:00")
        assert to_iso(local).endswith("Z")


class TestVehicleStore:
    async def test_list_filters_and_orders(self, backend, fleet):
        store = VehicleStore(backend)
        await store.create(
            Vehicle(base_id="b9", organization_id="org-fire", identifier="ABT-01", type="engine")
        )
        ours = await store.list_vehicles(organization_id="org-med")
        assert [v.identifier for v in ours] == ["USA-01", "USA-02"]
        everyone = await store.list_vehicles()
        assert [v.identifier for v in everyone] == ["ABT-01", "USA-01", "USA-02"]

    async def test_list_available_excludes_busy(self, backend, fleet):
        store = VehicleStore(backend)
        await store.set_status(fleet.ambulance.id, "busy")
        available = await store.list_available("org-med")
        assert [v.id for v in available] == [fleet.spare.id]

    async def test_count_by_status(self, backend, fleet):
        store = VehicleStore(backend)
        await store.set_status(fleet.ambulance.id, "busy")
        assert await store.count_by_status() == {"busy": 1, "available": 1}

    async def test_set_status_missing_vehicle(self, backend):
        with pytest.raises(NotFoundError):
            await VehicleStore(backend).set_status("ghost", "busy")


class TestStationStore:
    async def test_list_for_organization(self, backend, fleet):
        bases = await StationStore(backend).list_for_organization("org-med")
        assert [b.name for b in bases] == ["Central Base"]
        assert await StationStore(backend).list_for_organization("other") == []


class TestCrewStore:
    async def test_join_creates_active_assignment(self, backend, fleet):
        crew = CrewStore(backend)
        assignment = await crew.join_vehicle("crew-1", fleet.ambulance.id)
        assert assignment.is_active
        active = await crew.get_active_for_user("crew-1")
        assert active.vehicle_id == fleet.ambulance.id

    async def test_join_other_vehicle_closes_previous(self, backend, fleet):
        crew = CrewStore(backend)
        first = await crew.join_vehicle("crew-1", fleet.ambulance.id)
        await crew.join_vehicle("crew-1", fleet.spare.id)

        rows = await crew.list_all()
        active = [r for r in rows if r.is_active]
        assert len(active) == 1
        assert active[0].vehicle_id == fleet.spare.id
        closed = await crew.get(first.id)
        assert not closed.is_active
        assert closed.left_at is not None

    async def test_rejoin_same_vehicle_keeps_assignment(self, backend, fleet):
        crew = CrewStore(backend)
        first = await crew.join_vehicle("crew-1", fleet.ambulance.id)
        again = await crew.join_vehicle("crew-1", fleet.ambulance.id)
        assert again.id == first.id
        assert await crew.count() == 1

    async def test_leave_vehicle(self, backend, fleet):
        crew = CrewStore(backend)
        await crew.join_vehicle("crew-1", fleet.ambulance.id)
        left = await crew.leave_vehicle("crew-1")
        assert not left.is_active
        assert await crew.get_active_for_user("crew-1") is None
        with pytest.raises(NotFoundError):
            await crew.leave_vehicle("crew-1")

    async def test_list_active_for_vehicle(self, backend, fleet):
        crew = CrewStore(backend)
        await crew.join_vehicle("crew-1", fleet.ambulance.id)
        await crew.join_vehicle("disp-1", fleet.ambulance.id)
        aboard = await crew.list_active_for_vehicle(fleet.ambulance.id)
        assert {a.user_id for a in aboard} == {"crew-1", "disp-1"}

    async def test_list_shifts_window_and_filters(self, backend, fleet):
        crew = CrewStore(backend)
        base = datetime(2026, 10, 1, 8, 0, tzinfo=UTC)
        for days, user, vehicle in [
            (0, "crew-1", fleet.ambulance.id),
            (1, "disp-1", fleet.ambulance.id),
            (2, "crew-1", fleet.spare.id),
            (10, "crew-1", fleet.ambulance.id),
        ]:
            await crew.create(
                CrewAssignment(
                    user_id=user,
                    vehicle_id=vehicle,
                    joined_at=base + timedelta(days=days),
                    left_at=base + timedelta(days=days, hours=8),
                    is_active=False,
                )
            )

        window = (base, base + timedelta(days=3))
        shifts = await crew.list_shifts(*window)
        assert [s.joined_at.day for s in shifts] == [3, 2, 1]
        mine = await crew.list_shifts(*window, user_id="crew-1")
        assert len(mine) == 2
        on_spare = await crew.list_shifts(*window, vehicle_id=fleet.spare.id)
        assert [s.user_id for s in on_spare] == ["crew-1"]
