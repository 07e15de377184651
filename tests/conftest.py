"""Shared pytest fixtures."""

from dataclasses import dataclass

import pytest

from sigor.auth import UserContext, set_current_user
from sigor.chat.store import clear_author_cache
from sigor.core.store import Backend
from sigor.fleet.models import Base, Organization, Profile, Vehicle
from sigor.fleet.store import OrganizationStore, ProfileStore, StationStore, VehicleStore


@pytest.fixture(autouse=True)
def _in_memory_env(monkeypatch):
    """Force the in-memory backend and start every test signed out."""
    monkeypatch.delenv("COSMOS_ENDPOINT", raising=False)
    monkeypatch.delenv("COSMOS_KEY", raising=False)
    monkeypatch.delenv("SIGOR_JWT_SECRET", raising=False)
    monkeypatch.setattr("sigor.core.store.load_dotenv", lambda: None)
    clear_author_cache()
    set_current_user(None)
    yield
    set_current_user(None)


@pytest.fixture
async def backend():
    async with Backend() as b:
        yield b


@pytest.fixture
def dispatcher():
    user = UserContext(
        user_id="disp-1",
        email="dispatcher@sigor.test",
        name="Dana Dispatcher",
        roles=frozenset({"dispatcher_medical"}),
        organization_id="org-med",
    )
    set_current_user(user)
    return user


@pytest.fixture
def crew_member():
    return UserContext(
        user_id="crew-1",
        email="medic@sigor.test",
        name="Carla Medic",
        roles=frozenset({"medical_team"}),
        organization_id="org-med",
    )


@dataclass
class Fleet:
    organization: Organization
    base: Base
    ambulance: Vehicle
    spare: Vehicle
    medic: Profile
    dispatcher: Profile


@pytest.fixture
async def fleet(backend) -> Fleet:
    """One medical organization with a base, two ambulances, and two people."""
    org = await OrganizationStore(backend).create(
        Organization(id="org-med", name="Metro Medical Service", type="medical", code="SAMU")
    )
    base = await StationStore(backend).create(
        Base(id="base-1", organization_id=org.id, name="Central Base", address="1 Main St")
    )
    vehicles = VehicleStore(backend)
    ambulance = await vehicles.create(
        Vehicle(
            id="veh-1",
            base_id=base.id,
            organization_id=org.id,
            identifier="USA-01",
            type="ambulance",
            base_name=base.name,
        )
    )
    spare = await vehicles.create(
        Vehicle(
            id="veh-2",
            base_id=base.id,
            organization_id=org.id,
            identifier="USA-02",
            type="ambulance",
            base_name=base.name,
        )
    )
    profiles = ProfileStore(backend)
    medic = await profiles.create(
        Profile(
            id="crew-1", full_name="Carla Medic", organization_id=org.id, roles=["medical_team"]
        )
    )
    disp = await profiles.create(
        Profile(
            id="disp-1",
            full_name="Dana Dispatcher",
            organization_id=org.id,
            roles=["dispatcher_medical"],
        )
    )
    return Fleet(org, base, ambulance, spare, medic, disp)
