"""
Pytest fixtures: in-memory SQLite, a session per test, an API client with
the session and the acting user injected, and factories for inventory rows.
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("HOSPITAL_TZ", "Asia/Kolkata")

from decimal import Decimal  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import Session  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from ipd_engine.api.deps import current_user, get_db  # noqa: E402
from ipd_engine.db.base import Base  # noqa: E402
from ipd_engine.main import app  # noqa: E402
from ipd_engine.models import (  # noqa: E402
    IpdBed,
    IpdBedRate,
    IpdRoom,
    IpdWard,
    Patient,
    Permission,
    Role,
    User,
)
from ipd_engine.schemas.ipd import AdmissionIn  # noqa: E402
from ipd_engine.services import admissions  # noqa: E402


@pytest.fixture(name="engine")
def engine_fixture():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture(name="session")
def session_fixture(engine):
    with Session(engine, autoflush=False) as session:
        yield session


@pytest.fixture
def admin(session):
    user = User(name="Admin", email="admin@hospital.test", is_active=True, is_admin=True)
    session.add(user)
    session.commit()
    session.refresh(user)
    return user


@pytest.fixture
def make_user(session):
    """Factory: a non-admin user holding exactly ``codes``."""

    def _make_user(email, codes=()):
        role = Role(name=f"role-{email}")
        for code in codes:
            perm = session.query(Permission).filter(Permission.code == code).first()
            if perm is None:
                perm = Permission(code=code, label=code, module=code.rpartition(".")[0])
            role.permissions.append(perm)
        user = User(name=email.split("@")[0], email=email, is_active=True, is_admin=False)
        user.roles.append(role)
        session.add(user)
        session.commit()
        session.refresh(user)
        return user

    return _make_user


@pytest.fixture(name="client")
def client_fixture(session, admin):
    def get_db_override():
        yield session

    app.dependency_overrides[get_db] = get_db_override
    app.dependency_overrides[current_user] = lambda: admin

    with TestClient(app) as client:
        yield client

    app.dependency_overrides.clear()


# Factory fixtures for test data


@pytest.fixture
def make_ward(session):
    def _make_ward(name="Ward A", code="WA", floor="1"):
        w = IpdWard(name=name, code=code, floor=floor, is_active=True)
        session.add(w)
        session.commit()
        session.refresh(w)
        return w

    return _make_ward


@pytest.fixture
def make_room(session):
    def _make_room(ward_id, number="101", type="General"):
        r = IpdRoom(ward_id=ward_id, number=number, type=type, is_active=True)
        session.add(r)
        session.commit()
        session.refresh(r)
        return r

    return _make_room


@pytest.fixture
def make_bed(session):
    def _make_bed(room_id, code, state="vacant"):
        b = IpdBed(room_id=room_id, code=code, state=state, note="", is_active=True, version=0)
        session.add(b)
        session.commit()
        session.refresh(b)
        return b

    return _make_bed


@pytest.fixture
def make_patient(session):
    counter = {"n": 0}

    def _make_patient(first_name="Asha", is_active=True):
        counter["n"] += 1
        p = Patient(uhid=f"UH{counter['n']:05d}", first_name=first_name, last_name="Test",
                    gender="female", is_active=is_active)
        session.add(p)
        session.commit()
        session.refresh(p)
        return p

    return _make_patient


@pytest.fixture
def make_rate(session):
    def _make_rate(room_type, daily_rate, effective_from, effective_to=None, created_at=None):
        r = IpdBedRate(room_type=room_type, daily_rate=Decimal(str(daily_rate)),
                       effective_from=effective_from, effective_to=effective_to,
                       is_active=True)
        if created_at is not None:
            r.created_at = created_at
        session.add(r)
        session.commit()
        session.refresh(r)
        return r

    return _make_rate


@pytest.fixture
def ward_beds(make_ward, make_room, make_bed):
    """One ward, a General room with beds A1/A2 and a Private room with bed P1."""
    ward = make_ward()
    general = make_room(ward.id, number="101", type="General")
    private = make_room(ward.id, number="201", type="Private")
    return {
        "ward": ward,
        "general": general,
        "private": private,
        "a1": make_bed(general.id, "A1"),
        "a2": make_bed(general.id, "A2"),
        "p1": make_bed(private.id, "P1"),
    }


@pytest.fixture
def admit(session, admin):
    def _admit(patient, bed, **extra):
        return admissions.create_admission(
            session, admin, AdmissionIn(patient_id=patient.id, bed_id=bed.id, **extra))

    return _admit
