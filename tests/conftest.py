"""Shared pytest fixtures for the test suite.

Fixture overview
----------------
engine          - in-memory sqlite engine with schema + seed data (admin, pages)
db              - ORM session bound to that engine
client          - FastAPI TestClient with get_db routed to the same engine
make_user       - factory creating a user with a given role
auth_headers    - factory returning bearer headers for a user
sample_data     - two clients, contracts, services and three service scopes
"""

from __future__ import annotations

import os

os.environ.setdefault("MSSP_DB_URL", "sqlite://")

from datetime import datetime, timedelta

import bcrypt
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from mssp.config import SECRET_KEY
from mssp.database import get_db, init_db
from mssp.models import (
    User, UserRole, Client, ClientStatus, Contract, ContractStatus, Service, ServiceScope,
)
from mssp.service import app
from mssp.services.plugins import registry
from mssp.services.query_execution import query_execution_service
from shared.token_utils import issue_token

# ── Database ─────────────────────────────────────────────────────────────────


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client(session_factory):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture(autouse=True)
def reset_caches():
    yield
    query_execution_service.clear_all_cache()
    registry.cache.clear_plugin_cache()


# ── Users & auth ─────────────────────────────────────────────────────────────


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    def _make(role: UserRole = UserRole.USER, password: str = "secret-pass", **kwargs) -> User:
        counter["n"] += 1
        user = User(
            username=kwargs.pop("username", f"{role.value}{counter['n']}"),
            password_hash=bcrypt.hashpw(password.encode(), bcrypt.gensalt(rounds=4)).decode(),
            email=kwargs.pop("email", f"{role.value}{counter['n']}@example.com"),
            role=role,
            is_active=kwargs.pop("is_active", True),
            **kwargs,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make


@pytest.fixture
def auth_headers():
    def _headers(user: User) -> dict:
        token = issue_token(user.id, user.role.value, SECRET_KEY, 3600)
        return {"Authorization": f"Bearer {token['access_token']}"}

    return _headers


@pytest.fixture
def admin(make_user):
    return make_user(UserRole.ADMIN)


@pytest.fixture
def manager(make_user):
    return make_user(UserRole.MANAGER)


@pytest.fixture
def engineer(make_user):
    return make_user(UserRole.ENGINEER)


@pytest.fixture
def basic_user(make_user):
    return make_user(UserRole.USER)


# ── Business data ────────────────────────────────────────────────────────────


@pytest.fixture
def sample_data(db):
    """
    Two clients, two services, two contracts and three service scopes.

    Scopes:
        siem_small  eps=1000  endpoints=50   tier Standard  8x5
        siem_large  eps=5000  endpoints=400  tier Premium   24x7
        edr         eps=None  endpoints=800  tier Premium   24x7
    """
    now = datetime.utcnow()
    acme = Client(name="Acme Corp", short_name="ACME", domain="acme.com", industry="Manufacturing",
                  status=ClientStatus.ACTIVE, notes="Key account")
    globex = Client(name="Globex", short_name="GLX", domain="globex.io", industry="Finance",
                    status=ClientStatus.ACTIVE)
    db.add_all([acme, globex])
    db.flush()

    siem = Service(name="Managed SIEM", category="Security Operations", description="24x7 log monitoring",
                   delivery_model="Serverless")
    edr = Service(name="Managed EDR", category="Endpoint Security", description="Endpoint detection")
    db.add_all([siem, edr])
    db.flush()

    acme_contract = Contract(client_id=acme.id, name="Acme SOC 2025", start_date=now - timedelta(days=30),
                             end_date=now + timedelta(days=335), total_value=120000,
                             status=ContractStatus.ACTIVE)
    globex_contract = Contract(client_id=globex.id, name="Globex Endpoint", start_date=now - timedelta(days=300),
                               end_date=now + timedelta(days=20), total_value=50000,
                               status=ContractStatus.ACTIVE, auto_renewal=False)
    db.add_all([acme_contract, globex_contract])
    db.flush()

    siem_small = ServiceScope(
        contract_id=acme_contract.id, service_id=siem.id, status="active", monthly_value=5000,
        description="SIEM for HQ", eps=1000, endpoints=50, service_tier="Standard", coverage_hours="8x5",
        response_time_minutes=60,
        scope_definition={"description": "HQ log collection", "deliverables": [
            {"item": "Log Sources", "value": "25"},
            {"item": "Data Retention (days)", "value": "90"},
            {"item": "Uptime Percent", "value": "99.5"},
            {"item": "Dedicated Analyst", "value": "no"},
        ]},
    )
    siem_large = ServiceScope(
        contract_id=acme_contract.id, service_id=siem.id, status="active", monthly_value=15000,
        description="SIEM for datacenter", eps=5000, endpoints=400, service_tier="Premium",
        coverage_hours="24x7", response_time_minutes=15,
        scope_definition={"description": "Datacenter monitoring", "deliverables": [
            {"item": "Log Sources", "value": "120"},
        ]},
    )
    edr_scope = ServiceScope(
        contract_id=globex_contract.id, service_id=edr.id, status="pending", monthly_value=3000,
        description="EDR rollout", endpoints=800, service_tier="Premium", coverage_hours="24x7",
        notes="Phase 1 rollout",
    )
    db.add_all([siem_small, siem_large, edr_scope])
    db.commit()

    return {
        "clients": {"acme": acme, "globex": globex},
        "services": {"siem": siem, "edr": edr},
        "contracts": {"acme": acme_contract, "globex": globex_contract},
        "scopes": {"siem_small": siem_small, "siem_large": siem_large, "edr": edr_scope},
    }
