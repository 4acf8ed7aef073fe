import os
import tempfile

# Must be set before db/config are imported
os.environ.setdefault("DATABASE_PATH", os.path.join(tempfile.mkdtemp(), "test_timetracker.db"))
os.environ.setdefault("BOOTSTRAP_ADMINS", "admin")
os.environ.setdefault("APP_TIMEZONE", "UTC")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlmodel import Session, delete  # noqa: E402

from app import app  # noqa: E402
from db import create_db_and_tables, engine, get_session  # noqa: E402
from models import ActiveTimer, Project, SiteSettings, TimeEntry, User  # noqa: E402


@pytest.fixture(scope="function")
def test_session():
    """Create a test database session."""
    create_db_and_tables()
    with Session(engine) as session:
        yield session
        # Clean up all test data after test
        session.rollback()
        for table in (ActiveTimer, TimeEntry, Project, SiteSettings, User):
            session.exec(delete(table))
        session.commit()


@pytest.fixture(scope="function")
def client(test_session):
    """Create a test client with dependency override."""

    def get_test_session():
        yield test_session

    app.dependency_overrides[get_session] = get_test_session
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def as_user(user_id: str) -> dict:
    return {"X-User-Id": user_id}


@pytest.fixture
def admin_headers():
    return as_user("admin")


@pytest.fixture
def project_id(client, admin_headers):
    response = client.post("/api/projects", json={"name": "Website"}, headers=admin_headers)
    assert response.status_code == 201
    return response.json()["id"]
