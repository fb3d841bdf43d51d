import sys
from datetime import datetime
from pathlib import Path
import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from main import create_app, db, Member
from agreement_ledger.services import consent_service

OWNER_EMAIL = "owner@example.com"
ORGANISER_TEXT_V1 = "Organiser Agreement v1\n\nOrganisers run events responsibly."
USER_TEXT_V1 = "User Agreement v1\n\nUsers behave."


@pytest.fixture
def app(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "sqlite:///:memory:")
    monkeypatch.setenv("OWNER_EMAILS", OWNER_EMAIL)
    app = create_app()
    app.config.update(TESTING=True)
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def app_ctx(app):
    with app.app_context():
        yield app


@pytest.fixture
def client(app):
    return app.test_client()


def create_member(email="tester@example.com", name="Tester"):
    member = Member(email=email, display_name=name)
    db.session.add(member)
    db.session.commit()
    return member.id


@pytest.fixture
def member_id(app):
    with app.app_context():
        return create_member()


@pytest.fixture
def versions(app):
    """One active version per agreement type."""
    seeded_at = datetime(2024, 1, 1, 9, 0)
    with app.app_context():
        organiser = consent_service.create_version("ORGANISER", "v1", ORGANISER_TEXT_V1, "seed", now_utc=seeded_at)
        user = consent_service.create_version("USER", "v1", USER_TEXT_V1, "seed", now_utc=seeded_at)
        return {"ORGANISER": organiser.id, "USER": user.id}


def login(client, member_id):
    with client.session_transaction() as sess:
        sess["_user_id"] = str(member_id)
        sess["_fresh"] = True


@pytest.fixture
def logged_in_client(app, client):
    with app.app_context():
        member_id = create_member()
    login(client, member_id)
    return client, member_id


@pytest.fixture
def owner_client(app):
    client = app.test_client()
    with app.app_context():
        owner_id = create_member(OWNER_EMAIL, "Owner")
    login(client, owner_id)
    return client, owner_id
