import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SECRET_KEY"] = "test-secret"
os.environ["FLASK_ENV"] = "testing"
os.environ["RUN_SCHEDULER"] = "false"
os.environ.pop("TEAMS_WEBHOOK_URL", None)
os.environ.pop("OPENAI_API_KEY", None)

import pytest
from werkzeug.security import generate_password_hash

from app import app as flask_app
from chat_events import broker
from models import db, Project, ProjectAssignment, Team, User
from security import limiter

PASSWORD = "secret123"
PASSWORD_HASH = generate_password_hash(PASSWORD)


@pytest.fixture
def app():
    flask_app.config.update(TESTING=True)
    with flask_app.app_context():
        db.create_all()
    limiter.reset()
    yield flask_app
    with flask_app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_team(app):
    def _make(name="Platform", created_by=None, webhook_url=None):
        with app.app_context():
            team = Team(name=name, created_by=created_by, webhook_url=webhook_url)
            db.session.add(team)
            db.session.commit()
            return team.id
    return _make


@pytest.fixture
def make_user(app):
    def _make(email, name=None, role="member", team_id=None):
        with app.app_context():
            user = User(email=email, name=name or email.split("@")[0].title(), role=role,
                        team_id=team_id, password_hash=PASSWORD_HASH)
            db.session.add(user)
            db.session.commit()
            return user.id
    return _make


@pytest.fixture
def make_project(app):
    def _make(team_id, created_by, name="Apollo", assign=()):
        with app.app_context():
            project = Project(name=name, team_id=team_id, created_by=created_by)
            db.session.add(project)
            db.session.flush()
            for user_id in assign:
                db.session.add(ProjectAssignment(project_id=project.id, user_id=user_id))
            db.session.commit()
            return project.id
    return _make


@pytest.fixture
def login(app):
    """Returns a fresh client signed in as the given email."""
    def _login(email, password=PASSWORD):
        c = app.test_client()
        resp = c.post("/api/auth/login", json={"email": email, "password": password})
        assert resp.status_code == 200, resp.get_json()
        return c
    return _login


@pytest.fixture
def listen():
    """Subscribe to the chat broker as a user and collect queued events."""
    subscriptions = []

    def _listen(user_id):
        q, _ = broker.subscribe(user_id)
        subscriptions.append((user_id, q))

        def drain():
            events = []
            while not q.empty():
                events.append(q.get_nowait())
            return events
        return drain

    yield _listen
    for user_id, q in subscriptions:
        broker.unsubscribe(user_id, q)


@pytest.fixture
def org(make_team, make_user, make_project, app):
    """An admin who owns a team with two members and one shared project."""
    admin_id = make_user("admin@example.com", name="Ada Admin", role="admin")
    team_id = make_team("Platform", created_by=admin_id)
    alice_id = make_user("alice@example.com", name="Alice", team_id=team_id)
    bob_id = make_user("bob@example.com", name="Bob", team_id=team_id)
    with app.app_context():
        db.session.get(User, admin_id).team_id = team_id
        db.session.commit()
    project_id = make_project(team_id, admin_id, name="Apollo", assign=(alice_id, bob_id))
    return {"admin": admin_id, "team": team_id, "alice": alice_id, "bob": bob_id, "project": project_id}
