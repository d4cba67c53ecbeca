from datetime import date

import pytest

from models import db, DailyLog


def _log(project_id, date="2026-01-05", task="Wrote code", actual="3:30", tracked="3:00"):
    return {"project_id": project_id, "date": date, "task_description": task,
            "actual_time_spent": actual, "tracked_time": tracked}


def test_create_log_normalizes_times(org, login):
    alice = login("alice@example.com")
    resp = alice.post("/api/logs", json=_log(org["project"], date="2026-01-05T08:00:00Z", actual="03:30", tracked=""))
    assert resp.status_code == 201
    data = resp.get_json()["data"]
    assert data["date"] == "2026-01-05"
    assert data["actual_time_spent"] == "3:30"
    assert data["tracked_time"] == "0:00"
    assert data["user_id"] == org["alice"]


@pytest.mark.parametrize("field, value", [
    ("actual_time_spent", "3:75"),
    ("actual_time_spent", 1500),
    ("actual_time_spent", "1000:00"),
    ("tracked_time", 2.5),
    ("tracked_time", "abc"),
    ("date", "05-01-2026"),
    ("task_description", "   "),
    ("project_id", "x"),
])
def test_create_log_validation(org, login, field, value):
    payload = _log(org["project"])
    payload[field] = value
    assert login("alice@example.com").post("/api/logs", json=payload).status_code == 400


def test_create_log_requires_assignment(org, make_project, login):
    unassigned = make_project(org["team"], org["admin"], name="Solo")
    resp = login("alice@example.com").post("/api/logs", json=_log(unassigned))
    assert resp.status_code == 403
    assert resp.get_json()["message"] == "You are not assigned to this project"


def test_bulk_create_is_all_or_nothing(org, make_project, login, app):
    alice = login("alice@example.com")
    unassigned = make_project(org["team"], org["admin"], name="Solo")

    bad = alice.post("/api/logs/bulk", json=[_log(org["project"]), _log(unassigned)])
    assert bad.status_code == 403
    invalid = alice.post("/api/logs/bulk", json=[_log(org["project"]), _log(org["project"], actual="9")])
    assert invalid.status_code == 400
    assert alice.post("/api/logs/bulk", json=[]).status_code == 400
    with app.app_context():
        assert DailyLog.query.count() == 0

    good = alice.post("/api/logs/bulk", json=[_log(org["project"]), _log(org["project"], task="Review")])
    assert good.status_code == 201
    assert len(good.get_json()["data"]) == 2


def test_my_logs_filters_and_order(org, login):
    alice = login("alice@example.com")
    for day in ("2026-01-03", "2026-01-05", "2026-01-04"):
        alice.post("/api/logs", json=_log(org["project"], date=day))

    dates = [log["date"] for log in alice.get("/api/logs/my").get_json()["data"]]
    assert dates == ["2026-01-05", "2026-01-04", "2026-01-03"]

    one = alice.get("/api/logs/my?date=2026-01-04").get_json()["data"]
    assert [log["date"] for log in one] == ["2026-01-04"]

    ranged = alice.get("/api/logs/my?startDate=2026-01-04&endDate=2026-01-05").get_json()["data"]
    assert len(ranged) == 2
    assert alice.get("/api/logs/my?date=nope").status_code == 400


def test_log_ownership(org, login):
    alice, bob = login("alice@example.com"), login("bob@example.com")
    log_id = alice.post("/api/logs", json=_log(org["project"])).get_json()["data"]["id"]

    resp = bob.get(f"/api/logs/{log_id}")
    assert resp.status_code == 403
    assert resp.get_json()["message"] == "You can only view your own logs"
    assert bob.put(f"/api/logs/{log_id}", json={"task_description": "mine"}).status_code == 403
    assert bob.delete(f"/api/logs/{log_id}").get_json()["message"] == "You can only delete your own logs"
    assert alice.get("/api/logs/999").status_code == 404

    admin = login("admin@example.com")
    assert admin.get(f"/api/logs/{log_id}").status_code == 200
    updated = admin.put(f"/api/logs/{log_id}", json={"tracked_time": "1:05"})
    assert updated.get_json()["data"]["tracked_time"] == "1:05"


def test_update_log_project_change_checks_owner_assignment(org, make_project, login):
    alice = login("alice@example.com")
    log_id = alice.post("/api/logs", json=_log(org["project"])).get_json()["data"]["id"]
    solo = make_project(org["team"], org["admin"], name="Solo")
    assert alice.put(f"/api/logs/{log_id}", json={"project_id": solo}).status_code == 403

    mine = make_project(org["team"], org["admin"], name="Mine", assign=(org["alice"],))
    resp = alice.put(f"/api/logs/{log_id}", json={"project_id": mine, "actual_time_spent": "2:00"})
    assert resp.status_code == 200
    assert resp.get_json()["data"]["project_id"] == mine

    assert alice.delete(f"/api/logs/{log_id}").status_code == 200


def test_update_log_rejects_numeric_time(org, login):
    alice = login("alice@example.com")
    log_id = alice.post("/api/logs", json=_log(org["project"])).get_json()["data"]["id"]
    resp = alice.put(f"/api/logs/{log_id}", json={"tracked_time": 2})
    assert resp.status_code == 400
    assert alice.get(f"/api/logs/{log_id}").get_json()["data"]["tracked_time"] == "3:00"


def _seed_team_logs(org, app, count=60):
    with app.app_context():
        for i in range(count):
            db.session.add(DailyLog(
                user_id=org["alice"] if i % 2 else org["bob"], project_id=org["project"],
                date=date(2026, 1, 1 + i % 28),
                task_description=f"task {i}", actual_time_spent="1:00", tracked_time="0:30",
            ))
        db.session.commit()


def test_team_logs_filters_sort_and_pagination(org, login, app):
    _seed_team_logs(org, app)
    admin = login("admin@example.com")

    everything = admin.get(f"/api/logs/team/{org['team']}").get_json()
    assert len(everything["data"]) == 60
    assert "pagination" not in everything

    page = admin.get(f"/api/logs/team/{org['team']}?page=2&per_page=50").get_json()
    assert len(page["data"]) == 10
    assert page["pagination"] == {"page": 2, "per_page": 50, "total": 60, "pages": 2}

    assert admin.get(f"/api/logs/team/{org['team']}?per_page=75").status_code == 400
    assert admin.get(f"/api/logs/team/{org['team']}?sort=task").status_code == 400

    asc = admin.get(f"/api/logs/team/{org['team']}?sort=date&order=asc").get_json()["data"]
    assert asc[0]["date"] == "2026-01-01"

    alice_only = admin.get(f"/api/logs/team/{org['team']}?userId={org['alice']}&date=2026-01-02").get_json()["data"]
    assert alice_only and all(log["user_id"] == org["alice"] for log in alice_only)

    assert admin.get("/api/logs/team/999").status_code == 404
    assert login("alice@example.com").get(f"/api/logs/team/{org['team']}").status_code == 401
