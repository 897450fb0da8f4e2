"""Point ledger: idempotent awards, bulk awards and manual adjustments."""

import app as portal
from app import app, db, Staff, Event, PointAdjustment, Signup
from conftest import login_as, add_signups


def _close(client, seed, *approved):
    login_as(client, seed["admin"])
    response = client.post('/events/close', json={"eventId": seed["event"], "approvedStaffIds": list(approved)})
    assert response.status_code == 200


def test_award_is_paid_once(seed, client):
    add_signups(seed["event"], seed["alice"])
    _close(client, seed, seed["alice"])

    response = client.post('/participation/confirm', json={"eventId": seed["event"], "staffId": seed["alice"]})
    assert response.status_code == 200
    body = response.get_json()
    assert body["staff"]["points"] == 100
    assert body["adjustment"]["points"] == 100
    assert body["adjustment"]["reason"] == "Completed Event: Beach Cleanup"
    assert body["event"]["pointsAwarded"] == [seed["alice"]]
    assert body["leveledUp"] is False

    response = client.post('/participation/confirm', json={"eventId": seed["event"], "staffId": seed["alice"]})
    assert response.status_code == 409
    assert response.get_json()["error"] == "already_awarded"

    with app.app_context():
        assert db.session.get(Staff, seed["alice"]).points == 100
        assert PointAdjustment.query.filter_by(event_id=seed["event"], staff_id=seed["alice"]).count() == 1


def test_award_crossing_threshold_levels_up(seed, client):
    add_signups(seed["event"], seed["bob"])
    _close(client, seed, seed["bob"])

    body = client.post('/participation/confirm', json={"eventId": seed["event"], "staffId": seed["bob"]}).get_json()
    assert body["staff"]["points"] == 550
    assert body["staff"]["level"] == "Silver"
    assert body["leveledUp"] is True


def test_award_requires_confirmation(seed, client):
    add_signups(seed["event"], seed["alice"], seed["bob"])
    _close(client, seed, seed["alice"])

    response = client.post('/participation/confirm', json={"eventId": seed["event"], "staffId": seed["bob"]})
    assert response.status_code == 409
    assert response.get_json()["error"] == "not_confirmed"


def test_award_all_skips_already_paid(seed, client):
    add_signups(seed["event"], seed["alice"], seed["bob"], seed["carol"])
    _close(client, seed, seed["alice"], seed["bob"])
    client.post('/participation/confirm', json={"eventId": seed["event"], "staffId": seed["alice"]})

    response = client.post('/participation/confirm-all', json={"eventId": seed["event"]})
    assert response.status_code == 200
    body = response.get_json()
    assert body["confirmedCount"] == 1
    assert [s["id"] for s in body["staffList"]] == [seed["bob"]]
    assert body["levelUps"] == [
        {"staffId": seed["bob"], "name": "Bob", "oldLevel": "Bronze", "newLevel": "Silver"}
    ]
    assert sorted(body["event"]["pointsAwarded"]) == sorted([seed["alice"], seed["bob"]])

    again = client.post('/participation/confirm-all', json={"eventId": seed["event"]}).get_json()
    assert again["confirmedCount"] == 0

    with app.app_context():
        assert db.session.get(Staff, seed["alice"]).points == 100
        assert db.session.get(Staff, seed["bob"]).points == 550
        assert db.session.get(Staff, seed["carol"]).points == 1200


def test_deselected_but_paid_staff_keep_points(seed, client):
    add_signups(seed["event"], seed["alice"], seed["bob"])
    _close(client, seed, seed["alice"])
    client.post('/participation/confirm', json={"eventId": seed["event"], "staffId": seed["alice"]})
    _close(client, seed, seed["bob"])

    with app.app_context():
        assert db.session.get(Staff, seed["alice"]).points == 100
        signup = Signup.query.filter_by(event_id=seed["event"], staff_id=seed["alice"]).one()
        assert signup.is_selected is False


def test_adjust_points_clamps_balance(seed, client):
    login_as(client, seed["admin"])
    response = client.post('/points/adjust', json={"staffId": seed["alice"], "points": -50, "reason": "No-show"})
    assert response.status_code == 200
    body = response.get_json()
    assert body["staff"]["points"] == 0
    # The ledger records the requested delta even though the balance is clamped
    assert body["adjustment"]["points"] == -50
    assert body["adjustment"]["eventId"] is None


def test_adjust_points_can_drop_level(seed, client):
    login_as(client, seed["admin"])
    body = client.post(
        '/points/adjust', json={"staffId": seed["carol"], "points": -300, "reason": "Correction"}
    ).get_json()
    assert body["staff"]["points"] == 900
    assert body["staff"]["level"] == "Silver"
    assert body["leveledUp"] is True


def test_manual_adjustments_are_not_limited_per_staff(seed, client):
    login_as(client, seed["admin"])
    for _ in range(2):
        response = client.post('/points/adjust', json={"staffId": seed["alice"], "points": 10, "reason": "Bonus"})
        assert response.status_code == 200

    with app.app_context():
        assert db.session.get(Staff, seed["alice"]).points == 20


def test_adjust_points_validation(seed, client):
    login_as(client, seed["admin"])
    assert client.post('/points/adjust', json={"staffId": seed["alice"], "points": 0, "reason": "x"}).status_code == 400
    assert client.post('/points/adjust', json={"staffId": seed["alice"], "points": 5, "reason": " "}).status_code == 400
    assert client.post('/points/adjust', json={"staffId": seed["alice"], "points": True, "reason": "x"}).status_code == 400
    assert client.post('/points/adjust', json={"staffId": 777, "points": 5, "reason": "x"}).status_code == 404


def test_staff_see_only_their_own_adjustments(seed, client):
    login_as(client, seed["admin"])
    client.post('/points/adjust', json={"staffId": seed["alice"], "points": 10, "reason": "Bonus"})
    client.post('/points/adjust', json={"staffId": seed["bob"], "points": 10, "reason": "Bonus"})

    assert len(client.get('/points/adjustments').get_json()["adjustments"]) == 2

    login_as(client, seed["alice"])
    rows = client.get('/points/adjustments').get_json()["adjustments"]
    assert [r["staffId"] for r in rows] == [seed["alice"]]


def test_staff_cannot_award_points(seed, client):
    login_as(client, seed["alice"])
    response = client.post('/points/adjust', json={"staffId": seed["alice"], "points": 1000, "reason": "Me"})
    assert response.status_code == 403


def test_duplicate_award_is_caught_by_the_database(seed, client, monkeypatch):
    add_signups(seed["event"], seed["alice"])
    _close(client, seed, seed["alice"])
    client.post('/participation/confirm', json={"eventId": seed["event"], "staffId": seed["alice"]})

    # Simulate a concurrent award that passed the ledger check first
    monkeypatch.setattr(portal, "_find_award", lambda event_id, staff_id: None)
    response = client.post('/participation/confirm', json={"eventId": seed["event"], "staffId": seed["alice"]})
    assert response.status_code == 409
    assert response.get_json()["error"] == "already_awarded"

    with app.app_context():
        assert db.session.get(Staff, seed["alice"]).points == 100
        assert PointAdjustment.query.filter_by(event_id=seed["event"], staff_id=seed["alice"]).count() == 1


def test_award_all_skips_rows_rejected_by_the_database(seed, client, monkeypatch):
    add_signups(seed["event"], seed["alice"], seed["bob"])
    _close(client, seed, seed["alice"], seed["bob"])
    client.post('/participation/confirm', json={"eventId": seed["event"], "staffId": seed["alice"]})

    # Hide Alice's payment from the pre-check so only the unique constraint stops her
    monkeypatch.setattr(Event, "awarded_staff_ids", lambda self: [])
    response = client.post('/participation/confirm-all', json={"eventId": seed["event"]})
    assert response.status_code == 200
    body = response.get_json()
    assert body["confirmedCount"] == 1
    assert [s["id"] for s in body["staffList"]] == [seed["bob"]]

    with app.app_context():
        assert db.session.get(Staff, seed["alice"]).points == 100
        assert db.session.get(Staff, seed["bob"]).points == 550
        assert PointAdjustment.query.filter_by(event_id=seed["event"], staff_id=seed["alice"]).count() == 1
        assert PointAdjustment.query.filter_by(event_id=seed["event"]).count() == 2
