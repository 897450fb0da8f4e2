"""Event lifecycle: create, update, close, cancel, reinstate and delete."""

from datetime import timedelta

from app import (
    app, db, Event, Signup, NotificationOutbox, PointAdjustment, get_local_today,
)
from conftest import login_as, add_signups, make_event


def _outbox(kind=None):
    with app.app_context():
        query = NotificationOutbox.query
        if kind:
            query = query.filter_by(kind=kind)
        return sorted(n.staff_id for n in query.all())


def _event_payload(**overrides):
    payload = {
        "name": "Harbour Festival",
        "startDate": (get_local_today() + timedelta(days=14)).isoformat(),
        "time": "10:00",
        "location": "Harbour",
        "points": 150,
        "requiredLevel": "Silver",
    }
    payload.update(overrides)
    return payload


def test_create_draft_event_sends_nothing(seed, client):
    login_as(client, seed["admin"])
    response = client.post('/events', json=_event_payload())
    assert response.status_code == 201
    event = response.get_json()["event"]
    assert event["status"] == "draft"
    assert event["signedUpStaff"] == []
    assert event["pointsAwarded"] == []
    assert _outbox() == []


def test_create_open_event_notifies_eligible_staff(seed, client):
    login_as(client, seed["admin"])
    response = client.post('/events', json=_event_payload(status="open"))
    assert response.status_code == 201
    # Only Carol (Gold) is at or above Silver; the admin is never a recipient
    assert _outbox("new_event") == [seed["carol"]]


def test_create_event_validation(seed, client):
    login_as(client, seed["admin"])
    assert client.post('/events', json=_event_payload(name="")).status_code == 400
    assert client.post('/events', json=_event_payload(points=0)).status_code == 400
    assert client.post('/events', json=_event_payload(startDate="next week")).status_code == 400
    assert client.post('/events', json=_event_payload(startDate="2030-06-01garbage")).status_code == 400
    assert client.post('/events', json=_event_payload(status="closed")).status_code == 400
    response = client.post('/events', json=_event_payload(requiredLevel="Platinum"))
    assert response.status_code == 400
    assert response.get_json()["error"] == "unknown_level"


def test_publishing_draft_notifies_eligible(seed, client):
    login_as(client, seed["admin"])
    event_id = client.post('/events', json=_event_payload(requiredLevel="Bronze")).get_json()["event"]["id"]

    response = client.put(f'/events/{event_id}', json={"status": "open"})
    assert response.status_code == 200
    assert _outbox("new_event") == sorted([seed["alice"], seed["bob"], seed["carol"]])


def test_update_open_event_notifies_signed_up_staff(seed, client):
    add_signups(seed["event"], seed["alice"])
    login_as(client, seed["admin"])

    response = client.put(f'/events/{seed["event"]}', json={"location": "North Pier"})
    assert response.status_code == 200
    event = response.get_json()["event"]
    assert event["location"] == "North Pier"
    assert event["signedUpStaff"] == [seed["alice"]]

    with app.app_context():
        note = NotificationOutbox.query.filter_by(kind="event_updated").one()
        assert note.staff_id == seed["alice"]
        assert note.payload["changes"]["location"] == {"from": "Main Beach", "to": "North Pier"}


def test_update_without_changes_sends_nothing(seed, client):
    add_signups(seed["event"], seed["alice"])
    login_as(client, seed["admin"])
    client.put(f'/events/{seed["event"]}', json={"location": "Main Beach"})
    assert _outbox() == []


def test_update_cannot_close_or_cancel(seed, client):
    login_as(client, seed["admin"])
    response = client.put(f'/events/{seed["event"]}', json={"status": "closed"})
    assert response.status_code == 400
    assert response.get_json()["error"] == "status_change_not_allowed"


def test_first_close_tells_everyone(seed, client):
    add_signups(seed["event"], seed["alice"], seed["bob"])
    login_as(client, seed["admin"])

    response = client.post('/events/close', json={"eventId": seed["event"], "approvedStaffIds": [seed["alice"]]})
    assert response.status_code == 200
    body = response.get_json()
    assert body["event"]["status"] == "closed"
    assert body["event"]["confirmedStaff"] == [seed["alice"]]
    assert body["notifications"]["newlySelected"] == [seed["alice"]]
    assert body["notifications"]["newlyDeselected"] == [seed["bob"]]

    assert _outbox("selected") == [seed["alice"]]
    assert _outbox("not_selected") == [seed["bob"]]

    with app.app_context():
        event = db.session.get(Event, seed["event"])
        assert event.has_been_closed_before
        alice_signup = Signup.query.filter_by(event_id=event.id, staff_id=seed["alice"]).one()
        assert alice_signup.is_selected and alice_signup.confirmed_at is not None


def test_reclose_only_notifies_changes(seed, client):
    add_signups(seed["event"], seed["alice"], seed["bob"], seed["carol"])
    login_as(client, seed["admin"])
    client.post('/events/close', json={"eventId": seed["event"], "approvedStaffIds": [seed["alice"], seed["bob"]]})

    with app.app_context():
        NotificationOutbox.query.delete()
        db.session.commit()

    response = client.post(
        '/events/close',
        json={"eventId": seed["event"], "approvedStaffIds": [seed["bob"], seed["carol"]]},
    )
    diff = response.get_json()["notifications"]
    assert diff["newlySelected"] == [seed["carol"]]
    assert diff["newlyDeselected"] == [seed["alice"]]
    assert _outbox("selected") == [seed["carol"]]
    assert _outbox("deselected") == [seed["alice"]]
    assert _outbox("not_selected") == []


def test_reclose_with_same_selection_is_silent(seed, client):
    add_signups(seed["event"], seed["alice"], seed["bob"])
    login_as(client, seed["admin"])
    payload = {"eventId": seed["event"], "approvedStaffIds": [seed["alice"]]}
    client.post('/events/close', json=payload)

    with app.app_context():
        NotificationOutbox.query.delete()
        db.session.commit()

    response = client.post('/events/close', json=payload)
    assert response.status_code == 200
    assert _outbox() == []


def test_close_rejects_unknown_signups_and_bad_states(seed, client):
    add_signups(seed["event"], seed["alice"])
    login_as(client, seed["admin"])

    response = client.post('/events/close', json={"eventId": seed["event"], "approvedStaffIds": [seed["bob"]]})
    assert response.status_code == 400
    assert response.get_json()["error"] == "not_signed_up"

    with app.app_context():
        draft_id = make_event(name="Draft", status="draft").id
        db.session.commit()
    response = client.post('/events/close', json={"eventId": draft_id, "approvedStaffIds": []})
    assert response.status_code == 409

    response = client.post('/events/close', json={"eventId": "abc", "approvedStaffIds": []})
    assert response.status_code == 400

    for bad_id in ("--5", "\u00b2", "1.5", True):
        response = client.post('/events/close', json={"eventId": bad_id, "approvedStaffIds": []})
        assert response.status_code == 400
        assert response.get_json()["error"] == "validation_error"


def test_cancel_open_event_keeps_roster(seed, client):
    add_signups(seed["event"], seed["alice"], seed["bob"])
    login_as(client, seed["admin"])

    response = client.post(f'/events/{seed["event"]}/cancel')
    assert response.status_code == 200
    event = response.get_json()["event"]
    assert event["status"] == "cancelled"
    assert event["signedUpStaff"] == [seed["alice"], seed["bob"]]
    assert _outbox("event_cancelled") == sorted([seed["alice"], seed["bob"]])


def test_cancel_closed_event_notifies_confirmed_only(seed, client):
    add_signups(seed["event"], seed["alice"], seed["bob"])
    login_as(client, seed["admin"])
    client.post('/events/close', json={"eventId": seed["event"], "approvedStaffIds": [seed["bob"]]})

    before = client.get(f'/events/{seed["event"]}').get_json()["event"]

    cancelled = client.post(f'/events/{seed["event"]}/cancel').get_json()["event"]
    assert _outbox("event_cancelled") == [seed["bob"]]
    assert cancelled["signedUpStaff"] == before["signedUpStaff"] == [seed["alice"], seed["bob"]]
    assert cancelled["confirmedStaff"] == before["confirmedStaff"] == [seed["bob"]]


def test_reinstated_event_remembers_previous_closure(seed, client):
    add_signups(seed["event"], seed["alice"], seed["bob"])
    login_as(client, seed["admin"])
    payload = {"eventId": seed["event"], "approvedStaffIds": [seed["bob"]]}
    client.post('/events/close', json=payload)
    client.post(f'/events/{seed["event"]}/cancel')

    reinstated = client.post(f'/events/{seed["event"]}/reinstate').get_json()["event"]
    assert reinstated["confirmedStaff"] == [seed["bob"]]
    assert reinstated["hasBeenClosedBefore"] is True

    with app.app_context():
        NotificationOutbox.query.delete()
        db.session.commit()

    diff = client.post('/events/close', json=payload).get_json()["notifications"]
    assert diff == {"newlySelected": [], "newlyDeselected": [], "firstClosure": False}
    assert _outbox() == []


def test_reinstate_is_silent_and_only_from_cancelled(seed, client):
    add_signups(seed["event"], seed["alice"])
    login_as(client, seed["admin"])

    assert client.post(f'/events/{seed["event"]}/reinstate').status_code == 409

    client.post(f'/events/{seed["event"]}/cancel')
    before = len(_outbox())
    response = client.post(f'/events/{seed["event"]}/reinstate')
    assert response.status_code == 200
    assert response.get_json()["event"]["status"] == "open"
    assert response.get_json()["event"]["signedUpStaff"] == [seed["alice"]]
    assert len(_outbox()) == before


def test_delete_event_keeps_ledger(seed, client):
    add_signups(seed["event"], seed["alice"])
    login_as(client, seed["admin"])
    client.post('/events/close', json={"eventId": seed["event"], "approvedStaffIds": [seed["alice"]]})
    client.post('/participation/confirm', json={"eventId": seed["event"], "staffId": seed["alice"]})

    assert client.delete(f'/events/{seed["event"]}').status_code == 200
    assert client.get(f'/events/{seed["event"]}').status_code == 404

    with app.app_context():
        assert Signup.query.count() == 0
        assert PointAdjustment.query.filter_by(event_id=seed["event"]).count() == 1


def test_staff_only_see_eligible_published_events(seed, client):
    with app.app_context():
        make_event(name="Gold Gala", required_level="Gold")
        make_event(name="Planning", status="draft")
        make_event(name="No Level", required_level="")
        db.session.commit()

    login_as(client, seed["alice"])
    names = [e["name"] for e in client.get('/events').get_json()["events"]]
    assert names == ["Beach Cleanup"]

    login_as(client, seed["carol"])
    names = sorted(e["name"] for e in client.get('/events').get_json()["events"])
    assert names == ["Beach Cleanup", "Gold Gala"]

    login_as(client, seed["admin"])
    assert len(client.get('/events').get_json()["events"]) == 4
