"""
Shared fixtures for the Staff Points test suite.
Environment is set before `app` is imported so Config picks up the in-memory database.
"""

import os
from datetime import timedelta

# Set testing environment before importing app
os.environ['TESTING'] = 'True'
os.environ['SECRET_KEY'] = 'test-secret-key'
os.environ['DATABASE_URL'] = 'sqlite:///:memory:'
os.environ['TELEGRAM_BOT_TOKEN'] = 'test-token'
os.environ['NOTIFICATION_SEND_DELAY'] = '0'
os.environ['MAIL_SUPPRESS_SEND'] = 'True'

import pytest

from app import (
    app, db, Level, Staff, Event, Signup, get_local_today, level_for,
)


@pytest.fixture
def client():
    app.config['TESTING'] = True
    app.config['NOTIFICATION_SEND_DELAY'] = 0
    with app.app_context():
        db.drop_all()
        db.create_all()
    with app.test_client() as test_client:
        yield test_client
    with app.app_context():
        db.session.remove()
        db.drop_all()


def make_staff(name, points=0, role="staff", status="active", chat_id="chat"):
    """Create a staff member whose level matches their points."""
    levels = Level.query.all()
    staff = Staff(
        email=f"{name.lower()}@example.com",
        name=name,
        role=role,
        status=status,
        points=points,
        level=level_for(points, levels),
        telegram_chat_id=f"{chat_id}-{name.lower()}" if chat_id else None,
    )
    staff.set_password("password123")
    db.session.add(staff)
    db.session.flush()
    return staff


def make_event(name="Beach Cleanup", days_ahead=7, required_level="Bronze", points=100, status="open"):
    event = Event(
        name=name,
        start_date=get_local_today() + timedelta(days=days_ahead),
        time="09:00",
        location="Main Beach",
        required_level=required_level,
        points=points,
        status=status,
    )
    db.session.add(event)
    db.session.flush()
    return event


@pytest.fixture
def seed(client):
    """Bronze/Silver/Gold levels, one admin, three staff and an open Bronze event."""
    with app.app_context():
        for position, (name, min_points) in enumerate((("Bronze", 0), ("Silver", 500), ("Gold", 1000))):
            db.session.add(Level(name=name, min_points=min_points, order=position))
        db.session.flush()

        admin = make_staff("Admin", role="admin")
        alice = make_staff("Alice", points=0)
        bob = make_staff("Bob", points=450)
        carol = make_staff("Carol", points=1200)
        event = make_event()
        db.session.commit()

        return {
            "admin": admin.id,
            "alice": alice.id,
            "bob": bob.id,
            "carol": carol.id,
            "event": event.id,
        }


def login_as(client, staff_id):
    with client.session_transaction() as sess:
        sess['user_id'] = staff_id


def add_signups(event_id, *staff_ids):
    with app.app_context():
        for staff_id in staff_ids:
            db.session.add(Signup(event_id=event_id, staff_id=staff_id))
        db.session.commit()
