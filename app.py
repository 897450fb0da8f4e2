from datetime import datetime, date, timedelta, timezone
from dataclasses import dataclass, field
from functools import wraps
import json
import time
from zoneinfo import ZoneInfo
from urllib.request import Request, urlopen
from urllib.error import HTTPError

from flask import Flask, request, session, jsonify, g, has_request_context
from flask_sqlalchemy import SQLAlchemy
from flask_mail import Mail, Message
from sqlalchemy.exc import IntegrityError
from werkzeug.exceptions import HTTPException
from werkzeug.security import generate_password_hash, check_password_hash
from icalendar import Calendar, Event as CalendarEvent, Alarm
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from dotenv import load_dotenv

# Load environment variables from .env file BEFORE importing Config so it can read envs
load_dotenv()

from config import Config

app = Flask(__name__)
app.config.from_object(Config)
app.logger.setLevel(app.config.get("LOG_LEVEL", "INFO"))
db = SQLAlchemy(app)
mail = Mail(app)


# Performance monitoring
@app.before_request
def before_request():
    g.start_time = time.time()


@app.after_request
def after_request(response):
    if hasattr(g, 'start_time'):
        response_time = time.time() - g.start_time
        response.headers['X-Response-Time'] = f"{response_time:.3f}s"

    # Security headers
    response.headers['X-Content-Type-Options'] = 'nosniff'
    response.headers['X-Frame-Options'] = 'DENY'
    return response


# Timezone helper functions
# The signup cutoff compares calendar dates in the organisation's zone, not UTC
APP_TZ = ZoneInfo(app.config["APP_TIMEZONE"])


def get_local_now():
    """Get current datetime in the configured application timezone."""
    return datetime.now(APP_TZ)


def get_local_today():
    """Get current date in the application timezone (not UTC)."""
    return get_local_now().date()


def utcnow():
    return datetime.now(timezone.utc)


EVENT_STATUSES = ("draft", "open", "closed", "cancelled")
STAFF_STATUSES = ("active", "pending", "inactive")
STAFF_ROLES = ("admin", "staff")


# ==========================
# ERRORS
# ==========================

class ApiError(Exception):
    """Base for failures returned to the caller as a JSON error envelope."""
    status_code = 400
    code = "bad_request"

    def __init__(self, message, code=None, details=None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details


class ValidationError(ApiError):
    status_code = 400
    code = "validation_error"


class AuthenticationError(ApiError):
    status_code = 401
    code = "authentication_required"


class AuthorizationError(ApiError):
    status_code = 403
    code = "forbidden"


class NotFoundError(ApiError):
    status_code = 404
    code = "not_found"


class ConflictError(ApiError):
    status_code = 409
    code = "conflict"


class NotificationDeliveryError(Exception):
    """A transport refused or failed to deliver a notification."""


@app.errorhandler(ApiError)
def handle_api_error(err):
    body = {"error": err.code, "message": err.message}
    if err.details:
        body["details"] = err.details
    return jsonify(body), err.status_code


@app.errorhandler(HTTPException)
def handle_http_exception(err):
    code = (err.name or "error").lower().replace(" ", "_")
    return jsonify({"error": code, "message": err.description}), err.code


# ==========================
# MODELS
# ==========================

class Level(db.Model):
    """
    A named seniority tier. Higher `order` is a higher tier; `min_points` is the
    balance needed to reach it.
    """
    __tablename__ = "levels"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(80), unique=True, nullable=False)
    min_points = db.Column(db.Integer, nullable=False, default=0)
    order = db.Column("sort_order", db.Integer, nullable=False, default=0, index=True)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "minPoints": self.min_points,
            "order": self.order,
        }


class Staff(db.Model):
    """
    Both admins and staff members.
    - role = 'admin': manages events, levels and points.
    - role = 'staff': signs up for events and earns points.
    `points` and `level` are a projection of the point ledger and are only
    written through `_append_ledger_entry` / `recompute_all_staff_levels`.
    """
    __tablename__ = "staff"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), unique=True, nullable=False, index=True)
    name = db.Column(db.String(120), nullable=False)
    phone = db.Column(db.String(40), nullable=True)
    telegram_chat_id = db.Column(db.String(64), nullable=True)
    password_hash = db.Column(db.String(255), nullable=False)
    role = db.Column(db.String(20), nullable=False, default="staff", index=True)
    status = db.Column(db.String(20), nullable=False, default="active", index=True)
    points = db.Column(db.Integer, nullable=False, default=0, index=True)
    level = db.Column(db.String(80), nullable=False, default="")
    created_at = db.Column(db.DateTime, default=utcnow, index=True)

    signups = db.relationship("Signup", back_populates="staff", cascade="all, delete-orphan")

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    def set_password(self, password: str):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password: str) -> bool:
        return check_password_hash(self.password_hash, password)

    def to_dict(self):
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "phone": self.phone,
            "telegramChatId": self.telegram_chat_id,
            "role": self.role,
            "status": self.status,
            "points": self.points or 0,
            "level": self.level or "",
            "createdAt": _iso(self.created_at),
        }


class Event(db.Model):
    """
    A scheduled activity staff can sign up for.
    Status moves draft -> open -> closed/cancelled; closed and cancelled are
    reversible (re-close, reinstate).
    """
    __tablename__ = "events"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    start_date = db.Column(db.Date, nullable=False, index=True)
    end_date = db.Column(db.Date, nullable=True)
    time = db.Column(db.String(20), nullable=False, default="")
    duration = db.Column(db.String(50), nullable=True)
    location = db.Column(db.String(255), nullable=False, default="")
    description = db.Column(db.Text, nullable=True)
    notes = db.Column(db.Text, nullable=True)
    required_level = db.Column(db.String(80), nullable=False, default="")
    points = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(20), nullable=False, default="draft", index=True)
    # Set the first time the event is closed and never cleared
    has_been_closed_before = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, default=utcnow, index=True)

    signups = db.relationship(
        "Signup",
        back_populates="event",
        cascade="all, delete-orphan",
        order_by="[Signup.signed_up_at, Signup.id]",
    )

    @property
    def signed_up_staff_ids(self):
        return [s.staff_id for s in self.signups]

    @property
    def confirmed_staff_ids(self):
        return [s.staff_id for s in self.signups if s.is_selected]

    def awarded_staff_ids(self):
        rows = (
            db.session.query(PointAdjustment.staff_id)
            .filter(PointAdjustment.event_id == self.id)
            .order_by(PointAdjustment.id)
            .all()
        )
        return [r[0] for r in rows]

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "startDate": _iso(self.start_date),
            "endDate": _iso(self.end_date),
            "time": self.time,
            "duration": self.duration,
            "location": self.location,
            "description": self.description,
            "notes": self.notes,
            "requiredLevel": self.required_level or "",
            "points": self.points,
            "status": self.status,
            "hasBeenClosedBefore": bool(self.has_been_closed_before),
            "createdAt": _iso(self.created_at),
            "signedUpStaff": self.signed_up_staff_ids,
            "signUpTimestamps": {str(s.staff_id): _iso(s.signed_up_at) for s in self.signups},
            "confirmedStaff": self.confirmed_staff_ids,
            "pointsAwarded": self.awarded_staff_ids(),
        }


class Signup(db.Model):
    """
    A staff member's registration for an event. `is_selected`/`confirmed_at`
    are rewritten in full every time the event is closed.
    """
    __tablename__ = "event_signups"

    id = db.Column(db.Integer, primary_key=True)
    event_id = db.Column(
        db.Integer,
        db.ForeignKey("events.id", ondelete="CASCADE"),
        nullable=False
    )
    staff_id = db.Column(
        db.Integer,
        db.ForeignKey("staff.id", ondelete="CASCADE"),
        nullable=False
    )
    signed_up_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    is_selected = db.Column(db.Boolean, nullable=False, default=False)
    confirmed_at = db.Column(db.DateTime, nullable=True)

    event = db.relationship("Event", back_populates="signups")
    staff = db.relationship("Staff", back_populates="signups")

    __table_args__ = (
        db.UniqueConstraint('event_id', 'staff_id', name='uq_event_signups_event_staff'),
        db.Index('idx_event_signups_is_selected', 'event_id', 'is_selected'),
    )


class PointAdjustment(db.Model):
    """
    Append-only point ledger. Rows tied to an event are unique per
    (event_id, staff_id); manual adjustments carry event_id = NULL.
    Ids are plain columns so history survives event and staff deletion.
    """
    __tablename__ = "point_adjustments"

    id = db.Column(db.Integer, primary_key=True)
    staff_id = db.Column(db.Integer, nullable=False, index=True)
    points = db.Column(db.Integer, nullable=False)
    reason = db.Column(db.Text, nullable=False)
    event_id = db.Column(db.Integer, nullable=True, index=True)
    admin_id = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, index=True)

    __table_args__ = (
        db.UniqueConstraint('event_id', 'staff_id', name='uq_point_adjustments_event_staff'),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "staffId": self.staff_id,
            "points": self.points,
            "reason": self.reason,
            "eventId": self.event_id,
            "adminId": self.admin_id,
            "timestamp": _iso(self.created_at),
        }


class NotificationOutbox(db.Model):
    """
    One pending message for one staff member. Written in the same transaction
    as the state change that caused it; delivered later by the dispatcher.
    """
    __tablename__ = "notification_outbox"

    id = db.Column(db.Integer, primary_key=True)
    kind = db.Column(db.String(30), nullable=False, index=True)
    event_id = db.Column(db.Integer, nullable=True, index=True)
    staff_id = db.Column(db.Integer, nullable=False, index=True)
    payload = db.Column(db.JSON, nullable=True)
    status = db.Column(db.String(20), nullable=False, default="pending", index=True)  # pending, sent, failed, skipped
    attempts = db.Column(db.Integer, nullable=False, default=0)
    last_error = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, index=True)
    sent_at = db.Column(db.DateTime, nullable=True)

    def to_dict(self):
        return {
            "id": self.id,
            "kind": self.kind,
            "eventId": self.event_id,
            "staffId": self.staff_id,
            "payload": self.payload or {},
            "status": self.status,
            "attempts": self.attempts,
            "lastError": self.last_error,
            "createdAt": _iso(self.created_at),
            "sentAt": _iso(self.sent_at),
        }


class AuditLog(db.Model):
    """
    Audit trail for security events and administrative actions.
    """
    __tablename__ = "audit_logs"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, nullable=True, index=True)
    action = db.Column(db.String(100), nullable=False, index=True)
    resource_type = db.Column(db.String(50), nullable=True, index=True)
    resource_id = db.Column(db.Integer, nullable=True, index=True)
    ip_address = db.Column(db.String(45), nullable=True)
    user_agent = db.Column(db.Text, nullable=True)
    details = db.Column(db.JSON, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, index=True)


def _iso(value):
    return value.isoformat() if value is not None else None


# ==========================
# LEVELS & BALANCE PROJECTION
# ==========================

@dataclass(frozen=True)
class StaffBalance:
    """Derived points/level pair stored on a Staff record."""
    points: int
    level: str


def level_for(points, levels):
    """Return the name of the tier a balance of `points` qualifies for.

    Tiers are tested from the highest `min_points` down and the first one whose
    threshold is met wins. When nothing qualifies the bottom tier (smallest
    `order`) is returned; with no tiers at all the result is "".
    """
    levels = list(levels)
    if not levels:
        return ""
    for level in sorted(levels, key=lambda l: (l.min_points, l.order), reverse=True):
        if level.min_points <= points:
            return level.name
    return min(levels, key=lambda l: l.order).name


def apply_point_delta(balance, delta, levels):
    """Apply a signed delta to a balance, clamping at zero, and re-derive the level."""
    new_points = max(0, balance.points + delta)
    return StaffBalance(points=new_points, level=level_for(new_points, levels))


def find_level(name, levels):
    if not name:
        return None
    for level in levels:
        if level.name == name:
            return level
    return None


def is_eligible(staff_level, required_level, levels):
    """Staff see an event when both tiers resolve and theirs is at or above the required one."""
    staff_tier = find_level(staff_level, levels)
    required_tier = find_level(required_level, levels)
    if staff_tier is None or required_tier is None:
        return False
    return required_tier.order <= staff_tier.order


def ordered_levels():
    return Level.query.order_by(Level.order, Level.id).all()


def recompute_all_staff_levels(levels=None):
    """Re-derive every staff member's level after the level table changed."""
    levels = ordered_levels() if levels is None else levels
    changed = 0
    for staff in Staff.query.all():
        new_level = level_for(staff.points or 0, levels)
        if staff.level != new_level:
            app.logger.info(f"Level for staff {staff.id} changed {staff.level!r} -> {new_level!r}")
            staff.level = new_level
            changed += 1
    return changed


# ==========================
# NOTIFICATION TARGETING
# ==========================

# Event attributes whose change is worth telling participants about
NOTIFIABLE_FIELDS = {
    "name": "name",
    "start_date": "startDate",
    "end_date": "endDate",
    "time": "time",
    "location": "location",
    "points": "points",
    "required_level": "requiredLevel",
    "description": "description",
    "notes": "notes",
}


@dataclass(frozen=True)
class SelectionDiff:
    newly_selected: list = field(default_factory=list)
    newly_deselected: list = field(default_factory=list)
    first_closure: bool = True

    def to_dict(self):
        return {
            "newlySelected": list(self.newly_selected),
            "newlyDeselected": list(self.newly_deselected),
            "firstClosure": self.first_closure,
        }


def compute_selection_diff(signed_up_ids, previously_confirmed, approved_ids, has_been_closed_before):
    """Work out who must hear about a closure.

    On the first closure everybody signed up is told: approved staff as selected,
    the rest as not selected. On later closures only staff whose selection
    actually flipped appear. Both lists keep signup order and are subsets of
    `signed_up_ids`.
    """
    signed_up = list(dict.fromkeys(signed_up_ids))
    approved = set(approved_ids)

    if not has_been_closed_before:
        return SelectionDiff(
            newly_selected=[s for s in signed_up if s in approved],
            newly_deselected=[s for s in signed_up if s not in approved],
            first_closure=True,
        )

    previous = set(previously_confirmed)
    return SelectionDiff(
        newly_selected=[s for s in signed_up if s in approved and s not in previous],
        newly_deselected=[s for s in signed_up if s in previous and s not in approved],
        first_closure=False,
    )


def eligible_staff_ids_for_event(event, staff_members, levels):
    """Active staff whose tier is at or above the event's required tier."""
    return [
        s.id for s in staff_members
        if s.role == "staff"
        and s.status == "active"
        and is_eligible(s.level, event.required_level, levels)
    ]


def cancellation_recipients(previous_status, signed_up_ids, confirmed_ids):
    if previous_status == "closed":
        return list(confirmed_ids)
    if previous_status == "open":
        return list(signed_up_ids)
    return []


def update_recipients(status, signed_up_ids, confirmed_ids):
    if status == "open":
        return list(signed_up_ids)
    if status == "closed":
        return list(confirmed_ids)
    return []


def changed_fields(before, after):
    """Map of API field name -> {"from", "to"} for notifiable attributes that differ."""
    changes = {}
    for attr, api_name in NOTIFIABLE_FIELDS.items():
        if before.get(attr) != after.get(attr):
            changes[api_name] = {"from": _jsonable(before.get(attr)), "to": _jsonable(after.get(attr))}
    return changes


def _jsonable(value):
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return value


def _event_fields(event):
    return {attr: getattr(event, attr) for attr in NOTIFIABLE_FIELDS}


def _event_snapshot(event):
    """Event details copied into each outbox row so delivery never needs the live row."""
    return {
        "eventName": event.name,
        "startDate": _iso(event.start_date),
        "endDate": _iso(event.end_date),
        "time": event.time,
        "duration": event.duration,
        "location": event.location,
        "points": event.points,
    }


def enqueue_notifications(kind, event, staff_ids, extra=None):
    """Add one pending outbox row per recipient. Caller commits."""
    payload = _event_snapshot(event)
    if extra:
        payload.update(extra)
    rows = []
    for staff_id in dict.fromkeys(staff_ids):
        row = NotificationOutbox(kind=kind, event_id=event.id, staff_id=staff_id, payload=dict(payload))
        db.session.add(row)
        rows.append(row)
    if rows:
        app.logger.info(f"Queued {len(rows)} '{kind}' notification(s) for event {event.id}")
    return rows


# ==========================
# SECURITY FUNCTIONS
# ==========================

def log_audit_event(action, user_id=None, resource_type=None, resource_id=None, details=None):
    """Log security and administrative events."""
    try:
        audit_log = AuditLog(
            user_id=user_id,
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            details=details
        )
        if has_request_context():
            audit_log.ip_address = request.environ.get('HTTP_X_FORWARDED_FOR', request.remote_addr)
            audit_log.user_agent = request.environ.get('HTTP_USER_AGENT')
        db.session.add(audit_log)
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        app.logger.warning(f"Failed to log audit event {action}: {e}")


# ==========================
# AUTH HELPERS
# ==========================

def get_current_user():
    user_id = session.get("user_id")
    if not user_id:
        return None
    return db.session.get(Staff, user_id)


def login_required(view_func):
    @wraps(view_func)
    def wrapper(*args, **kwargs):
        user = get_current_user()
        if not user or user.status == "inactive":
            raise AuthenticationError("Please log in to continue.")
        g.current_user = user
        return view_func(*args, **kwargs)
    return wrapper


def admin_required(view_func):
    @wraps(view_func)
    def wrapper(*args, **kwargs):
        user = get_current_user()
        if not user or user.status == "inactive":
            raise AuthenticationError("Please log in to continue.")
        if not user.is_admin:
            log_audit_event('unauthorized_access_attempt', user.id, details={'requested_url': request.path})
            raise AuthorizationError("Admin access required.")
        g.current_user = user
        return view_func(*args, **kwargs)
    return wrapper


# ==========================
# REQUEST PARSING
# ==========================

def _json_body():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object.")
    return data


def _require_int(value, field_name):
    # bool is an int subclass; "true" is not an id
    if isinstance(value, bool):
        raise ValidationError(f"{field_name} must be an integer.", details={"field": field_name})
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            pass
    raise ValidationError(f"{field_name} must be an integer.", details={"field": field_name})


def _require_id_list(value, field_name):
    if not isinstance(value, list):
        raise ValidationError(f"{field_name} must be a list of ids.", details={"field": field_name})
    return list(dict.fromkeys(_require_int(v, field_name) for v in value))


def _require_text(data, key, field_name=None):
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field_name or key} is required.", details={"field": field_name or key})
    return value.strip()


def _optional_text(value, field_name):
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field_name} must be a string.", details={"field": field_name})
    return value.strip() or None


def _parse_date(value, field_name):
    if isinstance(value, str):
        text = value.strip()
        try:
            return date.fromisoformat(text)
        except ValueError:
            pass
        # Full ISO timestamps are accepted; only the calendar date is kept
        if "T" in text:
            try:
                return datetime.fromisoformat(text).date()
            except ValueError:
                pass
    raise ValidationError(f"{field_name} must be a date (YYYY-MM-DD).", details={"field": field_name})


def _parse_points(value):
    points = _require_int(value, "points")
    if points <= 0:
        raise ValidationError("points must be greater than zero.", details={"field": "points"})
    return points


def _parse_event_payload(data, partial):
    """Translate an event JSON body into model attributes.

    With partial=False the required fields must all be present.
    """
    fields = {}
    if "date" in data and "startDate" not in data:
        data = dict(data, startDate=data["date"])

    if not partial or "name" in data:
        fields["name"] = _require_text(data, "name")
    if not partial or "startDate" in data:
        if data.get("startDate") is None:
            raise ValidationError("startDate is required.", details={"field": "startDate"})
        fields["start_date"] = _parse_date(data["startDate"], "startDate")
    if "endDate" in data:
        fields["end_date"] = None if data["endDate"] in (None, "") else _parse_date(data["endDate"], "endDate")
    if not partial or "time" in data:
        fields["time"] = _require_text(data, "time")
    if not partial or "location" in data:
        fields["location"] = _require_text(data, "location")
    if not partial or "points" in data:
        if data.get("points") is None:
            raise ValidationError("points is required.", details={"field": "points"})
        fields["points"] = _parse_points(data["points"])
    if "requiredLevel" in data or not partial:
        value = data.get("requiredLevel") or ""
        if not isinstance(value, str):
            raise ValidationError("requiredLevel must be a level name.", details={"field": "requiredLevel"})
        fields["required_level"] = value.strip()
    for key, attr in (("duration", "duration"), ("description", "description"), ("notes", "notes")):
        if key in data:
            fields[attr] = _optional_text(data[key], key)
    return fields


def _validate_required_level(name, levels):
    """Unknown level names are rejected rather than silently blanked."""
    if name and find_level(name, levels) is None:
        raise ValidationError(f"Unknown level: {name}", code="unknown_level", details={"requiredLevel": name})


def _get_event(event_id):
    event = db.session.get(Event, event_id)
    if not event:
        raise NotFoundError("Event not found.", code="event_not_found")
    return event


def _get_staff(staff_id):
    staff = db.session.get(Staff, staff_id)
    if not staff:
        raise NotFoundError("Staff member not found.", code="staff_not_found")
    return staff


def _get_level(level_id):
    level = db.session.get(Level, level_id)
    if not level:
        raise NotFoundError("Level not found.", code="level_not_found")
    return level


# ==========================
# EVENT LIFECYCLE
# ==========================

def create_event(data, actor=None):
    """Create an event in draft or open state.

    Creating straight into `open` queues "new event" notifications to every
    eligible staff member.
    """
    fields = _parse_event_payload(data, partial=False)
    status = data.get("status") or "draft"
    if status not in ("draft", "open"):
        raise ValidationError("status must be 'draft' or 'open' on creation.", details={"field": "status"})

    levels = ordered_levels()
    _validate_required_level(fields["required_level"], levels)
    if fields.get("end_date") and fields["end_date"] < fields["start_date"]:
        raise ValidationError("endDate cannot be before startDate.", details={"field": "endDate"})

    event = Event(status=status, **fields)
    db.session.add(event)
    db.session.flush()

    if status == "open":
        recipients = eligible_staff_ids_for_event(event, Staff.query.all(), levels)
        enqueue_notifications("new_event", event, recipients)

    db.session.commit()
    app.logger.info(f"Created event {event.id} '{event.name}' ({event.status})")
    return event


def update_event(event_id, patch, actor=None):
    """Merge a partial patch onto an event, keeping its roster and createdAt.

    draft -> open queues "new event" notifications; edits to a published
    event queue "event updated" notifications for the staff involved with it.
    """
    event = _get_event(event_id)
    fields = _parse_event_payload(patch, partial=True)
    levels = ordered_levels()
    if "required_level" in fields:
        _validate_required_level(fields["required_level"], levels)

    previous_status = event.status
    new_status = patch.get("status") or previous_status
    if new_status not in EVENT_STATUSES:
        raise ValidationError(f"Unknown status: {new_status}", details={"field": "status"})
    if new_status != previous_status and {previous_status, new_status} != {"draft", "open"}:
        raise ValidationError(
            "Only draft/open can be switched here; use close, cancel or reinstate.",
            code="status_change_not_allowed",
        )

    before = _event_fields(event)
    for attr, value in fields.items():
        setattr(event, attr, value)
    if event.end_date and event.end_date < event.start_date:
        raise ValidationError("endDate cannot be before startDate.", details={"field": "endDate"})
    event.status = new_status

    if previous_status == "draft" and new_status == "open":
        recipients = eligible_staff_ids_for_event(event, Staff.query.all(), levels)
        enqueue_notifications("new_event", event, recipients)
    elif previous_status != "draft" and new_status != "draft":
        changes = changed_fields(before, _event_fields(event))
        if changes:
            recipients = update_recipients(event.status, event.signed_up_staff_ids, event.confirmed_staff_ids)
            enqueue_notifications("event_updated", event, recipients, {"changes": changes})

    db.session.commit()
    app.logger.info(f"Updated event {event.id} ({previous_status} -> {event.status})")
    return event


def close_event(event_id, approved_staff_ids, actor=None):
    """Close an event with the admin-approved subset of its signups.

    Selection is overwritten in full. Returns the event and the selection diff
    used to target notifications.
    """
    event = _get_event(event_id)
    if event.status not in ("open", "closed"):
        raise ConflictError(f"Cannot close a {event.status} event.", code="invalid_transition")

    signed_up = event.signed_up_staff_ids
    not_signed_up = [s for s in approved_staff_ids if s not in signed_up]
    if not_signed_up:
        raise ValidationError(
            "Approved staff must be signed up for the event.",
            code="not_signed_up",
            details={"staffIds": not_signed_up},
        )

    diff = compute_selection_diff(
        signed_up,
        event.confirmed_staff_ids,
        approved_staff_ids,
        event.has_been_closed_before,
    )

    approved = set(approved_staff_ids)
    now = utcnow()
    for signup in event.signups:
        if signup.staff_id in approved:
            signup.is_selected = True
            signup.confirmed_at = now
        else:
            signup.is_selected = False
            signup.confirmed_at = None

    event.status = "closed"
    event.has_been_closed_before = True

    enqueue_notifications("selected", event, diff.newly_selected)
    enqueue_notifications("not_selected" if diff.first_closure else "deselected", event, diff.newly_deselected)

    db.session.commit()
    app.logger.info(
        f"Closed event {event.id}: {len(approved)} selected, "
        f"+{len(diff.newly_selected)}/-{len(diff.newly_deselected)} changed"
    )
    return event, diff


def cancel_event(event_id, actor=None):
    """Cancel an open or closed event. The roster is left untouched."""
    event = _get_event(event_id)
    if event.status not in ("open", "closed"):
        raise ConflictError(f"Cannot cancel a {event.status} event.", code="invalid_transition")

    previous_status = event.status
    recipients = cancellation_recipients(previous_status, event.signed_up_staff_ids, event.confirmed_staff_ids)
    event.status = "cancelled"
    enqueue_notifications("event_cancelled", event, recipients)

    db.session.commit()
    app.logger.info(f"Cancelled event {event.id} (was {previous_status})")
    return event


def reinstate_event(event_id, actor=None):
    """Reopen a cancelled event. Silent: no notifications are queued."""
    event = _get_event(event_id)
    if event.status != "cancelled":
        raise ConflictError("Only cancelled events can be reinstated.", code="invalid_transition")
    event.status = "open"
    db.session.commit()
    app.logger.info(f"Reinstated event {event.id}")
    return event


def delete_event(event_id, actor=None):
    """Hard-delete an event and its roster. Ledger rows for it are kept."""
    event = _get_event(event_id)
    db.session.delete(event)
    db.session.commit()
    app.logger.info(f"Deleted event {event_id}")


# ==========================
# SIGNUP ROSTER
# ==========================

def _find_signup(event_id, staff_id):
    return Signup.query.filter_by(event_id=event_id, staff_id=staff_id).first()


def sign_up_for_event(event_id, staff):
    """Register `staff` for an open event at least one full day ahead."""
    event = _get_event(event_id)
    if event.status != "open":
        raise ConflictError("This event is not open for sign-ups.", code="event_not_open")
    if get_local_today() >= event.start_date:
        raise ValidationError(
            "Sign-ups close the day before the event.",
            code="signup_cutoff_passed",
        )
    if _find_signup(event.id, staff.id):
        raise ConflictError("Already signed up for this event.", code="already_signed_up")

    db.session.add(Signup(event_id=event.id, staff_id=staff.id, signed_up_at=utcnow(), is_selected=False))
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError("Already signed up for this event.", code="already_signed_up")
    app.logger.info(f"Staff {staff.id} signed up for event {event.id}")
    return _get_event(event_id)


def cancel_signup(event_id, staff):
    """Withdraw `staff` from an event. No cutoff applies."""
    event = _get_event(event_id)
    signup = _find_signup(event.id, staff.id)
    if not signup:
        raise NotFoundError("You are not signed up for this event.", code="signup_not_found")
    if signup.is_selected:
        app.logger.info(f"Selected staff {staff.id} withdrew from {event.status} event {event.id}")
    db.session.delete(signup)
    db.session.commit()
    app.logger.info(f"Staff {staff.id} cancelled signup for event {event.id}")
    return _get_event(event_id)


def admin_sign_up(event_id, staff_ids, actor=None):
    """Bulk-register staff. Already registered ids are skipped; unknown ids abort the call."""
    event = _get_event(event_id)
    if event.status == "cancelled":
        raise ConflictError("Cannot add staff to a cancelled event.", code="event_cancelled")

    known = {s.id for s in Staff.query.filter(Staff.id.in_(staff_ids)).all()} if staff_ids else set()
    unknown = [s for s in staff_ids if s not in known]
    if unknown:
        raise NotFoundError("Unknown staff ids.", code="staff_not_found", details={"staffIds": unknown})

    existing = set(event.signed_up_staff_ids)
    to_add = [s for s in staff_ids if s not in existing]
    now = utcnow()
    for staff_id in to_add:
        db.session.add(Signup(event_id=event.id, staff_id=staff_id, signed_up_at=now, is_selected=False))
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError("Roster changed concurrently, please retry.", code="already_signed_up")

    app.logger.info(f"Admin added {len(to_add)} staff to event {event.id}")
    return _get_event(event_id), len(to_add)


# ==========================
# POINT LEDGER
# ==========================

@dataclass
class AwardResult:
    staff: Staff
    adjustment: PointAdjustment
    old_level: str
    new_level: str

    @property
    def leveled_up(self):
        return self.old_level != self.new_level


def _append_ledger_entry(staff, delta, reason, event_id, admin_id, levels):
    """Append one ledger row and refresh the staff projection. Caller commits."""
    before = StaffBalance(points=staff.points or 0, level=staff.level or "")
    after = apply_point_delta(before, delta, levels)
    adjustment = PointAdjustment(
        staff_id=staff.id,
        points=delta,
        reason=reason,
        event_id=event_id,
        admin_id=admin_id,
        created_at=utcnow(),
    )
    db.session.add(adjustment)
    staff.points = after.points
    staff.level = after.level
    return AwardResult(staff=staff, adjustment=adjustment, old_level=before.level, new_level=after.level)


def _find_award(event_id, staff_id):
    return PointAdjustment.query.filter_by(event_id=event_id, staff_id=staff_id).first()


def _award_reason(event):
    return f"Completed Event: {event.name}"


def award_points(event_id, staff_id, actor=None):
    """Pay a confirmed staff member for an event, exactly once."""
    event = _get_event(event_id)
    staff = _get_staff(staff_id)

    if _find_award(event.id, staff.id):
        raise ConflictError("Points already awarded for this event.", code="already_awarded")
    if staff.id not in event.confirmed_staff_ids:
        raise ConflictError("Staff member was not selected for this event.", code="not_confirmed")

    result = _append_ledger_entry(
        staff, event.points, _award_reason(event), event.id,
        actor.id if actor else None, ordered_levels(),
    )
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError("Points already awarded for this event.", code="already_awarded")

    app.logger.info(
        f"Awarded {event.points} points to staff {staff.id} for event {event.id} "
        f"(level {result.old_level!r} -> {result.new_level!r})"
    )
    return result


def award_all_points(event_id, actor=None):
    """Pay every confirmed staff member not yet paid for the event.

    Already-paid staff are skipped, so the call can be repeated safely.
    """
    event = _get_event(event_id)
    already_paid = set(event.awarded_staff_ids())
    levels = ordered_levels()
    reason = _award_reason(event)

    results = []
    for staff_id in event.confirmed_staff_ids:
        if staff_id in already_paid:
            continue
        staff = db.session.get(Staff, staff_id)
        if staff is None:
            continue
        try:
            with db.session.begin_nested():
                result = _append_ledger_entry(
                    staff, event.points, reason, event.id, actor.id if actor else None, levels,
                )
        except IntegrityError:
            app.logger.info(f"Staff {staff_id} was paid concurrently for event {event.id}; skipping")
            continue
        results.append(result)

    db.session.commit()
    app.logger.info(f"Awarded points to {len(results)} staff for event {event.id}")
    return results


def adjust_points(staff_id, delta, reason, actor=None):
    """Manual ledger entry. The resulting balance never drops below zero."""
    staff = _get_staff(staff_id)
    if delta == 0:
        raise ValidationError("points must be a non-zero integer.", details={"field": "points"})
    result = _append_ledger_entry(staff, delta, reason, None, actor.id if actor else None, ordered_levels())
    db.session.commit()
    app.logger.info(f"Adjusted staff {staff.id} by {delta} points: {reason}")
    return result


# ==========================
# LEVEL TABLE
# ==========================

def _parse_min_points(value):
    min_points = _require_int(value, "minPoints")
    if min_points < 0:
        raise ValidationError("minPoints cannot be negative.", details={"field": "minPoints"})
    return min_points


def _ensure_unique_level_name(name, exclude_id=None):
    query = Level.query.filter(Level.name == name)
    if exclude_id is not None:
        query = query.filter(Level.id != exclude_id)
    if query.first():
        raise ConflictError(f"A level named {name} already exists.", code="level_exists")


def create_level(data):
    name = _require_text(data, "name")
    if data.get("minPoints") is None:
        raise ValidationError("minPoints is required.", details={"field": "minPoints"})
    min_points = _parse_min_points(data["minPoints"])
    _ensure_unique_level_name(name)

    top = db.session.query(db.func.max(Level.order)).scalar()
    level = Level(name=name, min_points=min_points, order=0 if top is None else top + 1)
    db.session.add(level)
    db.session.flush()
    recompute_all_staff_levels()
    db.session.commit()
    app.logger.info(f"Created level {level.name} (min {level.min_points}, order {level.order})")
    return level


def update_level(level_id, data):
    """Edit a level. Renames are carried over to staff and events using the old name."""
    level = _get_level(level_id)
    if "name" in data:
        new_name = _require_text(data, "name")
        if new_name != level.name:
            _ensure_unique_level_name(new_name, exclude_id=level.id)
            old_name = level.name
            Staff.query.filter_by(level=old_name).update({"level": new_name}, synchronize_session="fetch")
            Event.query.filter_by(required_level=old_name).update(
                {"required_level": new_name}, synchronize_session="fetch"
            )
            level.name = new_name
    if "minPoints" in data:
        level.min_points = _parse_min_points(data["minPoints"])

    db.session.flush()
    recompute_all_staff_levels()
    db.session.commit()
    return level


def delete_level(level_id):
    level = _get_level(level_id)
    db.session.delete(level)
    db.session.flush()
    remaining = ordered_levels()
    for position, other in enumerate(remaining):
        other.order = position
    recompute_all_staff_levels(remaining)
    db.session.commit()
    app.logger.info(f"Deleted level {level_id}")


def reorder_level(level_id, direction):
    """Swap a level's `order` with its neighbour. 'up' moves towards order 0."""
    if direction not in ("up", "down"):
        raise ValidationError("direction must be 'up' or 'down'.", details={"field": "direction"})
    levels = ordered_levels()
    index = next((i for i, l in enumerate(levels) if l.id == level_id), None)
    if index is None:
        raise NotFoundError("Level not found.", code="level_not_found")
    neighbour_index = index - 1 if direction == "up" else index + 1
    if neighbour_index < 0 or neighbour_index >= len(levels):
        raise ValidationError(f"Level cannot be moved {direction}.", code="cannot_reorder")

    current, neighbour = levels[index], levels[neighbour_index]
    current.order, neighbour.order = neighbour.order, current.order
    db.session.flush()
    recompute_all_staff_levels()
    db.session.commit()
    return ordered_levels()


# ==========================
# STAFF ACCOUNTS
# ==========================

def create_staff(data):
    email = _require_text(data, "email").lower()
    name = _require_text(data, "name")
    password = _require_text(data, "password")
    status = data.get("status") or "active"
    if status not in STAFF_STATUSES:
        raise ValidationError(f"Unknown status: {status}", details={"field": "status"})
    role = data.get("role") or "staff"
    if role not in STAFF_ROLES:
        raise ValidationError(f"Unknown role: {role}", details={"field": "role"})
    if Staff.query.filter_by(email=email).first():
        raise ConflictError("A staff member with this email already exists.", code="email_exists")

    staff = Staff(
        email=email,
        name=name,
        phone=_optional_text(data.get("phone"), "phone"),
        telegram_chat_id=_optional_text(data.get("telegramChatId"), "telegramChatId"),
        role=role,
        status=status,
        points=0,
        level=level_for(0, ordered_levels()),
    )
    staff.set_password(password)
    db.session.add(staff)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError("A staff member with this email already exists.", code="email_exists")
    app.logger.info(f"Created {role} account {staff.id} ({staff.email})")
    return staff


def update_staff(staff_id, data):
    """Edit contact details. Points and level are ledger-derived and ignored here."""
    staff = _get_staff(staff_id)
    if "name" in data:
        staff.name = _require_text(data, "name")
    if "email" in data:
        email = _require_text(data, "email").lower()
        if email != staff.email and Staff.query.filter_by(email=email).first():
            raise ConflictError("A staff member with this email already exists.", code="email_exists")
        staff.email = email
    if "phone" in data:
        staff.phone = _optional_text(data["phone"], "phone")
    if "telegramChatId" in data:
        staff.telegram_chat_id = _optional_text(data["telegramChatId"], "telegramChatId")
    db.session.commit()
    return staff


def set_staff_status(staff_id, status):
    if status not in STAFF_STATUSES:
        raise ValidationError(f"Unknown status: {status}", details={"field": "status"})
    staff = _get_staff(staff_id)
    staff.status = status
    db.session.commit()
    app.logger.info(f"Staff {staff.id} is now {status}")
    return staff


def delete_staff(staff_id):
    """Remove an account and its signups. Ledger rows are kept for history."""
    staff = _get_staff(staff_id)
    db.session.delete(staff)
    db.session.commit()
    app.logger.info(f"Deleted staff {staff_id}")


# ==========================
# NOTIFICATION DELIVERY
# ==========================

def _format_date(value):
    if not value:
        return "TBD"
    try:
        return date.fromisoformat(value).strftime('%A, %B %d, %Y')
    except ValueError:
        return value


def render_notification(kind, payload):
    """Return (subject, body) for an outbox row."""
    name = payload.get("eventName", "an event")
    details = (
        f"📅 {_format_date(payload.get('startDate'))}\n"
        f"🕐 {payload.get('time') or 'TBD'}\n"
        f"📍 {payload.get('location') or 'TBD'}\n"
        f"⭐ {payload.get('points', 0)} points"
    )

    if kind == "new_event":
        subject = f"New event: {name}"
        body = f"A new event is open for sign-ups:\n\n{name}\n{details}\n\nSign up at least one day before the event."
    elif kind == "event_updated":
        subject = f"Updated: {name}"
        changes = payload.get("changes") or {}
        lines = "\n".join(f"• {key}: {change.get('to')}" for key, change in changes.items())
        body = f"An event you are involved in has changed:\n\n{name}\n{details}\n\nWhat changed:\n{lines}"
    elif kind == "selected":
        subject = f"Confirmed: you're selected for {name}"
        body = f"Great news! You have been selected to take part in:\n\n{name}\n{details}\n\nSee you there!"
    elif kind == "not_selected":
        subject = f"{name}: not selected this time"
        body = f"Thank you for signing up for {name}. You were not selected this time, but we hope to see you at the next one."
    elif kind == "deselected":
        subject = f"Change to your selection for {name}"
        body = f"Your selection for {name} has been withdrawn. You are no longer scheduled to take part."
    elif kind == "event_cancelled":
        subject = f"Cancelled: {name}"
        body = f"The following event has been cancelled:\n\n{name}\n{details}"
    else:
        subject = name
        body = f"Update about {name}."
    return subject, body


def generate_event_ical(payload):
    """Generate iCal data for an event snapshot."""
    cal = Calendar()
    cal.add('prodid', '-//Staff Points//Event Scheduler//EN')
    cal.add('version', '2.0')
    cal.add('method', 'REQUEST')

    event = CalendarEvent()
    event.add('summary', payload.get("eventName", "Event"))
    event.add('description', f"You are confirmed for this event ({payload.get('points', 0)} points).")
    event.add('location', payload.get("location") or "TBD")

    start_date = date.fromisoformat(payload["startDate"])
    try:
        start_time = datetime.strptime((payload.get("time") or "").strip(), "%H:%M").time()
    except ValueError:
        start_time = None

    if start_time is not None:
        start_datetime = datetime.combine(start_date, start_time)
        event.add('dtstart', start_datetime)
        event.add('dtend', start_datetime + timedelta(hours=1))
    else:
        end_date = date.fromisoformat(payload["endDate"]) if payload.get("endDate") else start_date
        event.add('dtstart', start_date)
        event.add('dtend', end_date + timedelta(days=1))

    alarm = Alarm()
    alarm.add('action', 'DISPLAY')
    alarm.add('description', f"Reminder: {payload.get('eventName', 'Event')} tomorrow")
    alarm.add('trigger', timedelta(hours=-24))
    event.add_component(alarm)

    cal.add_component(event)
    return cal.to_ical()


def send_email(to, subject, body, ical_attachment=None, ical_filename=None):
    """Send an email using Flask-Mail with optional iCal attachment."""
    msg = Message(subject, recipients=[to], body=body)

    if ical_attachment and ical_filename:
        msg.attach(
            ical_filename,
            "text/calendar",
            ical_attachment,
            headers=[('Content-Class', 'urn:content-classes:calendarmessage')]
        )

    try:
        mail.send(msg)
        return True
    except Exception as e:
        app.logger.error(f"Email send to {to} failed: {e}")
        return False


def send_telegram_message(chat_id, text):
    """Deliver a message through the Telegram Bot API."""
    token = app.config.get("TELEGRAM_BOT_TOKEN")
    if not token:
        raise NotificationDeliveryError("TELEGRAM_BOT_TOKEN is not configured")

    url = f"{app.config['TELEGRAM_API_BASE'].rstrip('/')}/bot{token}/sendMessage"
    body = json.dumps({"chat_id": chat_id, "text": text}).encode("utf-8")
    req = Request(url, data=body, headers={"Content-Type": "application/json"}, method="POST")
    try:
        with urlopen(req, timeout=10) as resp:
            result = json.loads(resp.read().decode("utf-8") or "{}")
    except HTTPError as e:
        # Telegram explains 4xx rejections in the JSON body
        try:
            description = json.loads(e.read().decode("utf-8") or "{}").get("description")
        except (OSError, ValueError):
            description = None
        raise NotificationDeliveryError(f"Telegram request failed: {description or e}") from e
    except (OSError, ValueError) as e:
        raise NotificationDeliveryError(f"Telegram request failed: {e}") from e

    if not result.get("ok"):
        raise NotificationDeliveryError(result.get("description") or "Telegram rejected the message")
    return result


def deliver_notification(note, staff):
    subject, body = render_notification(note.kind, note.payload or {})
    send_telegram_message(staff.telegram_chat_id, f"{subject}\n\n{body}")

    if app.config.get("NOTIFY_EMAIL_COPY") and staff.email:
        ical_data = ical_filename = None
        if note.kind == "selected" and (note.payload or {}).get("startDate"):
            ical_data = generate_event_ical(note.payload)
            ical_filename = f"event_{note.event_id}.ics"
        send_email(staff.email, subject, f"Hi {staff.name},\n\n{body}", ical_data, ical_filename)


def _skip_reason(staff):
    if staff is None:
        return "staff no longer exists"
    if staff.status != "active":
        return f"staff is {staff.status}"
    if not staff.telegram_chat_id:
        return "no notification channel registered"
    return None


def dispatch_pending_notifications(limit=None):
    """Deliver pending outbox rows one at a time, oldest first.

    Sends are sequential with NOTIFICATION_SEND_DELAY between them. Failures are
    recorded on the row and never raised.
    """
    limit = limit or app.config["NOTIFICATION_BATCH_SIZE"]
    delay = app.config["NOTIFICATION_SEND_DELAY"]
    max_attempts = app.config["NOTIFICATION_MAX_ATTEMPTS"]

    pending = (
        NotificationOutbox.query
        .filter_by(status="pending")
        .order_by(NotificationOutbox.created_at, NotificationOutbox.id)
        .limit(limit)
        .all()
    )

    stats = {"sent": 0, "skipped": 0, "failed": 0, "retrying": 0}
    attempted = False
    for note in pending:
        staff = db.session.get(Staff, note.staff_id)
        reason = _skip_reason(staff)
        if reason:
            note.status = "skipped"
            note.last_error = reason
            stats["skipped"] += 1
            db.session.commit()
            continue

        if attempted and delay > 0:
            time.sleep(delay)
        attempted = True

        note.attempts = (note.attempts or 0) + 1
        try:
            deliver_notification(note, staff)
        except Exception as e:
            note.last_error = str(e) or e.__class__.__name__
            if note.attempts >= max_attempts:
                note.status = "failed"
                stats["failed"] += 1
                app.logger.error(f"Notification {note.id} ({note.kind}) to staff {staff.id} failed: {e}")
            else:
                stats["retrying"] += 1
                app.logger.warning(f"Notification {note.id} attempt {note.attempts} failed: {e}")
        else:
            note.status = "sent"
            note.sent_at = utcnow()
            note.last_error = None
            stats["sent"] += 1
        db.session.commit()

    if pending:
        app.logger.info(f"Notification dispatch: {stats}")
    return stats


def run_dispatch_job():
    """Scheduler entry point: one dispatch pass inside an app context."""
    with app.app_context():
        try:
            return dispatch_pending_notifications()
        except Exception as e:
            db.session.rollback()
            app.logger.error(f"Notification dispatch pass failed: {e}")
            return None


# Only start an in-process scheduler when asked; normally worker.py runs it
if app.config.get("RUN_INPROCESS_DISPATCHER") and not app.config.get("TESTING"):
    scheduler = BackgroundScheduler()
    scheduler.add_job(
        run_dispatch_job,
        IntervalTrigger(seconds=app.config["DISPATCH_INTERVAL_SECONDS"]),
        id='notification-dispatch',
        replace_existing=True
    )
    scheduler.start()
else:
    scheduler = None


# ==========================
# PUBLIC ROUTES
# ==========================

@app.route("/status")
def status():
    users_count = Staff.query.count()
    return jsonify({
        "initialized": users_count > 0,
        "usersCount": users_count,
        "eventsCount": Event.query.count(),
        "levelsCount": Level.query.count(),
    })


@app.route("/login", methods=["POST"])
def login():
    data = _json_body()
    email = data.get("email") or ""
    password = data.get("password") or ""
    if not isinstance(email, str) or not isinstance(password, str):
        raise ValidationError("email and password must be strings.")
    email = email.strip().lower()
    user = Staff.query.filter_by(email=email).first() if email else None
    if not user or not user.check_password(password) or user.status == "inactive":
        log_audit_event('failed_login', user.id if user else None)
        raise AuthenticationError("Invalid email or password.", code="invalid_credentials")

    session.clear()
    session["user_id"] = user.id
    app.logger.info(f"Login: {user.email} (ID: {user.id})")
    return jsonify({"success": True, "user": user.to_dict()})


@app.route("/logout", methods=["POST"])
def logout():
    session.clear()
    return jsonify({"success": True})


@app.route("/me")
@login_required
def me():
    return jsonify({"user": g.current_user.to_dict()})


@app.route("/levels", methods=["GET"])
def list_levels():
    return jsonify({"levels": [l.to_dict() for l in ordered_levels()]})


# ==========================
# EVENT ROUTES
# ==========================

def _visible_to(event, user, levels):
    if user.is_admin:
        return True
    if event.status in ("draft", "cancelled"):
        return False
    return is_eligible(user.level, event.required_level, levels)


@app.route("/events", methods=["GET"])
@login_required
def list_events():
    user = g.current_user
    levels = ordered_levels()
    events = Event.query.order_by(Event.start_date, Event.id).all()
    return jsonify({"events": [e.to_dict() for e in events if _visible_to(e, user, levels)]})


@app.route("/events/<int:event_id>", methods=["GET"])
@login_required
def get_event(event_id):
    event = _get_event(event_id)
    if not _visible_to(event, g.current_user, ordered_levels()):
        raise NotFoundError("Event not found.", code="event_not_found")
    return jsonify({"event": event.to_dict()})


@app.route("/events", methods=["POST"])
@admin_required
def api_create_event():
    event = create_event(_json_body(), g.current_user)
    log_audit_event('event_created', g.current_user.id, 'event', event.id, {'status': event.status})
    return jsonify({"success": True, "event": event.to_dict()}), 201


@app.route("/events/<int:event_id>", methods=["PUT"])
@admin_required
def api_update_event(event_id):
    event = update_event(event_id, _json_body(), g.current_user)
    log_audit_event('event_updated', g.current_user.id, 'event', event.id)
    return jsonify({"success": True, "event": event.to_dict()})


@app.route("/events/<int:event_id>/cancel", methods=["POST"])
@admin_required
def api_cancel_event(event_id):
    event = cancel_event(event_id, g.current_user)
    log_audit_event('event_cancelled', g.current_user.id, 'event', event.id)
    return jsonify({"success": True, "event": event.to_dict()})


@app.route("/events/<int:event_id>/reinstate", methods=["POST"])
@admin_required
def api_reinstate_event(event_id):
    event = reinstate_event(event_id, g.current_user)
    log_audit_event('event_reinstated', g.current_user.id, 'event', event.id)
    return jsonify({"success": True, "event": event.to_dict()})


@app.route("/events/close", methods=["POST"])
@admin_required
def api_close_event():
    data = _json_body()
    event_id = _require_int(data.get("eventId"), "eventId")
    approved = _require_id_list(data.get("approvedStaffIds", []), "approvedStaffIds")
    event, diff = close_event(event_id, approved, g.current_user)
    log_audit_event('event_closed', g.current_user.id, 'event', event.id, {'approvedStaffIds': approved})
    return jsonify({"success": True, "event": event.to_dict(), "notifications": diff.to_dict()})


@app.route("/events/<int:event_id>", methods=["DELETE"])
@admin_required
def api_delete_event(event_id):
    delete_event(event_id, g.current_user)
    log_audit_event('event_deleted', g.current_user.id, 'event', event_id)
    return jsonify({"success": True})


# ==========================
# SIGNUP ROUTES
# ==========================

@app.route("/signups", methods=["POST"])
@login_required
def api_sign_up():
    data = _json_body()
    event = sign_up_for_event(_require_int(data.get("eventId"), "eventId"), g.current_user)
    return jsonify({"success": True, "event": event.to_dict()}), 201


@app.route("/signups/<int:event_id>", methods=["DELETE"])
@login_required
def api_cancel_signup(event_id):
    event = cancel_signup(event_id, g.current_user)
    return jsonify({"success": True, "event": event.to_dict()})


@app.route("/signups/admin", methods=["POST"])
@admin_required
def api_admin_sign_up():
    data = _json_body()
    event_id = _require_int(data.get("eventId"), "eventId")
    staff_ids = _require_id_list(data.get("staffIds", []), "staffIds")
    event, added = admin_sign_up(event_id, staff_ids, g.current_user)
    log_audit_event('admin_signup', g.current_user.id, 'event', event.id, {'added': added})
    return jsonify({"success": True, "event": event.to_dict(), "addedCount": added})


# ==========================
# POINTS ROUTES
# ==========================

@app.route("/participation/confirm", methods=["POST"])
@admin_required
def api_confirm_participation():
    data = _json_body()
    event_id = _require_int(data.get("eventId"), "eventId")
    staff_id = _require_int(data.get("staffId"), "staffId")
    result = award_points(event_id, staff_id, g.current_user)
    log_audit_event('points_awarded', g.current_user.id, 'event', event_id, {'staffId': staff_id})
    return jsonify({
        "success": True,
        "event": _get_event(event_id).to_dict(),
        "staff": result.staff.to_dict(),
        "adjustment": result.adjustment.to_dict(),
        "leveledUp": result.leveled_up,
    })


@app.route("/participation/confirm-all", methods=["POST"])
@admin_required
def api_confirm_all_participants():
    data = _json_body()
    event_id = _require_int(data.get("eventId"), "eventId")
    results = award_all_points(event_id, g.current_user)
    log_audit_event('points_awarded_all', g.current_user.id, 'event', event_id, {'count': len(results)})
    return jsonify({
        "success": True,
        "event": _get_event(event_id).to_dict(),
        "confirmedCount": len(results),
        "adjustments": [r.adjustment.to_dict() for r in results],
        "staffList": [r.staff.to_dict() for r in results],
        "levelUps": [
            {"staffId": r.staff.id, "name": r.staff.name, "oldLevel": r.old_level, "newLevel": r.new_level}
            for r in results if r.leveled_up
        ],
    })


@app.route("/points/adjust", methods=["POST"])
@admin_required
def api_adjust_points():
    data = _json_body()
    staff_id = _require_int(data.get("staffId"), "staffId")
    delta = _require_int(data.get("points"), "points")
    reason = _require_text(data, "reason")
    result = adjust_points(staff_id, delta, reason, g.current_user)
    log_audit_event('points_adjusted', g.current_user.id, 'staff', staff_id, {'points': delta, 'reason': reason})
    return jsonify({
        "success": True,
        "staff": result.staff.to_dict(),
        "adjustment": result.adjustment.to_dict(),
        "leveledUp": result.leveled_up,
    })


@app.route("/points/adjustments", methods=["GET"])
@login_required
def api_list_adjustments():
    query = PointAdjustment.query
    if not g.current_user.is_admin:
        query = query.filter_by(staff_id=g.current_user.id)
    rows = query.order_by(PointAdjustment.created_at.desc(), PointAdjustment.id.desc()).all()
    return jsonify({"adjustments": [r.to_dict() for r in rows]})


# ==========================
# LEVEL ROUTES
# ==========================

@app.route("/levels", methods=["POST"])
@admin_required
def api_create_level():
    level = create_level(_json_body())
    log_audit_event('level_created', g.current_user.id, 'level', level.id)
    return jsonify({"success": True, "level": level.to_dict()}), 201


@app.route("/levels/<int:level_id>", methods=["PUT"])
@admin_required
def api_update_level(level_id):
    level = update_level(level_id, _json_body())
    log_audit_event('level_updated', g.current_user.id, 'level', level.id)
    return jsonify({"success": True, "level": level.to_dict()})


@app.route("/levels/<int:level_id>", methods=["DELETE"])
@admin_required
def api_delete_level(level_id):
    delete_level(level_id)
    log_audit_event('level_deleted', g.current_user.id, 'level', level_id)
    return jsonify({"success": True})


@app.route("/levels/reorder", methods=["POST"])
@admin_required
def api_reorder_level():
    data = _json_body()
    level_id = _require_int(data.get("levelId"), "levelId")
    levels = reorder_level(level_id, data.get("direction"))
    log_audit_event('level_reordered', g.current_user.id, 'level', level_id, {'direction': data.get("direction")})
    return jsonify({"success": True, "levels": [l.to_dict() for l in levels]})


# ==========================
# STAFF ROUTES
# ==========================

@app.route("/staff", methods=["GET"])
@admin_required
def api_list_staff():
    staff = Staff.query.order_by(Staff.name).all()
    return jsonify({"staff": [s.to_dict() for s in staff]})


@app.route("/staff", methods=["POST"])
@admin_required
def api_create_staff():
    staff = create_staff(_json_body())
    log_audit_event('staff_created', g.current_user.id, 'staff', staff.id)
    return jsonify({"success": True, "staff": staff.to_dict()}), 201


@app.route("/staff/<int:staff_id>", methods=["PUT"])
@admin_required
def api_update_staff(staff_id):
    staff = update_staff(staff_id, _json_body())
    return jsonify({"success": True, "staff": staff.to_dict()})


@app.route("/staff/<int:staff_id>/status", methods=["PUT"])
@admin_required
def api_update_staff_status(staff_id):
    staff = set_staff_status(staff_id, _json_body().get("status"))
    log_audit_event('staff_status_changed', g.current_user.id, 'staff', staff.id, {'status': staff.status})
    return jsonify({"success": True, "staff": staff.to_dict()})


@app.route("/staff/<int:staff_id>", methods=["DELETE"])
@admin_required
def api_delete_staff(staff_id):
    if staff_id == g.current_user.id:
        raise ConflictError("You cannot delete your own account.", code="cannot_delete_self")
    delete_staff(staff_id)
    log_audit_event('staff_deleted', g.current_user.id, 'staff', staff_id)
    return jsonify({"success": True, "message": "Staff member deleted."})


# ==========================
# NOTIFICATION ROUTES
# ==========================

@app.route("/notifications", methods=["GET"])
@admin_required
def api_list_notifications():
    query = NotificationOutbox.query
    status_filter = request.args.get("status")
    if status_filter:
        query = query.filter_by(status=status_filter)
    rows = query.order_by(NotificationOutbox.created_at.desc(), NotificationOutbox.id.desc()).limit(500).all()
    return jsonify({"notifications": [r.to_dict() for r in rows]})


@app.route("/notifications/dispatch", methods=["POST"])
@admin_required
def api_dispatch_notifications():
    """Manually trigger a notification dispatch pass."""
    stats = dispatch_pending_notifications()
    return jsonify({"success": True, **stats})


# ==========================
# CLI COMMANDS
# ==========================

DEFAULT_LEVELS = (("Bronze", 0), ("Silver", 500), ("Gold", 1000))


@app.cli.command("init-db")
def init_db_command():
    """
    Initialize the database, seed default levels and create a default admin.
    Run with: flask --app app.py init-db
    """
    db.create_all()

    if Level.query.count() == 0:
        for position, (name, min_points) in enumerate(DEFAULT_LEVELS):
            db.session.add(Level(name=name, min_points=min_points, order=position))
        db.session.commit()
        print(f"Seeded levels: {', '.join(name for name, _ in DEFAULT_LEVELS)}")

    admin_email = app.config["DEFAULT_ADMIN_EMAIL"]
    if not Staff.query.filter_by(email=admin_email).first():
        admin = Staff(email=admin_email, name="Administrator", role="admin", status="active")
        admin.set_password(app.config["DEFAULT_ADMIN_PASSWORD"])
        db.session.add(admin)
        db.session.commit()
        print(f"Created default admin: {admin_email}")
    else:
        print("Admin already exists.")

    print("Database initialized.")


@app.cli.command("dispatch-notifications")
def dispatch_notifications_command():
    """Deliver pending notifications once.
    Run with: flask --app app.py dispatch-notifications
    """
    stats = dispatch_pending_notifications()
    print(f"Dispatched notifications: {stats}")


@app.cli.command("recompute-levels")
def recompute_levels_command():
    """Re-derive every staff member's level from their points."""
    changed = recompute_all_staff_levels()
    db.session.commit()
    print(f"Recomputed levels; {changed} staff changed.")


if __name__ == "__main__":
    with app.app_context():
        db.create_all()
    app.run(debug=True)
