import os
import json
import math
import uuid
import logging
from contextlib import contextmanager
from datetime import datetime, date, timezone
from functools import wraps

from flask import (
    Flask, request, jsonify, session, g, send_from_directory, render_template_string
)
from flask_cors import CORS
from flask_sqlalchemy import SQLAlchemy
from jinja2 import DictLoader
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.exceptions import HTTPException
from werkzeug.security import generate_password_hash, check_password_hash
from werkzeug.utils import secure_filename

from dotenv import load_dotenv
load_dotenv()

import itinerary
import services

def setup_logging():
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
    )

setup_logging()
log = logging.getLogger(__name__)

def _env_flag(name, default):
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes", "on")

# ------------------------------
# App config / Auth
# ------------------------------
APP_TITLE = "Travel Planner"
BASE_DIR = os.path.dirname(os.path.abspath(__file__))
ALLOWED_EXT = {
    "pdf", "png", "jpg", "jpeg", "gif", "webp", "bmp", "svg",
    "txt", "csv", "doc", "docx", "odt", "xls", "xlsx", "ics", "eml",
}
ROLES = ("user", "super")

app = Flask(__name__)
app.secret_key = os.environ.get("SECRET_KEY") or os.urandom(24)

app.config["SQLALCHEMY_DATABASE_URI"] = (
    os.environ.get("DATABASE_URL")
    or "sqlite:///" + os.path.join(BASE_DIR, "database.sqlite").replace("\\", "/")
)
app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
app.config["SQLALCHEMY_ECHO"] = _env_flag("SQLALCHEMY_ECHO", "false")

app.config["UPLOAD_ROOT"] = os.environ.get("UPLOAD_ROOT") or os.path.join(BASE_DIR, "uploads")
app.config["MAX_CONTENT_LENGTH"] = int(os.environ.get("MAX_UPLOAD_MB", "25")) * 1024 * 1024

app.config["OPENWEATHERMAP_API_KEY"] = os.environ.get("OPENWEATHERMAP_API_KEY", "")
app.config["AUTH_REQUIRED"] = _env_flag("AUTH_REQUIRED", "true")
app.config["SUPERUSER_USERNAME"] = os.environ.get("SUPERUSER_USERNAME", "admin")
app.config["SUPERUSER_PASSWORD"] = os.environ.get("SUPERUSER_PASSWORD", "password")

# Initial map view, "lat,lng"
app.config["MAP_CENTER"] = os.environ.get("MAP_CENTER", "56.4907,-4.2026")
app.config["MAP_ZOOM"] = int(os.environ.get("MAP_ZOOM", "7"))

# Comma-separated origins allowed to call the API with credentials
app.config["CORS_ORIGINS"] = [
    o.strip() for o in os.environ.get("CORS_ORIGINS", "").split(",") if o.strip()
]

CORS(app, origins=app.config["CORS_ORIGINS"], supports_credentials=True)
db = SQLAlchemy(app)

# ------------------------------
# Errors
# ------------------------------
class ApiError(Exception):
    def __init__(self, message, status=400):
        super().__init__(message)
        self.message = message
        self.status = status

@app.errorhandler(ApiError)
def handle_api_error(e):
    return jsonify({"error": e.message}), e.status

@app.errorhandler(HTTPException)
def handle_http_error(e):
    if request.path.startswith(("/api/", "/uploads/")):
        return jsonify({"error": e.description}), e.code
    return e

@contextmanager
def _db_guard(action, cleanup=None):
    """Commit on success; on a database error roll back, drop any files
    written for this request and answer 500 ``Error <action>``."""
    try:
        yield
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        log.exception("Error %s", action)
        if cleanup:
            _remove_uploads(cleanup)
        raise ApiError(f"Error {action}", 500)

# ------------------------------
# Models
# ------------------------------
def _uuid():
    return str(uuid.uuid4())

def _now_utc():
    return datetime.now(timezone.utc)

def _iso(value):
    return value.isoformat() if value is not None else None

class RecordMixin:
    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    created_at = db.Column(db.DateTime, nullable=False, default=_now_utc)
    updated_at = db.Column(db.DateTime, nullable=False, default=_now_utc, onupdate=_now_utc)

    def _stamps(self):
        return {"createdAt": _iso(self.created_at), "updatedAt": _iso(self.updated_at)}

class AttachmentMixin:
    # JSON list of {"filename": stored name, "originalname": client name}
    files = db.Column(db.Text)

    @property
    def attachments(self):
        if not self.files:
            return []
        try:
            return json.loads(self.files)
        except ValueError:
            log.warning("Corrupt files column on %s %s", type(self).__name__, self.id)
            return []

    @attachments.setter
    def attachments(self, entries):
        self.files = json.dumps(entries) if entries else None

class User(RecordMixin, db.Model):
    __tablename__ = "users"

    username = db.Column(db.String(80), unique=True, nullable=False)
    password_hash = db.Column(db.String(256), nullable=False)
    role = db.Column(db.String(20), nullable=False, default="user")

    def set_password(self, password):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password):
        return check_password_hash(self.password_hash, password)

    def to_dict(self):
        return {"id": self.id, "username": self.username, "role": self.role, **self._stamps()}

class Activity(RecordMixin, AttachmentMixin, db.Model):
    __tablename__ = "activities"

    name = db.Column(db.String(200), nullable=False)
    day = db.Column(db.Date, nullable=False)
    location = db.Column(db.String(500), nullable=False)
    info = db.Column(db.Text)
    lat = db.Column(db.Float, nullable=False)
    lng = db.Column(db.Float, nullable=False)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "day": _iso(self.day),
            "location": self.location,
            "info": self.info,
            "lat": self.lat,
            "lng": self.lng,
            "files": self.files,
            **self._stamps(),
        }

class Hotel(RecordMixin, AttachmentMixin, db.Model):
    __tablename__ = "hotels"

    name = db.Column(db.String(200), nullable=False)
    address = db.Column(db.String(500), nullable=False)
    info = db.Column(db.Text)
    check_in = db.Column(db.Date, nullable=False)
    check_out = db.Column(db.Date, nullable=False)
    lat = db.Column(db.Float, nullable=False)
    lng = db.Column(db.Float, nullable=False)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "address": self.address,
            "info": self.info,
            "checkIn": _iso(self.check_in),
            "checkOut": _iso(self.check_out),
            "lat": self.lat,
            "lng": self.lng,
            "files": self.files,
            **self._stamps(),
        }

class Expense(RecordMixin, db.Model):
    __tablename__ = "expenses"

    description = db.Column(db.String(500), nullable=False)
    amount = db.Column(db.Float, nullable=False)
    date = db.Column(db.Date, nullable=False)
    category = db.Column(db.String(100))
    lat = db.Column(db.Float)
    lng = db.Column(db.Float)

    def to_dict(self):
        return {
            "id": self.id,
            "description": self.description,
            "amount": self.amount,
            "date": _iso(self.date),
            "category": self.category,
            "lat": self.lat,
            "lng": self.lng,
            **self._stamps(),
        }

def init_db():
    """Create tables and seed the super user on an empty User table."""
    os.makedirs(app.config["UPLOAD_ROOT"], exist_ok=True)
    db.create_all()
    count = db.session.query(User).count()
    if count == 0:
        user = User(username=app.config["SUPERUSER_USERNAME"], role="super")
        user.set_password(app.config["SUPERUSER_PASSWORD"])
        db.session.add(user)
        db.session.commit()
        log.info("Super user created with username: %s", user.username)
    else:
        log.info("User table already has %d record(s).", count)

# ------------------------------
# Helpers
# ------------------------------
def _payload():
    """JSON body or form fields, whichever the client sent."""
    if request.is_json:
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            raise ApiError("Request body must be a JSON object")
        return data
    return request.form

def _text(data, key, required=False):
    value = data.get(key)
    value = "" if value is None else str(value).strip()
    if required and not value:
        raise ApiError(f"{key} is required")
    return value or None

def _float(data, key, required=False, bound=None):
    raw = data.get(key)
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        if required:
            raise ApiError(f"{key} is required")
        return None
    if isinstance(raw, bool):
        raise ApiError(f"{key} must be a number")
    try:
        value = float(raw)
    except (TypeError, ValueError):
        raise ApiError(f"{key} must be a number")
    if not math.isfinite(value):
        raise ApiError(f"{key} must be a number")
    if bound is not None and not -bound <= value <= bound:
        raise ApiError(f"{key} must be between {-bound} and {bound}")
    return value

def _date(data, key, required=False):
    raw = data.get(key)
    try:
        value = itinerary.parse_day(raw.strip() if isinstance(raw, str) else raw)
    except (TypeError, ValueError):
        raise ApiError(f"{key} must be a date (YYYY-MM-DD)")
    if value is None and required:
        raise ApiError(f"{key} is required")
    return value

def _get_or_404(model, record_id, label):
    record = db.session.get(model, record_id)
    if record is None:
        raise ApiError(f"{label} not found", 404)
    return record

def activity_fields(data):
    return {
        "name": _text(data, "name", required=True),
        "day": _date(data, "day", required=True),
        "location": _text(data, "location", required=True),
        "info": _text(data, "info"),
        "lat": _float(data, "lat", required=True, bound=90),
        "lng": _float(data, "lng", required=True, bound=180),
    }

def hotel_fields(data):
    fields = {
        "name": _text(data, "name", required=True),
        "address": _text(data, "address", required=True),
        "info": _text(data, "info"),
        "check_in": _date(data, "checkIn", required=True),
        "check_out": _date(data, "checkOut", required=True),
        "lat": _float(data, "lat", required=True, bound=90),
        "lng": _float(data, "lng", required=True, bound=180),
    }
    if fields["check_out"] < fields["check_in"]:
        raise ApiError("checkOut must not be before checkIn")
    return fields

def expense_fields(data):
    amount = _float(data, "amount", required=True)
    return {
        "description": _text(data, "description", required=True),
        "amount": round(amount, 2),
        "date": _date(data, "date", required=True),
        "category": _text(data, "category"),
        "lat": _float(data, "lat", bound=90),
        "lng": _float(data, "lng", bound=180),
    }

# ------------------------------
# Attachments
# ------------------------------
def allowed_file(filename: str) -> bool:
    return "." in filename and filename.rsplit(".", 1)[1].lower() in ALLOWED_EXT

def _save_uploads(file_storages):
    """Write uploaded files under UPLOAD_ROOT with generated names.

    Every file is checked before anything touches the disk so a rejected
    request leaves no orphans behind."""
    incoming = [f for f in file_storages if f and f.filename]
    for f in incoming:
        if not allowed_file(f.filename):
            raise ApiError(f"File type not allowed: {f.filename}")

    root = app.config["UPLOAD_ROOT"]
    os.makedirs(root, exist_ok=True)
    saved = []
    for f in incoming:
        stored = uuid.uuid4().hex + "." + f.filename.rsplit(".", 1)[1].lower()
        f.save(os.path.join(root, stored))
        saved.append({"filename": stored, "originalname": f.filename})
        log.info("Stored upload %s as %s", f.filename, stored)
    return saved

def _remove_uploads(entries):
    root = app.config["UPLOAD_ROOT"]
    for entry in entries:
        name = entry.get("filename") or ""
        # stored names are generated by us; anything else is not ours to delete
        if not name or secure_filename(name) != name:
            continue
        try:
            os.remove(os.path.join(root, name))
            log.info("Removed upload %s", name)
        except FileNotFoundError:
            log.warning("Upload %s already missing", name)

def _kept_attachments(record, data):
    """Split the record's attachments into (kept, dropped) per the ``files`` field.

    Without the field everything is kept. Entries the record does not own are
    ignored."""
    current = record.attachments
    if "files" not in data:
        return current, []

    raw = data.get("files")
    if isinstance(raw, str):
        try:
            wanted = json.loads(raw) if raw.strip() else []
        except ValueError:
            raise ApiError("files must be a JSON list")
    else:
        wanted = raw or []
    if not isinstance(wanted, list):
        raise ApiError("files must be a JSON list")

    names = {e.get("filename") for e in wanted if isinstance(e, dict)}
    kept = [e for e in current if e.get("filename") in names]
    dropped = [e for e in current if e.get("filename") not in names]
    return kept, dropped

# ------------------------------
# Record CRUD
# ------------------------------
def _list_records(model, plural, order_by):
    with _db_guard(f"fetching {plural}"):
        rows = [r.to_dict() for r in model.query.order_by(*order_by).all()]
    return rows

def _create_record(model, parse, label, attachments=False):
    data = _payload()
    fields = parse(data)
    uploaded = _save_uploads(request.files.getlist("files")) if attachments else []
    record = model(**fields)
    if attachments:
        record.attachments = uploaded
    with _db_guard(f"creating {label}", cleanup=uploaded):
        db.session.add(record)
    log.info("New %s created: %s", label, record.id)
    return jsonify(record.to_dict()), 201

def _update_record(model, record_id, parse, label, attachments=False):
    record = _get_or_404(model, record_id, label.capitalize())
    data = _payload()
    fields = parse(data)
    uploaded, dropped = [], []
    if attachments:
        kept, dropped = _kept_attachments(record, data)
        uploaded = _save_uploads(request.files.getlist("files"))
    for key, value in fields.items():
        setattr(record, key, value)
    if attachments:
        record.attachments = kept + uploaded
    with _db_guard(f"updating {label}", cleanup=uploaded):
        pass
    _remove_uploads(dropped)
    log.info("%s updated: %s", label.capitalize(), record.id)
    return jsonify(record.to_dict())

def _delete_record(model, record_id, label, attachments=False):
    record = _get_or_404(model, record_id, label.capitalize())
    owned = record.attachments if attachments else []
    with _db_guard(f"deleting {label}"):
        db.session.delete(record)
    _remove_uploads(owned)
    log.info("%s %s deleted.", label.capitalize(), record_id)
    return jsonify({"success": True})

# ------------------------------
# Auth
# ------------------------------
def current_user():
    if "user" not in g:
        uid = session.get("user_id")
        g.user = db.session.get(User, uid) if uid else None
    return g.user

def require_login(f):
    @wraps(f)
    def wrapper(*args, **kwargs):
        if app.config["AUTH_REQUIRED"] and current_user() is None:
            raise ApiError("Login required", 401)
        return f(*args, **kwargs)
    return wrapper

def require_super(f):
    @wraps(f)
    def wrapper(*args, **kwargs):
        user = current_user()
        if user is None:
            raise ApiError("Login required", 401)
        if user.role != "super":
            raise ApiError("Super user required", 403)
        return f(*args, **kwargs)
    return wrapper

@app.post("/api/login")
def login():
    data = _payload()
    username = _text(data, "username") or ""
    password = data.get("password") or ""
    user = User.query.filter_by(username=username).first()
    if user is None or not user.check_password(password):
        log.warning("Failed login for %r", username)
        raise ApiError("Invalid credentials.", 401)
    session.clear()
    session["user_id"] = user.id
    log.info("User %s logged in", user.username)
    return jsonify(user.to_dict())

@app.post("/api/logout")
def logout():
    session.clear()
    return jsonify({"success": True})

@app.get("/api/me")
def me():
    user = current_user()
    if user is None:
        raise ApiError("Login required", 401)
    return jsonify({**user.to_dict(), "authRequired": app.config["AUTH_REQUIRED"]})

# ------------------------------
# Users
# ------------------------------
@app.get("/api/users")
@require_super
def list_users():
    return jsonify(_list_records(User, "users", (User.username,)))

@app.post("/api/users")
@require_super
def create_user():
    data = _payload()
    username = _text(data, "username", required=True)
    password = data.get("password") or ""
    if not password:
        raise ApiError("password is required")
    role = _text(data, "role") or "user"
    if role not in ROLES:
        raise ApiError(f"role must be one of: {', '.join(ROLES)}")
    if User.query.filter_by(username=username).first() is not None:
        raise ApiError("Username already exists", 409)

    user = User(username=username, role=role)
    user.set_password(password)
    with _db_guard("creating user"):
        db.session.add(user)
    log.info("User %s created with role %s", username, role)
    return jsonify(user.to_dict()), 201

@app.put("/api/users/<user_id>")
@require_super
def update_user(user_id):
    user = _get_or_404(User, user_id, "User")
    data = _payload()
    if data.get("password"):
        user.set_password(data["password"])
    role = _text(data, "role")
    if role is not None:
        if role not in ROLES:
            raise ApiError(f"role must be one of: {', '.join(ROLES)}")
        if user.id == current_user().id and role != "super":
            raise ApiError("You cannot demote your own account")
        user.role = role
    with _db_guard("updating user"):
        pass
    log.info("User %s updated", user.username)
    return jsonify(user.to_dict())

@app.delete("/api/users/<user_id>")
@require_super
def delete_user(user_id):
    if user_id == current_user().id:
        raise ApiError("You cannot delete your own account")
    return _delete_record(User, user_id, "user")

# ------------------------------
# Activities
# ------------------------------
@app.get("/api/activities")
@require_login
def list_activities():
    return jsonify(_list_records(Activity, "activities", (Activity.day, Activity.created_at)))

@app.post("/api/activities")
@require_login
def create_activity():
    return _create_record(Activity, activity_fields, "activity", attachments=True)

@app.put("/api/activities/<record_id>")
@require_login
def update_activity(record_id):
    return _update_record(Activity, record_id, activity_fields, "activity", attachments=True)

@app.delete("/api/activities/<record_id>")
@require_login
def delete_activity(record_id):
    return _delete_record(Activity, record_id, "activity", attachments=True)

# ------------------------------
# Hotels
# ------------------------------
@app.get("/api/hotels")
@require_login
def list_hotels():
    return jsonify(_list_records(Hotel, "hotels", (Hotel.check_in, Hotel.created_at)))

@app.post("/api/hotels")
@require_login
def create_hotel():
    return _create_record(Hotel, hotel_fields, "hotel", attachments=True)

@app.put("/api/hotels/<record_id>")
@require_login
def update_hotel(record_id):
    return _update_record(Hotel, record_id, hotel_fields, "hotel", attachments=True)

@app.delete("/api/hotels/<record_id>")
@require_login
def delete_hotel(record_id):
    return _delete_record(Hotel, record_id, "hotel", attachments=True)

# ------------------------------
# Expenses
# ------------------------------
@app.get("/api/expenses")
@require_login
def list_expenses():
    return jsonify(_list_records(Expense, "expenses", (Expense.date, Expense.created_at)))

@app.get("/api/expenses/summary")
@require_login
def expenses_summary():
    rows = _list_records(Expense, "expenses", (Expense.date,))
    return jsonify(itinerary.summarize_expenses(rows))

@app.post("/api/expenses")
@require_login
def create_expense():
    return _create_record(Expense, expense_fields, "expense")

@app.put("/api/expenses/<record_id>")
@require_login
def update_expense(record_id):
    return _update_record(Expense, record_id, expense_fields, "expense")

@app.delete("/api/expenses/<record_id>")
@require_login
def delete_expense(record_id):
    return _delete_record(Expense, record_id, "expense")

# ------------------------------
# Timeline (side menu)
# ------------------------------
@app.get("/api/timeline")
@require_login
def timeline():
    # the client passes its own local date; the server date is only a fallback
    today = _date(request.args, "today") or date.today()
    activities = _list_records(Activity, "activities", (Activity.day,))
    hotels = _list_records(Hotel, "hotels", (Hotel.check_in,))
    return jsonify(itinerary.build_timeline(activities, hotels, today))

# ------------------------------
# Weather / geocoding passthrough
# ------------------------------
@app.get("/api/weather")
@require_login
def weather():
    if not request.args.get("lat") or not request.args.get("lon"):
        raise ApiError("lat and lon query parameters required")
    lat = _float(request.args, "lat", bound=90)
    lon = _float(request.args, "lon", bound=180)
    api_key = app.config["OPENWEATHERMAP_API_KEY"]
    if not api_key:
        raise ApiError("Weather API key not configured", 500)
    try:
        data = services.fetch_weather(lat, lon, api_key)
    except services.UpstreamError:
        raise ApiError("Failed to fetch weather data", 502)
    return jsonify(data)

@app.get("/api/geocode/search")
@require_login
def geocode_search():
    query = _text(request.args, "q", required=True)
    try:
        place = services.search_address(query)
    except services.UpstreamError:
        raise ApiError("Error searching address", 502)
    if place is None:
        raise ApiError("Address not found", 404)
    return jsonify(place)

@app.get("/api/geocode/reverse")
@require_login
def geocode_reverse():
    lat = _float(request.args, "lat", required=True, bound=90)
    lon = _float(request.args, "lon", required=True, bound=180)
    try:
        place = services.reverse_geocode(lat, lon)
    except services.UpstreamError:
        raise ApiError("Reverse geocoding failed", 502)
    return jsonify(place)

# ------------------------------
# Uploaded documents / health / client
# ------------------------------
@app.route("/uploads/<filename>")
@require_login
def uploads(filename):
    return send_from_directory(app.config["UPLOAD_ROOT"], filename, max_age=0)

@app.get("/health")
def health():
    return jsonify({"status": "healthy", "timestamp": _now_utc().isoformat()})

@app.route("/")
def index():
    lat, lng = (float(v) for v in app.config["MAP_CENTER"].split(","))
    return render_template_string(
        INDEX_TEMPLATE,
        title=APP_TITLE,
        css=BASE_CSS,
        center_lat=lat,
        center_lng=lng,
        zoom=app.config["MAP_ZOOM"],
        max_mb=app.config["MAX_CONTENT_LENGTH"] // (1024 * 1024),
    )

# ------------------------------
# Inline CSS / Templates
# ------------------------------
BASE_CSS = """
:root { --bg:#0b1020; --card:#131a2e; --muted:#9fb0d3; --accent:#6ea8fe; }
*{ box-sizing:border-box; }
html,body{ height:100%; }
body{ margin:0; font-family:system-ui,-apple-system,Segoe UI,Roboto,Ubuntu; background:var(--bg); color:#e6eefc; display:flex; flex-direction:column; }
a{ color:var(--accent); text-decoration:none; }
.header{ display:flex; align-items:center; gap:12px; padding:10px 16px; background:var(--card); border-bottom:1px solid #1e2743; }
.header-title{ font-weight:800; font-size:20px; letter-spacing:0.3px; flex:1; }
.toolbar{ display:flex; gap:8px; align-items:center; flex-wrap:wrap; }
.main{ flex:1; position:relative; }
#map{ position:absolute; inset:0; }
.btn{ display:inline-block; padding:8px 12px; border-radius:10px; border:1px solid #304377; background:#203057; color:#e6eefc; cursor:pointer; }
.btn.primary{ background:var(--accent); color:#0b1020; border:0; }
.btn.danger{ background:#e55353; border:0; }
input,select,textarea{ width:100%; padding:8px 10px; background:#0f1530; color:#e6eefc; border:1px solid #2c3e70; border-radius:10px; }
.toolbar input{ width:260px; }
label{ color:#bcd0f0; font-size:14px; display:block; margin-top:8px; }
.check{ display:inline-flex; gap:4px; align-items:center; margin:0; }
.check input{ width:auto; }
.error{ color:#ff9a9a; font-size:13px; }
.menu{ position:absolute; top:10px; left:50px; z-index:1000; width:340px; max-height:calc(100% - 20px); overflow-y:auto; background:var(--card); border:1px solid #1e2743; border-radius:14px; padding:12px; }
.menu.hidden{ display:none; }
.menu-heading{ color:var(--muted); font-size:13px; margin:12px 0 6px; text-transform:uppercase; letter-spacing:.08em; }
.menu ul{ list-style:none; margin:0; padding:0; }
.menu li{ display:flex; justify-content:space-between; gap:6px; padding:3px 0; }
.date-heading{ margin:6px 0 2px; font-weight:600; }
.icon{ cursor:pointer; }
.modal-overlay{ position:fixed; inset:0; background:rgba(0,0,0,.6); z-index:2000; display:flex; align-items:center; justify-content:center; }
.modal-content{ background:var(--card); border:1px solid #1e2743; border-radius:14px; padding:16px; width:min(520px, 95vw); max-height:90vh; overflow-y:auto; }
.modal-buttons{ display:flex; gap:8px; justify-content:flex-end; margin-top:12px; }
.files li{ margin:6px 0; }
.footer{ color:#8aa0cf; font-size:12px; padding:6px; text-align:center; opacity:.85; }
"""

BASE_TMPL = """
<!doctype html>
<html>
<head>
  <meta charset="utf-8"/>
  <meta name="viewport" content="width=device-width, initial-scale=1"/>
  <title>{{ title }}</title>
  <link rel="stylesheet" href="https://unpkg.com/leaflet@1.9.4/dist/leaflet.css"/>
  <style>{{ css }}</style>
</head>
<body>
  {% block content %}{% endblock %}
  <div class="footer">Max upload {{ max_mb }}MB per request. Documents: pdf, images, office files.</div>
</body>
</html>
"""

# Provide base.html from memory so no templates/ folder is required
app.jinja_loader = DictLoader({"base.html": BASE_TMPL})

INDEX_TEMPLATE = """
{% extends 'base.html' %}
{% block content %}
<header class="header">
  <button class="btn" id="menu-toggle">&#9776;</button>
  <div class="header-title">{{ title }}</div>
  <div class="toolbar">
    <input id="address" placeholder="Search address&hellip;"/>
    <button class="btn" id="address-search">Search</button>
    <span class="error" id="address-error"></span>
    <label class="check"><input type="checkbox" data-layer="activities" checked/>Activities</label>
    <label class="check"><input type="checkbox" data-layer="hotels" checked/>Hotels</label>
    <label class="check"><input type="checkbox" data-layer="expenses" checked/>Expenses</label>
    <button class="btn" id="logout">Logout</button>
  </div>
</header>
<main class="main">
  <div id="map" data-lat="{{ center_lat }}" data-lng="{{ center_lng }}" data-zoom="{{ zoom }}"></div>
  <div class="menu hidden" id="menu"></div>
</main>
<div id="modal-root"></div>
<script src="https://unpkg.com/leaflet@1.9.4/dist/leaflet.js"></script>
{% raw %}
<script>
const MARKER = "https://raw.githubusercontent.com/pointhi/leaflet-color-markers/master/img/marker-icon-";
const SHADOW = "https://cdnjs.cloudflare.com/ajax/libs/leaflet/1.3.4/images/marker-shadow.png";
const icon = (color) => new L.Icon({
  iconUrl: MARKER + color + ".png", shadowUrl: SHADOW,
  iconSize: [25, 41], iconAnchor: [12, 41], popupAnchor: [1, -34], shadowSize: [41, 41]
});
const ICONS = { orange: icon("orange"), blue: icon("blue"), grey: icon("grey"), red: icon("red"), green: icon("green") };
const ENDPOINT = { Activity: "/api/activities", Hotel: "/api/hotels", Expense: "/api/expenses" };

const state = { activities: [], hotels: [], expenses: [], timeline: null, markers: {},
                layers: {}, filters: { activities: true, hotels: true, expenses: true } };

const el = document.getElementById("map");
const map = L.map("map").setView([parseFloat(el.dataset.lat), parseFloat(el.dataset.lng)], parseInt(el.dataset.zoom, 10));
L.tileLayer("https://{s}.basemaps.cartocdn.com/dark_all/{z}/{x}/{y}{r}.png", {
  attribution: '&copy; <a href="https://carto.com/">CARTO</a> contributors'
}).addTo(map);

const esc = (s) => String(s == null ? "" : s).replace(/[&<>"']/g, (c) =>
  ({ "&": "&amp;", "<": "&lt;", ">": "&gt;", '"': "&quot;", "'": "&#39;" }[c]));
const localToday = () => {
  const d = new Date();
  return new Date(d.getTime() - d.getTimezoneOffset() * 60000).toISOString().slice(0, 10);
};
const german = (iso) => iso ? iso.slice(8, 10) + "." + iso.slice(5, 7) + "." + iso.slice(0, 4) : "";

async function api(method, url, body) {
  const opts = { method, credentials: "same-origin", headers: {} };
  if (body instanceof FormData) opts.body = body;
  else if (body !== undefined) { opts.body = JSON.stringify(body); opts.headers["Content-Type"] = "application/json"; }
  const res = await fetch(url, opts);
  if (res.status === 401 && url !== "/api/login") { showLogin(); throw new Error("Login required"); }
  const data = await res.json().catch(() => ({}));
  if (!res.ok) throw new Error(data.error || res.statusText);
  return data;
}

/* ---------- data ---------- */
async function refresh() {
  const [activities, hotels, expenses, timeline] = await Promise.all([
    api("GET", "/api/activities"), api("GET", "/api/hotels"), api("GET", "/api/expenses"),
    api("GET", "/api/timeline?today=" + localToday())
  ]);
  Object.assign(state, { activities, hotels, expenses, timeline });
  renderMarkers();
  renderMenu();
}

/* ---------- markers ---------- */
function popupHtml(type, item) {
  const title = type === "Expense" ? item.description : item.name;
  const when = type === "Activity" ? german(item.day) : type === "Hotel"
    ? german(item.checkIn) + " - " + german(item.checkOut) : german(item.date);
  return `<div><h3>${type}: ${esc(title)}</h3><p>Date: ${when}</p>` +
    (type === "Expense" ? `<p>Amount: ${Number(item.amount).toFixed(2)}</p>` : `<p>Info: ${esc(item.info)}</p>`) +
    `<span class="icon" onclick="openInGoogleMaps(${item.lat}, ${item.lng})" title="Navigation">&#128506;</span> ` +
    `<span class="icon" onclick="selectInfo('${type}', '${item.id}')" title="More information">&#128712;</span></div>`;
}

function renderMarkers() {
  Object.values(state.layers).forEach((layer) => layer.remove());
  state.layers = { activities: L.layerGroup(), hotels: L.layerGroup(), expenses: L.layerGroup() };
  state.markers = {};
  const states = (state.timeline && state.timeline.markers) || {};
  const add = (layer, type, item, color, opacity) => {
    if (item.lat == null || item.lng == null) return;
    const m = L.marker([item.lat, item.lng], { icon: ICONS[color], opacity }).bindPopup(popupHtml(type, item));
    m.addTo(state.layers[layer]);
    state.markers[item.id] = m;
  };
  state.activities.forEach((a) => {
    const s = states[a.id] || { state: "past", opacity: 0.5 };
    add("activities", "Activity", a, s.state === "past" ? "grey" : "orange", s.opacity);
  });
  state.hotels.forEach((h) => {
    const s = states[h.id] || { state: "past", opacity: 0.5 };
    add("hotels", "Hotel", h, s.state === "past" ? "grey" : "blue", s.opacity);
  });
  state.expenses.forEach((e) => add("expenses", "Expense", e, "green", 1));
  Object.entries(state.layers).forEach(([name, layer]) => { if (state.filters[name]) layer.addTo(map); });
}

document.querySelectorAll("[data-layer]").forEach((box) => box.addEventListener("change", () => {
  state.filters[box.dataset.layer] = box.checked;
  renderMarkers();
}));

function openInGoogleMaps(lat, lng) {
  window.open(`https://www.google.com/maps/search/?api=1&query=${lat},${lng}`, "_blank");
}
function openMarkerPopup(id) {
  const m = state.markers[id];
  if (m) { map.setView(m.getLatLng(), Math.max(map.getZoom(), 12)); m.openPopup(); }
}

/* ---------- side menu ---------- */
function menuItem(type, item, label, opacity) {
  return `<li style="opacity:${opacity}"><span>${esc(label)}</span><span>` +
    `<span class="icon" title="More information" onclick="selectInfo('${type}', '${item.id}')">&#128712;</span> ` +
    `<span class="icon" title="Navigation" onclick="openInGoogleMaps(${item.lat}, ${item.lng})">&#128506;</span> ` +
    `<span class="icon" title="Open marker" onclick="openMarkerPopup('${item.id}')">&#9906;</span></span></li>`;
}
function groups(list, opacity, empty) {
  if (!list.length) return `<p>${empty}</p>`;
  return list.map((g) => `<p class="date-heading">${g.label}:</p><ul>` +
    g.items.map((a) => menuItem("Activity", a, a.name, opacity)).join("") + "</ul>").join("");
}
function hotelList(list, opacity, empty) {
  if (!list.length) return `<p>${empty}</p>`;
  return "<ul>" + list.map((h) => menuItem("Hotel", h, german(h.checkIn) + " - " + h.name, opacity)).join("") + "</ul>";
}
function renderMenu() {
  const t = state.timeline;
  let html = "";
  if (t.currentHotel) {
    html += `<h3 class="menu-heading">Current Hotel</h3><ul>` +
      menuItem("Hotel", t.currentHotel, german(t.currentHotel.checkIn) + " - " + t.currentHotel.name, 1) + "</ul>";
  }
  if (t.todaysActivities.length) {
    html += `<h3 class="menu-heading">Today's Activities</h3><ul>` +
      t.todaysActivities.map((a) => menuItem("Activity", a, german(a.day) + " - " + a.name, 1)).join("") + "</ul>";
  }
  html += `<h3 class="menu-heading">Upcoming Activities</h3>` + groups(t.upcomingActivities, 0.7, "No upcoming activities");
  html += `<h3 class="menu-heading">Upcoming Hotels</h3>` + hotelList(t.upcomingHotels, 0.7, "No upcoming hotels");
  html += `<h3 class="menu-heading">Past Activities</h3>` + groups(t.pastActivities, 0.5, "No past activities");
  html += `<h3 class="menu-heading">Past Hotels</h3>` + hotelList(t.pastHotels, 0.5, "No past hotels");
  document.getElementById("menu").innerHTML = html;
}
document.getElementById("menu-toggle").addEventListener("click", (e) => {
  const menu = document.getElementById("menu");
  menu.classList.toggle("hidden");
  e.target.innerHTML = menu.classList.contains("hidden") ? "&#9776;" : "&#10005;";
});

/* ---------- modal ---------- */
const FIELDS = {
  Activity: [["name", "Name", "text"], ["day", "Date", "date"], ["location", "Address", "text"], ["info", "Info", "textarea"]],
  Hotel: [["name", "Name", "text"], ["address", "Address", "text"], ["info", "Info", "textarea"],
          ["checkIn", "Check-In", "date"], ["checkOut", "Check-Out", "date"]],
  Expense: [["description", "Description", "text"], ["amount", "Amount", "number"], ["date", "Date", "date"],
            ["category", "Category", "text"]]
};

function closeModal() { document.getElementById("modal-root").innerHTML = ""; }

function fieldInputs(type, item) {
  return FIELDS[type].map(([name, label, kind]) => `<label>${label}:</label>` + (kind === "textarea"
    ? `<textarea name="${name}">${esc(item[name])}</textarea>`
    : `<input type="${kind}" ${kind === "number" ? 'step="any"' : ""} name="${name}" value="${esc(item[name])}"/>`)).join("");
}

function fileList(files) {
  return "<ul class='files'>" + files.map((f, i) => {
    const url = "/uploads/" + encodeURIComponent(f.filename);
    const ext = f.filename.split(".").pop().toLowerCase();
    const preview = ext === "pdf" ? `<embed src="${url}" type="application/pdf" width="100%" height="200px"/>`
      : /^(png|jpe?g|gif|webp|bmp|svg)$/.test(ext)
        ? `<a href="${url}" target="_blank" rel="noopener noreferrer"><img src="${url}" alt="${esc(f.originalname)}" style="max-width:200px;display:block"/></a>` : "";
    return `<li>${preview}<a href="${url}" download="${esc(f.originalname)}">${esc(f.originalname)}</a> ` +
      `<button class="btn" data-remove="${i}">Delete</button></li>`;
  }).join("") + "</ul>";
}

function collect(form) {
  const data = {};
  form.querySelectorAll("[name]").forEach((input) => { if (input.type !== "file") data[input.name] = input.value; });
  return data;
}

function selectInfo(type, id) {
  const list = { Activity: state.activities, Hotel: state.hotels, Expense: state.expenses }[type];
  const item = list.find((x) => x.id === id);
  if (!item) return;
  let files = item.files ? JSON.parse(item.files) : [];
  const withFiles = type !== "Expense";
  const root = document.getElementById("modal-root");
  const render = () => {
    root.innerHTML = `<div class="modal-overlay"><form class="modal-content" id="info-form">
      <h2>${type} Details</h2>${fieldInputs(type, item)}
      ${withFiles ? `<label>Upload Documents:</label><input type="file" name="upload" multiple/>${fileList(files)}` : ""}
      <p>Coordinates: Lat: ${item.lat}, Lng: ${item.lng}</p><div id="weather"></div>
      <p class="error" id="modal-error"></p>
      <div class="modal-buttons"><button class="btn primary" type="submit">Save Changes</button>
      <button class="btn danger" type="button" id="delete">Delete</button>
      <button class="btn" type="button" id="close">Close</button></div></form></div>`;
    const form = document.getElementById("info-form");
    form.querySelectorAll("[data-remove]").forEach((b) => b.addEventListener("click", (e) => {
      e.preventDefault();
      Object.assign(item, collect(form));
      files = files.filter((_, i) => i !== parseInt(b.dataset.remove, 10));
      render();
    }));
    document.getElementById("close").onclick = closeModal;
    document.getElementById("delete").onclick = async () => {
      if (!confirm("Delete this " + type.toLowerCase() + "?")) return;
      try { await api("DELETE", `${ENDPOINT[type]}/${item.id}`); closeModal(); refresh(); }
      catch (err) { document.getElementById("modal-error").textContent = err.message; }
    };
    form.onsubmit = async (e) => {
      e.preventDefault();
      const body = new FormData();
      Object.entries({ ...collect(form), lat: item.lat, lng: item.lng }).forEach(([k, v]) => body.append(k, v == null ? "" : v));
      if (withFiles) {
        body.append("files", JSON.stringify(files));
        Array.from(form.querySelector("[name=upload]").files).forEach((f) => body.append("files", f));
      }
      try { await api("PUT", `${ENDPOINT[type]}/${item.id}`, body); closeModal(); refresh(); }
      catch (err) { document.getElementById("modal-error").textContent = err.message; }
    };
    loadWeather(item);
  };
  render();
}

async function loadWeather(item) {
  if (item.lat == null || item.lng == null) return;
  try {
    const w = await api("GET", `/api/weather?lat=${item.lat}&lon=${item.lng}`);
    const box = document.getElementById("weather");
    if (box) box.innerHTML = `<h3>Weather</h3><p>Temperature: ${w.main ? w.main.temp : "?"}&deg;C</p>` +
      `<p>Conditions: ${esc(w.weather && w.weather[0] ? w.weather[0].description : "")}</p>`;
  } catch (err) { console.error("Error fetching weather info:", err); }
}

/* ---------- new item ---------- */
function newItem(place) {
  const root = document.getElementById("modal-root");
  let type = "Activity";
  const render = () => {
    const item = { location: place.display_name, address: place.display_name };
    root.innerHTML = `<div class="modal-overlay"><form class="modal-content" id="new-form">
      <h2>New ${type}</h2><label>Type:</label><select id="new-type">
      ${Object.keys(FIELDS).map((t) => `<option ${t === type ? "selected" : ""}>${t}</option>`).join("")}</select>
      ${fieldInputs(type, item)}<p>Coordinates: Lat: ${place.lat.toFixed(5)}, Lng: ${place.lng.toFixed(5)}</p>
      <p class="error" id="modal-error"></p>
      <div class="modal-buttons"><button class="btn primary" type="submit">Save</button>
      <button class="btn" type="button" id="close">Cancel</button></div></form></div>`;
    document.getElementById("new-type").onchange = (e) => { type = e.target.value; render(); };
    document.getElementById("close").onclick = closeModal;
    document.getElementById("new-form").onsubmit = async (e) => {
      e.preventDefault();
      try {
        await api("POST", ENDPOINT[type], { ...collect(e.target), lat: place.lat, lng: place.lng });
        closeModal(); refresh();
      } catch (err) { document.getElementById("modal-error").textContent = err.message; }
    };
  };
  render();
}

map.on("click", async (e) => {
  const { lat, lng } = e.latlng;
  let place = { display_name: "", lat, lng };
  try { place = await api("GET", `/api/geocode/reverse?lat=${lat}&lon=${lng}`); }
  catch (err) { console.error("Reverse geocoding error:", err); }
  newItem(place);
});

async function searchAddress() {
  const q = document.getElementById("address").value.trim();
  const errorBox = document.getElementById("address-error");
  if (!q) return;
  try {
    const place = await api("GET", "/api/geocode/search?q=" + encodeURIComponent(q));
    errorBox.textContent = "";
    map.setView([place.lat, place.lng], 13);
    newItem(place);
  } catch (err) { errorBox.textContent = err.message; }
}
document.getElementById("address-search").addEventListener("click", searchAddress);
document.getElementById("address").addEventListener("keydown", (e) => { if (e.key === "Enter") searchAddress(); });

/* ---------- login ---------- */
function showLogin() {
  document.getElementById("modal-root").innerHTML = `<div class="modal-overlay"><form class="modal-content" id="login-form">
    <h2>Login</h2><label>Username</label><input name="username" required/>
    <label>Password</label><input type="password" name="password" required/>
    <p class="error" id="modal-error"></p>
    <div class="modal-buttons"><button class="btn primary" type="submit">Login</button></div></form></div>`;
  document.getElementById("login-form").onsubmit = async (e) => {
    e.preventDefault();
    try { await api("POST", "/api/login", collect(e.target)); closeModal(); refresh(); }
    catch (err) { document.getElementById("modal-error").textContent = err.message; }
  };
}
document.getElementById("logout").addEventListener("click", async () => {
  await api("POST", "/api/logout");
  showLogin();
});

/* ---------- current location ---------- */
if (navigator.geolocation) {
  navigator.geolocation.getCurrentPosition(
    (pos) => L.marker([pos.coords.latitude, pos.coords.longitude], { icon: ICONS.red })
      .bindPopup("Your current location").addTo(map),
    (err) => console.error("Error getting current location", err)
  );
}

refresh().catch((err) => console.error(err));
</script>
{% endraw %}
{% endblock %}
"""

# ------------------------------
# Main
# ------------------------------
with app.app_context():
    init_db()

if __name__ == "__main__":
    # For local dev: flask run or python app.py
    app.run(host="0.0.0.0", port=int(os.environ.get("PORT", 3001)))
