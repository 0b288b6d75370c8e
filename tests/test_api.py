import io
import json
import os
from unittest.mock import patch

from sqlalchemy.exc import SQLAlchemyError

import services
from app import db


def _upload(name, content=b"%PDF-1.4 test"):
    return (io.BytesIO(content), name)


def _stored_names(record):
    return [f["filename"] for f in json.loads(record["files"] or "[]")]


# ------------------------------
# Health / client / auth
# ------------------------------
def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.get_json()["status"] == "healthy"


def test_index_serves_map_client(client):
    resp = client.get("/")
    assert resp.status_code == 200
    body = resp.get_data(as_text=True)
    assert "Travel Planner" in body
    assert 'id="map"' in body
    assert "leaflet" in body


def test_api_requires_login(client):
    resp = client.get("/api/activities")
    assert resp.status_code == 401
    assert resp.get_json() == {"error": "Login required"}


def test_login_rejects_bad_password(client):
    resp = client.post("/api/login", json={"username": "admin", "password": "nope"})
    assert resp.status_code == 401
    assert client.get("/api/me").status_code == 401


def test_login_and_me(auth_client):
    me = auth_client.get("/api/me").get_json()
    assert me["username"] == "admin"
    assert me["role"] == "super"
    assert "password_hash" not in me


def test_logout_clears_session(auth_client):
    assert auth_client.post("/api/logout").get_json() == {"success": True}
    assert auth_client.get("/api/activities").status_code == 401


def test_auth_can_be_disabled(app, client):
    app.config["AUTH_REQUIRED"] = False
    resp = client.get("/api/activities")
    assert resp.status_code == 200
    assert resp.get_json() == []


def test_unknown_api_route_is_json(auth_client):
    resp = auth_client.get("/api/nothing-here")
    assert resp.status_code == 404
    assert "error" in resp.get_json()


def test_foreign_origin_gets_no_cors_headers(auth_client):
    resp = auth_client.get("/api/activities", headers={"Origin": "https://evil.example"})
    assert resp.status_code == 200
    assert "Access-Control-Allow-Origin" not in resp.headers
    assert "Access-Control-Allow-Credentials" not in resp.headers



# ------------------------------
# Activities
# ------------------------------
def test_create_and_list_activity(auth_client, activity_payload):
    resp = auth_client.post("/api/activities", json=activity_payload)
    assert resp.status_code == 201
    created = resp.get_json()
    assert created["name"] == "Edinburgh Castle"
    assert created["day"] == "2024-06-02"
    assert created["lat"] == 55.9486
    assert created["files"] is None

    listed = auth_client.get("/api/activities").get_json()
    assert [a["id"] for a in listed] == [created["id"]]


def test_create_activity_from_form(auth_client, activity_payload):
    resp = auth_client.post("/api/activities", data=activity_payload)
    assert resp.status_code == 201
    assert resp.get_json()["location"] == activity_payload["location"]


def test_create_activity_requires_fields(auth_client, activity_payload):
    del activity_payload["name"]
    resp = auth_client.post("/api/activities", json=activity_payload)
    assert resp.status_code == 400
    assert resp.get_json() == {"error": "name is required"}


def test_create_activity_rejects_bad_coordinates(auth_client, activity_payload):
    activity_payload["lat"] = "north-ish"
    assert auth_client.post("/api/activities", json=activity_payload).status_code == 400
    activity_payload["lat"] = "91"
    resp = auth_client.post("/api/activities", json=activity_payload)
    assert resp.status_code == 400
    assert "between" in resp.get_json()["error"]


def test_create_activity_rejects_bad_date(auth_client, activity_payload):
    activity_payload["day"] = "02/06/2024"
    resp = auth_client.post("/api/activities", json=activity_payload)
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "day must be a date (YYYY-MM-DD)"


def test_create_activity_rejects_date_with_trailing_text(auth_client, activity_payload):
    activity_payload["day"] = "2024-06-02garbage"
    resp = auth_client.post("/api/activities", json=activity_payload)
    assert resp.status_code == 400
    assert auth_client.get("/api/activities").get_json() == []


def test_create_activity_rejects_boolean_coordinates(auth_client, activity_payload):
    activity_payload["lat"] = True
    resp = auth_client.post("/api/activities", json=activity_payload)
    assert resp.status_code == 400
    assert resp.get_json() == {"error": "lat must be a number"}


def test_activities_listed_by_day(auth_client, activity_payload):
    for day in ("2024-06-05", "2024-06-01", "2024-06-03"):
        auth_client.post("/api/activities", json={**activity_payload, "day": day})
    days = [a["day"] for a in auth_client.get("/api/activities").get_json()]
    assert days == ["2024-06-01", "2024-06-03", "2024-06-05"]


def test_update_activity_changes_every_field(auth_client, activity_payload):
    created = auth_client.post("/api/activities", json=activity_payload).get_json()
    update = {**activity_payload, "name": "Holyrood Palace", "day": "2024-06-03", "lat": 55.9527}
    resp = auth_client.put(f"/api/activities/{created['id']}", json=update)
    assert resp.status_code == 200
    updated = resp.get_json()
    assert updated["name"] == "Holyrood Palace"
    assert updated["day"] == "2024-06-03"
    assert updated["lat"] == 55.9527


def test_update_missing_activity(auth_client, activity_payload):
    resp = auth_client.put("/api/activities/does-not-exist", json=activity_payload)
    assert resp.status_code == 404
    assert resp.get_json() == {"error": "Activity not found"}


def test_delete_activity(auth_client, activity_payload):
    created = auth_client.post("/api/activities", json=activity_payload).get_json()
    resp = auth_client.delete(f"/api/activities/{created['id']}")
    assert resp.get_json() == {"success": True}
    assert auth_client.get("/api/activities").get_json() == []
    assert auth_client.delete(f"/api/activities/{created['id']}").status_code == 404


# ------------------------------
# Attachments
# ------------------------------
def test_create_with_attachments(app, auth_client, activity_payload):
    data = {**activity_payload, "files": [_upload("Ticket.PDF"), _upload("map.png", b"\x89PNG")]}
    resp = auth_client.post("/api/activities", data=data, content_type="multipart/form-data")
    assert resp.status_code == 201
    files = json.loads(resp.get_json()["files"])
    assert [f["originalname"] for f in files] == ["Ticket.PDF", "map.png"]
    assert files[0]["filename"].endswith(".pdf")
    assert files[0]["filename"] != "Ticket.PDF"
    for f in files:
        assert os.path.exists(os.path.join(app.config["UPLOAD_ROOT"], f["filename"]))

    served = auth_client.get(f"/uploads/{files[0]['filename']}")
    assert served.status_code == 200
    assert served.data == b"%PDF-1.4 test"


def test_uploads_require_login(client):
    assert client.get("/uploads/whatever.pdf").status_code == 401


def test_disallowed_file_type_writes_nothing(app, auth_client, activity_payload):
    data = {**activity_payload, "files": [_upload("ok.pdf"), _upload("run.exe", b"MZ")]}
    resp = auth_client.post("/api/activities", data=data, content_type="multipart/form-data")
    assert resp.status_code == 400
    assert "run.exe" in resp.get_json()["error"]
    assert os.listdir(app.config["UPLOAD_ROOT"]) == []


def test_database_error_on_create_removes_uploaded_files(app, auth_client, activity_payload):
    data = {**activity_payload, "files": [_upload("ticket.pdf")]}
    with patch.object(db.session, "commit", side_effect=SQLAlchemyError("disk I/O error")):
        resp = auth_client.post("/api/activities", data=data, content_type="multipart/form-data")
    assert resp.status_code == 500
    assert resp.get_json() == {"error": "Error creating activity"}
    assert os.listdir(app.config["UPLOAD_ROOT"]) == []
    assert auth_client.get("/api/activities").get_json() == []


def test_update_keeps_listed_files_and_appends_new(app, auth_client, hotel_payload):
    data = {**hotel_payload, "files": [_upload("a.pdf"), _upload("b.pdf")]}
    created = auth_client.post(
        "/api/hotels", data=data, content_type="multipart/form-data"
    ).get_json()
    first, second = json.loads(created["files"])

    update = {**hotel_payload, "files": [json.dumps([first]), _upload("c.jpg", b"jpeg")]}
    resp = auth_client.put(
        f"/api/hotels/{created['id']}", data=update, content_type="multipart/form-data"
    )
    assert resp.status_code == 200
    files = json.loads(resp.get_json()["files"])
    assert [f["originalname"] for f in files] == ["a.pdf", "c.jpg"]

    root = app.config["UPLOAD_ROOT"]
    assert os.path.exists(os.path.join(root, first["filename"]))
    assert not os.path.exists(os.path.join(root, second["filename"]))


def test_update_without_files_field_keeps_attachments(auth_client, hotel_payload):
    data = {**hotel_payload, "files": [_upload("a.pdf")]}
    created = auth_client.post(
        "/api/hotels", data=data, content_type="multipart/form-data"
    ).get_json()
    resp = auth_client.put(f"/api/hotels/{created['id']}", json={**hotel_payload, "name": "Renamed"})
    assert resp.get_json()["files"] == created["files"]


def test_update_ignores_files_the_record_does_not_own(auth_client, activity_payload):
    created = auth_client.post("/api/activities", json=activity_payload).get_json()
    foreign = json.dumps([{"filename": "../../etc/passwd", "originalname": "passwd"}])
    resp = auth_client.put(
        f"/api/activities/{created['id']}", data={**activity_payload, "files": foreign}
    )
    assert resp.status_code == 200
    assert resp.get_json()["files"] is None


def test_update_rejects_malformed_files_field(auth_client, activity_payload):
    created = auth_client.post("/api/activities", json=activity_payload).get_json()
    resp = auth_client.put(
        f"/api/activities/{created['id']}", data={**activity_payload, "files": "{not json"}
    )
    assert resp.status_code == 400


def test_delete_removes_attachments(app, auth_client, activity_payload):
    data = {**activity_payload, "files": [_upload("a.pdf")]}
    created = auth_client.post(
        "/api/activities", data=data, content_type="multipart/form-data"
    ).get_json()
    (stored,) = _stored_names(created)
    auth_client.delete(f"/api/activities/{created['id']}")
    assert not os.path.exists(os.path.join(app.config["UPLOAD_ROOT"], stored))


def test_upload_too_large(app, auth_client, activity_payload):
    app.config["MAX_CONTENT_LENGTH"] = 1024
    try:
        data = {**activity_payload, "files": [_upload("big.pdf", b"x" * 4096)]}
        resp = auth_client.post("/api/activities", data=data, content_type="multipart/form-data")
        assert resp.status_code == 413
    finally:
        app.config["MAX_CONTENT_LENGTH"] = 25 * 1024 * 1024


# ------------------------------
# Hotels
# ------------------------------
def test_create_hotel(auth_client, hotel_payload):
    resp = auth_client.post("/api/hotels", json=hotel_payload)
    assert resp.status_code == 201
    hotel = resp.get_json()
    assert hotel["checkIn"] == "2024-06-01"
    assert hotel["checkOut"] == "2024-06-04"


def test_hotel_checkout_before_checkin(auth_client, hotel_payload):
    hotel_payload["checkOut"] = "2024-05-30"
    resp = auth_client.post("/api/hotels", json=hotel_payload)
    assert resp.status_code == 400
    assert resp.get_json() == {"error": "checkOut must not be before checkIn"}


def test_hotel_accepts_datetime_strings(auth_client, hotel_payload):
    hotel_payload["checkIn"] = "2024-06-01T00:00:00.000Z"
    resp = auth_client.post("/api/hotels", json=hotel_payload)
    assert resp.get_json()["checkIn"] == "2024-06-01"


# ------------------------------
# Expenses
# ------------------------------
def test_expense_crud(auth_client):
    payload = {"description": "Fish and chips", "amount": "12.346", "date": "2024-06-02",
               "category": "Food"}
    created = auth_client.post("/api/expenses", json=payload).get_json()
    assert created["amount"] == 12.35
    assert created["lat"] is None

    resp = auth_client.put(
        f"/api/expenses/{created['id']}", json={**payload, "amount": 10, "lat": "55.9", "lng": "-3.2"}
    )
    updated = resp.get_json()
    assert updated["amount"] == 10.0
    assert updated["lat"] == 55.9

    assert auth_client.delete(f"/api/expenses/{created['id']}").get_json() == {"success": True}


def test_expense_amount_must_be_numeric(auth_client):
    resp = auth_client.post(
        "/api/expenses", json={"description": "Taxi", "amount": "a lot", "date": "2024-06-02"}
    )
    assert resp.status_code == 400
    assert resp.get_json() == {"error": "amount must be a number"}


def test_expense_summary(auth_client):
    for desc, amount, cat in (("Lunch", 15, "Food"), ("Train", 30.5, "Transport"), ("Dinner", 20, "Food")):
        auth_client.post("/api/expenses", json={
            "description": desc, "amount": amount, "date": "2024-06-02", "category": cat
        })
    summary = auth_client.get("/api/expenses/summary").get_json()
    assert summary["total"] == 65.5
    assert summary["byCategory"][0] == {"category": "Food", "sum": 35.0}
    assert summary["byDay"] == [{"date": "2024-06-02", "sum": 65.5}]


# ------------------------------
# Timeline
# ------------------------------
def test_timeline_uses_client_date(auth_client, activity_payload, hotel_payload):
    auth_client.post("/api/activities", json={**activity_payload, "day": "2024-06-02"})
    auth_client.post("/api/activities", json={**activity_payload, "name": "Arthur's Seat", "day": "2024-06-05"})
    auth_client.post("/api/hotels", json=hotel_payload)

    timeline = auth_client.get("/api/timeline?today=2024-06-02").get_json()
    assert timeline["today"] == "2024-06-02"
    assert [a["name"] for a in timeline["todaysActivities"]] == ["Edinburgh Castle"]
    assert timeline["upcomingActivities"][0]["label"] == "05.06.2024"
    assert timeline["currentHotel"]["name"] == "The Balmoral"
    assert timeline["pastActivities"] == []


def test_timeline_rejects_bad_date(auth_client):
    assert auth_client.get("/api/timeline?today=yesterday").status_code == 400


# ------------------------------
# Weather / geocoding
# ------------------------------
def test_weather_requires_coordinates(auth_client):
    resp = auth_client.get("/api/weather?lat=55.9")
    assert resp.status_code == 400
    assert resp.get_json() == {"error": "lat and lon query parameters required"}


def test_weather_without_api_key(app, auth_client):
    app.config["OPENWEATHERMAP_API_KEY"] = ""
    resp = auth_client.get("/api/weather?lat=55.9&lon=-3.2")
    assert resp.status_code == 500
    assert resp.get_json() == {"error": "Weather API key not configured"}


def test_weather_passthrough(auth_client):
    upstream = {"main": {"temp": 13.1}, "weather": [{"description": "light rain"}]}
    with patch("services.fetch_weather", return_value=upstream) as fetch:
        resp = auth_client.get("/api/weather?lat=55.9&lon=-3.2")
    assert resp.status_code == 200
    assert resp.get_json() == upstream
    fetch.assert_called_once_with(55.9, -3.2, "test-key")


def test_weather_upstream_failure(auth_client):
    with patch("services.fetch_weather", side_effect=services.UpstreamError("timeout")):
        resp = auth_client.get("/api/weather?lat=55.9&lon=-3.2")
    assert resp.status_code == 502
    assert resp.get_json() == {"error": "Failed to fetch weather data"}


def test_geocode_search(auth_client):
    place = {"display_name": "Edinburgh", "lat": 55.95, "lng": -3.19}
    with patch("services.search_address", return_value=place):
        resp = auth_client.get("/api/geocode/search?q=Edinburgh")
    assert resp.get_json() == place


def test_geocode_search_not_found(auth_client):
    with patch("services.search_address", return_value=None):
        resp = auth_client.get("/api/geocode/search?q=zzzz")
    assert resp.status_code == 404
    assert resp.get_json() == {"error": "Address not found"}


def test_geocode_search_requires_query(auth_client):
    assert auth_client.get("/api/geocode/search").status_code == 400


def test_geocode_reverse(auth_client):
    place = {"display_name": "Royal Mile", "lat": 55.95, "lng": -3.19}
    with patch("services.reverse_geocode", return_value=place) as reverse:
        resp = auth_client.get("/api/geocode/reverse?lat=55.95&lon=-3.19")
    assert resp.get_json() == place
    reverse.assert_called_once_with(55.95, -3.19)


# ------------------------------
# Users
# ------------------------------
def test_super_user_manages_users(auth_client):
    resp = auth_client.post("/api/users", json={"username": "alex", "password": "pw"})
    assert resp.status_code == 201
    alex = resp.get_json()
    assert alex["role"] == "user"

    names = [u["username"] for u in auth_client.get("/api/users").get_json()]
    assert names == ["admin", "alex"]

    assert auth_client.post("/api/users", json={"username": "alex", "password": "x"}).status_code == 409

    resp = auth_client.put(f"/api/users/{alex['id']}", json={"role": "super"})
    assert resp.get_json()["role"] == "super"

    assert auth_client.delete(f"/api/users/{alex['id']}").get_json() == {"success": True}


def test_user_role_validated(auth_client):
    resp = auth_client.post("/api/users", json={"username": "kim", "password": "pw", "role": "god"})
    assert resp.status_code == 400


def test_super_user_cannot_delete_self(auth_client):
    me = auth_client.get("/api/me").get_json()
    resp = auth_client.delete(f"/api/users/{me['id']}")
    assert resp.status_code == 400


def test_regular_user_cannot_manage_users(auth_client):
    auth_client.post("/api/users", json={"username": "sam", "password": "pw"})
    auth_client.post("/api/logout")
    auth_client.post("/api/login", json={"username": "sam", "password": "pw"})

    assert auth_client.get("/api/activities").status_code == 200
    assert auth_client.get("/api/users").status_code == 403
