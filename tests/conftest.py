import os
import tempfile

import pytest

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["UPLOAD_ROOT"] = tempfile.mkdtemp(prefix="travel-uploads-")
os.environ["SECRET_KEY"] = "test-secret"
os.environ["SUPERUSER_USERNAME"] = "admin"
os.environ["SUPERUSER_PASSWORD"] = "secret"

from app import app as flask_app, db, init_db  # noqa: E402


@pytest.fixture
def app(tmp_path):
    flask_app.config.update(
        TESTING=True,
        UPLOAD_ROOT=str(tmp_path),
        AUTH_REQUIRED=True,
        OPENWEATHERMAP_API_KEY="test-key",
    )
    with flask_app.app_context():
        db.drop_all()
        init_db()
    yield flask_app
    with flask_app.app_context():
        db.session.remove()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def auth_client(client):
    resp = client.post("/api/login", json={"username": "admin", "password": "secret"})
    assert resp.status_code == 200
    return client


@pytest.fixture
def activity_payload():
    return {
        "name": "Edinburgh Castle",
        "day": "2024-06-02",
        "location": "Castlehill, Edinburgh EH1 2NG",
        "info": "Tickets booked for 10:00",
        "lat": "55.9486",
        "lng": "-3.1999",
    }


@pytest.fixture
def hotel_payload():
    return {
        "name": "The Balmoral",
        "address": "1 Princes St, Edinburgh EH2 2EQ",
        "checkIn": "2024-06-01",
        "checkOut": "2024-06-04",
        "lat": "55.9533",
        "lng": "-3.1892",
    }
