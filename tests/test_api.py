"""Tests for the HTTP surface in main.py."""

import time
from typing import Any

import pytest
from fastapi.testclient import TestClient

from db_models import LinkPrecedence
from exceptions import ContactNotFoundError
from identity_service import IdentityResolver
from main import create_app
from tests.fakes import InMemoryContactStore


def identify(client: TestClient, **body: Any) -> dict:
    response = client.post("/identify", json=body)
    assert response.status_code == 200, response.text
    return response.json()["contact"]


class TestIdentifyEndpoint:
    """End-to-end scenarios against a temporary sqlite database."""

    def test_new_customer(self, client: TestClient) -> None:
        contact = identify(client, email="lorraine@hillvalley.edu", phoneNumber="123456")

        assert contact == {
            "primaryContactId": 1,
            "emails": ["lorraine@hillvalley.edu"],
            "phoneNumbers": ["123456"],
            "secondaryContactIds": [],
        }

    def test_linking_and_repeat(self, client: TestClient) -> None:
        identify(client, email="lorraine@hillvalley.edu", phoneNumber="123456")

        linked = identify(client, email="mcfly@hillvalley.edu", phoneNumber="123456")
        repeated = identify(client, email="mcfly@hillvalley.edu", phoneNumber="123456")

        assert linked == {
            "primaryContactId": 1,
            "emails": ["lorraine@hillvalley.edu", "mcfly@hillvalley.edu"],
            "phoneNumbers": ["123456"],
            "secondaryContactIds": [2],
        }
        assert repeated == linked

    def test_single_field_requests(self, client: TestClient) -> None:
        identify(client, email="lorraine@hillvalley.edu", phoneNumber="123456")
        full = identify(client, email="mcfly@hillvalley.edu", phoneNumber="123456")

        assert identify(client, email="lorraine@hillvalley.edu") == full
        assert identify(client, phoneNumber="123456") == full
        assert identify(client, email="mcfly@hillvalley.edu", phoneNumber=None) == full

    def test_primary_merge(self, client: TestClient) -> None:
        george = identify(client, email="george@hillvalley.edu", phoneNumber="919191")
        biff = identify(client, email="biffsucks@hillvalley.edu", phoneNumber="717171")

        merged = identify(client, email="george@hillvalley.edu", phoneNumber="717171")

        assert merged == {
            "primaryContactId": george["primaryContactId"],
            "emails": ["george@hillvalley.edu", "biffsucks@hillvalley.edu"],
            "phoneNumbers": ["919191", "717171"],
            "secondaryContactIds": [biff["primaryContactId"]],
        }
        assert identify(client, email="biffsucks@hillvalley.edu") == merged


class TestValidation:
    """Malformed requests are rejected before reaching the resolver."""

    @pytest.mark.parametrize(
        "body",
        [
            {},
            {"email": None, "phoneNumber": None},
            {"email": "", "phoneNumber": ""},
            {"email": 123},
            {"phoneNumber": 123456},
            {"email": ["a@x"]},
        ],
    )
    def test_rejects_body(self, client: TestClient, body: dict) -> None:
        response = client.post("/identify", json=body)

        assert response.status_code == 400
        payload = response.json()
        assert payload["error"] == "Invalid request"
        assert payload["details"]

    def test_rejects_invalid_json(self, client: TestClient) -> None:
        response = client.post(
            "/identify",
            content="not json",
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 400


class TestAuxiliaryEndpoints:
    def test_root(self, client: TestClient) -> None:
        response = client.get("/")

        assert response.status_code == 200
        assert response.json()["endpoints"]["identify"] == "POST /identify"

    def test_health(self, client: TestClient) -> None:
        response = client.get("/health")

        assert response.status_code == 200
        payload = response.json()
        assert payload["status"] == "OK"
        assert "timestamp" in payload

    def test_unknown_route(self, client: TestClient) -> None:
        response = client.get("/nope")

        assert response.status_code == 404
        assert response.json() == {"error": "Endpoint not found", "path": "/nope"}


class TestErrorResponses:
    """Core failures surface as internal errors without partial results."""

    def test_inconsistent_graph_returns_500(self, settings) -> None:
        store = InMemoryContactStore()
        gone = store.add("a@x", "1", deleted=True)
        store.add("b@x", "1", gone.id, LinkPrecedence.SECONDARY)

        with TestClient(create_app(settings, store=store)) as client:
            response = client.post("/identify", json={"email": "b@x"})

        assert response.status_code == 500
        assert response.json() == {"error": "Internal server error"}

    def test_store_failure_returns_500(self, settings) -> None:
        class BrokenStore(InMemoryContactStore):
            def find_by_email_or_phone(self, email=None, phone=None):
                raise RuntimeError("disk on fire")

        app = create_app(settings, store=BrokenStore())
        with TestClient(app, raise_server_exceptions=False) as client:
            response = client.post("/identify", json={"email": "a@x"})

        assert response.status_code == 500
        assert response.json() == {"error": "Internal server error"}

    def test_injected_store_is_used(self, settings) -> None:
        store = InMemoryContactStore()

        app = create_app(settings, store=store)
        with TestClient(app) as client:
            identify(client, email="a@x", phoneNumber="1")

        assert isinstance(app.state.resolver, IdentityResolver)
        assert store.get(1).email == "a@x"

    def test_missing_contact_on_update_returns_500(self, settings) -> None:
        class VanishingStore(InMemoryContactStore):
            def update(self, contact_id, changes):
                raise ContactNotFoundError(contact_id)

        store = VanishingStore()
        store.add("a@x", "1")
        store.add("b@x", "2")

        with TestClient(create_app(settings, store=store)) as client:
            response = client.post("/identify", json={"email": "a@x", "phoneNumber": "2"})

        assert response.status_code == 500
        assert response.json() == {"error": "Internal server error"}

    def test_slow_request_times_out(self, settings) -> None:
        class SlowStore(InMemoryContactStore):
            def find_by_email_or_phone(self, email=None, phone=None):
                time.sleep(0.5)
                return super().find_by_email_or_phone(email, phone)

        fast_settings = settings.model_copy(update={"request_timeout_seconds": 0.1})

        with TestClient(create_app(fast_settings, store=SlowStore())) as client:
            response = client.post("/identify", json={"email": "a@x"})

        assert response.status_code == 408
        assert response.json() == {
            "error": "Request timeout",
            "message": "The request took too long to process",
        }
