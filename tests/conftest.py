import json

import httpx
import mongomock
import pytest
from fastapi.testclient import TestClient

import auth
from checkout import CheckoutSession
from config import Settings
from database import ensure_indexes
from main import create_app
from oauth import OAuthClient
from paystack import PaystackClient
from repositories import UserRepository

PUBLIC_KEY = "pk_test_" + "a" * 32
SECRET_KEY = "sk_test_" + "b" * 32


class FakeGateway:
    """In-memory Paystack: verify and initialize over an httpx.MockTransport."""

    def __init__(self):
        self.transactions = {}
        self.requests = []

    def add(self, reference, amount_minor, status="success", email="buyer@example.com"):
        self.transactions[reference] = {
            "status": status,
            "reference": reference,
            "amount": amount_minor,
            "currency": "GHS",
            "channel": "mobile_money",
            "paid_at": "2024-05-01T10:00:00.000Z",
            "customer": {"email": email},
        }

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path.startswith("/transaction/verify/"):
            data = self.transactions.get(path.rsplit("/", 1)[-1])
            if data is None:
                return httpx.Response(404, json={"status": False, "message": "Transaction reference not found"})
            return httpx.Response(200, json={"status": True, "message": "Verification successful", "data": data})
        if path == "/transaction/initialize":
            body = json.loads(request.content)
            return httpx.Response(200, json={"status": True, "data": {
                "authorization_url": "https://checkout.paystack.com/abc",
                "access_code": "abc",
                "reference": body.get("reference", "generated_ref"),
            }})
        return httpx.Response(404, json={"status": False, "message": "Not found"})


class FakeOAuthProvider:
    def __init__(self):
        self.profile = {
            "sub": "google-123",
            "email": "Kofi@Example.com",
            "given_name": "Kofi",
            "family_name": "Boateng",
            "picture": "https://img.example.com/kofi.png",
        }
        self.fail_token = False

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.host == "oauth2.googleapis.com":
            if self.fail_token:
                return httpx.Response(400, json={"error": "invalid_grant"})
            return httpx.Response(200, json={"access_token": "google-token", "token_type": "Bearer"})
        if request.url.host == "www.googleapis.com":
            return httpx.Response(200, json=self.profile)
        return httpx.Response(404)


class RecordingMailer:
    def __init__(self):
        self.sent = []

    def send_otp(self, email, first_name, code):
        self.sent.append(("otp", email, code))

    def send_welcome(self, email, first_name):
        self.sent.append(("welcome", email, None))

    def send_password_reset(self, email, first_name, token):
        self.sent.append(("reset", email, token))

    def send_password_reset_confirmation(self, email, first_name):
        self.sent.append(("reset_done", email, None))

    def last(self, kind):
        return [s for s in self.sent if s[0] == kind][-1]


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="test-secret",
        bcrypt_rounds=4,
        paystack_secret_key=SECRET_KEY,
        paystack_public_key=PUBLIC_KEY,
        google_client_id="google-client",
        google_client_secret="google-secret",
        frontend_url="http://front.test",
        oauth_callback_base_url="http://testserver",
    )


@pytest.fixture
def db():
    database = mongomock.MongoClient()["storefront_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def paystack(settings, gateway):
    return PaystackClient(settings, transport=httpx.MockTransport(gateway.handler))


@pytest.fixture
def oauth_provider():
    return FakeOAuthProvider()


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def app(settings, db, paystack, oauth_provider, mailer):
    oauth = OAuthClient(settings, transport=httpx.MockTransport(oauth_provider.handler))
    return create_app(settings=settings, database=db, paystack=paystack, oauth=oauth, mailer=mailer)


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture
def users(db, settings):
    return UserRepository(db, settings)


@pytest.fixture
def make_user(users, settings):
    """Create a user and return (doc, auth headers)."""
    counter = {"n": 0}

    def _make(role="customer", email=None, **extra):
        counter["n"] += 1
        doc = users.create({
            "first_name": "Ama",
            "last_name": "Mensah",
            "email": email or f"user{counter['n']}@example.com",
            "password": "s3cret-pass",
            "role": role,
            **extra,
        })
        token = auth.issue_token(settings, str(doc["_id"]))
        return doc, {"Authorization": f"Bearer {token}"}

    return _make


@pytest.fixture
def shipping_fields():
    return {
        "first_name": "Ama",
        "last_name": "Mensah",
        "email": "ama@example.com",
        "phone": "0241234567",
        "address": "12 Ring Road East",
        "city": "Accra",
        "region": "Greater Accra",
    }


@pytest.fixture
def ready_session(shipping_fields):
    """A checkout session sitting on the review step, paying by card."""
    session = CheckoutSession()
    session.update_shipping(**shipping_fields)
    session.advance()
    session.select_channel("card")
    session.advance()
    return session
