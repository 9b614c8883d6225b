import re
import unittest
from dataclasses import dataclass, field

from fastapi.testclient import TestClient

from backend.config import Settings
from backend.database import Database
from backend.main import create_app
from backend.mailer import MailerError

TEST_SECRET = "unit-test-secret-that-is-long-enough-for-hs256"
TOKEN_PATTERN = re.compile(r"token=([\w\-\.]+)")

DEFAULT_PASSWORD = "correct-horse-42"


def make_settings(**overrides) -> Settings:
    values = {
        "database_url": "sqlite://",
        "jwt_secret": TEST_SECRET,
        "frontend_url": "http://frontend.test",
        "log_level": "WARNING",
    }
    values.update(overrides)
    return Settings(**values)


@dataclass
class SentMail:
    recipient: str
    subject: str
    html: str

    @property
    def token(self) -> str:
        match = TOKEN_PATTERN.search(self.html)
        if not match:
            raise AssertionError(f"no token link in email to {self.recipient}")
        return match.group(1)


@dataclass
class RecordingMailer:
    sent: list = field(default_factory=list)

    def send(self, recipient: str, subject: str, html: str) -> None:
        self.sent.append(SentMail(recipient=recipient, subject=subject, html=html))

    def last_to(self, recipient: str) -> SentMail:
        for mail in reversed(self.sent):
            if mail.recipient == recipient:
                return mail
        raise AssertionError(f"no email sent to {recipient}")


class FailingMailer:
    def send(self, recipient: str, subject: str, html: str) -> None:
        raise MailerError(f"Could not send email to {recipient}")


class ApiTestCase(unittest.TestCase):
    """Spins up the app on a fresh in-memory database for every test."""

    def setUp(self) -> None:
        self.settings = make_settings()
        self.database = Database(self.settings.database_url)
        self.database.connect()
        self.mailer = RecordingMailer()
        self.app = create_app(settings=self.settings, database=self.database, mailer=self.mailer)
        self.client = TestClient(self.app)

    def tearDown(self) -> None:
        self.database.disconnect()

    def register(self, email: str = "ada@example.com", password: str = DEFAULT_PASSWORD, **extra):
        payload = {
            "first_name": "Ada",
            "last_name": "Lovelace",
            "email": email,
            "phone": "555-0100",
            "password": password,
            "confirm_password": password,
        }
        payload.update(extra)
        return self.client.post("/register", json=payload)

    def confirm(self, email: str = "ada@example.com"):
        token = self.mailer.last_to(email).token
        return self.client.get("/verify", params={"token": token})

    def login(self, email: str = "ada@example.com", password: str = DEFAULT_PASSWORD):
        return self.client.post("/login", json={"email": email, "password": password})

    def signed_in_headers(self, email: str = "ada@example.com", password: str = DEFAULT_PASSWORD) -> dict:
        self.assertEqual(self.register(email=email, password=password).status_code, 201)
        self.assertEqual(self.confirm(email).status_code, 200)
        response = self.login(email=email, password=password)
        self.assertEqual(response.status_code, 200)
        return {"Authorization": f"Bearer {response.json()['token']}"}

    def create_account(self, headers: dict, number: str = "1234", balance: float = 1000.0, **extra) -> int:
        payload = {
            "name": "Everyday",
            "type": "checking",
            "number": number,
            "institution": "First Bank",
            "balance": balance,
        }
        payload.update(extra)
        response = self.client.post("/account", json=payload, headers=headers)
        self.assertEqual(response.status_code, 201, response.text)
        return response.json()["id"]

    def add_transaction(self, headers: dict, account_id: int, amount: float, category: str = "Living", **extra):
        payload = {
            "amount": amount,
            "category": category,
            "type": "expense" if amount < 0 else "income",
            "date": "2024-05-10",
        }
        payload.update(extra)
        return self.client.post(f"/transactions/{account_id}", json=payload, headers=headers)
