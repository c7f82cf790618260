"""Shared fixtures: an in-memory library backend behind httpx.MockTransport."""
import json
from datetime import datetime, timezone

import httpx
import pytest

from library_client.async_client import AsyncLibraryClient
from library_client.credentials import CredentialStore
from library_client.session import SessionStore

BASE_URL = "http://library.test/api"


def _now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


class FakeBackend:
    """Minimal stand-in for the library REST API."""

    def __init__(self):
        self.users = {}
        self.tokens = {}
        self.books = {}
        self.loans = {}
        self.calls = []
        self.offline = False
        self.failing_paths = set()
        self.logout_status = 200
        self.me_payload = None
        self._next_token = 1
        self._next_loan = 1

    def add_user(self, email, password, name="Reader", role="user"):
        user = {
            "id": len(self.users) + 1,
            "name": name,
            "email": email,
            "role": role,
            "password": password
        }
        self.users[email] = user
        return user

    def issue_token(self, email):
        token = f"token-{self._next_token}"
        self._next_token += 1
        self.tokens[token] = email
        return token

    def add_book(self, title, copies=1, available=None):
        book_id = len(self.books) + 1
        self.books[book_id] = {
            "id": book_id,
            "title": title,
            "author": "Some Author",
            "description": "A book",
            "publisher": "Some Publisher",
            "total_copies": copies,
            "available_copies": copies if available is None else available
        }
        return book_id

    def count(self, method, path):
        return self.calls.count((method, path))

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    @staticmethod
    def _respond(status, payload=None):
        return httpx.Response(status, json=payload if payload is not None else {})

    def _user_for(self, request):
        header = request.headers.get("Authorization", "")
        token = header[len("Bearer "):] if header.startswith("Bearer ") else None
        email = self.tokens.get(token)
        return self.users.get(email) if email else None

    def handle(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path[len("/api"):]
        self.calls.append((request.method, path))

        if self.offline or path in self.failing_paths:
            raise httpx.ConnectError("backend down", request=request)

        body = json.loads(request.content) if request.content else {}
        parts = path.strip("/").split("/")

        if path == "/auth/login":
            user = self.users.get(body.get("email"))
            if not user or user["password"] != body.get("password"):
                return self._respond(401, {"message": "Invalid credentials"})
            return self._respond(200, {"access_token": self.issue_token(user["email"])})

        if path == "/auth/register":
            if body["email"] in self.users:
                message = "The email has already been taken."
                return self._respond(422, {"message": message, "errors": {"email": [message]}})
            self.add_user(body["email"], body["password"], name=body["name"])
            return self._respond(201, {"message": "User registered"})

        user = self._user_for(request)
        if user is None:
            return self._respond(401, {"message": "Unauthenticated."})

        if path == "/auth/me":
            if self.me_payload is not None:
                return self._respond(200, self.me_payload)
            public = {k: v for k, v in user.items() if k != "password"}
            return self._respond(200, {"user": public})

        if path == "/auth/logout":
            if self.logout_status >= 400:
                return self._respond(self.logout_status, {"message": "Server Error"})
            header = request.headers["Authorization"]
            self.tokens.pop(header[len("Bearer "):], None)
            return self._respond(200, {"message": "Logged out"})

        if path == "/books":
            return self._respond(200, {"books": list(self.books.values())})

        if path == "/user/borrowed-books":
            rows = []
            for loan in self.loans.values():
                if loan["user_id"] != user["id"]:
                    continue
                book = self.books[loan["book_id"]]
                rows.append({
                    "id": book["id"],
                    "transaction_id": loan["id"],
                    "title": book["title"],
                    "author": book["author"],
                    "publisher": book["publisher"],
                    "borrowed_at": loan["borrowed_at"],
                    "due_date": loan["due_date"],
                    "returned_at": loan["returned_at"],
                    "status": loan["status"]
                })
            return self._respond(200, rows)

        if parts[0] == "books" and len(parts) == 3 and parts[2] == "borrow":
            book = self.books.get(int(parts[1]))
            if book is None:
                return self._respond(404, {"message": "Book not found"})
            if book["available_copies"] <= 0:
                return self._respond(409, {"message": "No copies available"})
            book["available_copies"] -= 1
            loan = {
                "id": self._next_loan,
                "book_id": book["id"],
                "user_id": user["id"],
                "borrowed_at": _now_iso(),
                "due_date": body["due_date"],
                "returned_at": None,
                "status": "borrowed"
            }
            self._next_loan += 1
            self.loans[loan["id"]] = loan
            return self._respond(201, {"message": "Book borrowed successfully", "transaction": loan})

        if parts[0] == "transactions" and len(parts) == 3 and parts[2] == "return":
            loan = self.loans.get(int(parts[1]))
            if loan is None or loan["status"] == "returned":
                return self._respond(404, {"message": "Transaction not found"})
            loan["status"] = "returned"
            loan["returned_at"] = _now_iso()
            self.books[loan["book_id"]]["available_copies"] += 1
            return self._respond(200, {"success": True, "message": "Book returned successfully"})

        return self._respond(404, {"message": "Not found"})


@pytest.fixture
def backend():
    backend = FakeBackend()
    backend.add_user("reader@example.com", "secret", name="Reader")
    backend.add_user("admin@example.com", "secret", name="Admin", role="admin")
    return backend


@pytest.fixture
def credential_path(tmp_path):
    return tmp_path / "credentials.json"


@pytest.fixture
def make_session(backend, credential_path):
    """
    Factory building (api, session) against the fake backend.

    Call it inside the coroutine under test so the client lives on that loop.
    """
    def factory(path=None):
        api = AsyncLibraryClient(BASE_URL, transport=backend.transport())
        store = CredentialStore(path or credential_path)
        return api, SessionStore(api, store)

    return factory
