"""Tests for the admin client."""
import json

import pytest
import requests

from library_client.client import LibraryAdminClient
from library_client.errors import (
    AuthError,
    LibraryClientError,
    NetworkError,
    NotFoundError,
    ValidationError,
)


class FakeResponse:
    def __init__(self, status_code, payload=None):
        self.status_code = status_code
        self.content = json.dumps(payload).encode() if payload is not None else b""
        self.text = self.content.decode()

    def json(self):
        return json.loads(self.content)


def page_payload(items, current_page=1, last_page=1):
    return {
        "data": items,
        "meta": {
            "current_page": current_page,
            "last_page": last_page,
            "per_page": 2,
            "total": 2 * last_page
        }
    }


@pytest.fixture
def admin():
    client = LibraryAdminClient(
        "http://library.test/api/",
        token_provider=lambda: "admin-token",
        max_retries=3,
        base_backoff=0
    )
    yield client
    client.close()


def script(monkeypatch, client, responses):
    """Make the client's session answer with ``responses`` in order."""
    calls = []
    pending = list(responses)

    def fake_request(method, url, **kwargs):
        calls.append((method, url, kwargs))
        response = pending.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    monkeypatch.setattr(client.session, "request", fake_request)
    monkeypatch.setattr("library_client.client.time.sleep", lambda seconds: None)
    return calls


def test_list_books_sends_params_and_token(monkeypatch, admin):
    """Test the listing query and the bearer header."""
    calls = script(monkeypatch, admin, [
        FakeResponse(200, page_payload([{"id": 1, "title": "Dune"}]))
    ])

    page = admin.list_books(page=1, search="dune", per_page=2)

    method, url, kwargs = calls[0]
    assert method == "GET"
    assert url == "http://library.test/api/admin/books"
    assert kwargs["params"] == {"page": 1, "per_page": 2, "search": "dune"}
    assert kwargs["headers"]["Authorization"] == "Bearer admin-token"
    assert page.data[0].title == "Dune"


def test_search_omitted_when_empty(monkeypatch, admin):
    """Test no search parameter is sent without search text."""
    calls = script(monkeypatch, admin, [FakeResponse(200, page_payload([]))])

    admin.list_users()

    assert "search" not in calls[0][2]["params"]


def test_retries_server_errors(monkeypatch, admin):
    """Test 5xx and timeouts are retried until success."""
    calls = script(monkeypatch, admin, [
        FakeResponse(503),
        requests.exceptions.Timeout(),
        FakeResponse(200, page_payload([{"id": 1, "role": "user"}]))
    ])

    page = admin.list_users()

    assert len(calls) == 3
    assert page.data[0].id == 1


def test_gives_up_after_max_retries(monkeypatch, admin):
    """Test exhausted retries ending on a server answer keep its status."""
    calls = script(monkeypatch, admin, [
        FakeResponse(500),
        requests.exceptions.ConnectionError("down"),
        FakeResponse(429)
    ])

    with pytest.raises(LibraryClientError) as excinfo:
        admin.list_transactions()
    assert not isinstance(excinfo.value, NetworkError)
    assert excinfo.value.status_code == 429
    assert len(calls) == 3


def test_gives_up_when_backend_unreachable(monkeypatch, admin):
    """Test retries ending on a transport failure raise NetworkError."""
    calls = script(monkeypatch, admin, [
        FakeResponse(503),
        requests.exceptions.Timeout(),
        requests.exceptions.ConnectionError("down")
    ])

    with pytest.raises(NetworkError) as excinfo:
        admin.list_books()
    assert excinfo.value.status_code is None
    assert len(calls) == 3


def test_client_errors_not_retried(monkeypatch, admin):
    """Test 4xx responses map to typed errors on the first attempt."""
    calls = script(monkeypatch, admin, [
        FakeResponse(422, {"message": "Invalid", "errors": {"title": ["required"]}})
    ])

    with pytest.raises(ValidationError) as excinfo:
        admin.create_book(title="", author="A", publisher="P")
    assert excinfo.value.fields == {"title": ["required"]}
    assert len(calls) == 1


def test_mutations_not_retried(monkeypatch, admin):
    """Test a failing write is attempted once and keeps the server status."""
    calls = script(monkeypatch, admin, [FakeResponse(500)])

    with pytest.raises(LibraryClientError) as excinfo:
        admin.delete_book(4)
    assert not isinstance(excinfo.value, NetworkError)
    assert excinfo.value.status_code == 500
    assert calls[0][0] == "DELETE"
    assert len(calls) == 1


def test_auth_error_invalidates_session(monkeypatch):
    """Test a rejected credential calls the invalidation hook."""
    reasons = []
    client = LibraryAdminClient(
        "http://library.test/api",
        token_provider=lambda: "stale",
        base_backoff=0,
        on_auth_error=reasons.append
    )
    script(monkeypatch, client, [FakeResponse(401, {"message": "Unauthenticated."})])

    with pytest.raises(AuthError):
        client.dashboard_stats()
    assert reasons == ["Unauthenticated."]


def test_not_found(monkeypatch, admin):
    """Test 404 on update maps to NotFoundError."""
    script(monkeypatch, admin, [FakeResponse(404, {"message": "Book not found"})])

    with pytest.raises(NotFoundError, match="Book not found"):
        admin.update_book(99, title="New")


def test_iter_pages_walks_all_pages(monkeypatch, admin):
    """Test iter_pages follows meta until the last page."""
    calls = script(monkeypatch, admin, [
        FakeResponse(200, page_payload([{"id": 1}, {"id": 2}], 1, 2)),
        FakeResponse(200, page_payload([{"id": 3}], 2, 2)),
    ])

    ids = [book.id for book in admin.iter_pages(admin.list_books, per_page=2)]

    assert ids == [1, 2, 3]
    assert [c[2]["params"]["page"] for c in calls] == [1, 2]


def test_dashboard_stats_unwraps_data(monkeypatch, admin):
    """Test stats are returned with or without a data wrapper."""
    script(monkeypatch, admin, [
        FakeResponse(200, {"data": {"total_books": 10}}),
        FakeResponse(200, {"total_books": 11}),
    ])

    assert admin.dashboard_stats() == {"total_books": 10}
    assert admin.dashboard_stats() == {"total_books": 11}


def test_create_book_returns_listing(monkeypatch, admin):
    """Test the created book is parsed from the response."""
    calls = script(monkeypatch, admin, [
        FakeResponse(201, {"book": {"id": 12, "title": "Dune", "total_copies": 2, "available_copies": 2}})
    ])

    book = admin.create_book("Dune", "Frank Herbert", "Chilton", total_copies=2)

    assert book.id == 12
    assert calls[0][2]["json"]["total_copies"] == 2
