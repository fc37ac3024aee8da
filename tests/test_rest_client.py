import json
from contextlib import contextmanager
from collections import Counter

import httpx
import pytest

from errors import Conflict, NotFound, StoreUnavailable
from increment import RemoteCounterStore
from rest_client import RestClickLog, RestClient, RestRowStore


def _no_rows():
    return httpx.Response(
        406,
        json={"code": "PGRST116", "details": "The result contains 0 rows", "message": "JSON object requested, multiple (or no) rows returned"},
    )


def _eq(params, name):
    raw = params.get(name)
    return raw[3:] if raw is not None else None


class FakePostgrest:
    """Just enough of PostgREST to back the counter and click stores."""

    def __init__(self, rpc_available=True, rpc_returns=True):
        self.rpc_available = rpc_available
        # False makes increment_visits behave like a void function
        self.rpc_returns = rpc_returns
        self.visits = {}
        self.clicks = []
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        assert request.headers["apikey"] == "test-key"
        assert request.headers["authorization"] == "Bearer test-key"
        path = request.url.path.removeprefix("/rest/v1")
        params = request.url.params
        body = json.loads(request.content) if request.content else None

        if path == "/rpc/increment_visits":
            if not self.rpc_available:
                return httpx.Response(404, json={"code": "PGRST202", "message": "Could not find the function"})
            key = body["page_path"]
            self.visits[key] = self.visits.get(key, 0) + 1
            if not self.rpc_returns:
                return httpx.Response(200, content=b"null", headers={"Content-Type": "application/json"})
            return httpx.Response(200, json=self.visits[key])

        if path == "/visits":
            return self._visits(request, params, body)
        if path == "/card_clicks":
            return self._clicks(request, params, body)
        if path == "/card_click_counts":
            counts = Counter(c["card_title"] for c in self.clicks)
            minimum = int(params["click_count"][4:])
            rows = [{"card_title": t, "click_count": n} for t, n in counts.items() if n >= minimum]
            rows.sort(key=lambda r: (-r["click_count"], r["card_title"]))
            return httpx.Response(200, json=rows[: int(params["limit"])])
        return httpx.Response(404, json={"code": "42P01", "message": "relation does not exist"})

    def _visits(self, request, params, body):
        key = _eq(params, "page_url")
        if request.method == "GET" and key is None:
            rows = [{"page_url": k, "visit_count": v} for k, v in self.visits.items()]
            rows.sort(key=lambda r: (-r["visit_count"], r["page_url"]))
            return httpx.Response(200, json=rows)
        if request.method == "GET":
            if key not in self.visits:
                return _no_rows()
            return httpx.Response(200, json={"visit_count": self.visits[key]})
        if request.method == "POST":
            if body["page_url"] in self.visits:
                return httpx.Response(409, json={"code": "23505", "message": "duplicate key value violates unique constraint"})
            self.visits[body["page_url"]] = body["visit_count"]
            return httpx.Response(201, json={"visit_count": body["visit_count"]})
        if request.method == "PATCH":
            expected = _eq(params, "visit_count")
            if key not in self.visits or (expected is not None and self.visits[key] != int(expected)):
                return _no_rows()
            assert body["last_visit"]
            self.visits[key] = body["visit_count"]
            return httpx.Response(200, json={"visit_count": body["visit_count"]})
        return httpx.Response(405)

    def _clicks(self, request, params, body):
        if request.method == "POST":
            row = dict(body, id=len(self.clicks) + 1)
            self.clicks.append(row)
            return httpx.Response(201, json=row)
        title = _eq(params, "card_title")
        rows = [c for c in self.clicks if c["card_title"] == title]
        rows.sort(key=lambda c: c["clicked_at"], reverse=params["order"].endswith("desc"))
        page = [{"clicked_at": c["clicked_at"]} for c in rows[: int(params["limit"])]]
        headers = {}
        if request.headers.get("prefer") == "count=exact":
            end = f"0-{len(page) - 1}" if page else "*"
            headers["Content-Range"] = f"{end}/{len(rows)}"
        return httpx.Response(200, json=page, headers=headers)


@contextmanager
def rest_client_for(transport):
    client = RestClient("https://example.supabase.co", "test-key", transport=transport)
    try:
        yield client
    finally:
        client.close()


@pytest.fixture
def fake():
    return FakePostgrest()


@pytest.fixture
def client(fake):
    c = RestClient("https://example.supabase.co/", "test-key", transport=httpx.MockTransport(fake))
    yield c
    c.close()


def test_base_url_and_single_object_accept(fake, client):
    fake.visits["home"] = 2
    assert RestRowStore(client).fetch("home") == 2
    req = fake.requests[-1]
    assert str(req.url).startswith("https://example.supabase.co/rest/v1/visits")
    assert req.headers["accept"] == "application/vnd.pgrst.object+json"
    assert req.url.params["page_url"] == "eq.home"


def test_zero_rows_is_not_found(client):
    with pytest.raises(NotFound):
        RestRowStore(client).fetch("missing")


def test_duplicate_insert_is_conflict(fake, client):
    fake.visits["home"] = 1
    with pytest.raises(Conflict):
        RestRowStore(client).insert("home", 1)


def test_server_error_is_store_unavailable():
    transport = httpx.MockTransport(lambda request: httpx.Response(500, json={"message": "boom"}))
    with rest_client_for(transport) as client:
        with pytest.raises(StoreUnavailable):
            RestRowStore(client).fetch("home")


def test_transport_error_is_store_unavailable():
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    with rest_client_for(httpx.MockTransport(refuse)) as client:
        store = RemoteCounterStore(RestRowStore(client))
        with pytest.raises(StoreUnavailable):
            store.increment("home")
        with pytest.raises(StoreUnavailable):
            store.get("home")


def test_atomic_increment_uses_rpc(fake, client):
    store = RemoteCounterStore(RestRowStore(client))
    assert store.increment("home") == 1
    assert store.increment("home") == 2
    assert [r.url.path for r in fake.requests] == ["/rest/v1/rpc/increment_visits"] * 2


def test_fallback_when_rpc_missing_and_row_exists(fake, client):
    fake.rpc_available = False
    fake.visits["home"] = 41
    store = RemoteCounterStore(RestRowStore(client))
    assert store.increment("home") == 42
    patch = fake.requests[-1]
    assert patch.method == "PATCH"
    assert patch.url.params["visit_count"] == "eq.41"


def test_fallback_when_rpc_missing_and_row_absent(fake, client):
    fake.rpc_available = False
    store = RemoteCounterStore(RestRowStore(client))
    assert store.increment("new") == 1
    assert store.increment("new") == 2
    assert fake.visits["new"] == 2


def test_void_rpc_counts_once_and_reads_value_back(fake, client):
    fake.rpc_returns = False
    fake.visits["home"] = 5
    store = RemoteCounterStore(RestRowStore(client))
    assert store.increment("home") == 6
    assert fake.visits["home"] == 6
    assert [(r.method, r.url.path) for r in fake.requests] == [
        ("POST", "/rest/v1/rpc/increment_visits"),
        ("GET", "/rest/v1/visits"),
    ]


def test_rpc_204_is_not_followed_by_a_second_write():
    seen = []

    def no_content(request):
        seen.append((request.method, request.url.path))
        return httpx.Response(204)

    with rest_client_for(httpx.MockTransport(no_content)) as client:
        store = RemoteCounterStore(RestRowStore(client))
        with pytest.raises(StoreUnavailable):
            store.increment("home")
    assert seen == [("POST", "/rest/v1/rpc/increment_visits"), ("GET", "/rest/v1/visits")]


def test_empty_success_body_is_store_unavailable():
    transport = httpx.MockTransport(lambda request: httpx.Response(200, content=b""))
    with rest_client_for(transport) as client:
        store = RemoteCounterStore(RestRowStore(client))
        with pytest.raises(StoreUnavailable):
            store.get("home")
        with pytest.raises(StoreUnavailable):
            store.list_all()
        with pytest.raises(StoreUnavailable):
            RestClickLog(client).record("Ace")


def test_set_get_list_over_rest(fake, client):
    store = RemoteCounterStore(RestRowStore(client))
    assert store.get("home") == 0
    store.set("home", 5)
    store.set("about", 9)
    store.set("home", 6)
    assert store.get("home") == 6
    assert store.ranked() == [("about", 9), ("home", 6)]
    assert store.reset("about") == 0
    assert store.list_all() == {"home": 6, "about": 0}


def test_click_log_over_rest(fake, client):
    log = RestClickLog(client)
    rec = log.record(" Ace ", "10.1.1.1", "pytest")
    assert rec["id"] == 1
    assert rec["subject"] == "Ace"
    assert fake.clicks[0]["card_title"] == "Ace"
    log.record("Ace")
    log.record("King")

    assert log.leaderboard(limit=10, min_clicks=1) == [
        {"subject": "Ace", "clicks": 2},
        {"subject": "King", "clicks": 1},
    ]
    assert log.leaderboard(limit=10, min_clicks=2) == [{"subject": "Ace", "clicks": 2}]

    stats = log.analytics("Ace", recent=1)
    assert stats["total_clicks"] == 2
    assert stats["recent_clicks"] == [stats["last_click"]]
    assert stats["first_click"] == fake.clicks[0]["clicked_at"]


def test_click_analytics_over_rest_without_clicks(client):
    stats = RestClickLog(client).analytics("Nobody")
    assert stats["total_clicks"] == 0
    assert stats["first_click"] is None
    assert stats["last_click"] is None
