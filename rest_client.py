"""Client for a PostgREST endpoint such as the one Supabase exposes.

Only the handful of calls the counter and click stores need: single-row
select/insert/update with equality filters, a stored procedure call, and
list reads with ordering and exact counts.
"""
import logging
from typing import Any, Dict, List, Tuple

import httpx

from errors import Conflict, IncrementApplied, NotFound, StoreUnavailable
from increment import RowStore
from storage import ClickLog, utc_now, validate_subject

logger = logging.getLogger(__name__)

# single-object responses; PostgREST answers 406 / PGRST116 when zero rows match
SINGLE_OBJECT = "application/vnd.pgrst.object+json"
NO_ROWS = "PGRST116"
UNIQUE_VIOLATION = "23505"


def eq(value) -> str:
    return f"eq.{value}"


class RestClient:
    def __init__(self, url: str, key: str, timeout: float = 10.0, transport: httpx.BaseTransport | None = None):
        if not url or not key:
            raise ValueError("url and key are required")
        self.base_url = url.rstrip("/") + "/rest/v1"
        self._http = httpx.Client(
            base_url=self.base_url,
            headers={"apikey": key, "Authorization": f"Bearer {key}", "Content-Type": "application/json"},
            timeout=timeout,
            transport=transport,
        )

    def request(self, method: str, path: str, *, single: bool = False, params: Dict[str, Any] | None = None,
                json: Any = None, prefer: str | None = None) -> httpx.Response:
        headers = {}
        if single:
            headers["Accept"] = SINGLE_OBJECT
        if prefer:
            headers["Prefer"] = prefer
        try:
            resp = self._http.request(method, path, params=params, json=json, headers=headers)
        except httpx.HTTPError as e:
            raise StoreUnavailable(f"{method} {path}: {e}") from e

        if resp.is_success:
            return resp

        code, message = _error_details(resp)
        logger.debug("%s %s -> %s %s %s", method, path, resp.status_code, code, message)
        if code == NO_ROWS:
            raise NotFound(message or "no rows returned")
        if resp.status_code == 409 or code == UNIQUE_VIOLATION:
            raise Conflict(message or "duplicate key")
        raise StoreUnavailable(f"{method} {path} failed with {resp.status_code}: {message}")

    def select_one(self, table: str, filters: Dict[str, Any], columns: str = "*") -> dict:
        return _json(self.request("GET", f"/{table}", single=True, params={"select": columns, **filters}))

    def select(self, table: str, params: Dict[str, Any], count: bool = False) -> Tuple[List[dict], int | None]:
        resp = self.request("GET", f"/{table}", params=params, prefer="count=exact" if count else None)
        total = _content_range_total(resp.headers.get("content-range")) if count else None
        return _json(resp), total

    def insert(self, table: str, row: dict, columns: str = "*") -> dict:
        return _json(self.request(
            "POST", f"/{table}", single=True, params={"select": columns}, json=row, prefer="return=representation"
        ))

    def update(self, table: str, filters: Dict[str, Any], values: dict, columns: str = "*") -> dict:
        return _json(self.request(
            "PATCH", f"/{table}", single=True, params={"select": columns, **filters}, json=values,
            prefer="return=representation",
        ))

    def rpc(self, function: str, args: dict):
        """Call a stored procedure and return its decoded result.

        A 2xx means the procedure ran, so an empty body (204 from a void
        function) or one that is not JSON comes back as None rather than
        an error.
        """
        resp = self.request("POST", f"/rpc/{function}", json=args)
        try:
            return resp.json() if resp.content else None
        except ValueError:
            logger.debug("%s returned a non-JSON body: %s", function, resp.text[:200])
            return None

    def close(self):
        self._http.close()


def _json(resp: httpx.Response) -> Any:
    try:
        return resp.json()
    except ValueError as e:
        req = resp.request
        raise StoreUnavailable(f"{req.method} {req.url.path} returned {resp.status_code} without a JSON body") from e


def _error_details(resp: httpx.Response) -> Tuple[str | None, str]:
    try:
        body = resp.json()
    except ValueError:
        return None, resp.text[:200]
    if isinstance(body, dict):
        return body.get("code"), body.get("message") or body.get("details") or ""
    return None, str(body)[:200]


def _content_range_total(header: str | None) -> int | None:
    # "0-9/42" or "*/0"
    if not header or "/" not in header:
        return None
    total = header.rsplit("/", 1)[1]
    return int(total) if total.isdigit() else None


class RestRowStore(RowStore):
    def __init__(self, client: RestClient, table: str = "visits", rpc: str = "increment_visits"):
        self.client = client
        self.table = table
        self.rpc_name = rpc

    def increment_atomic(self, key: str) -> int:
        value = self.client.rpc(self.rpc_name, {"page_path": key})
        if isinstance(value, list):
            value = value[0] if value else None
        if isinstance(value, dict):
            value = value.get("visit_count")
        if isinstance(value, int) and not isinstance(value, bool):
            return value
        # the procedure ran, so read the count back instead of incrementing again
        logger.debug("%s returned %r, reading %r back", self.rpc_name, value, key)
        try:
            return self.fetch(key)
        except (StoreUnavailable, NotFound) as e:
            raise IncrementApplied(f"{self.rpc_name} ran for {key!r} but the new value is unreadable: {e}") from e

    def fetch(self, key: str) -> int:
        return self.client.select_one(self.table, {"page_url": eq(key)}, "visit_count")["visit_count"]

    def insert(self, key: str, value: int) -> int:
        row = self.client.insert(
            self.table, {"page_url": key, "visit_count": value, "last_visit": utc_now()}, "visit_count"
        )
        return row["visit_count"]

    def update(self, key: str, value: int, expected: int | None = None) -> int:
        filters = {"page_url": eq(key)}
        if expected is not None:
            filters["visit_count"] = eq(expected)
        row = self.client.update(self.table, filters, {"visit_count": value, "last_visit": utc_now()}, "visit_count")
        return row["visit_count"]

    def fetch_all(self, limit: int | None = None) -> List[Tuple[str, int]]:
        params = {"select": "page_url,visit_count", "order": "visit_count.desc,page_url.asc"}
        if limit is not None:
            params["limit"] = limit
        rows, _ = self.client.select(self.table, params)
        return [(r["page_url"], r["visit_count"]) for r in rows]

    def close(self):
        self.client.close()


class RestClickLog(ClickLog):
    def __init__(self, client: RestClient, table: str = "card_clicks", view: str = "card_click_counts"):
        self.client = client
        self.table = table
        self.view = view

    def record(self, subject: str, ip_address: str | None = None, user_agent: str | None = None) -> dict:
        subject = validate_subject(subject)
        row = self.client.insert(
            self.table,
            {"card_title": subject, "clicked_at": utc_now(), "ip_address": ip_address, "user_agent": user_agent},
        )
        return {
            "id": row.get("id"),
            "subject": row.get("card_title", subject),
            "clicked_at": row.get("clicked_at"),
            "ip_address": row.get("ip_address"),
            "user_agent": row.get("user_agent"),
        }

    def leaderboard(self, limit: int = 10, min_clicks: int = 1) -> List[dict]:
        rows, _ = self.client.select(
            self.view,
            {
                "select": "card_title,click_count",
                "click_count": f"gte.{min_clicks}",
                "order": "click_count.desc,card_title.asc",
                "limit": limit,
            },
        )
        return [{"subject": r["card_title"], "clicks": r["click_count"]} for r in rows]

    def analytics(self, subject: str, recent: int = 10) -> dict:
        subject = validate_subject(subject)
        latest, total = self.client.select(
            self.table,
            {"select": "clicked_at", "card_title": eq(subject), "order": "clicked_at.desc", "limit": recent},
            count=True,
        )
        first = None
        if total:
            oldest, _ = self.client.select(
                self.table,
                {"select": "clicked_at", "card_title": eq(subject), "order": "clicked_at.asc", "limit": 1},
            )
            first = oldest[0]["clicked_at"] if oldest else None
        if total is None:
            total = len(latest)
        return {
            "subject": subject,
            "total_clicks": total,
            "recent_clicks": [r["clicked_at"] for r in latest],
            "first_click": first,
            "last_click": latest[0]["clicked_at"] if latest else None,
        }
