import logging
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import (
    Column,
    Integer,
    MetaData,
    String,
    Table,
    CheckConstraint,
    create_engine,
    func,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.pool import StaticPool

from errors import Conflict, NotFound, StoreUnavailable
from increment import RowStore
from storage import ClickLog, utc_now, validate_key, validate_subject

logger = logging.getLogger(__name__)


def build_tables(metadata: MetaData, counter_table: str = "visits", clicks_table: str = "card_clicks") -> Tuple[Table, Table]:
    visits = Table(
        counter_table,
        metadata,
        Column("page_url", String(255), primary_key=True),
        Column("visit_count", Integer, nullable=False, default=0),
        Column("last_visit", String(40)),
        CheckConstraint("visit_count >= 0", name=f"{counter_table}_visit_count_nonneg"),
    )
    clicks = Table(
        clicks_table,
        metadata,
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("card_title", String(255), nullable=False, index=True),
        Column("clicked_at", String(40), nullable=False),
        Column("ip_address", String(64)),
        Column("user_agent", String(512)),
    )
    return visits, clicks


class DatabaseClient:
    """
    Adapter layer over an SQLAlchemy engine.
    Rows come back as plain dicts; driver errors come back as store errors.
    """

    def __init__(self, sqlalchemy_url: str, counter_table: str = "visits", clicks_table: str = "card_clicks"):
        self.url = sqlalchemy_url
        if sqlalchemy_url.startswith("sqlite") and (":memory:" in sqlalchemy_url or sqlalchemy_url.rstrip("/") == "sqlite:"):
            # one shared connection, otherwise every checkout sees an empty database
            self.engine: Engine = create_engine(
                sqlalchemy_url, connect_args={"check_same_thread": False}, poolclass=StaticPool
            )
        elif sqlalchemy_url.startswith("sqlite"):
            self.engine = create_engine(sqlalchemy_url, connect_args={"check_same_thread": False})
        else:
            self.engine = create_engine(sqlalchemy_url, pool_pre_ping=True)
        self.metadata = MetaData()
        self.visits, self.clicks = build_tables(self.metadata, counter_table, clicks_table)

    def create_schema(self):
        try:
            self.metadata.create_all(self.engine)
            logger.info("schema ready on %s", self.engine.url.render_as_string(hide_password=True))
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"schema creation failed: {e}") from e

    def fetch_all(self, statement, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """Run a selectable and return all rows as a list of dictionaries."""
        try:
            with self.engine.connect() as conn:
                result = conn.execute(statement, params or {})
                return [dict(row) for row in result.mappings()]
        except SQLAlchemyError as e:
            raise StoreUnavailable(str(e)) from e

    def fetch_one(self, statement, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Like fetch_all but exactly one row is expected; raises NotFound on zero rows."""
        rows = self.fetch_all(statement, params)
        if not rows:
            raise NotFound("no rows returned")
        return rows[0]

    def execute(self, statement, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """
        Run a write statement in its own transaction.
        Returns the RETURNING rows when the statement has any.
        """
        try:
            with self.engine.begin() as conn:
                result = conn.execute(statement, params or {})
                if not result.returns_rows:
                    return []
                return [dict(row) for row in result.mappings()]
        except IntegrityError as e:
            raise Conflict(str(e.orig)) from e
        except SQLAlchemyError as e:
            raise StoreUnavailable(str(e)) from e

    def dispose(self):
        self.engine.dispose()


class SqlRowStore(RowStore):
    def __init__(self, client: DatabaseClient):
        self.client = client
        self.table = client.visits

    def increment_atomic(self, key: str) -> int:
        t = self.table
        stmt = (
            update(t)
            .where(t.c.page_url == key)
            .values(visit_count=t.c.visit_count + 1, last_visit=utc_now())
            .returning(t.c.visit_count)
        )
        rows = self.client.execute(stmt)
        if not rows:
            raise NotFound(f"no counter row for {key!r}")
        return rows[0]["visit_count"]

    def fetch(self, key: str) -> int:
        t = self.table
        row = self.client.fetch_one(select(t.c.visit_count).where(t.c.page_url == key))
        return row["visit_count"]

    def insert(self, key: str, value: int) -> int:
        validate_key(key)
        self.client.execute(insert(self.table).values(page_url=key, visit_count=value, last_visit=utc_now()))
        return value

    def update(self, key: str, value: int, expected: int | None = None) -> int:
        t = self.table
        stmt = update(t).where(t.c.page_url == key)
        if expected is not None:
            stmt = stmt.where(t.c.visit_count == expected)
        rows = self.client.execute(stmt.values(visit_count=value, last_visit=utc_now()).returning(t.c.visit_count))
        if not rows:
            raise NotFound(f"no counter row for {key!r}")
        return rows[0]["visit_count"]

    def fetch_all(self, limit: int | None = None) -> List[Tuple[str, int]]:
        t = self.table
        stmt = select(t.c.page_url, t.c.visit_count).order_by(t.c.visit_count.desc(), t.c.page_url)
        if limit is not None:
            stmt = stmt.limit(limit)
        return [(r["page_url"], r["visit_count"]) for r in self.client.fetch_all(stmt)]

    def close(self):
        self.client.dispose()


class SqlClickLog(ClickLog):
    def __init__(self, client: DatabaseClient):
        self.client = client
        self.table = client.clicks

    def record(self, subject: str, ip_address: str | None = None, user_agent: str | None = None) -> dict:
        subject = validate_subject(subject)
        t = self.table
        stmt = (
            insert(t)
            .values(card_title=subject, clicked_at=utc_now(), ip_address=ip_address, user_agent=user_agent)
            .returning(t.c.id, t.c.card_title, t.c.clicked_at, t.c.ip_address, t.c.user_agent)
        )
        row = self.client.execute(stmt)[0]
        return {
            "id": row["id"],
            "subject": row["card_title"],
            "clicked_at": row["clicked_at"],
            "ip_address": row["ip_address"],
            "user_agent": row["user_agent"],
        }

    def leaderboard(self, limit: int = 10, min_clicks: int = 1) -> List[dict]:
        t = self.table
        clicks = func.count(t.c.id).label("clicks")
        stmt = (
            select(t.c.card_title, clicks)
            .group_by(t.c.card_title)
            .having(func.count(t.c.id) >= min_clicks)
            .order_by(clicks.desc(), t.c.card_title)
            .limit(limit)
        )
        return [{"subject": r["card_title"], "clicks": r["clicks"]} for r in self.client.fetch_all(stmt)]

    def analytics(self, subject: str, recent: int = 10) -> dict:
        subject = validate_subject(subject)
        t = self.table
        summary = self.client.fetch_one(
            select(
                func.count(t.c.id).label("total"),
                func.min(t.c.clicked_at).label("first"),
                func.max(t.c.clicked_at).label("last"),
            ).where(t.c.card_title == subject)
        )
        latest = self.client.fetch_all(
            select(t.c.clicked_at).where(t.c.card_title == subject).order_by(t.c.clicked_at.desc(), t.c.id.desc()).limit(recent)
        )
        return {
            "subject": subject,
            "total_clicks": summary["total"],
            "recent_clicks": [r["clicked_at"] for r in latest],
            "first_click": summary["first"],
            "last_click": summary["last"],
        }
