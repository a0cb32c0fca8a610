from __future__ import annotations

import logging
import re
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Tuple

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Connection, Engine, RowMapping
from sqlalchemy.exc import SQLAlchemyError

from config import Settings

logger = logging.getLogger(__name__)

TABLES = {
    "project_specific_data",
    "global_coal_plants",
    "impact_results_lifetime",
    "impact_results_annual",
    "transactions",
    "transaction_activities",
    "project_logs",
    "users",
}

_IDENT = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class FetchFailure(RuntimeError):
    """A row-store read or write did not complete."""

    def __init__(self, table: str, operation: str, cause: Exception):
        super().__init__(f"{operation} on {table} failed: {cause}")
        self.table = table
        self.operation = operation
        self.cause = cause


class UnknownTableError(ValueError):
    pass


def get_engine(db_url: Optional[str] = None) -> Engine:
    """
    If DATABASE_URL is set -> uses Postgres (recommended for real app).
    Else -> uses local SQLite for dev.
    """
    db_url = (db_url or "").strip() or Settings.from_env().database_url
    return create_engine(db_url, pool_pre_ping=True)


def exec_sql(engine: Engine, sql: str, params: Optional[dict] = None) -> None:
    with engine.begin() as conn:
        conn.execute(text(sql), params or {})


def fetch_all(engine: Engine, sql: str, params: Optional[dict] = None) -> List[RowMapping]:
    with engine.begin() as conn:
        res = conn.execute(text(sql), params or {})
        return [r._mapping for r in res.fetchall()]


def fetch_one(engine: Engine, sql: str, params: Optional[dict] = None) -> Optional[RowMapping]:
    rows = fetch_all(engine, sql, params)
    return rows[0] if rows else None


def _check_table(table: str) -> str:
    if table not in TABLES:
        raise UnknownTableError(f"unknown table {table!r}. Known: {sorted(TABLES)}")
    return table


def _check_column(col: str) -> str:
    if not _IDENT.match(col):
        raise ValueError(f"invalid column name {col!r}")
    return col


class RowStore:
    """
    select / insert / update / delete over the whitelisted tables.

    Each call commits on its own, unless the store comes from transaction():
    then every call shares one connection and commits or rolls back together.
    """

    def __init__(self, engine: Engine, page_size: int = 1000, conn: Optional[Connection] = None):
        self.engine = engine
        self.page_size = page_size
        self.conn = conn

    def _run(self, table: str, operation: str, fn):
        try:
            return fn()
        except SQLAlchemyError as e:
            logger.error("%s on %s failed: %s", operation, table, e)
            raise FetchFailure(table, operation, e) from e

    def _rows(self, sql: str, params: dict) -> List[RowMapping]:
        if self.conn is None:
            return fetch_all(self.engine, sql, params)
        return [r._mapping for r in self.conn.execute(text(sql), params).fetchall()]

    def _exec(self, sql: str, params: dict) -> None:
        if self.conn is None:
            exec_sql(self.engine, sql, params)
        else:
            self.conn.execute(text(sql), params)

    @contextmanager
    def transaction(self) -> Iterator["RowStore"]:
        """
        Yield a store bound to one connection. A FetchFailure (or any other
        error) inside the block rolls back every write made through it.
        """
        if self.conn is not None:
            yield self
            return
        try:
            with self.engine.begin() as conn:
                yield RowStore(self.engine, self.page_size, conn)
        except SQLAlchemyError as e:
            logger.error("transaction failed: %s", e)
            raise FetchFailure("(transaction)", "commit", e) from e

    def select(
        self,
        table: str,
        filters: Optional[Dict[str, Any]] = None,
        range: Optional[Tuple[int, int]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
    ) -> List[Dict[str, Any]]:
        """Equality filters; range is inclusive (start, end) row positions."""
        _check_table(table)
        sql = f"SELECT * FROM {table}"
        params: Dict[str, Any] = {}
        if filters:
            clauses = []
            for i, (col, val) in enumerate(filters.items()):
                clauses.append(f"{_check_column(col)} = :f{i}")
                params[f"f{i}"] = val
            sql += " WHERE " + " AND ".join(clauses)
        if order_by:
            sql += f" ORDER BY {_check_column(order_by)} {'DESC' if descending else 'ASC'}"
        if range is not None:
            start, end = range
            sql += " LIMIT :lim OFFSET :off"
            params["lim"] = max(0, end - start + 1)
            params["off"] = start
        rows = self._run(table, "select", lambda: self._rows(sql, params))
        return [dict(r) for r in rows]

    def select_all(self, table: str, filters: Optional[Dict[str, Any]] = None, order_by: str = "id") -> List[Dict[str, Any]]:
        """
        Fetch every row page by page. Stops on a short or empty page. Pages
        are not a consistent snapshot: writes between pages are not reconciled.
        """
        out: List[Dict[str, Any]] = []
        start = 0
        while True:
            page = self.select(table, filters=filters, range=(start, start + self.page_size - 1), order_by=order_by)
            logger.debug("fetched %s offset=%d rows=%d", table, start, len(page))
            out.extend(page)
            if len(page) < self.page_size:
                break
            start += self.page_size
        logger.info("loaded %d rows from %s", len(out), table)
        return out

    def insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        _check_table(table)
        cols = [_check_column(c) for c in row]
        params = {f"v{i}": row[c] for i, c in enumerate(cols)}
        if cols:
            sql = (f"INSERT INTO {table}({', '.join(cols)}) "
                   f"VALUES({', '.join(':v%d' % i for i in range(len(cols)))}) RETURNING *")
        else:
            sql = f"INSERT INTO {table} DEFAULT VALUES RETURNING *"

        return self._run(table, "insert", lambda: dict(self._rows(sql, params)[0]))

    def update(self, table: str, id: Any, patch: Dict[str, Any]) -> None:
        _check_table(table)
        patch = {k: v for k, v in patch.items() if k != "id"}
        if not patch:
            return
        sets = []
        params: Dict[str, Any] = {"id": id}
        for i, (col, val) in enumerate(patch.items()):
            sets.append(f"{_check_column(col)} = :p{i}")
            params[f"p{i}"] = val
        sql = f"UPDATE {table} SET {', '.join(sets)} WHERE id = :id"
        self._run(table, "update", lambda: self._exec(sql, params))

    def delete(self, table: str, id: Any) -> None:
        _check_table(table)
        self._run(table, "delete", lambda: self._exec(f"DELETE FROM {table} WHERE id = :id", {"id": id}))


# =========================
# DB bootstrap (SQLite dev)
# =========================
def bootstrap_sqlite(engine: Engine) -> None:
    exec_sql(
        engine,
        """
    CREATE TABLE IF NOT EXISTS users (
      id INTEGER PRIMARY KEY AUTOINCREMENT,
      email TEXT UNIQUE NOT NULL,
      name TEXT NULL,
      initials TEXT NULL,
      password_hash TEXT NOT NULL,
      created_at TEXT NOT NULL
    );
    """,
    )
    exec_sql(
        engine,
        """
    CREATE TABLE IF NOT EXISTS project_specific_data (
      id INTEGER PRIMARY KEY AUTOINCREMENT,
      plant_name TEXT NOT NULL,
      unit_name TEXT NULL,
      capacity_mw TEXT NULL,
      country TEXT NULL,
      operational_status TEXT NULL,
      start_year TEXT NULL,
      planned_retirement_year TEXT NULL,
      actual_retirement_year TEXT NULL,
      location_coordinates TEXT NULL,
      operator TEXT NULL,
      owner TEXT NULL,
      parent TEXT NULL,
      project_name TEXT NULL,
      transition_type TEXT NULL,
      financial_mechanism TEXT NULL,
      lenders_funders_involved TEXT NULL,
      planned_post_retirement_status TEXT NULL,
      intelligence_on_transaction_status TEXT NULL,
      technical_assistance_provided_to_date TEXT NULL,
      information_status TEXT NULL,
      information_owner TEXT NULL,
      email_extension TEXT NULL,
      created_by TEXT NULL,
      created_at TEXT NULL
    );
    """,
    )
    exec_sql(
        engine,
        """
    CREATE TABLE IF NOT EXISTS global_coal_plants (
      id INTEGER PRIMARY KEY AUTOINCREMENT,
      gem_unit_phase_id TEXT NULL,
      gem_location_id TEXT NULL,
      country_area TEXT NULL,
      wiki_url TEXT NULL,
      plant_name TEXT NULL,
      unit_name TEXT NULL,
      plant_name_other TEXT NULL,
      plant_name_local TEXT NULL,
      owner TEXT NULL,
      parent TEXT NULL,
      capacity_mw TEXT NULL,
      status TEXT NULL,
      start_year TEXT NULL,
      retired_year TEXT NULL,
      planned_retirement TEXT NULL,
      combustion_technology TEXT NULL,
      coal_type TEXT NULL,
      coal_source TEXT NULL,
      location TEXT NULL,
      latitude TEXT NULL,
      longitude TEXT NULL,
      subregion TEXT NULL,
      region TEXT NULL,
      captive TEXT NULL,
      plant_age_years TEXT NULL,
      capacity_factor TEXT NULL,
      annual_co2_million_tonnes_annum TEXT NULL,
      remaining_plant_lifetime_years TEXT NULL,
      lifetime_co2_million_tonnes TEXT NULL
    );
    """,
    )
    for table in ("impact_results_lifetime", "impact_results_annual"):
        exec_sql(
            engine,
            f"""
        CREATE TABLE IF NOT EXISTS {table} (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          unique_plant_name TEXT NULL,
          unit_name TEXT NULL,
          country TEXT NULL,
          year TEXT NULL,
          retirement_year TEXT NULL,
          avoided_co2_mt TEXT NULL,
          avoided_deaths TEXT NULL,
          avoided_work_loss_days TEXT NULL,
          investment_usd TEXT NULL,
          economic_spillover_usd TEXT NULL,
          permanent_jobs TEXT NULL,
          temporary_jobs TEXT NULL,
          customer_savings_usd TEXT NULL
        );
        """,
        )
    exec_sql(
        engine,
        """
    CREATE TABLE IF NOT EXISTS transactions (
      id INTEGER PRIMARY KEY AUTOINCREMENT,
      created_at TEXT NULL,
      updated_at TEXT NULL,
      created_by TEXT NULL,
      plant_name TEXT NOT NULL,
      unit_name TEXT NULL,
      capacity_mw REAL NULL,
      country TEXT NULL,
      location_coordinates TEXT NULL,
      owner TEXT NULL,
      operational_status TEXT NULL,
      start_year INTEGER NULL,
      original_end_of_life_year INTEGER NULL,
      lifetime_co2_tonnes REAL NULL,
      project_name TEXT NULL,
      planned_retirement_year INTEGER NULL,
      actual_retirement_year INTEGER NULL,
      transition_type TEXT NULL,
      transaction_stage TEXT NULL,
      transaction_status TEXT NULL,
      engagement_status TEXT NULL,
      priority TEXT NULL,
      transaction_confidence_rating REAL NULL,
      transaction_next_steps TEXT NULL,
      deal_timeframe TEXT NULL,
      estimated_deal_size REAL NULL,
      financial_mechanism TEXT NULL,
      lenders_funders TEXT NULL,
      funded_delivery_partners TEXT NULL,
      plants TEXT NULL,
      notes TEXT NULL,
      assigned_to TEXT NULL
    );
    """,
    )
    exec_sql(
        engine,
        """
    CREATE TABLE IF NOT EXISTS transaction_activities (
      id INTEGER PRIMARY KEY AUTOINCREMENT,
      transaction_id INTEGER NOT NULL,
      type TEXT NOT NULL,
      title TEXT NOT NULL,
      description TEXT NULL,
      author TEXT NULL,
      created_at TEXT NOT NULL
    );
    """,
    )
    exec_sql(
        engine,
        """
    CREATE TABLE IF NOT EXISTS project_logs (
      id INTEGER PRIMARY KEY AUTOINCREMENT,
      project_id INTEGER NOT NULL,
      plant_name TEXT NULL,
      field_changed TEXT NULL,
      old_value TEXT NULL,
      new_value TEXT NULL,
      notes TEXT NULL,
      updated_by TEXT NULL,
      created_at TEXT NOT NULL
    );
    """,
    )
