"""
Supabase Client Helper for Pipeline Pulse.
Connection singleton plus the table helpers used by sync scripts,
analytics and API routers.

Usage:
    from scripts.lib.supabase_client import get_client, query_table, fetch_all

    client = get_client()
    deals = fetch_all("deals", gte={"close_date": start}, lte={"close_date": end})
    upsert_rows("close_users", rows, on_conflict="close_id")
"""
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

from scripts.lib.errors import ConfigError, DataFetchError
from scripts.lib.logger import setup_logger

logger = setup_logger(__name__)

# Load .env from project root
PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
load_dotenv(PROJECT_ROOT / ".env")

# PostgREST caps a single response at 1000 rows
PAGE_SIZE = 1000

_client = None


def get_client():
    """Create and return a Supabase client (singleton)."""
    global _client
    if _client is not None:
        return _client

    url = os.environ.get("SUPABASE_URL", "")
    key = (
        os.environ.get("SUPABASE_SERVICE_ROLE_KEY", "")
        or os.environ.get("SUPABASE_KEY", "")
    )
    if not url or not key:
        raise ConfigError(
            "SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set in .env",
            setting="SUPABASE_URL",
        )

    from supabase import create_client
    _client = create_client(url, key)
    logger.info("Supabase client connected to %s", url)
    return _client


def _apply_filters(query, filters: Dict[str, Any] = None, gte: Dict[str, Any] = None,
                   lte: Dict[str, Any] = None, in_: Dict[str, list] = None,
                   not_null: List[str] = None, is_null: List[str] = None):
    for col, val in (filters or {}).items():
        query = query.eq(col, val)
    for col, val in (gte or {}).items():
        query = query.gte(col, val)
    for col, val in (lte or {}).items():
        query = query.lte(col, val)
    for col, values in (in_ or {}).items():
        query = query.in_(col, list(values))
    for col in not_null or []:
        query = query.not_.is_(col, "null")
    for col in is_null or []:
        query = query.is_(col, "null")
    return query


def query_table(
    table: str,
    select: str = "*",
    filters: Dict[str, Any] = None,
    order_by: str = None,
    desc: bool = True,
    limit: int = 100,
    offset: int = 0,
    **range_filters,
) -> List[Dict]:
    """
    Query one page of a table with optional filters, ordering and pagination.

    Args:
        table: Table name.
        select: Columns to select (default "*").
        filters: Dict of column=value equality filters.
        order_by: Column to order by.
        desc: Descending order (default True).
        limit: Max rows to return.
        offset: Rows to skip.
        **range_filters: gte/lte/in_/not_null/is_null, as for fetch_all.

    Returns:
        List of row dicts.

    Raises:
        DataFetchError: if the query fails.
    """
    try:
        client = get_client()
        query = _apply_filters(client.table(table).select(select), filters, **range_filters)
        if order_by:
            query = query.order(order_by, desc=desc)
        query = query.range(offset, offset + limit - 1)
        result = query.execute()
        return result.data or []
    except ConfigError:
        raise
    except Exception as e:
        logger.error("Supabase query failed on %s: %s", table, e)
        raise DataFetchError(f"Query failed on {table}: {e}", source=table) from e


def fetch_all(
    table: str,
    select: str = "*",
    filters: Dict[str, Any] = None,
    order_by: str = "id",
    desc: bool = False,
    **range_filters,
) -> List[Dict]:
    """Read every matching row, paging through PostgREST's row cap."""
    rows: List[Dict] = []
    offset = 0
    while True:
        page = query_table(
            table, select=select, filters=filters, order_by=order_by,
            desc=desc, limit=PAGE_SIZE, offset=offset, **range_filters,
        )
        rows.extend(page)
        if len(page) < PAGE_SIZE:
            break
        offset += PAGE_SIZE
    logger.debug("Fetched %d rows from %s", len(rows), table)
    return rows


def get_row(table: str, value: Any, column: str = "id") -> Optional[Dict]:
    """Return the first row where column == value, or None."""
    rows = query_table(table, filters={column: value}, limit=1)
    return rows[0] if rows else None


def count_rows(table: str, filters: Dict[str, Any] = None, **range_filters) -> int:
    """Exact row count for a table (with optional filters)."""
    try:
        client = get_client()
        query = _apply_filters(
            client.table(table).select("id", count="exact"), filters, **range_filters,
        )
        result = query.limit(1).execute()
        return result.count or 0
    except ConfigError:
        raise
    except Exception as e:
        logger.error("Supabase count failed on %s: %s", table, e)
        raise DataFetchError(f"Count failed on {table}: {e}", source=table) from e


def insert_row(table: str, row: Dict) -> Dict:
    """Insert a row and return it as stored (with its generated id)."""
    try:
        result = get_client().table(table).insert(row).execute()
        return result.data[0] if result.data else row
    except ConfigError:
        raise
    except Exception as e:
        logger.error("Supabase insert failed on %s: %s", table, e)
        raise DataFetchError(f"Insert failed on {table}: {e}", source=table) from e


def update_row(table: str, row_id: Any, values: Dict, column: str = "id") -> bool:
    """
    Update the row(s) where column == row_id.

    Returns:
        True on success, False on failure.
    """
    try:
        get_client().table(table).update(values).eq(column, row_id).execute()
        return True
    except Exception as e:
        logger.error("Supabase update failed on %s (%s=%s): %s", table, column, row_id, e)
        return False


def upsert_row(table: str, row: Dict, on_conflict: str = None) -> bool:
    """
    Upsert a single row into a table.

    Returns:
        True on success, False on failure.
    """
    return upsert_rows(table, [row], on_conflict=on_conflict)


def upsert_rows(table: str, rows: List[Dict], on_conflict: str = None) -> bool:
    """
    Upsert multiple rows into a table.

    Args:
        table: Table name.
        rows: List of row dicts.
        on_conflict: Conflict resolution column(s).

    Returns:
        True on success, False on failure.
    """
    if not rows:
        return True

    try:
        query = get_client().table(table)
        if on_conflict:
            query.upsert(rows, on_conflict=on_conflict).execute()
        else:
            query.insert(rows).execute()
        logger.info("Upserted %d rows into %s", len(rows), table)
        return True
    except Exception as e:
        logger.error("Supabase bulk upsert failed on %s: %s", table, e)
        return False


def update_data_freshness(source: str, record_count: int, status: str = "ok") -> bool:
    """Record when a source was last synced and how many records it produced."""
    now = datetime.now(timezone.utc).isoformat()
    return upsert_row(
        "data_freshness",
        {
            "source": source,
            "last_fetch_at": now,
            "record_count": record_count,
            "status": status,
            "updated_at": now,
        },
        on_conflict="source",
    )
