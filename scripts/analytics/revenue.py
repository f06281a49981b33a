"""
Pipeline Pulse — Revenue Calculator
====================================
Consistent revenue and cash-collected totals for a date window.

Deal values arrive from Close as free-form currency text ("$12,500.00",
"7500", occasionally garbage like "1.2e+308"), so every value goes through
parse_currency_value, which never raises and clamps outliers.

Usage:
    from scripts.analytics.revenue import calculate_revenue_for_period, RevenueCalculationMode

    result = calculate_revenue_for_period(date_range, mode=RevenueCalculationMode.CLOSE_DATE)
    print(result["total_revenue"], result["total_cash_collected"])
"""
from __future__ import annotations

import math
import re
from collections import Counter
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from scripts.analytics.date_range import DateRange, in_range
from scripts.lib.cache import cached
from scripts.lib.logger import setup_logger
from scripts.lib.supabase_client import fetch_all
from scripts.lib.utils import round_half_up

logger = setup_logger("revenue")

MAX_REASONABLE_VALUE = 500_000
MAX_VALUE_LENGTH = 20

_NON_NUMERIC = re.compile(r"[^0-9.\-]")


class RevenueCalculationMode(str, Enum):
    CREATED_DATE = "created_date"
    CLOSE_DATE = "close_date"
    UPDATED_DATE = "updated_date"


def parse_currency_value(value: Any, max_value: float = MAX_REASONABLE_VALUE) -> float:
    """
    Parse a currency value into a float in [-max_value, max_value].

    None, blanks, strings longer than 20 characters, scientific notation and
    anything unparseable all become 0.
    """
    if value is None or isinstance(value, bool):
        return 0.0

    if isinstance(value, (int, float)):
        number = float(value)
    else:
        text = str(value).strip()
        if not text or len(text) > MAX_VALUE_LENGTH or "e" in text.lower():
            return 0.0
        cleaned = _NON_NUMERIC.sub("", text)
        # "1.234.56" -> "1.23456"
        if cleaned.count(".") > 1:
            head, _, tail = cleaned.partition(".")
            cleaned = head + "." + tail.replace(".", "")
        # A minus sign only counts at the front
        if "-" in cleaned[1:]:
            cleaned = ("-" if cleaned.startswith("-") else "") + cleaned.replace("-", "")
        try:
            number = float(cleaned)
        except ValueError:
            return 0.0

    if not math.isfinite(number):
        return 0.0
    if abs(number) > max_value:
        logger.warning("Clamping outlier currency value %r to ±%s", value, max_value)
        return max_value if number > 0 else -max_value
    return number


def deal_date(deal: Dict, mode: RevenueCalculationMode) -> Optional[str]:
    """The timestamp a deal is bucketed by under the given mode."""
    if mode == RevenueCalculationMode.CLOSE_DATE:
        return deal.get("close_date")
    if mode == RevenueCalculationMode.UPDATED_DATE:
        return deal.get("updated_at") or deal.get("created_at")
    return deal.get("created_at")


def deal_cash_collected(deal: Dict) -> float:
    """Recorded cash collected, else the full value for won deals, else 0."""
    if deal.get("cash_collected") not in (None, ""):
        return parse_currency_value(deal["cash_collected"])
    if deal.get("status") == "won":
        return parse_currency_value(deal.get("value"))
    return 0.0


def filter_deals(
    deals: Iterable[Dict],
    date_range: DateRange,
    user_id: Optional[str] = None,
    mode: RevenueCalculationMode = RevenueCalculationMode.CLOSE_DATE,
) -> List[Dict]:
    selected = []
    for deal in deals:
        if user_id and str(deal.get("assigned_to") or "") != str(user_id):
            continue
        if in_range(deal_date(deal, mode), date_range):
            selected.append(deal)
    return selected


def calculate_revenue(
    deals: Iterable[Dict],
    date_range: DateRange,
    user_id: Optional[str] = None,
    mode: RevenueCalculationMode = RevenueCalculationMode.CLOSE_DATE,
) -> Dict[str, Any]:
    """
    Sum revenue and cash collected over the deals falling in date_range.

    Returns:
        Dict with total_revenue, total_cash_collected, total_deals,
        avg_deal_value (rounded) and deals_by_status.
    """
    selected = filter_deals(deals, date_range, user_id=user_id, mode=mode)

    total_revenue = 0.0
    total_cash = 0.0
    by_status: Counter = Counter()
    for deal in selected:
        by_status[deal.get("status") or "unknown"] += 1
        total_revenue += parse_currency_value(deal.get("value"))
        total_cash += deal_cash_collected(deal)

    count = len(selected)
    return {
        "total_revenue": round(total_revenue, 2),
        "total_cash_collected": round(total_cash, 2),
        "total_deals": count,
        "avg_deal_value": round_half_up(total_revenue / count) if count else 0,
        "deals_by_status": dict(by_status),
        "mode": mode.value,
        "date_range": date_range.to_dict(),
    }


@cached(ttl=300, key_prefix="revenue:")
def calculate_revenue_for_period(
    date_range: DateRange,
    user_id: Optional[str] = None,
    mode: RevenueCalculationMode = RevenueCalculationMode.CLOSE_DATE,
) -> Dict[str, Any]:
    """Load deals for the window from the database and calculate revenue."""
    column = {
        RevenueCalculationMode.CLOSE_DATE: "close_date",
        RevenueCalculationMode.CREATED_DATE: "created_at",
    }.get(mode)

    filters = {"assigned_to": user_id} if user_id else None
    if column:
        deals = fetch_all(
            "deals",
            select="id, value, cash_collected, status, assigned_to, close_date, created_at, updated_at",
            filters=filters,
            gte={column: date_range.start.isoformat()},
            lte={column: date_range.end.isoformat()},
        )
    else:
        # updated_at falls back to created_at, so filter in Python
        deals = fetch_all(
            "deals",
            select="id, value, cash_collected, status, assigned_to, close_date, created_at, updated_at",
            filters=filters,
        )

    result = calculate_revenue(deals, date_range, user_id=user_id, mode=mode)
    logger.info(
        "Revenue %s (%s): $%.2f revenue, $%.2f cash over %d deals",
        date_range, mode.value, result["total_revenue"],
        result["total_cash_collected"], result["total_deals"],
    )
    return result
