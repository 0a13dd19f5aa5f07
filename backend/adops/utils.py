"""
Shared utility functions.
"""

import logging
from typing import Any, Optional
from datetime import datetime, timezone

logger = logging.getLogger(__name__)


def safe_error_detail(exc: Exception, fallback: str = "An internal error occurred. Please try again later.") -> str:
    """
    Return a sanitized error message safe for client consumption.
    Logs the real exception detail server-side.
    """
    logger.error(f"Operation failed: {exc}", exc_info=True)
    return fallback


def utcnow() -> datetime:
    """
    Current UTC time as a naive datetime.
    DB columns are TIMESTAMP WITHOUT TIME ZONE.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def first_present(data: dict, *keys: str) -> Any:
    """Value of the first key that is present and truthy."""
    for key in keys:
        value = data.get(key)
        if value:
            return value
    return None


def extract_bid(data: dict) -> Optional[float]:
    """Bids arrive as a number or as {"value": ...} / {"monetaryBid": {"value": ...}}."""
    bid = first_present(data, "bid", "defaultBid")
    if isinstance(bid, dict):
        bid = bid.get("value") or (bid.get("monetaryBid") or {}).get("value")
    try:
        return float(bid) if bid is not None else None
    except (TypeError, ValueError):
        return None


def extract_daily_budget(data: dict) -> Optional[float]:
    """Daily budget from a flat field or from the MCP budgets[] structure."""
    budget = first_present(data, "dailyBudget", "budget")
    if isinstance(budget, dict):
        budget = budget.get("value")
    if budget is None:
        for b in data.get("budgets") or []:
            if b.get("recurrenceTimePeriod") == "DAILY":
                budget = (
                    b.get("budgetValue", {})
                    .get("monetaryBudgetValue", {})
                    .get("monetaryBudget", {})
                    .get("value")
                )
                break
    try:
        return float(budget) if budget is not None else None
    except (TypeError, ValueError):
        return None


def extract_target_expression(tgt_data: dict) -> Optional[str]:
    """
    Human-readable keyword text or target expression from MCP target data.
    targetDetails nests type-specific objects (keywordTarget, productTarget, ...).
    """
    if not isinstance(tgt_data, dict):
        return None
    details = tgt_data.get("targetDetails") or {}

    direct = first_present(tgt_data, "keywordText", "keyword", "expression") or first_present(details, "keyword", "expression")
    if isinstance(direct, str):
        return direct
    if isinstance(direct, list) and direct:
        return " | ".join(str(x.get("value", x)) if isinstance(x, dict) else str(x) for x in direct)

    for detail_key, detail in details.items():
        if not isinstance(detail, dict):
            continue
        value = first_present(detail, "keyword", "expression", "value", "asin")
        if isinstance(value, str):
            return value
        if detail_key == "productTarget":
            product = detail.get("product") or {}
            if product.get("productId"):
                return f"ASIN: {product['productId']}"
        if detail.get("matchType"):
            return f"{detail_key}: {detail['matchType']}"
    return None
