"""
Advertising ratio metrics. A zero denominator yields None, never an error.
"""

from typing import Optional


def _ratio(numerator: float, denominator: float, scale: float = 1.0) -> Optional[float]:
    if not denominator:
        return None
    return numerator / denominator * scale


def compute_acos(spend: float, sales: float) -> Optional[float]:
    """Advertising cost of sale, percent."""
    return _ratio(spend, sales, 100.0)


def compute_roas(sales: float, spend: float) -> Optional[float]:
    return _ratio(sales, spend)


def compute_ctr(clicks: int, impressions: int) -> Optional[float]:
    return _ratio(clicks, impressions, 100.0)


def compute_cvr(orders: int, clicks: int) -> Optional[float]:
    return _ratio(orders, clicks, 100.0)


def compute_cpc(spend: float, clicks: int) -> Optional[float]:
    return _ratio(spend, clicks)


def _safe_float(value, default: float = 0.0) -> float:
    if value is None:
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _safe_int(value, default: int = 0) -> int:
    if value is None:
        return default
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return default
