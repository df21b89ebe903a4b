from datetime import datetime, timezone


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def calculate_pnl_percent(entry_price: float, current_price: float) -> float:
    return ((current_price - entry_price) / entry_price) * 100 if entry_price > 0 else 0.0


def format_multiplier(multiplier: float) -> str:
    """2.0 -> '2', 2.5 -> '2.5'"""
    return f"{multiplier:g}"
