"""Exit-modifier math — stop loss, take profit, trailing stop. Pure functions, no I/O.

All thresholds are percentages (``10.0`` means 10 %).  Every check
assumes an open long position; callers skip them when flat.
"""


def unrealized_pct(price: float, entry_price: float) -> float:
    """Unrealised P/L of a long position in percent of the entry price.

    Returns 0.0 when no entry price is known.
    """
    if entry_price <= 0:
        return 0.0
    return (price - entry_price) / entry_price * 100.0


def stop_loss_hit(price: float, entry_price: float, percent: float) -> bool:
    """``True`` when the loss has reached *percent*."""
    return unrealized_pct(price, entry_price) <= -percent


def take_profit_hit(price: float, entry_price: float, percent: float) -> bool:
    """``True`` when the gain has reached *percent*."""
    return unrealized_pct(price, entry_price) >= percent


def trailing_stop_price(highest_price: float, percent: float) -> float:
    return highest_price * (1.0 - percent / 100.0)


def trailing_stop_hit(price: float, highest_price: float, percent: float) -> bool:
    """``True`` when *price* has retraced *percent* from *highest_price*."""
    return price <= trailing_stop_price(highest_price, percent)


def drop_from_peak_pct(price: float, highest_price: float) -> float:
    if highest_price <= 0:
        return 0.0
    return (highest_price - price) / highest_price * 100.0
