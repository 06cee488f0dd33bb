"""Formatting utilities for consistent output across CLI views."""

from datetime import datetime

MISSING = "N/A"


def format_percent(value: float | None) -> str:
    """Format a percentage with two decimals."""
    if value is None:
        return MISSING
    return f"{value:.2f} %"


def format_energy(wh: float | None, unit: str = "human") -> str:
    """Format energy as Wh (human) or J (si)."""
    if wh is None:
        return MISSING
    if unit == "si":
        return f"{wh * 3600.0:.2f} J"
    return f"{wh:.2f} Wh"


def format_power(watts: float | None) -> str:
    """Format power in watts."""
    if watts is None:
        return MISSING
    return f"{watts:.2f} W"


def format_voltage(volts: float | None) -> str:
    """Format voltage in volts."""
    if volts is None:
        return MISSING
    return f"{volts:.2f} V"


def format_temperature(celsius: float | None, unit: str = "human") -> str:
    """Format temperature as °C (human) or K (si)."""
    if celsius is None:
        return MISSING
    if unit == "si":
        return f"{celsius + 273.15:.2f} K"
    return f"{celsius:.2f} °C"


def format_duration(seconds: float | None) -> str:
    """Format a duration compactly.

    Returns:
        "2h 5m", "12m 3s", "45s", or N/A for None
    """
    if seconds is None:
        return MISSING
    total = int(seconds)
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    if hours:
        return f"{hours}h {minutes}m"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


def format_timestamp(timestamp: int) -> str:
    """Format a Unix timestamp as local date and time."""
    return datetime.fromtimestamp(timestamp).strftime("%Y-%m-%d %H:%M:%S")
