"""Downsampling of the battery history into plot-ready points.

Pure functions only. Input is oldest to newest; the log returns newest first,
so callers reverse before projecting.

Decimation keeps every `stride`-th snapshot starting at index 0 and drops the
rest (no averaging). X values are normalized to [0, X_MAX] so the chart can
place five evenly spaced time labels regardless of how many points survive.
"""

from collections import Counter
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from amptop.telemetry import BatterySnapshot, BatteryStatus

X_MAX = 4.0
Y_BOUNDS = (0.0, 100.0)
LABEL_COUNT = 5


class DominantState(str, Enum):
    """Majority charging state over a sampled window, used to color the chart."""

    DISCHARGING = "discharging"
    CHARGING = "charging"
    FULL = "full"
    NONE = "none"


# Tie-break order: earlier wins
_PRECEDENCE = (
    (DominantState.DISCHARGING, BatteryStatus.DISCHARGING),
    (DominantState.CHARGING, BatteryStatus.CHARGING),
    (DominantState.FULL, BatteryStatus.FULL),
)


def format_clock(timestamp: int) -> str:
    """Format a Unix timestamp as local HH:MM."""
    return datetime.fromtimestamp(timestamp).strftime("%H:%M")


@dataclass(frozen=True)
class Projection:
    """Decimated history ready for plotting."""

    samples: tuple[BatterySnapshot, ...]
    points: tuple[tuple[float, float], ...]
    stride: int
    dominant: DominantState

    @property
    def first_timestamp(self) -> int:
        return self.samples[0].timestamp

    @property
    def last_timestamp(self) -> int:
        return self.samples[-1].timestamp

    def x_labels(self, fmt: Callable[[int], str] = format_clock) -> list[str]:
        """Five x-axis labels: first and last sample time, blanks between."""
        blanks = [""] * (LABEL_COUNT - 2)
        return [fmt(self.first_timestamp), *blanks, fmt(self.last_timestamp)]

    @staticmethod
    def y_labels() -> list[str]:
        """Y-axis labels 0% to 100% in steps of 10."""
        return [f"{pct}%" for pct in range(0, 101, 10)]


def compute_stride(n: int, width: int) -> int:
    """Return the decimation stride for n snapshots shown in width columns.

    Raises:
        ValueError: If width < 1
    """
    if width < 1:
        raise ValueError(f"width must be >= 1, got {width}")
    if n > width:
        return max(1, n // width)
    return 1


def dominant_state(samples: Sequence[BatterySnapshot]) -> DominantState:
    """Classify samples by the most frequent of charging/discharging/full.

    The strictly highest count wins; ties go to discharging, then charging,
    then full. With none of the three present the result is NONE.
    """
    counts = Counter(s.status for s in samples)
    best, best_count = DominantState.NONE, 0
    for state, status in _PRECEDENCE:
        if counts[status] > best_count:
            best, best_count = state, counts[status]
    return best


def normalize_x(count: int) -> list[float]:
    """Spread count sample indices over [0, X_MAX]."""
    span = max(1, count - 1)
    return [i * X_MAX / span for i in range(count)]


def project(snapshots: Sequence[BatterySnapshot], width: int) -> Projection | None:
    """Decimate snapshots (oldest first) to fit width columns.

    Returns:
        Projection, or None if there is no data to plot
    """
    stride = compute_stride(len(snapshots), width)
    samples = tuple(snapshots[::stride])
    if not samples:
        return None

    xs = normalize_x(len(samples))
    points = tuple((x, float(s.percent)) for x, s in zip(xs, samples))
    return Projection(
        samples=samples,
        points=points,
        stride=stride,
        dominant=dominant_state(samples),
    )
