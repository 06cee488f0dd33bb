"""Text bar chart for a projected battery history.

Each projected point becomes one column of block characters. Multi-row
height gives 8 vertical levels per row.
"""

from rich.text import Text

from amptop.projector import Y_BOUNDS, DominantState, Projection

BLOCKS = " ▁▂▃▄▅▆▇█"

DOMINANT_COLORS = {
    DominantState.CHARGING: "green",
    DominantState.DISCHARGING: "red",
    DominantState.FULL: "blue",
    DominantState.NONE: "cyan",
}

LEGEND = "Green: Charging | Red: Discharging | Blue: Full"


def _scale(value: float, levels: int) -> int:
    """Map a percent value to 0..levels."""
    low, high = Y_BOUNDS
    clamped = max(low, min(high, value))
    return round((clamped - low) / (high - low) * levels)


def render_rows(values: list[float], height: int) -> list[str]:
    """Render values as height rows of block characters, top row first."""
    levels = height * 8
    scaled = [_scale(v, levels) for v in values]
    rows = []
    for row in range(height - 1, -1, -1):
        base = row * 8
        rows.append("".join(BLOCKS[max(0, min(8, level - base))] for level in scaled))
    return rows


def label_rows(labels: list[str], height: int) -> dict[int, str]:
    """Place evenly spaced y labels (bottom first) on chart rows, top row 0.

    The top and bottom labels always show. Others are skipped when they would
    land on or next to a row that already has one.
    """
    if height == 1:
        return {0: labels[-1]}
    last = len(labels) - 1
    placed: dict[int, str] = {}
    for k in (last, 0, *range(last - 1, 0, -1)):
        row = round((last - k) / last * (height - 1))
        if any(r in placed for r in (row - 1, row, row + 1)) and k not in (0, last):
            continue
        placed.setdefault(row, labels[k])
    return placed


def render_chart(projection: Projection, height: int = 10) -> Text:
    """Render a projection with y labels, colored bars and first/last time labels."""
    height = max(1, height)
    values = [y for _, y in projection.points]
    rows = render_rows(values, height)
    color = DOMINANT_COLORS[projection.dominant]

    row_labels = label_rows(projection.y_labels(), height)

    text = Text()
    for i, row in enumerate(rows):
        label = row_labels.get(i, "")
        text.append(f"{label:>5} │", style="dim")
        text.append(row, style=color)
        text.append("\n")

    width = len(values)
    labels = projection.x_labels()
    first, last = labels[0], labels[-1]
    gap = max(1, width - len(first) - len(last))
    text.append(" " * 7 + first + " " * gap + last, style="dim")
    return text
