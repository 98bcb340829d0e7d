"""Sparkline widget for hourly message counts and payload value trends.

Multi-row block bars with optional per-value coloring. The scale is either
fixed (max_value) or follows the largest value shown.
"""

from __future__ import annotations

from collections.abc import Callable

from rich.text import Text
from textual.reactive import reactive
from textual.widgets import Static

from mqtt_dashboard.formatting import SPARK_CHARS


def _parse_hex_color(hex_color: str) -> tuple[int, int, int]:
    """Parse "#RRGGBB" or "#RGB" into an RGB tuple."""
    hex_color = hex_color.lstrip("#")
    if len(hex_color) == 3:
        hex_color = "".join(c * 2 for c in hex_color)
    return (
        int(hex_color[0:2], 16),
        int(hex_color[2:4], 16),
        int(hex_color[4:6], 16),
    )


def _rgb_to_hex(r: int, g: int, b: int) -> str:
    return f"#{r:02x}{g:02x}{b:02x}"


def _lerp_color(
    color1: tuple[int, int, int],
    color2: tuple[int, int, int],
    t: float,
) -> tuple[int, int, int]:
    t = max(0.0, min(1.0, t))
    return (
        int(color1[0] + (color2[0] - color1[0]) * t),
        int(color1[1] + (color2[1] - color1[1]) * t),
        int(color1[2] + (color2[2] - color1[2]) * t),
    )


class GradientColor:
    """A color gradient that interpolates between color stops.

    Example:
        ```python
        gradient = GradientColor([
            (0, "#6272a4"),    # Quiet hour
            (0.5, "#f1fa8c"),
            (1, "#50fa7b"),    # Busiest hour
        ])
        color = gradient(0.35)
        ```
    """

    def __init__(self, stops: list[tuple[float, str]]) -> None:
        """Initialize gradient with (threshold, hex_color) stops (at least 2)."""
        if len(stops) < 2:
            raise ValueError("Gradient requires at least 2 color stops")
        self._parsed: list[tuple[float, tuple[int, int, int]]] = [
            (threshold, _parse_hex_color(color))
            for threshold, color in sorted(stops, key=lambda s: s[0])
        ]

    def __call__(self, value: float) -> str:
        """Return the hex color for value, clamped to the outer stops."""
        if value <= self._parsed[0][0]:
            return _rgb_to_hex(*self._parsed[0][1])
        if value >= self._parsed[-1][0]:
            return _rgb_to_hex(*self._parsed[-1][1])

        for (t1, c1), (t2, c2) in zip(self._parsed, self._parsed[1:]):
            if t1 <= value <= t2:
                t = (value - t1) / (t2 - t1) if t2 != t1 else 0.0
                return _rgb_to_hex(*_lerp_color(c1, c2, t))

        return _rgb_to_hex(*self._parsed[-1][1])


class Sparkline(Static):
    """Vertical bars for a short series of values.

    Each row adds 8 levels of resolution: height=2 gives 16 levels, the
    bottom row filling first. Each value is drawn `bar_width` cells wide.
    The color function receives the value as a fraction of the scale
    maximum (0.0 to 1.0).
    """

    LEVELS_PER_ROW = 8

    DEFAULT_CSS = """
    Sparkline {
        width: 1fr;
        height: auto;
    }
    """

    data: reactive[list[float]] = reactive(list, always_update=True)

    def __init__(
        self,
        height: int = 1,
        max_value: float | None = None,
        bar_width: int = 1,
        color_func: Callable[[float], str] | None = None,
        **kwargs,
    ) -> None:
        super().__init__(**kwargs)
        self._height = max(1, min(4, height))
        self._max_value = max_value
        self._bar_width = max(1, bar_width)
        self.color_func = color_func

    def clear(self) -> None:
        """Clear all data."""
        self.data = []

    def effective_max(self) -> float:
        """Scale maximum: max_value, or the largest value shown (at least 1)."""
        if self._max_value is not None:
            return self._max_value
        return max(max(self.data, default=0.0), 1.0)

    def render(self) -> Text:
        """Render the sparkline as Rich Text."""
        if not self.data:
            return Text(" ")

        top = self.effective_max()
        rows: list[Text] = [Text() for _ in range(self._height)]

        for value in self.data:
            fraction = max(0.0, min(1.0, value / top)) if top > 0 else 0.0
            column = self._render_column(self._scale(fraction))
            color = self.color_func(fraction) if self.color_func else ""
            for row_idx, char in enumerate(column):
                rows[row_idx].append(char * self._bar_width, style=color or None)

        result = Text()
        for i, row in enumerate(reversed(rows)):
            if i > 0:
                result.append("\n")
            result.append(row)
        return result

    def _scale(self, fraction: float) -> int:
        """Map a 0-1 fraction to 0..(height * LEVELS_PER_ROW)."""
        total_levels = self._height * self.LEVELS_PER_ROW
        level = round(fraction * total_levels)
        # Non-zero values always show at least the lowest block
        if fraction > 0 and level == 0:
            level = 1
        return max(0, min(total_levels, level))

    def _render_column(self, level: int) -> list[str]:
        """Characters of one column, bottom row first."""
        result: list[str] = []
        for row in range(self._height):
            remaining = level - row * self.LEVELS_PER_ROW
            if remaining <= 0:
                result.append(SPARK_CHARS[0])
            elif remaining >= self.LEVELS_PER_ROW:
                result.append(SPARK_CHARS[self.LEVELS_PER_ROW])
            else:
                result.append(SPARK_CHARS[remaining])
        return result

    def watch_data(self, new_data: list[float]) -> None:
        """React to data changes by refreshing the widget."""
        self.refresh()
