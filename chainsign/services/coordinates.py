"""
Placeholder geometry.

Placeholders are authored as percentages of the rendered page, measured from
the top-left corner with Y growing downward. PDF drawing happens in points
from the bottom-left corner with Y growing upward, so converting a
placeholder means scaling to points and flipping the Y axis:

    x      = (x_percent / 100) * W
    width  = (width_percent / 100) * W
    height = (height_percent / 100) * H
    y      = H - (y_percent / 100) * H - height

Example: W=595, H=842, x=10%, y=70%, w=30%, h=8% gives
x=59.5, width=178.5, height=67.36, y=185.24.
"""
from typing import NamedTuple

EPSILON = 1e-9


class Rect(NamedTuple):
    x: float
    y: float
    width: float
    height: float


class PercentBox(NamedTuple):
    x_percent: float
    y_percent: float
    width_percent: float
    height_percent: float


def percent_to_absolute(x_percent, y_percent, width_percent, height_percent,
                        page_width, page_height) -> Rect:
    """Top-left percentage box -> bottom-left absolute rectangle in points."""
    x = (x_percent / 100) * page_width
    width = (width_percent / 100) * page_width
    height = (height_percent / 100) * page_height
    y = page_height - (y_percent / 100) * page_height - height
    return Rect(x, y, width, height)


def absolute_to_percent(rect: Rect, page_width, page_height) -> PercentBox:
    """Inverse of :func:`percent_to_absolute`."""
    x, y, width, height = rect
    return PercentBox(
        x_percent=x / page_width * 100,
        y_percent=(page_height - y - height) / page_height * 100,
        width_percent=width / page_width * 100,
        height_percent=height / page_height * 100,
    )


def placeholder_rect(placeholder, page_width, page_height) -> Rect:
    return percent_to_absolute(
        placeholder.x_percent,
        placeholder.y_percent,
        placeholder.width_percent,
        placeholder.height_percent,
        page_width,
        page_height,
    )


def fits_on_page(x_percent, y_percent, width_percent, height_percent) -> bool:
    """True when the box is non-empty and lies inside the page."""
    return (
        0 <= x_percent <= 100
        and 0 <= y_percent <= 100
        and 0 < width_percent <= 100
        and 0 < height_percent <= 100
        and x_percent + width_percent <= 100 + EPSILON
        and y_percent + height_percent <= 100 + EPSILON
    )
