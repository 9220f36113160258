from __future__ import annotations

from typing import Protocol


class RenderedPage(Protocol):
    """A drawing surface for one rendered page, in PDF points."""

    width: float
    height: float

    def draw_text(
        self,
        text: str,
        *,
        x: float,
        y: float,
        size: float,
        opacity: float,
        rotation: float,
        color: tuple[float, float, float],
    ) -> None:
        ...
