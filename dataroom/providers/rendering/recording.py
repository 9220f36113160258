from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class RecordingPage:
    # Capture draw calls instead of rasterizing; used by tests and dry runs.
    width: float
    height: float
    operations: list[dict[str, Any]] = field(default_factory=list)

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
        self.operations.append(
            {
                "text": text,
                "x": x,
                "y": y,
                "size": size,
                "opacity": opacity,
                "rotation": rotation,
                "color": color,
            }
        )
