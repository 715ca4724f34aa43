"""Progress record dataclasses."""

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Dict, Iterable


class PixelClass(Enum):
    """Classification of one template block center against the live canvas."""

    NOT_REQUIRED = "not_required"
    UNPAINTED = "unpainted"
    CORRECT = "correct"
    WRONG = "wrong"


@dataclass
class ColorCounts:
    """Exact per-color tallies gathered during classification."""

    required: int = 0
    painted: int = 0
    wrong: int = 0

    def add(self, other: "ColorCounts") -> None:
        self.required += other.required
        self.painted += other.painted
        self.wrong += other.wrong

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class TileProgress:
    """Progress of one template chunk on one canvas tile."""

    tile_key: str = ""
    painted: int = 0
    required: int = 0
    wrong: int = 0
    colors: Dict[str, ColorCounts] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if min(self.painted, self.required, self.wrong) < 0:
            raise ValueError(f"TileProgress counts must be non-negative: {self}")
        if self.painted + self.wrong > self.required:
            raise ValueError(
                f"TileProgress painted+wrong ({self.painted}+{self.wrong}) "
                f"exceeds required ({self.required}) for tile {self.tile_key!r}"
            )

    @property
    def unpainted(self) -> int:
        return self.required - self.painted - self.wrong

    def merge(self, other: "TileProgress") -> None:
        """Add ``other`` into this record (global aggregation is a plain sum)."""
        self.painted += other.painted
        self.required += other.required
        self.wrong += other.wrong
        for key, counts in other.colors.items():
            self.colors.setdefault(key, ColorCounts()).add(counts)

    def to_dict(self) -> dict:
        return {
            "tileKey": self.tile_key,
            "painted": self.painted,
            "required": self.required,
            "wrong": self.wrong,
            "colors": {k: v.to_dict() for k, v in sorted(self.colors.items())},
        }


@dataclass
class ColorStats:
    """Remaining-work summary for one color."""

    total_required: int = 0
    painted: int = 0
    needs_crosshair: int = 0
    percentage: int = 0

    @classmethod
    def from_counts(cls, required: int, painted: int) -> "ColorStats":
        required = max(0, int(required))
        painted = max(0, min(int(painted), required))
        # Half-up rounding; round() would send 12.5 to 12.
        pct = int(painted * 100 / required + 0.5) if required else 0
        return cls(
            total_required=required,
            painted=painted,
            needs_crosshair=max(0, required - painted),
            percentage=pct,
        )

    @classmethod
    def from_color_counts(cls, counts: ColorCounts,
                          include_wrong: bool = False) -> "ColorStats":
        painted = counts.painted + (counts.wrong if include_wrong else 0)
        return cls.from_counts(counts.required, painted)

    def to_dict(self) -> dict:
        return {
            "totalRequired": self.total_required,
            "painted": self.painted,
            "needsCrosshair": self.needs_crosshair,
            "percentage": self.percentage,
        }


def sum_progress(records: Iterable[TileProgress]) -> TileProgress:
    total = TileProgress(tile_key="*")
    for record in records:
        total.merge(record)
    return total
