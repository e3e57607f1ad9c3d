"""Label table — loads coco_labels.yaml and maps sparse model class ids onto it."""
from __future__ import annotations

import bisect
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

import yaml

from vision_shared.logging import get_logger

log = get_logger(__name__)

NUM_LABELS = 80
DEFAULT_LABELS_YAML = Path(__file__).parent / "data" / "coco_labels.yaml"


def map_class_id(class_id: float, gap_ids: Sequence[int]) -> int:
    """Map a 1-based model class id to a 0-based dense label index.

    The id is rounded and floored at 1, then shifted down by one for every
    gap id at or below it. The result may fall outside the label table; the
    caller decides how to render that.
    """
    model_id = max(1, round(class_id))
    gaps_at_or_below = bisect.bisect_right(sorted(gap_ids), model_id)
    return model_id - 1 - gaps_at_or_below


@dataclass(frozen=True)
class LabelTable:
    labels: tuple[str, ...]
    gap_ids: tuple[int, ...]
    palette: tuple[str, ...]

    def index_of(self, class_id: float) -> int:
        return map_class_id(class_id, self.gap_ids)

    def lookup(self, class_id: float) -> tuple[str, str]:
        """Return (label, color) for a raw model class id.

        Unknown ids get a "Class <id>" label instead of raising.
        """
        idx = self.index_of(class_id)
        if 0 <= idx < len(self.labels):
            label = self.labels[idx]
        else:
            label = f"Class {_format_id(class_id)}"
        color = self.palette[max(idx, 0) % len(self.palette)]
        return label, color

    @classmethod
    def from_yaml(cls, yaml_path: str | Path | None = None) -> "LabelTable":
        path = Path(yaml_path) if yaml_path else DEFAULT_LABELS_YAML
        with open(path) as f:
            data = yaml.safe_load(f)

        labels = tuple(str(label) for label in data["labels"])
        if len(labels) != NUM_LABELS:
            raise ValueError(
                f"Label table {path} has {len(labels)} entries, expected {NUM_LABELS}"
            )
        palette = tuple(str(c) for c in data.get("palette") or ())
        if not palette:
            raise ValueError(f"Label table {path} defines no palette colors")
        table = cls(
            labels=labels,
            gap_ids=tuple(sorted(int(g) for g in data.get("gap_ids") or ())),
            palette=palette,
        )
        log.info(
            "label_table_loaded",
            path=str(path),
            labels=len(table.labels),
            gaps=len(table.gap_ids),
        )
        return table


def _format_id(class_id: float) -> str:
    return str(int(class_id)) if float(class_id).is_integer() else str(class_id)
