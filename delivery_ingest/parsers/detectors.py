"""Header-row detectors for spreadsheets that arrive without a format template.

Each detector is a pure function from the raw grid to a ``HeaderDetection`` (or
None when its anchor keyword is absent). ``detect_header`` runs them in order and
stops at the first usable result, so a new supplier layout means adding one more
detector to ``DEFAULT_DETECTORS``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Sequence

from delivery_ingest.parse_utils import cell_matches, find_row_index


logger = logging.getLogger(__name__)

Grid = Sequence[Sequence[Any]]

CORE_FIELDS: tuple[str, ...] = ("product_code", "product_name", "quantity", "unit_price", "amount")
POSITIONAL_LAYOUT: Dict[str, int] = {name: index for index, name in enumerate(CORE_FIELDS)}


@dataclass(frozen=True)
class HeaderDetection:
    strategy: str
    header_row_index: int
    columns: Dict[str, int] = field(default_factory=dict)
    confidence: float = 0.0

    @property
    def usable(self) -> bool:
        return (
            self.header_row_index >= 0
            and "product_code" in self.columns
            and "product_name" in self.columns
        )


Detector = Callable[[Grid], Optional[HeaderDetection]]


def _locate_columns(
    header_row: Sequence[Any],
    keywords: Dict[str, tuple[str, ...]],
) -> Dict[str, int]:
    columns: Dict[str, int] = {}
    taken: set[int] = set()
    for name, words in keywords.items():
        for index, cell in enumerate(header_row):
            if index not in taken and cell_matches(cell, words):
                columns[name] = index
                taken.add(index)
                break
    return columns


def _keyword_detector(
    name: str,
    anchor: tuple[str, ...],
    keywords: Dict[str, tuple[str, ...]],
) -> Detector:
    def detect(rows: Grid) -> Optional[HeaderDetection]:
        header_index = find_row_index(rows, anchor)
        if header_index < 0:
            return None

        columns = _locate_columns(rows[header_index], keywords)
        located = sum(1 for core in CORE_FIELDS if core in columns)

        taken = set(columns.values())
        for core, position in POSITIONAL_LAYOUT.items():
            if core not in columns and position not in taken:
                columns[core] = position
                taken.add(position)

        return HeaderDetection(
            strategy=name,
            header_row_index=header_index,
            columns=columns,
            confidence=located / len(CORE_FIELDS),
        )

    detect.__name__ = f"detect_{name}"
    return detect


JAPANESE_KEYWORDS: Dict[str, tuple[str, ...]] = {
    "product_code": ("商品コード",),
    "product_name": ("商品名",),
    "quantity": ("数量",),
    "unit_price": ("単価",),
    "amount": ("金額",),
    "document_number": ("納品書", "伝票"),
    "remarks": ("備考", "remarks"),
    "delivery_date": ("納品日", "date"),
}

ENGLISH_KEYWORDS: Dict[str, tuple[str, ...]] = {
    "product_code": ("product code", "item code"),
    "product_name": ("product name", "item name", "description"),
    "quantity": ("quantity", "qty"),
    "unit_price": ("unit price", "price"),
    "amount": ("amount",),
    "document_number": ("delivery note", "document no", "slip no"),
    "remarks": ("remarks", "comment"),
    "delivery_date": ("date",),
}

detect_japanese_header = _keyword_detector("japanese_header", ("商品コード",), JAPANESE_KEYWORDS)
detect_english_header = _keyword_detector("english_header", ("product code", "item code"), ENGLISH_KEYWORDS)

DEFAULT_DETECTORS: tuple[Detector, ...] = (detect_japanese_header, detect_english_header)


def detect_header(rows: Grid, detectors: Sequence[Detector] = DEFAULT_DETECTORS) -> Optional[HeaderDetection]:
    for detector in detectors:
        detection = detector(rows)
        if detection is None:
            continue
        if detection.usable:
            logger.info(
                "Header detected",
                extra={
                    "strategy": detection.strategy,
                    "header_row_index": detection.header_row_index,
                    "confidence": detection.confidence,
                },
            )
            return detection
        logger.info("Detector %s found no usable header", detection.strategy)
    return None
