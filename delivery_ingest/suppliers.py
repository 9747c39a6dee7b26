from __future__ import annotations

import re
from typing import Iterable, Optional, Sequence

from delivery_ingest.models import FolderSegment, Supplier, SupplierMatch


_SEPARATORS_RE = re.compile(r"[\s_\-]+")
_FULLWIDTH_RE = re.compile(r"[Ａ-Ｚａ-ｚ０-９]")
_BRACKETS_RE = re.compile(r"[（）()［］\[\]【】<>「」『』\"'`]")
_FULLWIDTH_OFFSET = 0xFEE0


def normalize_supplier_key(value: Optional[str]) -> str:
    """Comparison key for supplier codes, names, folder names and file names."""
    if not value:
        return ""
    key = value.lower()
    key = _SEPARATORS_RE.sub("", key)
    key = _FULLWIDTH_RE.sub(lambda m: chr(ord(m.group(0)) - _FULLWIDTH_OFFSET), key)
    return _BRACKETS_RE.sub("", key)


def _keys(supplier: Supplier) -> tuple[str, str]:
    return normalize_supplier_key(supplier.supplier_code), normalize_supplier_key(supplier.supplier_name)


def _in_file_name(keys: tuple[str, str], file_key: str) -> bool:
    return any(key and key in file_key for key in keys)


def _as_match(supplier: Supplier) -> SupplierMatch:
    return SupplierMatch(
        supplier_id=supplier.id,
        inferred_code=supplier.supplier_code,
        inferred_name=supplier.supplier_name,
    )


def infer_supplier(
    path_segments: Sequence[FolderSegment | str],
    file_name: str,
    candidates: Iterable[Supplier],
) -> SupplierMatch:
    """Guess the supplier of a file from its folder path (root first) and name.

    Folders are tried innermost first; a folder matches a supplier whose code or
    name equals it, or any supplier whose code or name appears in the file name.
    Within one folder an exact folder match beats a file-name match. Without a
    folder match, the file name alone is tried. Ties go to the first candidate.
    """
    roster = [(supplier, _keys(supplier)) for supplier in candidates]
    file_key = normalize_supplier_key(file_name)

    for segment in reversed(list(path_segments)):
        name = segment.name if isinstance(segment, FolderSegment) else segment
        segment_key = normalize_supplier_key(name)
        if segment_key:
            for supplier, keys in roster:
                if segment_key in keys:
                    return _as_match(supplier)
        for supplier, keys in roster:
            if _in_file_name(keys, file_key):
                return _as_match(supplier)

    for supplier, keys in roster:
        if _in_file_name(keys, file_key):
            return _as_match(supplier)

    return SupplierMatch()
