"""Tests for supplier inference from Drive folder paths and file names."""

import pytest

from delivery_ingest.models import FolderSegment, Supplier
from delivery_ingest.suppliers import infer_supplier, normalize_supplier_key


SUPPLIERS = [
    Supplier(id=1, supplier_code="YMD01", supplier_name="山田商事"),
    Supplier(id=2, supplier_code="SZK", supplier_name="Suzuki Foods"),
    Supplier(id=3, supplier_code=None, supplier_name="田中青果"),
]


# ---------------------------------------------------------------------------
# normalize_supplier_key
# ---------------------------------------------------------------------------

@pytest.mark.parametrize(
    "raw,key",
    [
        ("Suzuki Foods", "suzukifoods"),
        ("suzuki_foods", "suzukifoods"),
        ("SUZUKI-FOODS", "suzukifoods"),
        ("ＹＭＤ０１", "ymd01"),
        ("【山田商事】", "山田商事"),
        ("(株)田中青果", "株田中青果"),
        ("", ""),
        (None, ""),
    ],
)
def test_normalize_supplier_key(raw, key):
    assert normalize_supplier_key(raw) == key


# ---------------------------------------------------------------------------
# infer_supplier
# ---------------------------------------------------------------------------

def test_exact_folder_match_on_code():
    match = infer_supplier(["Deliveries", "ymd01"], "scan.pdf", SUPPLIERS)
    assert match.supplier_id == 1
    assert match.inferred_code == "YMD01"
    assert match.inferred_name == "山田商事"


def test_exact_folder_match_on_name_with_fullwidth_and_spaces():
    match = infer_supplier(["Suzuki　Foods"], "scan.pdf", SUPPLIERS)
    assert match.supplier_id == 2


def test_folder_match_beats_file_name_match():
    match = infer_supplier(["YMD01"], "suzuki_foods_202403.xlsx", SUPPLIERS)
    assert match.supplier_id == 1


def test_innermost_folder_wins():
    match = infer_supplier(["SZK", "YMD01"], "scan.pdf", SUPPLIERS)
    assert match.supplier_id == 1


def test_outer_folder_used_when_inner_has_no_match():
    match = infer_supplier(["SZK", "March"], "scan.pdf", SUPPLIERS)
    assert match.supplier_id == 2


def test_file_name_only_fallback():
    match = infer_supplier([], "納品書_田中青果_0305.pdf", SUPPLIERS)
    assert match.supplier_id == 3
    assert match.inferred_code is None


def test_ties_go_to_first_declared_candidate():
    match = infer_supplier([], "SZK-and-YMD01.csv", SUPPLIERS)
    assert match.supplier_id == 1


def test_no_match():
    match = infer_supplier(["Inbox"], "scan.pdf", SUPPLIERS)
    assert match.supplier_id is None
    assert match.inferred_code is None
    assert match.inferred_name is None


def test_accepts_folder_segments():
    segments = [FolderSegment(id="f1", name="root"), FolderSegment(id="f2", name="szk", parent_id="f1")]
    match = infer_supplier(segments, "scan.pdf", SUPPLIERS)
    assert match.supplier_id == 2


def test_empty_roster():
    assert infer_supplier(["YMD01"], "YMD01.pdf", []).supplier_id is None
