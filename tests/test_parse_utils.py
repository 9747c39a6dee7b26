"""Tests for the value normalizers and grid helpers in parse_utils."""

from datetime import date, datetime

import pytest

from delivery_ingest.parse_utils import (
    cell_text,
    column_letter_to_index,
    find_row_index,
    index_to_column_letter,
    is_blank,
    normalize_date,
    normalize_number,
    parse_number,
    value_after_keyword,
)


# ---------------------------------------------------------------------------
# normalize_number
# ---------------------------------------------------------------------------

def test_normalize_number_yen_with_separators():
    assert normalize_number("¥12,000") == 12000


def test_normalize_number_fullwidth_yen_and_trailing_glyph():
    assert normalize_number("￥1,500") == 1500
    assert normalize_number("3,200円") == 3200


def test_normalize_number_empty_is_zero():
    assert normalize_number("") == 0


def test_normalize_number_text_is_zero():
    assert normalize_number("abc") == 0


def test_normalize_number_none_is_zero():
    assert normalize_number(None) == 0


def test_normalize_number_native_values():
    assert normalize_number(42) == 42
    assert normalize_number(12.5) == pytest.approx(12.5)


def test_normalize_number_rejects_non_finite():
    assert normalize_number(float("nan")) == 0
    assert normalize_number("inf") == 0


def test_normalize_number_negative_and_decimal():
    assert normalize_number("-1,234.50") == pytest.approx(-1234.5)


def test_parse_number_distinguishes_blank_from_zero():
    assert parse_number("") is None
    assert parse_number("0") == 0


def test_parse_number_ignores_booleans():
    assert parse_number(True) is None


# ---------------------------------------------------------------------------
# normalize_date
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("raw", ["2024年3月5日", "20240305", "2024/3/5", "24.03.05", "2024-3-5", "2024.03.05"])
def test_normalize_date_formats(raw):
    assert normalize_date(raw) == "2024-03-05"


def test_normalize_date_unparseable():
    assert normalize_date("next tuesday") == ""


def test_normalize_date_empty():
    assert normalize_date("") == ""
    assert normalize_date(None) == ""


def test_normalize_date_rejects_impossible_dates():
    assert normalize_date("2024/2/30") == ""
    assert normalize_date("20241399") == ""


def test_normalize_date_native_values():
    assert normalize_date(date(2024, 3, 5)) == "2024-03-05"
    assert normalize_date(datetime(2024, 3, 5, 14, 30)) == "2024-03-05"


@pytest.mark.parametrize("raw", [20240305, 20240305.0])
def test_normalize_date_numeric_compact(raw):
    assert normalize_date(raw) == "2024-03-05"


@pytest.mark.parametrize("raw", [True, 20240305.5, 45356, float("nan")])
def test_normalize_date_other_numbers(raw):
    assert normalize_date(raw) == ""


def test_normalize_date_strips_whitespace():
    assert normalize_date("  2024/03/05 ") == "2024-03-05"


# ---------------------------------------------------------------------------
# cell_text / is_blank
# ---------------------------------------------------------------------------

def test_cell_text_integral_float():
    assert cell_text(1001.0) == "1001"


def test_cell_text_keeps_fraction():
    assert cell_text(12.5) == "12.5"


def test_cell_text_midnight_datetime_is_a_date():
    assert cell_text(datetime(2024, 3, 5)) == "2024-03-05"


def test_is_blank():
    assert is_blank(None)
    assert is_blank("   ")
    assert not is_blank(0)


# ---------------------------------------------------------------------------
# Column letters
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("letters,index", [("A", 0), ("Z", 25), ("AA", 26), ("az", 51), ("BA", 52)])
def test_column_letter_to_index(letters, index):
    assert column_letter_to_index(letters) == index


@pytest.mark.parametrize("index,letters", [(0, "A"), (25, "Z"), (26, "AA"), (701, "ZZ"), (702, "AAA")])
def test_index_to_column_letter(index, letters):
    assert index_to_column_letter(index) == letters


@pytest.mark.parametrize("bad", ["", "1", "A1", "Ａ"])
def test_column_letter_to_index_rejects_non_letters(bad):
    with pytest.raises(ValueError):
        column_letter_to_index(bad)


# ---------------------------------------------------------------------------
# Grid helpers
# ---------------------------------------------------------------------------

def test_find_row_index_case_insensitive():
    rows = [["Invoice"], ["", "Product Code", "Name"], ["A1", "Apple"]]
    assert find_row_index(rows, "product code") == 1


def test_find_row_index_respects_stop():
    rows = [["x"], ["y"], ["合計", 100]]
    assert find_row_index(rows, "合計", stop=2) == -1


def test_value_after_keyword_skips_blank_cells():
    assert value_after_keyword(["納品日", "", "2024/03/05"], "納品日") == "2024/03/05"


def test_value_after_keyword_missing():
    assert value_after_keyword(["仕入先"], "仕入先") == ""
    assert value_after_keyword(["other"], "仕入先") == ""
