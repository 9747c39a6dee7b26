"""Tests for spreadsheet extraction: template-driven and auto-detected layouts."""

import logging
from datetime import datetime
from io import BytesIO

import pytest
from openpyxl import Workbook

from delivery_ingest.models import SpreadsheetTemplate
from delivery_ingest.parsers.common import NO_ITEMS_WARNING
from delivery_ingest.parsers.spreadsheet import extract_from_spreadsheet_rows, read_spreadsheet


def _template(header_row_index=3, data_start_row_index=4, **mapping):
    columns = mapping or {
        "product_code": "A",
        "product_name": "B",
        "quantity": "C",
        "unit_price": "D",
        "amount": "E",
    }
    return SpreadsheetTemplate(
        supplier_id=1,
        column_mapping={name: {"column": column} for name, column in columns.items()},
        header_row_index=header_row_index,
        data_start_row_index=data_start_row_index,
    )


def _xlsx(rows):
    workbook = Workbook()
    sheet = workbook.active
    for row in rows:
        sheet.append(row)
    buffer = BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


TEMPLATE_ROWS = [
    ["納品書"],
    ["仕入先", "山田商事"],
    ["納品日", "2024/03/05"],
    ["コード", "名称", "数量", "単価", "金額"],
    ["A001", "りんご", 3, 150, ""],
    ["", "", "", "", ""],
    ["A002", "みかん", 2, 100, 200],
    ["合計", "", "", "", 650],
]


# ---------------------------------------------------------------------------
# Template-driven path
# ---------------------------------------------------------------------------

class TestTemplateExtraction:
    @pytest.fixture(autouse=True)
    def extract(self):
        self.result = extract_from_spreadsheet_rows(TEMPLATE_ROWS, _template(), supplier_id=7, file_name="note.xlsx")

    def test_blank_rows_do_not_consume_line_numbers(self):
        assert [item.line_number for item in self.result.items] == [1, 2]

    def test_codes(self):
        assert [item.product_code for item in self.result.items] == ["A001", "A002"]

    def test_amount_derived_from_quantity_and_price(self):
        assert self.result.items[0].amount == 450

    def test_explicit_amount_kept(self):
        assert self.result.items[1].amount == 200

    def test_declared_total(self):
        assert self.result.total_amount == pytest.approx(650)

    def test_document_header(self):
        assert self.result.supplier_name == "山田商事"
        assert self.result.delivery_date == "2024-03-05"

    def test_metadata(self):
        assert self.result.supplier_id == 7
        assert self.result.original_file_name == "note.xlsx"
        assert self.result.file_type == "spreadsheet"

    def test_no_warnings(self):
        assert self.result.warnings == []


def test_template_total_falls_back_to_sum():
    rows = TEMPLATE_ROWS[:-1]
    result = extract_from_spreadsheet_rows(rows, _template(), supplier_id=1)
    assert result.total_amount == pytest.approx(650)


def test_template_skipped_first_data_row_warns():
    result = extract_from_spreadsheet_rows(TEMPLATE_ROWS, _template(data_start_row_index=5), supplier_id=1)
    assert [item.product_code for item in result.items] == ["A002"]
    assert any("Data start row 6" in warning for warning in result.warnings)


def test_template_missing_required_mapping_warns_and_continues():
    template = _template(product_code="A", quantity="C")
    result = extract_from_spreadsheet_rows(TEMPLATE_ROWS, template, supplier_id=1)
    assert result.items == []
    assert any("product_name" in warning for warning in result.warnings)
    assert NO_ITEMS_WARNING in result.warnings


def test_template_header_outside_sheet():
    result = extract_from_spreadsheet_rows(TEMPLATE_ROWS, _template(header_row_index=50, data_start_row_index=51), supplier_id=1)
    assert result.items == []
    assert any("outside the sheet" in warning for warning in result.warnings)


def test_template_without_amount_column():
    template = _template(product_code="A", product_name="B", quantity="C", unit_price="D")
    result = extract_from_spreadsheet_rows(TEMPLATE_ROWS, template, supplier_id=1)
    assert result.items[1].amount == 200


def test_template_non_numeric_cell_warns():
    rows = [["code", "name", "qty"], ["A001", "りんご", "three", 150]]
    result = extract_from_spreadsheet_rows(rows, _template(header_row_index=0, data_start_row_index=1), supplier_id=1)
    assert result.items[0].quantity == 0
    assert any("quantity value 'three' is not numeric" in warning for warning in result.warnings)


def test_template_columns_beyond_row_length_are_blank():
    rows = [["code", "name"], ["A001", "りんご"]]
    result = extract_from_spreadsheet_rows(rows, _template(header_row_index=0, data_start_row_index=1), supplier_id=1)
    assert result.items[0].amount == 0


# ---------------------------------------------------------------------------
# Auto-detect path
# ---------------------------------------------------------------------------

AUTO_ROWS = [
    ["仕入先", "山田商事"],
    ["納品日", "2024年3月5日"],
    ["商品コード", "商品名", "数量", "単価", "金額", "備考"],
    ["A001", "りんご", 3, 150, 450, "箱"],
    ["A002", "みかん", "2", "100", "", ""],
    ["", "", "", "", "", ""],
    ["A003", "ぶどう", 1, 1000, 1000, ""],
    ["合計", "", "", "", 650, ""],
]


class TestAutoDetectExtraction:
    @pytest.fixture(autouse=True)
    def extract(self):
        self.result = extract_from_spreadsheet_rows(AUTO_ROWS, supplier_id=3, file_name="auto.xlsx")

    def test_stops_at_first_blank_row(self):
        assert [item.product_code for item in self.result.items] == ["A001", "A002"]

    def test_amount_derived_from_text_cells(self):
        assert self.result.items[1].amount == 200

    def test_remarks_column_found_by_keyword(self):
        assert self.result.items[0].remarks == "箱"

    def test_header_date_and_supplier(self):
        assert self.result.delivery_date == "2024-03-05"
        assert self.result.supplier_name == "山田商事"

    def test_total_read_below_the_block(self):
        assert self.result.total_amount == pytest.approx(650)


def test_auto_detect_without_header_row():
    result = extract_from_spreadsheet_rows([["foo"], ["bar"]], supplier_id=1)
    assert result.items == []
    assert "Could not locate a product code header row" in result.warnings
    assert NO_ITEMS_WARNING in result.warnings


def test_auto_detect_header_without_items():
    result = extract_from_spreadsheet_rows([["商品コード", "商品名"], ["", ""]], supplier_id=1)
    assert result.items == []
    assert result.warnings == [NO_ITEMS_WARNING]


def test_auto_detect_english_header():
    rows = [
        ["Item Code", "Description", "Qty", "Unit Price", "Amount", "Delivery Date"],
        ["X-1", "Widget", 4, 2.5, "", "2024/04/01"],
    ]
    result = extract_from_spreadsheet_rows(rows, supplier_id=1)
    assert len(result.items) == 1
    item = result.items[0]
    assert item.amount == pytest.approx(10)
    assert item.delivery_date == "2024-04-01"
    assert result.total_amount == pytest.approx(10)


def test_auto_detect_logs_header_columns_as_letters(caplog):
    with caplog.at_level(logging.INFO, logger="delivery_ingest.parsers.spreadsheet"):
        extract_from_spreadsheet_rows(AUTO_ROWS, supplier_id=3, file_name="auto.xlsx")
    record = next(r for r in caplog.records if r.getMessage() == "Spreadsheet header detected")
    assert record.strategy == "japanese_header"
    assert record.header_row == 3
    assert record.columns["product_code"] == "A"
    assert record.columns["amount"] == "E"
    assert record.columns["remarks"] == "F"


def test_auto_detect_sums_without_total_row():
    result = extract_from_spreadsheet_rows(AUTO_ROWS[:5], supplier_id=1)
    assert result.total_amount == pytest.approx(650)


# ---------------------------------------------------------------------------
# Workbook reading
# ---------------------------------------------------------------------------

def test_read_spreadsheet_round_trip():
    content = _xlsx(
        [
            ["商品コード", "商品名", "数量", "納品日"],
            ["A001", None, 3, datetime(2024, 3, 5)],
            [None, None, None, None],
        ]
    )
    rows = read_spreadsheet(content)
    assert len(rows) == 2
    assert rows[1][1] == ""
    assert rows[1][2] == 3
    assert rows[1][3] == datetime(2024, 3, 5)


def test_read_spreadsheet_then_extract():
    rows = read_spreadsheet(_xlsx(AUTO_ROWS))
    result = extract_from_spreadsheet_rows(rows, supplier_id=1)
    assert [item.product_code for item in result.items] == ["A001", "A002"]


def test_read_spreadsheet_rejects_garbage():
    with pytest.raises(ValueError):
        read_spreadsheet(b"not a workbook")


def test_numeric_compact_dates_from_workbook():
    content = _xlsx(
        [
            ["納品日", 20240305],
            ["商品コード", "商品名", "数量", "単価", "金額", "納品日"],
            ["A001", "りんご", 3, 150, 450, 20240306],
        ]
    )
    result = extract_from_spreadsheet_rows(read_spreadsheet(content), supplier_id=1, file_name="dates.xlsx")
    assert result.delivery_date == "2024-03-05"
    assert result.items[0].delivery_date == "2024-03-06"
    assert not any("date" in warning for warning in result.warnings)
