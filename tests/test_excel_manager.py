from io import BytesIO

import pandas as pd
import pytest
from openpyxl import Workbook, load_workbook

from weekly_orders.core.errors import InvalidMenuError
from weekly_orders.services.aggregator import OrderRecord, aggregate_orders
from weekly_orders.services.excel_manager import ExcelManager
from weekly_orders.services.menu_normalizer import normalize_menu

WEEK = "2024-03-04"


def menu_workbook(rows):
    wb = Workbook()
    ws = wb.active
    ws.append(["MENU SEMANAL"])
    ws.append(["DIA", "OPCION 1", "OPCION 2"])
    for row in rows:
        ws.append(row)
    buffer = BytesIO()
    wb.save(buffer)
    return buffer.getvalue()


@pytest.fixture(autouse=True)
def clean_workbook():
    ExcelManager.clear_all()
    yield
    ExcelManager.clear_all()


def test_parse_menu_reads_day_rows_from_the_second_column():
    content = menu_workbook([
        ["Lunes", "Milanesa", "Ensalada"],
        ["Martes", "Pastas", None],
        ["Miércoles", None, None],
        ["Jueves", "  Guiso  "],
        ["Viernes", "Pizza", "Empanadas"],
    ])

    raw = ExcelManager.parse_menu(content)

    assert raw["LUNES"] == ["Milanesa", "Ensalada"]
    assert raw["MIERCOLES"] == []
    assert raw["JUEVES"] == ["Guiso"]
    menu = normalize_menu(raw)
    assert list(menu) == ["Lunes", "Martes", "Jueves", "Viernes"]


def test_parse_menu_with_missing_rows():
    raw = ExcelManager.parse_menu(menu_workbook([["Lunes", "Milanesa"]]))
    assert raw == {"LUNES": ["Milanesa"]}


def test_parse_menu_rejects_non_workbook():
    with pytest.raises(InvalidMenuError):
        ExcelManager.parse_menu(b"not a spreadsheet")


def summary(count):
    rows = [
        OrderRecord(WEEK, "Lunes", "Milanesa", "user1", count, ("sin sal",)),
        OrderRecord(WEEK, "Lunes", "Ensalada", "user1", 0),
    ]
    return aggregate_orders(rows, {"Lunes": ["Milanesa", "Ensalada"]}, WEEK)


def test_summary_workbook_has_counts_and_comments():
    content = ExcelManager.summary_workbook(summary(3))
    wb = load_workbook(BytesIO(content))

    assert wb.sheetnames == ["Resumen", "Comentarios"]
    counts = pd.read_excel(BytesIO(content), sheet_name="Resumen")
    assert counts[["day", "option", "count"]].values.tolist() == [["Lunes", "Milanesa", 3]]
    comments = pd.read_excel(BytesIO(content), sheet_name="Comentarios")
    assert comments["comment"].tolist() == ["sin sal (user1)"]


def test_export_replaces_rows_of_the_same_week():
    assert ExcelManager.export_summary(summary(3))["success"] is True
    other = summary(1)
    other.week_start = "2024-03-11"
    assert ExcelManager.export_summary(other)["success"] is True
    assert ExcelManager.export_summary(summary(5))["success"] is True

    rows = ExcelManager.read_summary()
    by_week = {str(r["week_start"]): r["count"] for r in rows}
    assert len(rows) == 2
    assert by_week == {"2024-03-04": 5, "2024-03-11": 1}
