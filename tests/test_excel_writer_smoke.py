from __future__ import annotations

from datetime import timedelta
from pathlib import Path
from typing import cast

import pandas as pd
from dateutil import tz
from openpyxl import Workbook, load_workbook
from openpyxl.utils import get_column_letter
from openpyxl.worksheet.worksheet import Worksheet

from conftest import T0, make_session
from pouch_tool.excel_writer import ExcelLayout, _format_sheet, write_history_xlsx
from pouch_tool.history import daily_usage_summary, sessions_to_frame


def test_write_history_xlsx_happy_path_and_formatting(tmp_path: Path) -> None:
    """Una fila por sesión: Día, Inicio, Retiro, Nicotina, etc."""
    sessions = [
        make_session(T0, end=T0 + timedelta(minutes=30)),
        make_session(T0 + timedelta(hours=2), mg=4.0),
    ]
    frame = sessions_to_frame(sessions, T0 + timedelta(hours=2, minutes=5), tzinfo=tz.tzutc())
    out = tmp_path / "nested" / "out.xlsx"

    write_history_xlsx(frame, out, ExcelLayout(), daily=daily_usage_summary(frame))

    wb = load_workbook(out)
    ws = cast(Worksheet, wb[ExcelLayout().sessions_sheet])
    headers = [cell.value for cell in ws[1]]
    assert headers[0] == "Día"
    assert "Inicio" in headers
    assert "Nicotina\n(mg)" in headers
    assert "date" not in headers
    assert "datetime" not in headers

    # 2025-03-10 is a Monday.
    assert ws.cell(row=2, column=1).value == "lun"
    start_cell = ws.cell(row=2, column=headers.index("Inicio") + 1)
    assert start_cell.value.replace(second=0, microsecond=0) == T0.replace(tzinfo=None)
    assert start_cell.number_format == "dd/mm/yyyy hh:mm"
    end_cell = ws.cell(row=3, column=headers.index("Retiro") + 1)
    assert end_cell.value is None

    mg_col = headers.index("Nicotina\n(mg)") + 1
    assert ws.cell(row=2, column=mg_col).value == 6.0
    assert ws.cell(row=2, column=mg_col).number_format == "0.0"

    assert ws.column_dimensions["A"].width == 6
    status_letter = get_column_letter(headers.index("Estado") + 1)
    assert ws.column_dimensions[status_letter].width == 14

    daily_ws = cast(Worksheet, wb[ExcelLayout().daily_sheet])
    daily_headers = [cell.value for cell in daily_ws[1]]
    assert "Pouches" in daily_headers
    assert daily_ws.cell(row=2, column=daily_headers.index("Pouches") + 1).value == 2


def test_write_history_xlsx_without_sessions(tmp_path: Path) -> None:
    frame = sessions_to_frame([], T0)
    out = tmp_path / "empty.xlsx"
    write_history_xlsx(frame, out, ExcelLayout())
    wb = load_workbook(out)
    assert wb.sheetnames == [ExcelLayout().sessions_sheet]


def test_write_history_xlsx_with_none_date_fills_weekday_empty(tmp_path: Path) -> None:
    """Si hay fecha None, weekday se escribe vacío (no se lanza excepción)."""
    df = pd.DataFrame(
        {
            "date": [T0.date(), None],
            "nicotine_mg": [6.0, 4.0],
        }
    )
    out = tmp_path / "out.xlsx"
    write_history_xlsx(df, out, ExcelLayout())
    ws = load_workbook(out)[ExcelLayout().sessions_sheet]
    assert ws.cell(row=2, column=1).value == "lun"
    assert ws.cell(row=3, column=1).value in ("", None)


def test_format_sheet_handles_missing_headers() -> None:
    wb = Workbook()
    ws = cast(Worksheet, wb.active)
    ws.append(["Solo"])
    ws.append([1])

    _format_sheet(ws)

    assert ws.cell(row=1, column=1).font.bold is True
    assert ws.cell(row=2, column=1).alignment.horizontal == "center"
