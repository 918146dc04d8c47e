"""Generación de Excel formateado con el historial de consumo."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

import pandas as pd
from openpyxl.styles import Alignment, Border, Font, Side

_DIA_SEMANA: tuple[str, ...] = ("lun", "mar", "mie", "jue", "vie", "sab", "dom")

_HEADER_MAP: dict[str, str] = {
    "weekday": "Día",
    "date": "Fecha",
    "datetime": "Inicio",
    "end": "Retiro",
    "nicotine_mg": "Nicotina\n(mg)",
    "planned_minutes": "Minutos\nplaneados",
    "actual_minutes": "Minutos\nreales",
    "status": "Estado",
    "absorbed_mg": "Absorbido\n(mg)",
    "source": "Lata",
    "pouch_count": "Pouches",
    "total_mg": "Total\n(mg)",
    "avg_mg": "Promedio\n(mg)",
}

_WIDTHS: dict[str, int] = {
    "Día": 6,
    "Fecha": 12,
    "Inicio": 18,
    "Retiro": 18,
    "Nicotina\n(mg)": 10,
    "Minutos\nplaneados": 10,
    "Minutos\nreales": 10,
    "Estado": 14,
    "Absorbido\n(mg)": 10,
    "Lata": 16,
    "Pouches": 9,
    "Total\n(mg)": 10,
    "Promedio\n(mg)": 10,
}

_FORMATS: dict[str, str] = {
    "Fecha": "dd/mm/yyyy",
    "Inicio": "dd/mm/yyyy hh:mm",
    "Retiro": "dd/mm/yyyy hh:mm",
    "Nicotina\n(mg)": "0.0",
    "Minutos\nplaneados": "0",
    "Minutos\nreales": "0.0",
    "Absorbido\n(mg)": "0.000",
    "Pouches": "0",
    "Total\n(mg)": "0.0",
    "Promedio\n(mg)": "0.00",
}


@dataclass(frozen=True)
class ExcelLayout:
    """Layout/formatting configuration for the history workbook."""

    sessions_sheet: str = "Sesiones"
    daily_sheet: str = "Resumen diario"


def _weekday_label(i: object) -> str:
    """Convierte índice 0-6 (lunes-domingo) a etiqueta de 3 letras."""
    try:
        if i is None or (isinstance(i, float) and pd.isna(i)):
            return ""
        if isinstance(i, int | float):
            idx = int(i)
            return _DIA_SEMANA[idx] if 0 <= idx < 7 else ""
        return ""
    except (ValueError, TypeError):
        return ""


def _add_weekday_column(export_df: pd.DataFrame) -> pd.DataFrame:
    """Añade columna weekday (Día) a partir de date."""
    if "date" not in export_df.columns or export_df.empty:
        return export_df
    export_df = export_df.copy()
    export_df["weekday"] = pd.to_datetime(export_df["date"]).dt.weekday.map(_weekday_label)
    cols = ["weekday"] + [c for c in export_df.columns if c != "weekday"]
    return export_df[cols]


def _drop_timezones(export_df: pd.DataFrame) -> pd.DataFrame:
    """Quita la zona horaria conservando la hora local (Excel no la admite)."""
    export_df = export_df.copy()
    for col in ("datetime", "end"):
        if col in export_df.columns:
            export_df[col] = pd.Series(
                [v.replace(tzinfo=None) if not pd.isna(v) else pd.NaT for v in export_df[col]],
                index=export_df.index,
                dtype="datetime64[ns]",
            )
    return export_df


def write_history_xlsx(
    sessions: pd.DataFrame,
    out_path: Path,
    layout: ExcelLayout,
    daily: pd.DataFrame | None = None,
) -> None:
    """Write a formatted workbook with the session history.

    Args:
        sessions: Frame from ``history.sessions_to_frame``.
        out_path: Output path for the XLSX file.
        layout: Excel layout parameters.
        daily: Optional frame from ``history.daily_usage_summary``.
    """
    out_path.parent.mkdir(parents=True, exist_ok=True)

    sessions_df = _add_weekday_column(sessions)
    sessions_df = _drop_timezones(sessions_df)
    if "date" in sessions_df.columns:
        sessions_df = sessions_df.drop(columns=["date"])
    sessions_df = sessions_df.rename(columns=_HEADER_MAP)

    with pd.ExcelWriter(out_path, engine="openpyxl") as writer:
        sessions_df.to_excel(writer, index=False, sheet_name=layout.sessions_sheet)
        _format_sheet(writer.book[layout.sessions_sheet])

        if daily is not None:
            daily_df = _add_weekday_column(daily).rename(columns=_HEADER_MAP)
            daily_df.to_excel(writer, index=False, sheet_name=layout.daily_sheet)
            _format_sheet(writer.book[layout.daily_sheet])


def _style_header_row(ws: Any) -> None:
    """Aplica fuente negrita, alineación y borde a la fila de cabecera."""
    thin = Side(style="thin")
    border = Border(left=thin, right=thin, top=thin, bottom=thin)
    header_font = Font(bold=True)
    center = Alignment(horizontal="center", vertical="center", wrap_text=True)
    for cell in ws[1]:
        cell.font = header_font
        cell.alignment = center
        cell.border = border


def _style_body_rows(ws: Any) -> None:
    thin = Side(style="thin")
    border = Border(left=thin, right=thin, top=thin, bottom=thin)
    center = Alignment(horizontal="center", vertical="center")
    for row in ws.iter_rows(min_row=2):
        for cell in row:
            cell.alignment = center
            cell.border = border
        ws.row_dimensions[row[0].row].height = 15


def _get_header_col_index(ws: Any) -> dict[str, int]:
    """Devuelve mapa nombre de cabecera -> índice de columna (1-based)."""
    headers = [str(cell.value) for cell in ws[1]]
    return {name: idx + 1 for idx, name in enumerate(headers)}


def _apply_column_widths(ws: Any, col_index: dict[str, int]) -> None:
    for header, width in _WIDTHS.items():
        idx = col_index.get(header)
        if idx is not None:
            letter = ws.cell(row=1, column=idx).column_letter
            ws.column_dimensions[letter].width = width


def _apply_number_formats(ws: Any, col_index: dict[str, int]) -> None:
    for row in ws.iter_rows(min_row=2):
        for header, fmt in _FORMATS.items():
            idx = col_index.get(header)
            if idx is not None:
                row[idx - 1].number_format = fmt


def _format_sheet(ws: Any) -> None:
    """Apply borders, widths and number formats to a worksheet.

    Args:
        ws: openpyxl worksheet.
    """
    _style_header_row(ws)
    _style_body_rows(ws)
    col_index = _get_header_col_index(ws)
    _apply_column_widths(ws, col_index)
    _apply_number_formats(ws, col_index)
