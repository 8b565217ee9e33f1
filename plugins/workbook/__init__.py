"""Workbook plugin – imports hand-kept spreadsheets as canonical day series."""

from .parser import parse_workbook, rows_to_day_series  # noqa: F401
