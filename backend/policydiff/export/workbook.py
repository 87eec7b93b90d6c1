from __future__ import annotations

from datetime import datetime
from io import BytesIO
from typing import Any, Iterable, Sequence

from openpyxl import Workbook
from openpyxl.styles import Alignment, Font
from openpyxl.utils import get_column_letter
from openpyxl.worksheet.table import Table, TableStyleInfo
from openpyxl.worksheet.worksheet import Worksheet

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

POLICY_HEADERS = ("分公司", "去年文件", "今年文件", "对比时间", "是否审核", "摘要", "新增", "修改", "删除", "详细内容")
STANDARD_HEADERS = ("城市", "文件名", "对比时间", "是否审核", "序号", "标准项", "状态", "是否满足", "依据", "分析")

_POLICY_WIDTHS = (16, 32, 32, 20, 10, 60, 60, 60, 60, 80)
_STANDARD_WIDTHS = (12, 36, 20, 10, 8, 40, 12, 10, 60, 60)
_WRAP = Alignment(wrap_text=True, vertical="top")


def format_compare_time(value: Any) -> str:
    if not isinstance(value, str) or not value:
        return ""
    try:
        return datetime.fromisoformat(value).strftime("%Y-%m-%d %H:%M:%S")
    except ValueError:
        return value


def _lines(value: Any) -> str:
    if isinstance(value, list):
        return "\n".join(f"{index}. {item}" for index, item in enumerate(value, start=1))
    if value is None:
        return ""
    return str(value)


def _yes_no(value: Any) -> str:
    return "是" if value else "否"


def policy_rows(records: Iterable[dict[str, Any]]) -> list[list[str]]:
    rows: list[list[str]] = []
    for record in records:
        structured = record.get("comparison_structured")
        report = structured if isinstance(structured, dict) else {}
        detail = report.get("detailed") or record.get("comparison_result") or ""
        rows.append(
            [
                str(record.get("company") or ""),
                str(record.get("old_file_name") or ""),
                str(record.get("new_file_name") or ""),
                format_compare_time(record.get("add_time")),
                _yes_no(record.get("is_verified")),
                _lines(report.get("summary")),
                _lines(report.get("added")),
                _lines(report.get("modified")),
                _lines(report.get("deleted")),
                _lines(detail),
            ]
        )
    return rows


def standard_rows(records: Iterable[dict[str, Any]]) -> list[list[str]]:
    rows: list[list[str]] = []
    for record in records:
        prefix = [
            str(record.get("city") or ""),
            str(record.get("file_name") or ""),
            format_compare_time(record.get("add_time")),
            _yes_no(record.get("is_verified")),
        ]
        items = record.get("standard_items")
        if not isinstance(items, list) or not items:
            rows.append(prefix + ["", "", "", "", "", ""])
            continue
        for item in items:
            if not isinstance(item, dict):
                continue
            matched = item.get("matched")
            rows.append(
                prefix
                + [
                    _lines(item.get("id")),
                    _lines(item.get("name")),
                    _lines(item.get("status")),
                    "" if matched is None else _yes_no(matched),
                    _lines(item.get("evidence")),
                    _lines(item.get("analysis")),
                ]
            )
    return rows


def _fill_sheet(
    sheet: Worksheet,
    *,
    table_name: str,
    headers: Sequence[str],
    widths: Sequence[int],
    rows: list[list[str]],
) -> None:
    sheet.append(list(headers))
    for cell in sheet[1]:
        cell.font = Font(bold=True)
    for row in rows:
        sheet.append(row)
        for cell in sheet[sheet.max_row]:
            cell.alignment = _WRAP

    for index, width in enumerate(widths, start=1):
        sheet.column_dimensions[get_column_letter(index)].width = width
    sheet.freeze_panes = "A2"

    if rows:
        ref = f"A1:{sheet.cell(row=sheet.max_row, column=len(headers)).coordinate}"
        table = Table(displayName=table_name, ref=ref)
        table.tableStyleInfo = TableStyleInfo(
            name="TableStyleMedium1",
            showFirstColumn=False,
            showLastColumn=False,
            showRowStripes=True,
            showColumnStripes=False,
        )
        sheet.add_table(table)


def _to_bytes(workbook: Workbook) -> bytes:
    buffer = BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


def build_policy_workbook(records: Iterable[dict[str, Any]]) -> bytes:
    workbook = Workbook()
    sheet = workbook.active
    sheet.title = "政策对比"
    _fill_sheet(
        sheet,
        table_name="PolicyCompareTable",
        headers=POLICY_HEADERS,
        widths=_POLICY_WIDTHS,
        rows=policy_rows(records),
    )
    return _to_bytes(workbook)


def build_standard_workbook(records: Iterable[dict[str, Any]]) -> bytes:
    workbook = Workbook()
    sheet = workbook.active
    sheet.title = "标准对比"
    _fill_sheet(
        sheet,
        table_name="StandardCompareTable",
        headers=STANDARD_HEADERS,
        widths=_STANDARD_WIDTHS,
        rows=standard_rows(records),
    )
    return _to_bytes(workbook)
