from __future__ import annotations

from typing import Any

from policydiff.export.workbook import format_compare_time


def _bullets(items: Any) -> list[str]:
    if isinstance(items, list) and items:
        return [f"- {item}" for item in items]
    if isinstance(items, str) and items.strip():
        return [items.strip()]
    return ["无"]


def render_policy_markdown(record: dict[str, Any]) -> str:
    company = str(record.get("company") or "").strip() or "未命名"
    lines: list[str] = [
        f"# {company} 政策对比报告",
        "",
        f"- 去年文件：{record.get('old_file_name') or ''}",
        f"- 今年文件：{record.get('new_file_name') or ''}",
        f"- 对比时间：{format_compare_time(record.get('add_time'))}",
        f"- 审核状态：{'已审核' if record.get('is_verified') else '未审核'}",
        "",
    ]

    report = record.get("comparison_structured")
    if not isinstance(report, dict):
        lines.extend(["## 对比结果", "", str(record.get("comparison_result") or "暂无对比结果"), ""])
        return "\n".join(lines).rstrip() + "\n"

    lines.extend(["## 摘要", "", str(report.get("summary") or "无"), ""])

    statistics = report.get("statistics")
    if isinstance(statistics, dict):
        lines.extend(
            [
                "## 统计",
                "",
                "| 新增 | 修改 | 删除 |",
                "| --- | --- | --- |",
                "| {added} | {modified} | {deleted} |".format(
                    added=statistics.get("totalAdded", 0),
                    modified=statistics.get("totalModified", 0),
                    deleted=statistics.get("totalDeleted", 0),
                ),
                "",
            ]
        )

    for title, key in (("新增内容", "added"), ("修改内容", "modified"), ("删除内容", "deleted")):
        lines.extend([f"## {title}", "", *_bullets(report.get(key)), ""])

    detailed = report.get("detailed")
    if isinstance(detailed, str) and detailed.strip():
        lines.extend(["## 详细对比", "", detailed.strip(), ""])

    return "\n".join(lines).rstrip() + "\n"
