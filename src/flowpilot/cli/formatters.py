from __future__ import annotations

from typing import Any, Dict, List, Optional


def table(headers: List[str], rows: List[List[str]], max_widths: Optional[Dict[int, int]] = None) -> str:
    """Format rows as a plain-text table; cells wider than ``max_widths`` are truncated."""
    if not rows:
        return "No data"

    widths = [len(header) for header in headers]
    for row in rows:
        for index, cell in enumerate(row[: len(widths)]):
            widths[index] = max(widths[index], len(str(cell)))
    for index, limit in (max_widths or {}).items():
        if index < len(widths):
            widths[index] = min(widths[index], limit)

    def render(cells: List[Any]) -> str:
        return "  ".join(str(cell)[: widths[index]].ljust(widths[index]) for index, cell in enumerate(cells)).rstrip()

    lines = [render(headers), "  ".join("-" * width for width in widths)]
    lines.extend(render(row) for row in rows)
    return "\n".join(lines)


def flow_rows(flows: List[Dict[str, Any]]) -> List[List[str]]:
    rows = []
    for flow in flows:
        stats = flow.get("stats") or {}
        rows.append(
            [
                flow["id"],
                flow["name"],
                flow["trigger_type"],
                "yes" if flow.get("active") else "no",
                str(stats.get("runs", 0)),
                str(stats.get("success", 0)),
                str(stats.get("failed", 0)),
            ]
        )
    return rows


def run_rows(runs: List[Dict[str, Any]]) -> List[List[str]]:
    rows = []
    for item in runs:
        status = item["status"]
        if status == "paused" and item.get("wait_reason"):
            status = f"paused ({item['wait_reason']})"
        rows.append(
            [
                item["id"],
                status,
                item.get("current_node_id") or "-",
                (item.get("started_at") or "-")[:19],
                item.get("error") or "",
            ]
        )
    return rows
