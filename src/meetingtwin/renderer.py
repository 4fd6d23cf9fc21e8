"""Markdown recap rendering."""

from __future__ import annotations

from typing import List, Optional


def _yaml_quote(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f"\"{escaped}\""


def _clean_text(value: str) -> str:
    return " ".join(value.split())


def render_recap_note(
    title: str,
    date: str,
    recap: str,
    sources: Optional[List[str]] = None,
    started_at: Optional[str] = None,
    ended_at: Optional[str] = None,
    transcript_filename: Optional[str] = None,
) -> str:
    lines: List[str] = []
    lines.append("---")
    lines.append("schema: 1")
    lines.append(f"title: {_yaml_quote(title)}")
    lines.append(f"date: {_yaml_quote(date)}")
    if started_at:
        lines.append(f"started_at: {_yaml_quote(started_at)}")
    if ended_at:
        lines.append(f"ended_at: {_yaml_quote(ended_at)}")
    if transcript_filename:
        lines.append(f"transcript: {_yaml_quote(transcript_filename)}")
    if sources:
        lines.append("sources:")
        for source in sources:
            lines.append(f"  - {_yaml_quote(_clean_text(source))}")
    lines.append("---")
    lines.append("")
    lines.append(f"# {_clean_text(title)}")
    lines.append("")
    lines.append(recap.strip() if recap else "_No recap generated._")
    lines.append("")
    return "\n".join(lines)
