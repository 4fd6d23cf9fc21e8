"""Storage and naming utilities."""

from __future__ import annotations

import os
from datetime import datetime


def timestamp_slug(dt: datetime | None = None) -> str:
    now = dt or datetime.now()
    return now.strftime("%Y-%m-%dT%H%M")


def build_meeting_basename(kind: str, dt: datetime | None = None) -> str:
    slug = kind.strip().replace(" ", "-") if kind else "meeting"
    return f"{timestamp_slug(dt)}-meeting-{slug}"


def ensure_dir(path: str) -> None:
    os.makedirs(path, exist_ok=True)


def write_text(directory: str, filename: str, text: str) -> str:
    ensure_dir(directory)
    path = os.path.join(directory, filename)
    with open(path, "w", encoding="utf-8") as handle:
        handle.write(text)
    return path


def save_transcript(meetings_dir: str, text: str, dt: datetime | None = None) -> str:
    return write_text(meetings_dir, f"{build_meeting_basename('transcript', dt)}.txt", text)


def save_recap(meetings_dir: str, text: str, dt: datetime | None = None) -> str:
    return write_text(meetings_dir, f"{build_meeting_basename('recap', dt)}.md", text)
