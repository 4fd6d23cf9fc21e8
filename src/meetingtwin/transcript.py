"""Meeting transcript store."""

from __future__ import annotations

import bisect
import time
from datetime import datetime
from typing import List, Optional

from .models import TranscriptEntry


def display_source(is_live: bool, source: str, speaker=None) -> str:
    """Label shown for a transcript line.

    The local user is plain ``user`` outside live meetings; everyone else is
    ``<source>-<speaker>``.
    """
    has_speaker = speaker is not None and speaker != ""
    if (is_live and has_speaker) or source != "user":
        return f"{source}-{speaker if has_speaker else 'unknown'}"
    if not is_live and source == "user":
        return "user"
    return "unknown caller"


def format_entry(entry: TranscriptEntry) -> str:
    stamp = datetime.fromtimestamp(entry.timestamp).strftime("%H:%M:%S")
    conf = f" (conf={entry.confidence:.2f})" if entry.confidence is not None else ""
    return f"[{stamp}] [{entry.source}]{conf} {entry.text}"


class TranscriptManager:
    def __init__(self) -> None:
        self._entries: List[TranscriptEntry] = []

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def entries(self) -> List[TranscriptEntry]:
        return list(self._entries)

    def add_entry(
        self,
        timestamp: Optional[float],
        source: Optional[str],
        text: Optional[str],
        confidence: Optional[float] = None,
    ) -> TranscriptEntry:
        entry = TranscriptEntry(
            timestamp=timestamp or time.time(),
            source=source or "unknown",
            text=text or "",
            confidence=confidence,
        )
        # insort_right keeps arrival order for equal timestamps.
        bisect.insort_right(self._entries, entry, key=lambda e: e.timestamp)
        return entry

    def get_transcript(self) -> str:
        return "\n".join(format_entry(entry) for entry in self._entries)
