"""Transcript formatting and hand-off to the analysis service."""

import logging
from datetime import datetime
from typing import Optional

import httpx

from .models import AnalysisContext, TranscriptEntry

logger = logging.getLogger(__name__)

MAX_TRANSCRIPT_CHARS = 6000
TRUNCATION_NOTICE = "\n... (transcript truncated)"

# Per-entry content limits and display tags
ENTRY_LIMITS = {
    "text": 500,
    "passthrough": 500,
    "result": 300,
}
ENTRY_TAGS = {
    "user_input": "user",
}


def _elapsed(timestamp: datetime, started_at: datetime) -> str:
    seconds = max(0, int((timestamp - started_at).total_seconds()))
    hours, rest = divmod(seconds, 3600)
    minutes, seconds = divmod(rest, 60)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}"


def format_transcript(
    entries: list[TranscriptEntry],
    started_at: Optional[datetime] = None,
    max_chars: int = MAX_TRANSCRIPT_CHARS,
) -> str:
    """Render entries as ``[hh:mm:ss] [type] content`` lines, capped at ``max_chars``."""
    if not entries:
        return ""
    started_at = started_at or entries[0].timestamp

    lines = []
    for entry in entries:
        content = entry.content
        limit = ENTRY_LIMITS.get(entry.type)
        if limit and len(content) > limit:
            content = content[:limit] + "..."
        tag = ENTRY_TAGS.get(entry.type, entry.type)
        lines.append(f"[{_elapsed(entry.timestamp, started_at)}] [{tag}] {content}")

    text = "\n".join(lines)
    if len(text) > max_chars:
        text = text[:max_chars] + TRUNCATION_NOTICE
    return text


class TranscriptAnalyzer:
    """
    Posts finished session transcripts to an analysis endpoint.

    With no ``analysis_url`` configured, only a one-line summary is logged.
    Errors propagate to the caller, which runs this as best-effort work.
    """

    def __init__(self, analysis_url: Optional[str] = None, timeout: float = 30.0):
        self.analysis_url = analysis_url
        self.timeout = timeout

    @classmethod
    def from_config(cls, config: Optional[dict] = None) -> "TranscriptAnalyzer":
        transcripts = (config or {}).get("transcripts", {})
        return cls(
            analysis_url=transcripts.get("analysis_url"),
            timeout=transcripts.get("timeout_seconds", 30.0),
        )

    async def analyze(self, entries: list[TranscriptEntry], context: AnalysisContext):
        if not entries:
            logger.info(f"Session {context.session_ref} left an empty transcript, nothing to analyze")
            return

        if not self.analysis_url:
            logger.info(
                f"Session {context.session_ref} on {context.target} ({context.project}) "
                f"{context.outcome} after {context.duration_ms // 1000}s, {len(entries)} transcript entries"
            )
            return

        payload = {
            "context": context.to_dict(),
            "transcript": format_transcript(entries),
            "entries": [entry.to_dict() for entry in entries],
        }
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(self.analysis_url, json=payload)
            response.raise_for_status()
        logger.info(f"Transcript for session {context.session_ref} sent for analysis")
