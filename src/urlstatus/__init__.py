# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""URL Status: classify URLs against a remote record store.

Reports one of four states for any URL:
- GREEN: the URL (or an equivalent variant) is stored as a record
- ORANGE: a broader/related URL is stored (probably related)
- RED: neither the URL nor its ancestors are stored
- GRAY: unknown, checking, excluded by rules, or an error occurred
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import StrEnum


class Status(StrEnum):
    """Classification state surfaced to the UI collaborator."""

    GRAY = "GRAY"
    GREEN = "GREEN"
    ORANGE = "ORANGE"
    RED = "RED"


EXCLUDED_TEXT = "URL excluded by domain rules."


def default_text(
    state: Status,
    *,
    matching_urls: list[str] | None = None,
    error: str = "",
    domain_excluded: bool = False,
) -> str:
    """Human-readable status line for *state* when no explicit text is given."""
    if state == Status.GREEN:
        return "URL found in the database."
    if state == Status.RED:
        return EXCLUDED_TEXT if domain_excluded else "URL not found in the database."
    if state == Status.ORANGE:
        return f"Found {len(matching_urls or [])} similar URLs."
    if error:
        return f"Error: {error}"
    return EXCLUDED_TEXT if domain_excluded else "Checking status..."


@dataclass
class ClassificationResult:
    """Outcome of one classification, as published to the status sink."""

    url: str
    state: Status
    text: str = ""
    matching_urls: list[str] = field(default_factory=list)  # ORANGE only
    canonical_url: str = ""  # GREEN only
    record_url: str = ""  # GREEN only: link to the stored record
    error: str = ""
    domain_excluded: bool = False
    needs_authentication: bool = False
    provisional: bool = False  # shown while a reconciled check is pending
    timestamp: float = field(default_factory=time.time)

    def __post_init__(self) -> None:
        if not self.text:
            self.text = default_text(
                self.state,
                matching_urls=self.matching_urls,
                error=self.error,
                domain_excluded=self.domain_excluded,
            )

    def to_dict(self) -> dict:
        data: dict = {
            "url": self.url,
            "state": self.state.value,
            "text": self.text,
            "timestamp": self.timestamp,
        }
        if self.matching_urls:
            data["matching_urls"] = list(self.matching_urls)
        if self.canonical_url:
            data["canonical_url"] = self.canonical_url
        if self.record_url:
            data["record_url"] = self.record_url
        if self.error:
            data["error"] = self.error
        if self.domain_excluded:
            data["domain_excluded"] = True
        if self.needs_authentication:
            data["needs_authentication"] = True
        if self.provisional:
            data["provisional"] = True
        return data

    @classmethod
    def from_dict(cls, data: dict) -> ClassificationResult:
        return cls(
            url=data.get("url", ""),
            state=Status(data.get("state", Status.GRAY)),
            text=data.get("text", ""),
            matching_urls=list(data.get("matching_urls", [])),
            canonical_url=data.get("canonical_url", ""),
            record_url=data.get("record_url", ""),
            error=data.get("error", ""),
            domain_excluded=bool(data.get("domain_excluded", False)),
            needs_authentication=bool(data.get("needs_authentication", False)),
            provisional=bool(data.get("provisional", False)),
            timestamp=float(data.get("timestamp", 0.0)) or time.time(),
        )
