"""Read-mostly views of collaborator data: content items and user reports."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Optional, Protocol, Sequence

HARD_HIDDEN_STATUSES = frozenset({"hidden", "removed"})
SCANNABLE_STATUSES = frozenset({"live"})
INGEST_FILTER_STATUSES = frozenset({"live", "processing"})


@dataclass(slots=True)
class ContentRecord:
    content_ref: str
    created_at: datetime
    author_id: Optional[str] = None
    status: str = "live"
    text: Optional[str] = None
    content_rating: Optional[str] = None
    duration_seconds: Optional[float] = None
    file_size_bytes: Optional[int] = None
    last_checked_at: Optional[datetime] = None
    risk: Optional[float] = None
    flagged: bool = False

    @property
    def has_audio(self) -> bool:
        return self.duration_seconds is not None or self.file_size_bytes is not None

    @property
    def scannable(self) -> bool:
        return self.status in SCANNABLE_STATUSES and (bool(self.text and self.text.strip()) or self.has_audio)


Cursor = tuple[datetime, str]


class ContentStore(Protocol):
    async def get(self, content_ref: str) -> Optional[ContentRecord]:
        ...

    async def list_scan_candidates(
        self,
        *,
        stale_before: datetime,
        limit: int,
        cursor: Optional[Cursor] = None,
    ) -> Sequence[ContentRecord]:
        """Scannable items never checked or last checked before ``stale_before``.

        Newest first by (created_at, content_ref), strictly after ``cursor`` in that order.
        """

    async def mark_checked(self, content_ref: str, *, checked_at: datetime, risk: float, flagged: bool) -> None:
        ...

    async def set_status(self, content_ref: str, status: str) -> bool:
        ...


class InMemoryContentStore:
    def __init__(self) -> None:
        self._items: dict[str, ContentRecord] = {}

    async def put(self, record: ContentRecord) -> ContentRecord:
        self._items[record.content_ref] = replace(record)
        return record

    async def get(self, content_ref: str) -> Optional[ContentRecord]:
        record = self._items.get(content_ref)
        return replace(record) if record else None

    async def list_scan_candidates(
        self,
        *,
        stale_before: datetime,
        limit: int,
        cursor: Optional[Cursor] = None,
    ) -> Sequence[ContentRecord]:
        rows = [
            r
            for r in self._items.values()
            if r.scannable and (r.last_checked_at is None or r.last_checked_at < stale_before)
        ]
        rows.sort(key=lambda r: (r.created_at, r.content_ref), reverse=True)
        if cursor is not None:
            rows = [r for r in rows if (r.created_at, r.content_ref) < cursor]
        return [replace(r) for r in rows[:limit]]

    async def mark_checked(self, content_ref: str, *, checked_at: datetime, risk: float, flagged: bool) -> None:
        record = self._items.get(content_ref)
        if record is None:
            return
        record.last_checked_at = checked_at
        record.risk = risk
        record.flagged = flagged

    async def set_status(self, content_ref: str, status: str) -> bool:
        record = self._items.get(content_ref)
        if record is None:
            return False
        record.status = status
        return True


@dataclass(slots=True)
class Report:
    id: str
    content_ref: str
    reporter_id: str
    reason: str
    created_at: datetime
    state: str = "open"
    resolved_at: Optional[datetime] = None


class ReportRepository(Protocol):
    async def add(self, report: Report) -> Report:
        ...

    async def count_open(self, content_ref: str) -> int:
        ...

    async def resolve_open(self, content_ref: str, *, resolved_at: datetime) -> int:
        ...


class InMemoryReportRepository:
    def __init__(self) -> None:
        self._reports: dict[str, Report] = {}

    async def add(self, report: Report) -> Report:
        self._reports[report.id] = replace(report)
        return report

    async def count_open(self, content_ref: str) -> int:
        return sum(1 for r in self._reports.values() if r.content_ref == content_ref and r.state == "open")

    async def resolve_open(self, content_ref: str, *, resolved_at: datetime) -> int:
        resolved = 0
        for report in self._reports.values():
            if report.content_ref == content_ref and report.state == "open":
                report.state = "resolved"
                report.resolved_at = resolved_at
                resolved += 1
        return resolved

    def open_content_refs(self) -> set[str]:
        return {r.content_ref for r in self._reports.values() if r.state == "open"}
