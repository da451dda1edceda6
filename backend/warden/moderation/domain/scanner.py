"""Heuristic content risk scoring, the publish-time filter, and the batch scan that turns findings into flags."""

from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from warden.moderation.domain.classifier import ContentClassifier
from warden.moderation.domain.content import INGEST_FILTER_STATUSES, ContentRecord, ContentStore, Cursor
from warden.moderation.domain.context import RequestContext
from warden.moderation.domain.errors import NotFoundError, ValidationError
from warden.moderation.domain.flags import MAX_RISK, SOURCE_FILTER, SOURCE_SCAN, FlagWorkflow
from warden.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)

_LINK_RE = re.compile(r"https?://", re.IGNORECASE)

FILTER_RISK = 5.0
FILTERED_STATUS = "hidden"


class ScanVerdict(str, Enum):
    CLEAN = "clean"
    NEEDS_REVIEW = "needs_review"
    REJECT = "reject"


@dataclass(frozen=True, slots=True)
class ScanResult:
    should_flag: bool
    risk: float
    reasons: tuple[str, ...]
    verdict: ScanVerdict
    classifier_used: bool = False


@dataclass(frozen=True, slots=True)
class ScanHeuristics:
    min_text_length: int = 10
    repeat_run_length: int = 11
    caps_min_length: int = 20
    caps_ratio: float = 0.8
    max_links: int = 3
    min_bytes_per_second: float = 3000.0
    max_bytes_per_second: float = 200000.0
    max_duration_seconds: float = 3600.0
    classifier_threshold: float = 0.5
    classifier_weight: float = 5.0


@dataclass(frozen=True, slots=True)
class ScanBatchResult:
    scanned: int = 0
    flagged: int = 0
    errors: int = 0


@dataclass(frozen=True, slots=True)
class FilterDecision:
    should_filter: bool
    reason: Optional[str] = None
    severity: Optional[str] = None


class ContentFilterRules:
    """Cheap checks applied when content is published; the first matching rule wins."""

    def __init__(self, *, repeat_run_length: int = 21, max_links: int = 3) -> None:
        self._repeat_re = re.compile(r"(.)\1{%d,}" % (repeat_run_length - 1), re.DOTALL)
        self._max_links = max_links

    def check(self, text: Optional[str], content_rating: Optional[str] = None) -> FilterDecision:
        if not text or not text.strip():
            return FilterDecision(False)
        if (content_rating or "").lower() == "explicit":
            return FilterDecision(True, "explicit_content_rating", "medium")
        if self._repeat_re.search(text):
            return FilterDecision(True, "suspicious_pattern", "low")
        if len(_LINK_RE.findall(text)) > self._max_links:
            return FilterDecision(True, "excessive_links", "medium")
        return FilterDecision(False)


class ContentRiskScanner:
    """Scores one content item; each matching heuristic adds a reason and a risk increment."""

    def __init__(
        self,
        *,
        heuristics: ScanHeuristics | None = None,
        classifier: ContentClassifier | None = None,
        classifier_timeout: float = 2.0,
    ) -> None:
        self._h = heuristics or ScanHeuristics()
        self._classifier = classifier
        self._classifier_timeout = classifier_timeout
        self._repeat_re = re.compile(r"(.)\1{%d,}" % (self._h.repeat_run_length - 1), re.DOTALL)

    async def scan(self, content: ContentRecord) -> ScanResult:
        findings: list[tuple[str, float]] = []
        reject = False

        if content.text is not None:
            findings.extend(self._text_findings(content.text))
        if (content.content_rating or "").lower() == "explicit":
            findings.append(("explicit_rating", 4.0))
        if content.has_audio:
            audio, reject = self._audio_findings(content)
            findings.extend(audio)

        classifier_used = False
        if content.text and content.text.strip() and self._classifier is not None:
            classified = await self._classify(self._classifier, content.text)
            if classified is not None:
                classifier_used = True
                findings.extend(classified)

        reasons = tuple(reason for reason, _ in findings)
        if reject:
            return ScanResult(True, MAX_RISK, reasons, ScanVerdict.REJECT, classifier_used)
        risk = round(min(sum(weight for _, weight in findings), MAX_RISK), 1)
        if not findings:
            return ScanResult(False, 0.0, (), ScanVerdict.CLEAN, classifier_used)
        return ScanResult(True, risk, reasons, ScanVerdict.NEEDS_REVIEW, classifier_used)

    def _text_findings(self, text: str) -> list[tuple[str, float]]:
        h = self._h
        findings: list[tuple[str, float]] = []
        if len(text.strip()) < h.min_text_length:
            findings.append(("very_short_content", 2.0))
        if self._repeat_re.search(text):
            findings.append(("repeated_characters", 5.0))
        if len(text) > h.caps_min_length:
            upper = sum(1 for ch in text if ch.isupper())
            if upper / len(text) > h.caps_ratio:
                findings.append(("excessive_capitalization", 3.0))
        if len(_LINK_RE.findall(text)) > h.max_links:
            findings.append(("excessive_links", 4.0))
        return findings

    def _audio_findings(self, content: ContentRecord) -> tuple[list[tuple[str, float]], bool]:
        h = self._h
        duration = content.duration_seconds
        size = content.file_size_bytes
        if duration is None or duration <= 0:
            return [("invalid_duration", 0.0)], True
        if size is None or size <= 0:
            return [("empty_audio", 0.0)], True
        bytes_per_second = size / max(duration, 1.0)
        if bytes_per_second < h.min_bytes_per_second:
            return [("low_bitrate", 0.0)], True
        findings: list[tuple[str, float]] = []
        if bytes_per_second > h.max_bytes_per_second:
            findings.append(("suspiciously_high_bitrate", 3.0))
        if duration > h.max_duration_seconds:
            findings.append(("unusually_long_duration", 2.0))
        return findings, False

    async def _classify(self, classifier: ContentClassifier, text: str) -> Optional[list[tuple[str, float]]]:
        try:
            verdict = await asyncio.wait_for(classifier.classify(text), timeout=self._classifier_timeout)
        except asyncio.TimeoutError:
            obs_metrics.inc_classifier_fallback("timeout")
            logger.warning("classifier timed out; using heuristics only", extra={"timeout_s": self._classifier_timeout})
            return None
        except Exception:  # any classifier failure degrades to the heuristics
            obs_metrics.inc_classifier_fallback("error")
            logger.warning("classifier failed; using heuristics only", exc_info=True)
            return None
        label, score = verdict.top_category()
        if label is None or score < self._h.classifier_threshold:
            return []
        return [(f"classifier:{label}", round(score * self._h.classifier_weight, 2))]


class ContentScanService:
    """Runs the scanner over stale content and opens flags for findings."""

    def __init__(
        self,
        *,
        store: ContentStore,
        scanner: ContentRiskScanner,
        workflow: FlagWorkflow,
        staleness: timedelta = timedelta(hours=24),
        default_limit: int = 100,
        rules: ContentFilterRules | None = None,
    ) -> None:
        self._store = store
        self._scanner = scanner
        self._workflow = workflow
        self._staleness = staleness
        self._default_limit = default_limit
        self._rules = rules or ContentFilterRules()

    async def filter_on_ingest(
        self,
        content_ref: str,
        *,
        ctx: RequestContext | None = None,
        now: datetime | None = None,
    ) -> FilterDecision:
        """Hide freshly published content that trips a filter rule and queue it for review.

        Only live or processing items are considered; anything else is left untouched.
        """
        content = await self._store.get(content_ref)
        if content is None:
            raise NotFoundError("content_not_found")
        if content.status not in INGEST_FILTER_STATUSES:
            return FilterDecision(False)
        decision = self._rules.check(content.text, content.content_rating)
        if not decision.should_filter:
            obs_metrics.inc_ingest_filter("pass")
            return decision

        now = now or datetime.now(timezone.utc)
        await self._store.set_status(content_ref, FILTERED_STATUS)
        await self._workflow.open_flag(
            content_ref,
            [f"auto_filtered:{decision.reason}"],
            FILTER_RISK,
            SOURCE_FILTER,
            content=content,
            ctx=ctx,
            now=now,
        )
        obs_metrics.inc_ingest_filter(decision.reason or "unknown")
        logger.info(
            "content filtered on ingest",
            extra={"content_ref": content_ref, "reason": decision.reason, "severity": decision.severity},
        )
        return decision

    async def scan_content(self, content_ref: str, *, now: datetime | None = None) -> ScanResult:
        content = await self._store.get(content_ref)
        if content is None:
            raise NotFoundError("content_not_found")
        now = now or datetime.now(timezone.utc)
        result, _ = await self._scan_one(content, now)
        return result

    async def scan_batch(self, limit: int | None = None, *, now: datetime | None = None) -> ScanBatchResult:
        limit = self._default_limit if limit is None else limit
        if limit <= 0:
            raise ValidationError("limit_must_be_positive")
        now = now or datetime.now(timezone.utc)
        stale_before = now - self._staleness
        scanned = flagged = errors = 0
        cursor: Optional[Cursor] = None

        while scanned < limit:
            page = await self._store.list_scan_candidates(
                stale_before=stale_before, limit=limit - scanned, cursor=cursor
            )
            if not page:
                break
            for content in page:
                cursor = (content.created_at, content.content_ref)
                try:
                    if await self._workflow.has_open_flag(content.content_ref):
                        continue
                    _, created = await self._scan_one(content, now)
                except Exception:
                    scanned += 1
                    errors += 1
                    obs_metrics.inc_scan_item("error")
                    logger.exception("content scan failed", extra={"content_ref": content.content_ref})
                    continue
                scanned += 1
                if created:
                    flagged += 1

        result = ScanBatchResult(scanned=scanned, flagged=flagged, errors=errors)
        logger.info("scan batch complete", extra={"scanned": scanned, "flagged": flagged, "errors": errors})
        return result

    async def _scan_one(self, content: ContentRecord, now: datetime) -> tuple[ScanResult, bool]:
        started = time.perf_counter()
        result = await self._scanner.scan(content)
        obs_metrics.observe_scan_latency(time.perf_counter() - started)
        fresh = content.last_checked_at is not None and content.last_checked_at > now - self._staleness
        created = False
        if result.should_flag and not fresh:
            _, created = await self._workflow.open_flag(
                content.content_ref,
                result.reasons,
                result.risk,
                SOURCE_SCAN,
                content=content,
                now=now,
            )
        await self._store.mark_checked(
            content.content_ref, checked_at=now, risk=result.risk, flagged=result.should_flag
        )
        obs_metrics.inc_scan_item("flagged" if created else "clean" if not result.should_flag else "checked")
        return result, created
