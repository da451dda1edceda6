"""Pluggable text classifier consulted by the risk scanner."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping, Optional, Protocol

import httpx


@dataclass(frozen=True)
class ClassifierVerdict:
    scores: Mapping[str, float] = field(default_factory=dict)
    model_version: Optional[str] = None

    def top_category(self) -> tuple[Optional[str], float]:
        if not self.scores:
            return None, 0.0
        label = max(self.scores, key=lambda key: self.scores[key])
        return label, float(self.scores[label])


class ContentClassifier(Protocol):
    async def classify(self, text: str) -> ClassifierVerdict:
        ...


@dataclass
class HttpContentClassifier:
    """Moderation-style endpoint returning ``{"results": [{"category_scores": {...}}]}``."""

    http: httpx.AsyncClient
    endpoint: str
    api_key: Optional[str] = None
    request_timeout: float = 2.0

    async def classify(self, text: str) -> ClassifierVerdict:
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else None
        response = await self.http.post(
            self.endpoint,
            json={"input": text},
            headers=headers,
            timeout=self.request_timeout,
        )
        response.raise_for_status()
        payload = response.json()
        results = payload.get("results") or [{}]
        raw_scores = results[0].get("category_scores") or {}
        scores = {str(label): float(score) for label, score in raw_scores.items()}
        return ClassifierVerdict(scores=scores, model_version=payload.get("model"))
