"""Declarative per-action rate limit table."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml

from warden.moderation.domain.errors import ValidationError

logger = logging.getLogger(__name__)

KEY_SCOPES = frozenset({"subject", "ip", "device"})
HOUR = 3600
DAY = 86400


@dataclass(frozen=True, slots=True)
class WindowLimit:
    name: str
    seconds: int
    max_count: int


@dataclass(frozen=True, slots=True)
class ActionLimit:
    """Thresholds for one action; every configured threshold must pass."""

    action: str
    windows: tuple[WindowLimit, ...] = ()
    cooldown_seconds: int = 0
    max_active: Optional[int] = None
    min_account_age_seconds: int = 0
    key_scope: str = "subject"
    fail_closed: bool = False

    @property
    def longest_window_seconds(self) -> int:
        return max([w.seconds for w in self.windows] + [self.cooldown_seconds, 0])


@dataclass(frozen=True, slots=True)
class WeightedBudget:
    name: str
    window_seconds: int
    budget: int


class RateLimitTable:
    """Lookup of action limits and weighted budgets, loaded once at startup."""

    def __init__(
        self,
        actions: Mapping[str, ActionLimit],
        budgets: Mapping[str, WeightedBudget] | None = None,
    ) -> None:
        self._actions = dict(actions)
        self._budgets = dict(budgets or {})

    @property
    def actions(self) -> Mapping[str, ActionLimit]:
        return dict(self._actions)

    def get(self, action: str) -> ActionLimit:
        try:
            return self._actions[action]
        except KeyError:
            raise ValidationError(f"unknown_action:{action}") from None

    def budget(self, name: str) -> WeightedBudget:
        try:
            return self._budgets[name]
        except KeyError:
            raise ValidationError(f"unknown_budget:{name}") from None

    def longest_window_seconds(self) -> int:
        spans = [limit.longest_window_seconds for limit in self._actions.values()]
        spans.extend(b.window_seconds for b in self._budgets.values())
        return max(spans, default=DAY)

    @staticmethod
    def default() -> "RateLimitTable":
        return RateLimitTable.from_mapping(DEFAULT_CONFIG)

    @staticmethod
    def from_mapping(config: Mapping[str, Any]) -> "RateLimitTable":
        actions: dict[str, ActionLimit] = {}
        for name, raw in (config.get("actions") or {}).items():
            if not isinstance(raw, Mapping):
                raise ValidationError(f"invalid_action_config:{name}")
            actions[str(name)] = _parse_action(str(name), raw)
        budgets: dict[str, WeightedBudget] = {}
        for name, raw in (config.get("weighted") or {}).items():
            if not isinstance(raw, Mapping):
                raise ValidationError(f"invalid_budget_config:{name}")
            window = int(raw.get("window_seconds", HOUR))
            budget = int(raw.get("budget", 0))
            if window <= 0 or budget < 0:
                raise ValidationError(f"invalid_budget_config:{name}")
            budgets[str(name)] = WeightedBudget(name=str(name), window_seconds=window, budget=budget)
        return RateLimitTable(actions, budgets)


def _parse_action(name: str, raw: Mapping[str, Any]) -> ActionLimit:
    windows = []
    for idx, item in enumerate(raw.get("windows") or ()):
        seconds = int(item["seconds"])
        max_count = int(item["max_count"])
        if seconds <= 0 or max_count < 0:
            raise ValidationError(f"invalid_window:{name}")
        windows.append(WindowLimit(name=str(item.get("name") or f"w{idx}"), seconds=seconds, max_count=max_count))
    scope = str(raw.get("key_scope", "subject"))
    if scope not in KEY_SCOPES:
        raise ValidationError(f"invalid_key_scope:{name}")
    max_active = raw.get("max_active")
    cooldown = int(raw.get("cooldown_seconds", 0))
    min_age_days = float(raw.get("min_account_age_days", 0))
    if cooldown < 0 or min_age_days < 0 or (max_active is not None and int(max_active) < 0):
        raise ValidationError(f"invalid_action_config:{name}")
    return ActionLimit(
        action=name,
        windows=tuple(windows),
        cooldown_seconds=cooldown,
        max_active=int(max_active) if max_active is not None else None,
        min_account_age_seconds=int(min_age_days * DAY),
        key_scope=scope,
        fail_closed=bool(raw.get("fail_closed", False)),
    )


def load_rate_limit_table(path: str | Path) -> RateLimitTable:
    """Load the table from YAML, falling back to the built-in defaults when the file is absent."""

    try:
        text = Path(path).read_text(encoding="utf-8")
    except FileNotFoundError:
        logger.warning("rate limit config missing at %s; using defaults", path)
        return RateLimitTable.default()
    data = yaml.safe_load(text)
    if not isinstance(data, Mapping):
        raise ValidationError(f"invalid_rate_limit_config:{path}")
    return RateLimitTable.from_mapping(data)


DEFAULT_CONFIG: Mapping[str, Any] = {
    "actions": {
        "signup": {
            "key_scope": "ip",
            "fail_closed": True,
            "windows": [
                {"name": "hourly", "seconds": HOUR, "max_count": 1},
                {"name": "daily", "seconds": DAY, "max_count": 3},
            ],
        },
        "community_create": {
            "min_account_age_days": 7,
            "windows": [{"name": "daily", "seconds": DAY, "max_count": 1}],
        },
        "room_create": {
            "cooldown_seconds": HOUR,
            "max_active": 1,
            "windows": [{"name": "daily", "seconds": DAY, "max_count": 3}],
        },
        "follow": {
            "cooldown_seconds": 1,
            "windows": [
                {"name": "hourly", "seconds": HOUR, "max_count": 200},
                {"name": "daily", "seconds": DAY, "max_count": 1000},
            ],
        },
        "schedule_post": {
            "max_active": 50,
            "windows": [{"name": "hourly", "seconds": HOUR, "max_count": 10}],
        },
        "report": {
            "windows": [{"name": "hourly", "seconds": HOUR, "max_count": 20}],
        },
    },
    "weighted": {
        "query": {"window_seconds": HOUR, "budget": 1000},
    },
}
