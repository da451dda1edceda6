from pathlib import Path

import pytest

from warden.moderation.domain.container import BACKEND_ROOT
from warden.moderation.domain.errors import ValidationError
from warden.moderation.domain.rate_limit_config import RateLimitTable, load_rate_limit_table


def test_shipped_config_matches_builtin_defaults() -> None:
    shipped = load_rate_limit_table(BACKEND_ROOT / "config" / "rate_limits.yml")
    default = RateLimitTable.default()
    assert shipped.actions == default.actions
    assert shipped.budget("query") == default.budget("query")


def test_default_table_thresholds() -> None:
    table = RateLimitTable.default()
    signup = table.get("signup")
    assert signup.key_scope == "ip"
    assert signup.fail_closed
    assert [(w.seconds, w.max_count) for w in signup.windows] == [(3600, 1), (86400, 3)]
    assert table.get("community_create").min_account_age_seconds == 7 * 86400
    room = table.get("room_create")
    assert room.cooldown_seconds == 3600
    assert room.max_active == 1
    assert table.budget("query").budget == 1000
    assert table.longest_window_seconds() == 86400


def test_load_from_yaml(tmp_path: Path) -> None:
    path = tmp_path / "limits.yml"
    path.write_text(
        "actions:\n"
        "  comment:\n"
        "    key_scope: device\n"
        "    cooldown_seconds: 5\n"
        "    windows:\n"
        "      - {name: burst, seconds: 10, max_count: 2}\n"
        "      - {seconds: 600, max_count: 20}\n",
        encoding="utf-8",
    )
    table = load_rate_limit_table(path)
    comment = table.get("comment")
    assert comment.key_scope == "device"
    assert comment.cooldown_seconds == 5
    assert [w.name for w in comment.windows] == ["burst", "w1"]
    assert comment.longest_window_seconds == 600


def test_missing_file_falls_back_to_defaults(tmp_path: Path) -> None:
    table = load_rate_limit_table(tmp_path / "absent.yml")
    assert table.actions == RateLimitTable.default().actions


def test_non_mapping_document_is_rejected(tmp_path: Path) -> None:
    path = tmp_path / "limits.yml"
    path.write_text("- just\n- a list\n", encoding="utf-8")
    with pytest.raises(ValidationError):
        load_rate_limit_table(path)


@pytest.mark.parametrize(
    "action",
    [
        {"key_scope": "galaxy"},
        {"cooldown_seconds": -1},
        {"windows": [{"seconds": 0, "max_count": 1}]},
    ],
)
def test_invalid_action_config_is_rejected(action: dict) -> None:
    with pytest.raises(ValidationError):
        RateLimitTable.from_mapping({"actions": {"broken": action}})


def test_unknown_budget_is_rejected() -> None:
    with pytest.raises(ValidationError) as exc:
        RateLimitTable.default().budget("uploads")
    assert exc.value.detail == "unknown_budget:uploads"
