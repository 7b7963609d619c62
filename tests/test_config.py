from __future__ import annotations

from pathlib import Path

import pytest

from mergebot import config
from mergebot.config import BotConfig, ConfigError


_FULL_CONFIG = """
server = "localhost:8084"
repository = "assets"
branch_prefix = "AST-"
merge_to_branches_attr_name = "target"
bot_user_api_key = "secret"

[runtime]
bot_name = "my bot"
base_dir = "~/tmp/mergebot"
rest_api_url = "http://localhost:7178"
websocket_url = "ws://localhost:7111/plug"
build_poll_interval_seconds = 2
build_timeout_seconds = 60

[plastic]
code_review_filter = true

[plastic.status_attribute]
name = "status"
resolved_value = "resolved"
testing_value = "testing"
failed_value = "failed"
merged_value = "merged"

[issues]
plug = "jira"
title_field = "summary"

[issues.status_field]
name = "status"
resolved_value = "Validated"
testing_value = "Testing"
failed_value = "Open"
merged_value = "Closed"

[ci]
plug = "jenkins"
plan = "debug plan"
plan_after_checkin = "release plan"

[notifiers.email]
plug = "email"
user_profile_field = "profile.email"
fixed_recipients = "qa@example.com; ops@example.com, qa@example.com"

[notifiers.slack]
plug = "slack"
fixed_recipients = ["#builds"]
""".strip()


def _write(path: Path, content: str) -> Path:
    path.write_text(content, encoding="utf-8")
    return path


def test_load_config_parses_every_section(tmp_path: Path) -> None:
    loaded = config.load_config(_write(tmp_path / "mergebot.toml", _FULL_CONFIG))

    assert isinstance(loaded, BotConfig)
    assert loaded.server == "localhost:8084"
    assert loaded.repository == "assets"
    assert loaded.branch_prefix == "AST-"
    assert loaded.runtime.bot_name == "my bot"
    assert loaded.runtime.base_dir.as_posix().endswith("/tmp/mergebot")
    assert loaded.runtime.websocket_api_key == "secret"
    assert loaded.runtime.build_poll_interval_seconds == 2
    assert loaded.runtime.build_timeout_seconds == 60
    assert loaded.runtime.requeue_delay_seconds == 5
    assert loaded.plastic.is_approved_code_review_filter_enabled is True
    assert loaded.plastic.is_branch_attr_filter_enabled is True
    assert loaded.issues is not None
    assert loaded.issues.project_key == "default_proj"
    assert loaded.issues.status_field is not None
    assert loaded.issues.status_field.resolved_value == "Validated"
    assert loaded.ci is not None
    assert loaded.ci.plan_after_checkin == "release plan"
    assert [notifier.name for notifier in loaded.notifiers] == ["email", "slack"]
    assert loaded.notifiers[0].fixed_recipients == ("qa@example.com", "ops@example.com")
    assert loaded.notifiers[0].user_profile_field == "profile.email"
    assert loaded.notifiers[1].fixed_recipients == ("#builds",)
    assert loaded.notifiers[1].user_profile_field is None
    assert loaded.state_db_path.name == "my-bot.db"


def test_optional_sections_default_to_none(tmp_path: Path) -> None:
    content = _FULL_CONFIG.split("[issues]")[0]
    loaded = config.load_config(_write(tmp_path / "mergebot.toml", content))

    assert loaded.issues is None
    assert loaded.ci is None
    assert loaded.notifiers == ()


def test_validation_aggregates_errors(tmp_path: Path) -> None:
    content = """
repository = ""

[runtime]
bot_name = "bot"
base_dir = "/tmp/mergebot"
rest_api_url = "http://localhost:7178"
websocket_url = "ws://localhost:7111/plug"

[plastic.status_attribute]
name = "status"
resolved_value = "merged"
merged_value = "Merged"

[ci]
plug = "jenkins"

[notifiers.email]
plug = "email"
""".strip()

    with pytest.raises(ConfigError) as excinfo:
        config.load_config(_write(tmp_path / "mergebot.toml", content))

    message = str(excinfo.value)
    assert message.startswith("Invalid mergebot configuration:")
    assert "* server must be defined" in message
    assert "* repository must be defined" in message
    assert "* merge_to_branches_attr_name must be defined" in message
    assert "* bot_user_api_key must be defined" in message
    assert "* plastic.status_attribute.failed_value must be defined" in message
    assert "resolved_value and plastic.status_attribute.merged_value must differ" in message
    assert "* ci.plan must be defined" in message
    assert "notifiers.email must define user_profile_field or fixed_recipients" in message


def test_validation_requires_some_filter(tmp_path: Path) -> None:
    content = _FULL_CONFIG.replace("code_review_filter = true", "code_review_filter = false")
    content = content.replace('resolved_value = "resolved"\n', "")

    with pytest.raises(ConfigError, match="code_review_filter must be enabled"):
        config.load_config(_write(tmp_path / "mergebot.toml", content))


def test_review_filter_alone_needs_no_resolved_value(tmp_path: Path) -> None:
    content = _FULL_CONFIG.replace('resolved_value = "resolved"\n', "")
    content = content.replace('failed_value = "failed"\n', "")

    loaded = config.load_config(_write(tmp_path / "mergebot.toml", content))

    assert loaded.plastic.is_branch_attr_filter_enabled is False
    assert loaded.plastic.is_approved_code_review_filter_enabled is True


def test_missing_runtime_table_is_rejected() -> None:
    with pytest.raises(ConfigError, match=r"\[runtime\] is required"):
        config.parse_config({"server": "s"})


@pytest.mark.parametrize(
    ("key", "value", "match"),
    [
        ("build_poll_interval_seconds", 0, "build_poll_interval_seconds must be >= 1"),
        ("build_timeout_seconds", 1, "build_timeout_seconds must be >="),
        ("requeue_delay_seconds", -1, "requeue_delay_seconds must be >= 0"),
        ("build_timeout_seconds", True, "build_timeout_seconds must be an integer"),
        ("build_timeout_seconds", "ten", "build_timeout_seconds must be an integer"),
    ],
)
def test_runtime_numeric_validation(key: str, value: object, match: str) -> None:
    runtime: dict[str, object] = {
        "bot_name": "bot",
        "base_dir": "/tmp/mergebot",
        "rest_api_url": "http://localhost",
        "websocket_url": "ws://localhost",
        "build_poll_interval_seconds": 5,
        key: value,
    }
    with pytest.raises(ConfigError, match=match):
        config.parse_config({"runtime": runtime})


def test_type_errors_are_reported() -> None:
    runtime: dict[str, object] = {
        "bot_name": "bot",
        "base_dir": "/tmp/mergebot",
        "rest_api_url": "http://localhost",
        "websocket_url": "ws://localhost",
    }
    with pytest.raises(ConfigError, match="code_review_filter must be a boolean"):
        config.parse_config({"runtime": runtime, "plastic": {"code_review_filter": "yes"}})
    with pytest.raises(ConfigError, match=r"\[notifiers.bad\] must be a TOML table"):
        config.parse_config({"runtime": runtime, "notifiers": {"bad": "x"}})
    with pytest.raises(ConfigError, match="fixed_recipients must be a string or a list"):
        config.parse_config(
            {"runtime": runtime, "notifiers": {"email": {"plug": "e", "fixed_recipients": 3}}}
        )
    with pytest.raises(ConfigError, match="bot_name is required"):
        config.parse_config({"runtime": {**runtime, "bot_name": ""}})


def test_escaped_bot_name_and_split_recipients() -> None:
    assert config.escaped_bot_name('a/b\\c:d*e f') == "a-b-c-d-e-f"
    assert config.split_recipients(" a ; b,,a ;") == ("a", "b")
