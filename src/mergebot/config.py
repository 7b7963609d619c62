from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import re
import tomllib
from typing import cast


_DEFAULT_PROJECT_KEY = "default_proj"
_RECIPIENT_SEPARATORS = re.compile(r"[;,]")


@dataclass(frozen=True)
class RuntimeConfig:
    bot_name: str
    base_dir: Path
    rest_api_url: str
    websocket_url: str
    websocket_api_key: str
    build_poll_interval_seconds: int = 5
    build_timeout_seconds: int = 4 * 60 * 60
    requeue_delay_seconds: int = 5


@dataclass(frozen=True)
class StatusFieldConfig:
    name: str
    resolved_value: str
    testing_value: str
    failed_value: str
    merged_value: str


@dataclass(frozen=True)
class PlasticConfig:
    code_review_filter: bool
    status_attribute: StatusFieldConfig

    @property
    def is_branch_attr_filter_enabled(self) -> bool:
        return bool(
            self.status_attribute.name.strip() and self.status_attribute.resolved_value.strip()
        )

    @property
    def is_approved_code_review_filter_enabled(self) -> bool:
        return self.code_review_filter


@dataclass(frozen=True)
class IssueTrackerConfig:
    plug: str
    project_key: str
    title_field: str
    status_field: StatusFieldConfig | None


@dataclass(frozen=True)
class CiConfig:
    plug: str
    plan: str
    plan_after_checkin: str | None


@dataclass(frozen=True)
class NotifierConfig:
    name: str
    plug: str
    user_profile_field: str | None
    fixed_recipients: tuple[str, ...]


@dataclass(frozen=True)
class BotConfig:
    runtime: RuntimeConfig
    server: str
    repository: str
    branch_prefix: str
    merge_to_branches_attr_name: str
    bot_user_api_key: str
    plastic: PlasticConfig
    issues: IssueTrackerConfig | None
    ci: CiConfig | None
    notifiers: tuple[NotifierConfig, ...]

    @property
    def state_db_path(self) -> Path:
        return self.runtime.base_dir / f"{escaped_bot_name(self.runtime.bot_name)}.db"


class ConfigError(ValueError):
    pass


def load_config(path: Path) -> BotConfig:
    with path.open("rb") as fh:
        data = tomllib.load(fh)
    config = parse_config(cast(dict[str, object], data))
    validate_config(config)
    return config


def parse_config(data: dict[str, object]) -> BotConfig:
    """Build a BotConfig from decoded TOML.

    Type errors raise immediately; semantic problems are left to
    ``validate_config`` so they can be reported together.
    """
    runtime_data = _require_table(data, "runtime")
    plastic_data = _optional_table(data, "plastic") or {}
    status_data = _optional_table(plastic_data, "status_attribute") or {}
    issues_data = _optional_table(data, "issues")
    ci_data = _optional_table(data, "ci")
    notifiers_data = _optional_table(data, "notifiers") or {}

    bot_user_api_key = _str_with_default(data, "bot_user_api_key", "")
    runtime = RuntimeConfig(
        bot_name=_require_str(runtime_data, "bot_name"),
        base_dir=Path(_require_str(runtime_data, "base_dir")).expanduser(),
        rest_api_url=_require_str(runtime_data, "rest_api_url"),
        websocket_url=_require_str(runtime_data, "websocket_url"),
        websocket_api_key=_str_with_default(runtime_data, "websocket_api_key", bot_user_api_key),
        build_poll_interval_seconds=_int_with_default(
            runtime_data, "build_poll_interval_seconds", 5
        ),
        build_timeout_seconds=_int_with_default(runtime_data, "build_timeout_seconds", 14400),
        requeue_delay_seconds=_int_with_default(runtime_data, "requeue_delay_seconds", 5),
    )
    if runtime.build_poll_interval_seconds < 1:
        raise ConfigError("runtime.build_poll_interval_seconds must be >= 1")
    if runtime.build_timeout_seconds < runtime.build_poll_interval_seconds:
        raise ConfigError(
            "runtime.build_timeout_seconds must be >= runtime.build_poll_interval_seconds"
        )
    if runtime.requeue_delay_seconds < 0:
        raise ConfigError("runtime.requeue_delay_seconds must be >= 0")

    return BotConfig(
        runtime=runtime,
        server=_str_with_default(data, "server", ""),
        repository=_str_with_default(data, "repository", ""),
        branch_prefix=_str_with_default(data, "branch_prefix", ""),
        merge_to_branches_attr_name=_str_with_default(data, "merge_to_branches_attr_name", ""),
        bot_user_api_key=bot_user_api_key,
        plastic=PlasticConfig(
            code_review_filter=_bool_with_default(plastic_data, "code_review_filter", False),
            status_attribute=_parse_status_field(status_data),
        ),
        issues=_parse_issues(issues_data) if issues_data is not None else None,
        ci=_parse_ci(ci_data) if ci_data is not None else None,
        notifiers=_parse_notifiers(notifiers_data),
    )


def validate_config(config: BotConfig) -> None:
    errors: list[str] = []
    _check_required(errors, config.server, "server")
    _check_required(errors, config.repository, "repository")
    _check_required(errors, config.merge_to_branches_attr_name, "merge_to_branches_attr_name")
    _check_required(errors, config.bot_user_api_key, "bot_user_api_key")

    plastic = config.plastic
    if not (plastic.is_branch_attr_filter_enabled or plastic.is_approved_code_review_filter_enabled):
        errors.append(
            "plastic.code_review_filter must be enabled or "
            "plastic.status_attribute must define name and resolved_value"
        )
    _check_status_field(
        errors,
        plastic.status_attribute,
        "plastic.status_attribute",
        requires_resolved=not plastic.code_review_filter,
    )

    if config.issues is not None:
        _check_required(errors, config.issues.plug, "issues.plug")
        _check_required(errors, config.issues.title_field, "issues.title_field")
        if config.issues.status_field is not None:
            _check_required(errors, config.issues.status_field.name, "issues.status_field.name")
            _check_required(
                errors,
                config.issues.status_field.resolved_value,
                "issues.status_field.resolved_value",
            )

    if config.ci is not None:
        _check_required(errors, config.ci.plug, "ci.plug")
        _check_required(errors, config.ci.plan, "ci.plan")

    for notifier in config.notifiers:
        prefix = f"notifiers.{notifier.name}"
        _check_required(errors, notifier.plug, f"{prefix}.plug")
        if not notifier.user_profile_field and not notifier.fixed_recipients:
            errors.append(
                f"{prefix} must define user_profile_field or fixed_recipients"
            )

    if errors:
        details = "".join(f"\n* {error}" for error in errors)
        raise ConfigError(f"Invalid mergebot configuration:{details}")


def escaped_bot_name(bot_name: str) -> str:
    cleaned = bot_name
    for character in '/\\<>:"|?* ':
        cleaned = cleaned.replace(character, "-")
    return cleaned


def split_recipients(value: str) -> tuple[str, ...]:
    out: list[str] = []
    for item in _RECIPIENT_SEPARATORS.split(value):
        normalized = item.strip()
        if normalized and normalized not in out:
            out.append(normalized)
    return tuple(out)


def _check_required(errors: list[str], value: str | None, key: str) -> None:
    if value is None or not value.strip():
        errors.append(f"{key} must be defined")


def _check_status_field(
    errors: list[str], field: StatusFieldConfig, prefix: str, *, requires_resolved: bool
) -> None:
    _check_required(errors, field.name, f"{prefix}.name")
    if requires_resolved:
        _check_required(errors, field.resolved_value, f"{prefix}.resolved_value")
        _check_required(errors, field.failed_value, f"{prefix}.failed_value")
    _check_required(errors, field.merged_value, f"{prefix}.merged_value")

    resolved = field.resolved_value.strip().lower()
    if not resolved:
        return
    if resolved == field.merged_value.strip().lower():
        errors.append(f"{prefix}.resolved_value and {prefix}.merged_value must differ")
    if resolved == field.failed_value.strip().lower():
        errors.append(f"{prefix}.resolved_value and {prefix}.failed_value must differ")


def _parse_status_field(data: dict[str, object]) -> StatusFieldConfig:
    return StatusFieldConfig(
        name=_str_with_default(data, "name", ""),
        resolved_value=_str_with_default(data, "resolved_value", ""),
        testing_value=_str_with_default(data, "testing_value", ""),
        failed_value=_str_with_default(data, "failed_value", ""),
        merged_value=_str_with_default(data, "merged_value", ""),
    )


def _parse_issues(data: dict[str, object]) -> IssueTrackerConfig:
    status_data = _optional_table(data, "status_field")
    return IssueTrackerConfig(
        plug=_str_with_default(data, "plug", ""),
        project_key=_str_with_default(data, "project_key", _DEFAULT_PROJECT_KEY)
        or _DEFAULT_PROJECT_KEY,
        title_field=_str_with_default(data, "title_field", ""),
        status_field=_parse_status_field(status_data) if status_data is not None else None,
    )


def _parse_ci(data: dict[str, object]) -> CiConfig:
    return CiConfig(
        plug=_str_with_default(data, "plug", ""),
        plan=_str_with_default(data, "plan", ""),
        plan_after_checkin=_optional_str(data, "plan_after_checkin"),
    )


def _parse_notifiers(data: dict[str, object]) -> tuple[NotifierConfig, ...]:
    notifiers: list[NotifierConfig] = []
    for name, raw_value in sorted(data.items()):
        table = _require_nested_table(raw_value, table_name=f"[notifiers.{name}]")
        notifiers.append(
            NotifierConfig(
                name=name,
                plug=_str_with_default(table, "plug", ""),
                user_profile_field=_optional_str(table, "user_profile_field"),
                fixed_recipients=_recipients(table, "fixed_recipients"),
            )
        )
    return tuple(notifiers)


def _recipients(data: dict[str, object], key: str) -> tuple[str, ...]:
    value = data.get(key)
    if value is None:
        return ()
    if isinstance(value, str):
        return split_recipients(value)
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ConfigError(f"{key} must be a string or a list of strings")
    return split_recipients(";".join(cast(list[str], value)))


def _require_table(data: dict[str, object], key: str) -> dict[str, object]:
    value = data.get(key)
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] is required and must be a TOML table")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"[{key}] must have string keys")
    return cast(dict[str, object], value)


def _optional_table(data: dict[str, object], key: str) -> dict[str, object] | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] must be a TOML table when provided")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"[{key}] must have string keys")
    return cast(dict[str, object], value)


def _require_nested_table(value: object, *, table_name: str) -> dict[str, object]:
    if not isinstance(value, dict):
        raise ConfigError(f"{table_name} must be a TOML table")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"{table_name} must have string keys")
    return cast(dict[str, object], value)


def _require_str(data: dict[str, object], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} is required and must be a non-empty string")
    return value


def _optional_str(data: dict[str, object], key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ConfigError(f"{key} must be a string if provided")
    stripped = value.strip()
    return stripped or None


def _str_with_default(data: dict[str, object], key: str, default: str) -> str:
    value = data.get(key, default)
    if not isinstance(value, str):
        raise ConfigError(f"{key} must be a string")
    return value.strip()


def _int_with_default(data: dict[str, object], key: str, default: int) -> int:
    value = data.get(key, default)
    if not isinstance(value, int) or isinstance(value, bool):
        raise ConfigError(f"{key} must be an integer")
    return value


def _bool_with_default(data: dict[str, object], key: str, default: bool) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError(f"{key} must be a boolean")
    return value
