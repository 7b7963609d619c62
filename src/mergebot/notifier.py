from __future__ import annotations

import logging

from mergebot.config import NotifierConfig
from mergebot.observability import log_event, log_warning_event
from mergebot.plastic_api import MergebotApi


LOGGER = logging.getLogger("mergebot.notifier")


class Notifier:
    """Delivers mergebot messages through every configured notification plug."""

    def __init__(self, api: MergebotApi, notifiers: tuple[NotifierConfig, ...]) -> None:
        self._api = api
        self._notifiers = notifiers

    def notify(self, owner: str, message: str) -> None:
        for notifier in self._notifiers:
            try:
                recipients = self._resolve_recipients(notifier, owner)
                self._api.notify_message(notifier.plug, message, recipients)
                log_event(
                    LOGGER,
                    "notification_sent",
                    notifier=notifier.name,
                    recipient_count=len(recipients),
                )
            except Exception as exc:  # noqa: BLE001
                log_warning_event(
                    LOGGER,
                    "notification_failed",
                    notifier=notifier.name,
                    plug=notifier.plug,
                    error=str(exc),
                )

    def _resolve_recipients(self, notifier: NotifierConfig, owner: str) -> tuple[str, ...]:
        candidates = [owner, *notifier.fixed_recipients]
        out: list[str] = []
        for candidate in candidates:
            if not candidate.strip():
                continue
            resolved = self._profile_value(candidate.strip(), notifier.user_profile_field)
            if resolved not in out:
                out.append(resolved)
        return tuple(out)

    def _profile_value(self, username: str, field_path: str | None) -> str:
        if not field_path:
            return username
        try:
            profile = self._api.get_user_profile(username)
        except Exception as exc:  # noqa: BLE001
            log_warning_event(
                LOGGER,
                "user_profile_lookup_failed",
                username=username,
                error=str(exc),
            )
            return username
        value = resolve_profile_field(profile, field_path)
        return value if value else username


def resolve_profile_field(profile: dict[str, object], field_path: str) -> str | None:
    """Walk a dotted path such as ``profile.email`` through a user profile."""
    current: object = profile
    for part in field_path.split("."):
        if not isinstance(current, dict):
            return None
        match = next(
            (value for key, value in current.items() if str(key).lower() == part.lower()),
            None,
        )
        if match is None:
            return None
        current = match
    if isinstance(current, str):
        return current.strip() or None
    if isinstance(current, int | float) and not isinstance(current, bool):
        return str(current)
    return None
