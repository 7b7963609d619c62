from __future__ import annotations

from abc import ABC, abstractmethod
import logging
import re
from typing import cast
from urllib.parse import quote

import httpx

from mergebot.models import (
    AttributeTargetType,
    BranchModel,
    ChangesetModel,
    MergeToRequest,
    MergeToResponse,
    MergeToStatus,
    PlanStatus,
)
from mergebot.observability import log_warning_event


LOGGER = logging.getLogger("mergebot.plastic_api")

FIND_DATE_FORMAT = "yyyy-MM-dd HH:mm:ss"

_MERGE_STATUS_BY_WIRE: dict[str, MergeToStatus] = {
    "ok": "ok",
    "conflicts": "conflicts",
    "ancestornotfound": "ancestor_not_found",
    "mergenotneeded": "merge_not_needed",
    "error": "error",
    "destinationchanges": "destination_changes",
}
_STATUS_HINTS: dict[int, str] = {
    400: "The request was rejected as malformed.",
    401: "Please check the API key configured for the mergebot.",
    404: "The requested element does not exist.",
    500: "Please check the server log for more details.",
}


class PlasticApiError(RuntimeError):
    """Raised when a REST call to the server fails."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class MergebotApi(ABC):
    """Server capabilities consumed by the mergebot core."""

    @abstractmethod
    def get_branch(self, repository: str, branch_name: str) -> BranchModel:
        """Return branch metadata, raising PlasticApiError when it does not exist."""

    @abstractmethod
    def get_changeset(self, repository: str, changeset_id: int) -> ChangesetModel: ...

    @abstractmethod
    def get_attribute(
        self,
        repository: str,
        attribute_name: str,
        target_type: AttributeTargetType,
        target_name: str,
    ) -> str: ...

    @abstractmethod
    def change_attribute(
        self,
        repository: str,
        attribute_name: str,
        target_type: AttributeTargetType,
        target_name: str,
        value: str,
    ) -> None: ...

    @abstractmethod
    def create_attribute(self, repository: str, attribute_name: str, comment: str) -> bool: ...

    @abstractmethod
    def merge_to(self, repository: str, request: MergeToRequest) -> MergeToResponse: ...

    @abstractmethod
    def is_merge_allowed(self, repository: str, source_branch: str, destination: str) -> str:
        """Return the server verdict; ``"ok"`` (any case) means allowed."""

    @abstractmethod
    def delete_shelve(self, repository: str, shelve_id: int) -> None: ...

    @abstractmethod
    def find(
        self,
        repository: str,
        query: str,
        fields: tuple[str, ...],
        action_description: str,
    ) -> list[dict[str, object]]: ...

    @abstractmethod
    def find_branches_with_reviews(
        self,
        repository: str,
        review_conditions: str,
        branch_conditions: str,
        fields: tuple[str, ...],
        action_description: str,
    ) -> list[dict[str, object]]: ...

    @abstractmethod
    def get_user_profile(self, username: str) -> dict[str, object]: ...

    @abstractmethod
    def update_review(self, repository: str, review_id: str, status: int, title: str) -> None: ...

    @abstractmethod
    def report_merge(self, bot_name: str, report: dict[str, object]) -> None: ...

    @abstractmethod
    def is_issue_tracker_connected(self, plug: str) -> bool: ...

    @abstractmethod
    def get_issue_field(self, plug: str, project_key: str, task_number: str, field: str) -> str: ...

    @abstractmethod
    def set_issue_field(
        self, plug: str, project_key: str, task_number: str, field: str, value: str
    ) -> None: ...

    @abstractmethod
    def get_issue_url(self, plug: str, project_key: str, task_number: str) -> str: ...

    @abstractmethod
    def notify_message(self, plug: str, message: str, recipients: tuple[str, ...]) -> None: ...

    @abstractmethod
    def launch_plan(
        self,
        ci_plug: str,
        plan: str,
        object_spec: str,
        comment: str,
        properties: dict[str, str],
    ) -> str:
        """Start a CI plan and return its execution id."""

    @abstractmethod
    def get_plan_status(self, ci_plug: str, execution_id: str, plan: str) -> PlanStatus: ...


class PlasticRestApi(MergebotApi):
    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        timeout_seconds: float = 60.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            headers={"Authorization": f"ApiKey {api_key}", "Accept": "application/json"},
            timeout=timeout_seconds,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def get_branch(self, repository: str, branch_name: str) -> BranchModel:
        payload = self._request_object(
            "GET",
            _path("repos", repository, "branches", _target_name(branch_name)),
            action=f"get info of branch br:{branch_name}@{repository}",
        )
        return BranchModel(
            branch_id=_as_int(payload.get("id"), field="id"),
            name=_as_string(payload.get("name")),
            repository_id=_repository_id(payload),
            head_changeset=_as_int(payload.get("headChangeset", 0), field="headChangeset"),
            owner=_as_string(payload.get("owner")),
            comment=_as_string(payload.get("comment")),
        )

    def get_changeset(self, repository: str, changeset_id: int) -> ChangesetModel:
        payload = self._request_object(
            "GET",
            _path("repos", repository, "changesets", str(changeset_id)),
            action=f"get info of changeset cs:{changeset_id}@{repository}",
        )
        return ChangesetModel(
            changeset_id=_as_int(payload.get("changesetId"), field="changesetId"),
            guid=_as_string(payload.get("guid")),
            owner=_as_string(payload.get("owner")),
            branch=_as_string(payload.get("branch")),
            comment=_as_string(payload.get("comment")),
        )

    def get_attribute(
        self,
        repository: str,
        attribute_name: str,
        target_type: AttributeTargetType,
        target_name: str,
    ) -> str:
        payload = self._request_object(
            "GET",
            _path(
                "repos",
                repository,
                "attributes",
                attribute_name,
                target_type,
                _target_name(target_name),
            ),
            action=(
                f"get value of attribute '{attribute_name}@{repository}' applied to "
                f"{target_type} '{target_name}'"
            ),
        )
        return _as_string(payload.get("value"))

    def change_attribute(
        self,
        repository: str,
        attribute_name: str,
        target_type: AttributeTargetType,
        target_name: str,
        value: str,
    ) -> None:
        self._request(
            "PUT",
            _path("repos", repository, "attributes", attribute_name),
            action=(
                f"set attribute '{attribute_name}@{repository}' applied to {target_type} "
                f"'{target_name}' to value '{value}'"
            ),
            json_body={"targetType": target_type, "targetName": target_name, "value": value},
        )

    def create_attribute(self, repository: str, attribute_name: str, comment: str) -> bool:
        payload = self._request_object(
            "POST",
            _path("repos", repository, "attributes"),
            action=f"create attribute '{attribute_name}@{repository}'",
            json_body={"name": attribute_name, "comment": comment},
        )
        return _as_bool_text(payload.get("value"))

    def merge_to(self, repository: str, request: MergeToRequest) -> MergeToResponse:
        body: dict[str, object] = {
            "sourceSpec": request.source,
            "sourceType": request.source_type,
            "destination": request.destination,
            "comment": request.comment,
            "creationMode": "OnlyShelve" if request.create_shelve else "Checkin",
        }
        if request.ensure_no_dst_changes:
            body["mergeToOptions"] = "EnsureNoDstChanges"
        payload = self._request_object(
            "POST",
            _path("repos", repository, "mergeto"),
            action=(
                f"merge from {request.source_type} '{request.source}' to "
                f"'{request.destination}'"
            ),
            json_body=body,
        )
        return MergeToResponse(
            status=parse_merge_status(payload.get("status")),
            message=_as_string(payload.get("message")),
            changeset_number=_as_int(payload.get("changesetNumber", 0), field="changesetNumber"),
        )

    def is_merge_allowed(self, repository: str, source_branch: str, destination: str) -> str:
        payload = self._request_object(
            "GET",
            _path("repos", repository, "mergeto", "allowed"),
            action=(
                f"check whether merge is allowed on repository {repository} from "
                f"'{source_branch}' to '{destination}'"
            ),
            params={
                "sourceSpec": _target_name(source_branch),
                "destination": _target_name(destination),
            },
        )
        return _as_string(payload.get("result"))

    def delete_shelve(self, repository: str, shelve_id: int) -> None:
        self._request(
            "DELETE",
            _path("repos", repository, "shelves", str(shelve_id)),
            action=f"delete shelve sh:{shelve_id}@{repository}",
        )

    def find(
        self,
        repository: str,
        query: str,
        fields: tuple[str, ...],
        action_description: str,
    ) -> list[dict[str, object]]:
        payload = self._request(
            "GET",
            _path("repos", repository, "find"),
            action=action_description,
            params={
                "query": query,
                "queryDateFormat": FIND_DATE_FORMAT,
                "fields": ",".join(fields),
            },
        )
        return _as_object_list(payload, action=action_description)

    def find_branches_with_reviews(
        self,
        repository: str,
        review_conditions: str,
        branch_conditions: str,
        fields: tuple[str, ...],
        action_description: str,
    ) -> list[dict[str, object]]:
        payload = self._request(
            "GET",
            _path("repos", repository, "find-branches-with-reviews"),
            action=action_description,
            params={
                "reviewConditions": review_conditions,
                "branchConditions": branch_conditions,
                "queryDateFormat": FIND_DATE_FORMAT,
                "fields": ",".join(fields),
            },
        )
        return _as_object_list(payload, action=action_description)

    def get_user_profile(self, username: str) -> dict[str, object]:
        return self._request_object(
            "GET",
            _path("users", username, "profile"),
            action=f"get profile of user '{username}'",
        )

    def update_review(self, repository: str, review_id: str, status: int, title: str) -> None:
        self._request(
            "PUT",
            _path("repos", repository, "codereviews", review_id),
            action=f"update code review {review_id}@{repository}",
            json_body={"status": status, "title": title},
        )

    def report_merge(self, bot_name: str, report: dict[str, object]) -> None:
        self._request(
            "PUT",
            _path("mergereports", bot_name),
            action=f"report merge telemetry for mergebot '{bot_name}'",
            json_body=report,
        )

    def is_issue_tracker_connected(self, plug: str) -> bool:
        payload = self._request_object(
            "GET",
            _path("issues", plug, "checkconnection"),
            action=f"check connection of issue tracker '{plug}'",
        )
        return _as_bool_text(payload.get("value"))

    def get_issue_field(self, plug: str, project_key: str, task_number: str, field: str) -> str:
        payload = self._request_object(
            "GET",
            _path("issues", plug, project_key, task_number, "fields", field),
            action=f"get field '{field}' of issue {project_key}-{task_number} from '{plug}'",
        )
        return _as_string(payload.get("value"))

    def set_issue_field(
        self, plug: str, project_key: str, task_number: str, field: str, value: str
    ) -> None:
        self._request(
            "PUT",
            _path("issues", plug, project_key, task_number, "fields", field),
            action=(
                f"set field '{field}' of issue {project_key}-{task_number} in '{plug}' "
                f"to value '{value}'"
            ),
            json_body={"newValue": value},
        )

    def get_issue_url(self, plug: str, project_key: str, task_number: str) -> str:
        payload = self._request_object(
            "GET",
            _path("issues", plug, project_key, task_number, "url"),
            action=f"get url of issue {project_key}-{task_number} from '{plug}'",
        )
        return _as_string(payload.get("value"))

    def notify_message(self, plug: str, message: str, recipients: tuple[str, ...]) -> None:
        self._request(
            "POST",
            _path("notify", plug),
            action=f"send notification through '{plug}'",
            json_body={"message": message, "recipients": list(recipients)},
        )

    def launch_plan(
        self,
        ci_plug: str,
        plan: str,
        object_spec: str,
        comment: str,
        properties: dict[str, str],
    ) -> str:
        payload = self._request_object(
            "POST",
            _path("ci", ci_plug, plan),
            action=f"launch CI plan '{plan}' on '{ci_plug}'",
            json_body={"objectSpec": object_spec, "comment": comment, "properties": properties},
        )
        return _as_string(payload.get("value"))

    def get_plan_status(self, ci_plug: str, execution_id: str, plan: str) -> PlanStatus:
        payload = self._request_object(
            "GET",
            _path("ci", ci_plug, execution_id),
            action=f"retrieve status of CI plan '{plan}' execution '{execution_id}'",
            params={"planPath": plan},
        )
        return PlanStatus(
            is_finished=bool(payload.get("isFinished")),
            succeeded=bool(payload.get("succeeded")),
            explanation=_as_string(payload.get("explanation")),
        )

    def _request_object(
        self,
        method: str,
        path: str,
        *,
        action: str,
        params: dict[str, str] | None = None,
        json_body: dict[str, object] | None = None,
    ) -> dict[str, object]:
        payload = self._request(method, path, action=action, params=params, json_body=json_body)
        parsed = _as_object_dict(payload)
        if parsed is None:
            raise PlasticApiError(f"Unable to {action}. Unexpected response payload.")
        return parsed

    def _request(
        self,
        method: str,
        path: str,
        *,
        action: str,
        params: dict[str, str] | None = None,
        json_body: dict[str, object] | None = None,
    ) -> object:
        try:
            response = self._client.request(method, path, params=params, json=json_body)
        except httpx.HTTPError as exc:
            log_warning_event(LOGGER, "rest_api_transport_failed", action=action, error=str(exc))
            raise PlasticApiError(f"Unable to {action}. {exc}") from exc

        if response.is_error:
            message = _error_message(response, action=action)
            log_warning_event(
                LOGGER,
                "rest_api_request_failed",
                action=action,
                status_code=response.status_code,
                path=path,
            )
            raise PlasticApiError(message, status_code=response.status_code)

        if not response.content:
            return None
        try:
            return cast(object, response.json())
        except ValueError as exc:
            raise PlasticApiError(f"Unable to {action}. Response was not valid JSON.") from exc


def parse_merge_status(value: object) -> MergeToStatus:
    key = re.sub(r"[^a-z]", "", _as_string(value).lower())
    status = _MERGE_STATUS_BY_WIRE.get(key)
    if status is None:
        raise PlasticApiError(f"Unknown merge status reported by the server: {value!r}")
    return status


def _error_message(response: httpx.Response, *, action: str) -> str:
    server_message = ""
    try:
        payload = response.json()
    except ValueError:
        payload = None
    body = _as_object_dict(payload)
    error_obj = _as_object_dict(body.get("error")) if body is not None else None
    if error_obj is not None:
        server_message = _as_string(error_obj.get("message"))
    if not server_message:
        server_message = response.reason_phrase or f"HTTP {response.status_code}"
    hint = _STATUS_HINTS.get(response.status_code, "")
    return " ".join(
        part for part in (f"Unable to {action}. The server returned: {server_message}.", hint) if part
    )


def _path(*segments: str) -> str:
    return "/api/v1/" + "/".join(quote(segment, safe="") for segment in segments)


def _target_name(name: str) -> str:
    if name.startswith("/"):
        return name[1:]
    return name


def _repository_id(payload: dict[str, object]) -> int:
    if "repositoryId" in payload:
        return _as_int(payload.get("repositoryId"), field="repositoryId")
    repository = _as_object_dict(payload.get("repository"))
    if repository is None:
        return 0
    return _as_int(repository.get("id", 0), field="repository.id")


def _as_object_list(value: object, *, action: str) -> list[dict[str, object]]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise PlasticApiError(f"Unable to {action}. Expected a JSON array.")
    out: list[dict[str, object]] = []
    for item in value:
        parsed = _as_object_dict(item)
        if parsed is not None:
            out.append(parsed)
    return out


def _as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)


def _as_string(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


def _as_int(value: object, *, field: str) -> int:
    if isinstance(value, bool):
        raise PlasticApiError(f"Expected integer for {field}, got bool")
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    raise PlasticApiError(f"Expected integer for {field}, got {value!r}")


def _as_bool_text(value: object) -> bool:
    if isinstance(value, bool):
        return value
    return _as_string(value).strip().lower() == "true"
