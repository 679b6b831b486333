"""REST client facade for upstream issue-tracker deployments.

``JiraClient`` carries every operation whose wire behavior is the same on
self-hosted and cloud deployments; ``ServerClient`` and ``CloudClient`` add
the variant-specific ones. Every upstream failure leaves this module as a
``RESTError`` (or its ``TransportError`` subclass) with a status code.
"""

from __future__ import annotations

import posixpath
import re
from abc import ABC, abstractmethod
from http import HTTPStatus
from typing import Any, BinaryIO, TypeVar
from urllib.parse import urlparse

import requests
import structlog
from pydantic import BaseModel, ValidationError

from jira_bridge.server.errors import AttachmentUploadError, RESTError, TransportError
from jira_bridge.server.host import HostPlatform
from jira_bridge.server.models import (
    Attachment,
    AutoCompleteResult,
    Comment,
    CommentVisibilityResult,
    Issue,
    IssueFields,
    IssueType,
    JiraUser,
    Project,
    Transition,
    UpstreamErrorBody,
    UserGroup,
)
from jira_bridge.shared.byte_size import ByteSize
from jira_bridge.shared.limited_reader import LimitedReader

logger = structlog.get_logger()

API_PREFIX = "/rest/api"
AUTOCOMPLETE_SEARCH_ROUTE = "2/jql/autocompletedata/suggestions"
COMMENT_VISIBILITY_ROUTE = "2/user"
USER_SEARCH_ROUTE = "2/user/assignable/search"
UNRECOGNIZED_ENDPOINT = "_unrecognized"
VISIBLE_TO_ALL_USERS = "visible-to-all-users"

KEY_OR_ID_RE = re.compile(r"(^[A-Za-z0-9]+-)?[0-9]+$")

M = TypeVar("M", bound=BaseModel)


class JiraClient(ABC):
    """Common implementation shared by the server and cloud clients."""

    user_query_key = "query"

    def __init__(
        self,
        base_url: str,
        auth_header: str | None = None,
        session: requests.Session | None = None,
        timeout_s: float = 15.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.auth_header = auth_header
        self.session = session or requests.Session()
        self.timeout_s = timeout_s

    # ----- Generic REST -----
    def rest_get(self, endpoint: str, params: dict[str, str] | None = None) -> Any:
        """GET a versioned endpoint like ``"2/user"`` (or an absolute URL) and decode it."""
        return self._call("GET", endpoint, params=params)

    def rest_post_attachment(self, issue_id: str, data: bytes | BinaryIO, name: str) -> Attachment:
        """Upload one file to an issue.

        The attachments endpoint reports permission problems as a JSON error
        body and size-limit problems as plain text; both end up as a
        ``RESTError`` carrying the response status.
        """
        endpoint = f"2/issue/{issue_id}/attachments"
        response = self._send(
            "POST",
            endpoint,
            files={"file": (name, data)},
            headers={"X-Atlassian-Token": "no-check"},
        )
        if response.status_code >= 400:
            raise attachment_error(response)

        attachments = self._decode_list(Attachment, self._json(response, endpoint), endpoint)
        if len(attachments) != 1:
            raise RESTError(
                f"expected 1 attachment, got {len(attachments)}",
                HTTPStatus.INTERNAL_SERVER_ERROR,
            )
        return attachments[0]

    # ----- Issues -----
    def get_issue(self, key: str, fields: str = "", expand: str = "") -> Issue:
        params = {name: value for name, value in (("fields", fields), ("expand", expand)) if value}
        endpoint = f"2/issue/{key}"
        return self._decode(Issue, self._call("GET", endpoint, params=params or None), endpoint)

    def create_issue(self, fields: IssueFields) -> Issue:
        payload = self._call("POST", "2/issue", json={"fields": fields.to_wire()})
        return self._decode(Issue, payload, "2/issue")

    def get_transitions(self, issue_key: str) -> list[Transition]:
        endpoint = f"2/issue/{issue_key}/transitions"
        payload = self._call("GET", endpoint)
        rows = payload.get("transitions", []) if isinstance(payload, dict) else payload
        return self._decode_list(Transition, rows, endpoint)

    def do_transition(self, issue_key: str, transition_id: str) -> None:
        self._call(
            "POST",
            f"2/issue/{issue_key}/transitions",
            json={"transition": {"id": transition_id}},
        )

    def update_assignee(self, issue_key: str, user: JiraUser | None) -> None:
        payload = user.assignment_payload() if user is not None else self.unassign_payload()
        self._call("PUT", f"2/issue/{issue_key}/assignee", json=payload)

    def unassign_payload(self) -> dict[str, Any]:
        return {"accountId": None}

    def add_comment(self, issue_key: str, comment: Comment) -> Comment:
        endpoint = f"2/issue/{issue_key}/comment"
        return self._decode(Comment, self._call("POST", endpoint, json={"body": comment.body}), endpoint)

    def update_comment(self, issue_key: str, comment: Comment) -> Comment:
        endpoint = f"2/issue/{issue_key}/comment/{comment.id}"
        return self._decode(Comment, self._call("PUT", endpoint, json={"body": comment.body}), endpoint)

    def add_attachment(
        self,
        host: HostPlatform,
        issue_key: str,
        file_id: str,
        max_size: ByteSize,
    ) -> tuple[str, str, str]:
        """Copy a host file onto an issue. Returns (host name, upstream name, mime type)."""
        info = host.get_file_info(file_id)
        if info.size > max_size:
            raise AttachmentUploadError(
                f"Maximum attachment size {max_size} exceeded, file size {ByteSize(info.size)}",
                file_name=info.name,
                mime_type=info.mime_type,
            )

        with LimitedReader(host.open_file(info.path), int(max_size) + 1) as reader:
            data = reader.read()
        if reader.total_read > max_size:
            raise AttachmentUploadError(
                f"Maximum attachment size {max_size} exceeded",
                file_name=info.name,
                mime_type=info.mime_type,
            )

        try:
            attachment = self.rest_post_attachment(issue_key, data, info.name)
        except RESTError as exc:
            raise AttachmentUploadError(
                exc.message, file_name=info.name, mime_type=info.mime_type
            ) from exc
        return info.name, attachment.filename, info.mime_type

    # ----- Search -----
    def search_issues(
        self, jql: str, fields: list[str] | None = None, max_results: int = 50
    ) -> list[Issue]:
        params = {"jql": jql, "maxResults": str(max_results)}
        if fields:
            params["fields"] = ",".join(fields)
        try:
            payload = self._call("GET", "2/search", params=params)
        except RESTError as exc:
            if exc.status_code in (HTTPStatus.UNAUTHORIZED, HTTPStatus.FORBIDDEN):
                raise RESTError("not authorized to search issues", exc.status_code) from exc
            raise
        rows = payload.get("issues", []) if isinstance(payload, dict) else []
        return self._decode_list(Issue, rows, "2/search")

    def search_users_assignable_to_issue(
        self, issue_key: str, query: str, max_results: int = 0
    ) -> list[JiraUser]:
        return self._search_assignable({"issueKey": issue_key}, query, max_results)

    def search_users_assignable_in_project(
        self, project_key: str, query: str, max_results: int = 0
    ) -> list[JiraUser]:
        return self._search_assignable({"project": project_key}, query, max_results)

    def _search_assignable(
        self, scope: dict[str, str], query: str, max_results: int
    ) -> list[JiraUser]:
        params = {**scope, self.user_query_key: query}
        if max_results > 0:
            params["maxResults"] = str(max_results)
        return self._decode_list(JiraUser, self.rest_get(USER_SEARCH_ROUTE, params), USER_SEARCH_ROUTE)

    def search_autocomplete_fields(self, params: dict[str, str]) -> AutoCompleteResult:
        payload = self.rest_get(AUTOCOMPLETE_SEARCH_ROUTE, params)
        return self._decode(AutoCompleteResult, payload, AUTOCOMPLETE_SEARCH_ROUTE)

    def get_user_visibility_groups(self, params: dict[str, str]) -> CommentVisibilityResult:
        payload = self.rest_get(COMMENT_VISIBILITY_ROUTE, params)
        result = self._decode(CommentVisibilityResult, payload, COMMENT_VISIBILITY_ROUTE)
        result.groups.items.append(UserGroup(name=VISIBLE_TO_ALL_USERS))
        return result

    # ----- Projects and users -----
    def get_project(self, key: str) -> Project:
        endpoint = f"2/project/{key}"
        return self._decode(Project, self._call("GET", endpoint), endpoint)

    @abstractmethod
    def list_projects(
        self, query: str = "", limit: int = -1, expand_issue_types: bool = False
    ) -> list[Project]: ...

    @abstractmethod
    def get_issue_types(self, project_id: str) -> list[IssueType]: ...

    def get_self(self) -> JiraUser:
        return self._decode(JiraUser, self._call("GET", "2/myself"), "2/myself")

    # ----- Helpers -----
    def _send(
        self,
        method: str,
        endpoint: str,
        params: dict[str, str] | None = None,
        json: Any = None,
        files: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> requests.Response:
        path = endpoint_url(endpoint)
        absolute = bool(urlparse(path).scheme)
        url = path if absolute else f"{self.base_url}{path}"

        request_headers = {"Accept": "application/json"}
        if self.auth_header:
            request_headers["Authorization"] = self.auth_header
        request_headers.update(headers or {})

        try:
            response = self.session.request(
                method=method,
                url=url,
                headers=request_headers,
                params=params,
                json=json,
                files=files,
                timeout=self.timeout_s,
            )
        except requests.RequestException as exc:
            raise TransportError(f"request to Jira failed: {exc}") from exc

        logger.debug(
            "upstream_request",
            endpoint=endpoint_name(method, urlparse(url).path if absolute else path),
            status=response.status_code,
        )
        return response

    def _call(self, method: str, endpoint: str, **kwargs: Any) -> Any:
        response = self._send(method, endpoint, **kwargs)
        if response.status_code >= 400:
            raise user_friendly_error(response)
        return self._json(response, endpoint)

    @staticmethod
    def _json(response: requests.Response, endpoint: str) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise TransportError(f"failed to decode response from {endpoint}: {exc}") from exc

    @staticmethod
    def _decode(model: type[M], payload: Any, endpoint: str) -> M:
        try:
            return model.model_validate(payload or {})
        except ValidationError as exc:
            raise TransportError(f"unexpected response from {endpoint}: {exc}") from exc

    @classmethod
    def _decode_list(cls, model: type[M], payload: Any, endpoint: str) -> list[M]:
        if payload is None:
            return []
        if not isinstance(payload, list):
            raise TransportError(f"unexpected response from {endpoint}: expected a list")
        return [cls._decode(model, row, endpoint) for row in payload]


class ServerClient(JiraClient):
    """Self-hosted deployments: username-based user search, v2 project API."""

    user_query_key = "username"

    def unassign_payload(self) -> dict[str, Any]:
        return {"name": None}

    def list_projects(
        self, query: str = "", limit: int = -1, expand_issue_types: bool = False
    ) -> list[Project]:
        params = {"expand": "issueTypes"} if expand_issue_types else None
        projects = self._decode_list(Project, self._call("GET", "2/project", params=params), "2/project")
        if query:
            needle = query.lower()
            projects = [
                project
                for project in projects
                if needle in project.key.lower() or needle in project.name.lower()
            ]
        if limit > 0:
            projects = projects[:limit]
        return projects

    def get_issue_types(self, project_id: str) -> list[IssueType]:
        return self.get_project(project_id).issue_types


class CloudClient(JiraClient):
    """Cloud deployments: account-id based users, paginated v3 project search."""

    page_size = 50

    def list_projects(
        self, query: str = "", limit: int = -1, expand_issue_types: bool = False
    ) -> list[Project]:
        projects: list[Project] = []
        start_at = 0
        while True:
            params = {"startAt": str(start_at), "maxResults": str(self.page_size)}
            if query:
                params["query"] = query
            if expand_issue_types:
                params["expand"] = "issueTypes"
            payload = self.rest_get("3/project/search", params) or {}
            if not isinstance(payload, dict):
                raise TransportError("unexpected response from 3/project/search: expected an object")
            page = self._decode_list(Project, payload.get("values", []), "3/project/search")
            projects.extend(page)
            if limit > 0 and len(projects) >= limit:
                return projects[:limit]
            if payload.get("isLast", True) or not page:
                return projects
            start_at += len(page)

    def get_issue_types(self, project_id: str) -> list[IssueType]:
        payload = self.rest_get("3/issuetype/project", {"projectId": project_id})
        return self._decode_list(IssueType, payload, "3/issuetype/project")


def endpoint_url(endpoint: str) -> str:
    """Relative endpoints like ``"2/user"`` live under the REST API prefix."""
    if urlparse(endpoint).scheme:
        return endpoint
    return posixpath.join(API_PREFIX, endpoint.lstrip("/"))


def endpoint_name(method: str, path: str) -> str:
    """Low-cardinality label for an upstream call, e.g. ``api/jira/2/issue/comment/GET``."""
    lowered = path.lower()
    if not lowered.startswith(API_PREFIX):
        return UNRECOGNIZED_ENDPOINT
    parts = lowered[len(API_PREFIX) :].strip("/").split("/")
    if len(parts) < 2:
        return UNRECOGNIZED_ENDPOINT

    out = ["api/jira", parts[0], parts[1]]
    context = parts[1]
    for part in parts[2:]:
        if context == "issue" and KEY_OR_ID_RE.search(part):
            continue
        if context == "user" and part not in ("groups", "assignable"):
            continue
        if context in ("project", "comment"):
            continue
        out.append(part)
        context = part
    out.append(method.upper())
    return "/".join(out)


def user_friendly_error(response: requests.Response) -> RESTError:
    """Flatten an upstream error body into `` - field: message`` lines."""
    try:
        body: UpstreamErrorBody | None = UpstreamErrorBody.model_validate(response.json())
    except ValueError:
        body = None
    if body is None or (not body.errors and not body.error_messages):
        return RESTError(_status_message(response), response.status_code)
    return RESTError(_format_error_body(body), response.status_code)


def attachment_error(response: requests.Response) -> RESTError:
    try:
        body = UpstreamErrorBody.model_validate(response.json())
    except ValueError:
        return RESTError(f" - {response.text}", response.status_code)
    if not body.errors and not body.error_messages:
        return RESTError(_status_message(response), response.status_code)
    return RESTError(_format_error_body(body), response.status_code)


def _format_error_body(body: UpstreamErrorBody) -> str:
    message = "".join(f" - {field}: {text}\n" for field, text in body.errors.items())
    message += "".join(f" - {text}\n" for text in body.error_messages)
    return message


def _status_message(response: requests.Response) -> str:
    text = (response.text or "").strip()
    message = f"Jira request failed with status {response.status_code}"
    return f"{message}: {text[:512]}" if text else message
