"""User-facing issue operations composed from the resolver, stores, and REST clients.

Create and comment-attach reply to the user first and copy the originating
post's files upstream afterwards on a background executor. The returned
``Future`` lets callers (and tests) wait for that work; failures there are
reported to the user by direct message and never undo the issue or comment.
"""

from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from http import HTTPStatus
from typing import Any
from urllib.parse import urlencode

import requests
import structlog
from pydantic import BaseModel, Field

from jira_bridge.server.client import KEY_OR_ID_RE, JiraClient
from jira_bridge.server.errors import (
    AmbiguousInputError,
    AttachmentUploadError,
    InvalidInputError,
    ManualCreateRequiredError,
    NotFoundError,
    RESTError,
    status_code,
)
from jira_bridge.server.host import HostPlatform, Post
from jira_bridge.server.instances import BaseInstance, InstanceType
from jira_bridge.server.models import Comment, Issue, IssueFields, IssueType, JiraUser, Project
from jira_bridge.server.store import InstanceStore, UserStore
from jira_bridge.server.users import Connection, SavedFieldValues, UserManager
from jira_bridge.shared.byte_size import ByteSize

logger = structlog.get_logger()

MIN_USER_SEARCH_QUERY_LENGTH = 3
ASSIGNABLE_USER_SEARCH_LIMIT = 10
DEFAULT_SEARCH_FIELDS = "key,summary"
DEFAULT_SEARCH_LIMIT = 50
MAX_NOTIFIED_ERROR_LENGTH = 2048

NO_PERMISSION_MESSAGE = (
    "You do not have the appropriate permissions to perform this action. "
    "Please contact your Jira administrator."
)
ISSUE_NOT_VISIBLE_MESSAGE = (
    "we couldn't find the issue key, or you do not have the appropriate permissions "
    "to view the issue. Please try again or contact your Jira administrator"
)
UNSUPPORTED_REQUIRED_FIELDS_MESSAGE = (
    "The project you tried to create an issue for has **required fields** "
    "this plugin does not yet support:"
)
REPORTER_FIELD = "reporter"


class CreateIssueRequest(BaseModel):
    host_user_id: str
    instance_id: str
    fields: IssueFields
    post_id: str = ""
    channel_id: str = ""
    current_team: str = ""
    # (field key, localized field name) pairs the caller could not fill in.
    required_fields_not_covered: list[tuple[str, str]] = Field(default_factory=list)


class AttachCommentRequest(BaseModel):
    host_user_id: str
    instance_id: str
    post_id: str
    issue_key: str
    current_team: str = ""


class TransitionRequest(BaseModel):
    host_user_id: str
    instance_id: str
    issue_key: str
    to_state: str
    channel_id: str = ""


@dataclass
class CreateIssueResult:
    issue: Issue
    attachments: Future | None = None


@dataclass
class AttachCommentResult:
    comment: Comment
    attachments: Future | None = None


@dataclass
class UploadedFile:
    host_name: str
    jira_name: str
    mime_type: str


@dataclass
class AttachmentReport:
    uploaded: list[UploadedFile] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


def make_create_issue_url(instance: BaseInstance, project: Project, fields: IssueFields) -> str:
    """Link to the upstream create form, pre-filled with everything we know."""
    query: list[tuple[str, str]] = [
        ("pid", project.id),
        ("issuetype", fields.type.id if fields.type else ""),
        ("summary", fields.summary),
        ("description", fields.description),
    ]
    if instance.type == InstanceType.SERVER and fields.reporter is not None:
        query.append(("reporter", fields.reporter.name))
    if fields.priority is not None:
        query.append(("priority", fields.priority.id))

    for key, value in fields.custom_fields().items():
        if isinstance(value, str):
            query.append((key, value))
        elif isinstance(value, dict):
            if isinstance(value.get("id"), str):
                query.append((key, value["id"]))
        elif isinstance(value, list):
            for element in value:
                if isinstance(element, str):
                    query.append((key, element))
                elif isinstance(element, dict) and isinstance(element.get("id"), str):
                    query.append((key, element["id"]))

    base = f"{instance.get_jira_base_url()}/secure/CreateIssueDetails!init.jspa"
    return f"{base}?{urlencode(sorted(query))}"


def browse_url(instance: BaseInstance, issue_key: str) -> str:
    return f"{instance.get_jira_base_url()}/browse/{issue_key}"


def md_key_summary_link(issue: Issue, instance: BaseInstance) -> str:
    return f"[{issue.key}: {issue.summary}]({browse_url(instance, issue.key)})"


def permalink(site_url: str, team: str, post_id: str) -> str:
    return f"{site_url}/{team}/pl/{post_id}"


def is_image_mime(mime_type: str) -> bool:
    return mime_type.lower().startswith("image/")


def is_embeddable_mime(mime_type: str) -> bool:
    mime = mime_type.lower()
    return mime.startswith("video/") or mime.startswith("audio/")


def attachment_markup(jira_name: str, mime_type: str) -> str:
    if is_image_mime(mime_type) or is_embeddable_mime(mime_type):
        return f"\n\nAttachment: !{jira_name}!"
    return f"\n\nAttachment: [^{jira_name}]"


def transition_key(text: str) -> str:
    """Lowercase with all whitespace removed."""
    return "".join(text.split()).lower()


def describe_user(user: JiraUser) -> str:
    extra = ", ".join(part for part in (user.name, user.email_address) if part)
    return f"{user.display_name} ({extra})" if extra else user.display_name


class IssueService:
    def __init__(
        self,
        instance_store: InstanceStore,
        user_store: UserStore,
        users: UserManager,
        host: HostPlatform,
        max_attachment_size: ByteSize,
        http_timeout_s: float = 15.0,
        session: requests.Session | None = None,
        max_workers: int = 4,
    ) -> None:
        self.instance_store = instance_store
        self.user_store = user_store
        self.users = users
        self.host = host
        self.max_attachment_size = max_attachment_size
        self.http_timeout_s = http_timeout_s
        self.session = session
        self._search_pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="jira-search")
        self._background = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="jira-attach")

    def close(self) -> None:
        self._search_pool.shutdown(wait=True)
        self._background.shutdown(wait=True)

    # ----- Clients -----
    def get_client(
        self, instance_id: str, host_user_id: str
    ) -> tuple[JiraClient, BaseInstance, Connection]:
        instance = self.instance_store.load_instance(instance_id)
        client, connection = self._client_for(instance, host_user_id)
        return client, instance, connection

    def _client_for(self, instance: BaseInstance, host_user_id: str) -> tuple[JiraClient, Connection]:
        # Connections are loaded per call so a reconnect is picked up immediately.
        connection = self.user_store.load_connection(instance.instance_id, host_user_id)
        client = instance.get_client(connection, session=self.session, timeout_s=self.http_timeout_s)
        return client, connection

    # ----- Create -----
    def create_issue(self, request: CreateIssueRequest) -> CreateIssueResult:
        client, instance, connection = self.get_client(request.instance_id, request.host_user_id)
        fields = request.fields.model_copy(deep=True)

        post: Post | None = None
        if request.post_id:
            post = self._load_post(request.post_id)
            link = permalink(self.host.site_url, request.current_team, request.post_id)
            note = f"_Issue created from a [message|{link}]_."
            fields.description = f"{fields.description}\n\n{note}" if fields.description else note

        channel_id = post.channel_id if post is not None else request.channel_id
        root_id = (post.root_id or request.post_id) if post is not None else ""

        not_covered = list(request.required_fields_not_covered)
        for index, (key, _name) in enumerate(not_covered):
            if key.lower() == REPORTER_FIELD:
                del not_covered[index]
                if instance.type == InstanceType.SERVER:
                    fields.reporter = connection.jira_user()
                break

        project_key = fields.project.key if fields.project else ""
        try:
            project = client.get_project(project_key)
        except RESTError as exc:
            raise RESTError(f"failed to get project {project_key!r}: {exc.message}", exc.status_code) from exc

        if not_covered:
            create_url = make_create_issue_url(instance, project, fields)
            listed = "".join(f"- {name}\n" for _key, name in not_covered)
            self._ephemeral(
                request.host_user_id,
                channel_id,
                root_id,
                f"[Please create your Jira issue manually]({create_url}). "
                f"{UNSUPPORTED_REQUIRED_FIELDS_MESSAGE}\n{listed}",
            )
            raise ManualCreateRequiredError(
                f"issue can not be created via API: {UNSUPPORTED_REQUIRED_FIELDS_MESSAGE}", create_url
            )

        try:
            created = client.create_issue(fields)
        except RESTError as exc:
            if "is required." not in exc.message:
                raise RESTError(f"failed to create issue: {exc.message}", exc.status_code) from exc
            create_url = make_create_issue_url(instance, project, fields)
            message = (
                "Failed to create issue. Your Jira project requires fields the plugin does not "
                f"yet support. [Please create your Jira issue manually]({create_url}) or contact "
                f"your Jira administrator.\n{exc.message}"
            )
            self._ephemeral(request.host_user_id, channel_id, root_id, message)
            raise ManualCreateRequiredError(
                f"issue can not be created via API: {message}", create_url
            ) from exc

        self._ephemeral(
            request.host_user_id,
            channel_id,
            root_id,
            f"Created Jira issue [{created.key}]({browse_url(instance, created.key)})",
        )

        # The create response only carries the id and key.
        try:
            issue = client.get_issue(created.key)
        except RESTError as exc:
            raise RESTError(
                f"failed to fetch issue details {created.key}: {exc.message}", exc.status_code
            ) from exc

        self.users.update_user_defaults(
            request.host_user_id,
            request.instance_id,
            SavedFieldValues(
                project_key=project.key,
                issue_type=fields.type.id if fields.type else "",
            ),
        )
        self.host.create_post(
            Post(
                user_id=request.host_user_id,
                channel_id=channel_id,
                root_id=root_id,
                message=f"Created a Jira issue: {md_key_summary_link(issue, instance)}",
            )
        )
        logger.info("issue_created", instance_id=instance.instance_id, issue_key=created.key)

        attachments = None
        if post is not None and post.file_ids:
            attachments = self._background.submit(
                self._upload_files,
                client,
                request.host_user_id,
                created.id or created.key,
                created.key,
                list(post.file_ids),
            )
        return CreateIssueResult(issue=issue, attachments=attachments)

    # ----- Comment attach -----
    def attach_comment_to_issue(self, request: AttachCommentRequest) -> AttachCommentResult:
        client, instance, connection = self.get_client(request.instance_id, request.host_user_id)
        post = self._load_post(request.post_id)
        try:
            author = self.host.get_user(post.user_id)
        except NotFoundError as exc:
            raise NotFoundError(f"failed to load post author {post.user_id}: not found") from exc

        link = permalink(self.host.site_url, request.current_team, request.post_id)
        body = f"*@{connection.display_name} attached a* [message|{link}] *from @{author.username}*\n"
        comment = Comment(body=body + post.message)

        try:
            added = client.add_comment(request.issue_key, comment)
        except RESTError as exc:
            if "you do not have the permission to comment on this issue" in exc.message:
                raise RESTError(
                    "you do not have permission to create a comment in the selected Jira issue. "
                    "Please choose another issue or contact your Jira admin",
                    exc.status_code,
                ) from exc
            raise RESTError(
                f"failed to attach the comment, postId: {request.post_id}: {exc.message}",
                exc.status_code,
            ) from exc

        attachments = None
        if post.file_ids:
            attachments = self._background.submit(
                self._upload_comment_files,
                client,
                request.host_user_id,
                request.issue_key,
                Comment(id=added.id, body=comment.body),
                list(post.file_ids),
            )

        self.users.update_user_defaults(request.host_user_id, request.instance_id)
        self.host.create_post(
            Post(
                user_id=request.host_user_id,
                channel_id=post.channel_id,
                root_id=post.root_id or request.post_id,
                message=(
                    f"Message attached to [{request.issue_key}]"
                    f"({browse_url(instance, request.issue_key)})"
                ),
            )
        )
        return AttachCommentResult(comment=added, attachments=attachments)

    # ----- Search -----
    def search_issues(
        self,
        instance_id: str,
        host_user_id: str,
        query: str,
        jql: str = "",
        fields: str = "",
        limit: str | int = "",
    ) -> list[Issue]:
        """Free-text (or JQL) search, with a literal issue key looked up directly too.

        The exact match, when there is one, always comes first.
        """
        client, _instance, _connection = self.get_client(instance_id, host_user_id)
        fields = fields or DEFAULT_SEARCH_FIELDS
        if not jql:
            escaped = query.replace('"', '\\"')
            jql = f'text ~ "{escaped}" OR text ~ "{escaped}*"'
        try:
            max_results = int(limit) if str(limit).strip() else DEFAULT_SEARCH_LIMIT
        except ValueError:
            max_results = DEFAULT_SEARCH_LIMIT

        exact_future = None
        if KEY_OR_ID_RE.fullmatch(query.strip()):
            exact_future = self._search_pool.submit(client.get_issue, query.strip(), fields)
        found_future = self._search_pool.submit(
            client.search_issues, jql, fields.split(","), max_results
        )

        exact: Issue | None = None
        if exact_future is not None:
            try:
                exact = exact_future.result()
            except RESTError as exc:
                logger.info(
                    "search_exact_lookup_failed",
                    issue_key=query,
                    status_code=exc.status_code,
                    error=exc.message,
                )

        try:
            found = found_future.result()
        except RESTError as exc:
            if exact is None:
                raise RESTError(f"failed to search issues: {exc.message}", exc.status_code) from exc
            logger.warning("search_free_text_failed", status_code=exc.status_code, error=exc.message)
            found = []

        return ([exact] if exact is not None else []) + found

    # ----- Transition -----
    def transition_issue(self, request: TransitionRequest) -> str:
        client, instance, _connection = self.get_client(request.instance_id, request.host_user_id)
        try:
            transitions = client.get_transitions(request.issue_key)
        except RESTError as exc:
            raise RESTError(
                "we couldn't find the issue key. Please confirm the issue key and try again. "
                "You may not have permissions to access this issue",
                exc.status_code,
            ) from exc
        if not transitions:
            raise RESTError(NO_PERMISSION_MESSAGE, HTTPStatus.FORBIDDEN)

        wanted = transition_key(request.to_state)
        available = [t.to.name for t in transitions]
        matching = [t for t in transitions if wanted in transition_key(t.to.name)]
        if not matching:
            listed = ", ".join(available)
            raise AmbiguousInputError(
                f'"{request.to_state}" is not a valid state. Please use one of: "{listed}"',
                candidates=available,
            )
        if len(matching) > 1:
            names = [t.to.name for t in matching]
            listed = ", ".join(names)
            raise AmbiguousInputError(
                f'please be more specific, "{request.to_state}" matched several states: "{listed}"',
                candidates=names,
            )

        transition = matching[0]
        client.do_transition(request.issue_key, transition.id)
        message = (
            f"[{request.issue_key}]({browse_url(instance, request.issue_key)}) "
            f"transitioned to `{transition.to.name}`"
        )
        self._fetch_visible_issue(client, request.issue_key)
        self._ephemeral(request.host_user_id, request.channel_id, "", message)
        logger.info(
            "issue_transitioned",
            instance_id=instance.instance_id,
            issue_key=request.issue_key,
            to_state=transition.to.name,
        )
        return message

    # ----- Assignment -----
    def assign_issue(
        self,
        instance: BaseInstance,
        host_user_id: str,
        issue_key: str,
        user_search: str,
        assignee: JiraUser | None = None,
    ) -> str:
        client, _connection = self._client_for(instance, host_user_id)
        if len(user_search) < MIN_USER_SEARCH_QUERY_LENGTH:
            raise InvalidInputError(
                f"`{user_search}` contains less than {MIN_USER_SEARCH_QUERY_LENGTH} characters."
            )
        self._require_issue(client, issue_key)

        if assignee is not None:
            candidates = [assignee]
        else:
            try:
                candidates = client.search_users_assignable_to_issue(
                    issue_key, user_search, ASSIGNABLE_USER_SEARCH_LIMIT
                )
            except RESTError as exc:
                if exc.status_code == HTTPStatus.UNAUTHORIZED:
                    raise RESTError(NO_PERMISSION_MESSAGE, exc.status_code) from exc
                raise

        if not candidates:
            raise AmbiguousInputError(
                "we couldn't find the assignee. Please use a Jira member and try again"
            )
        if len(candidates) > 1:
            listed = "".join(f"* {describe_user(user)}\n" for user in candidates)
            raise AmbiguousInputError(
                f"`{user_search}` matches {len(candidates)} or more users.  "
                f"Please specify a unique assignee.\n{listed}",
                candidates=[describe_user(user) for user in candidates],
            )

        user = candidates[0].model_copy()
        # Upstream rejects payloads carrying both an account id and a username.
        if user.account_id:
            user.name = ""
        client.update_assignee(issue_key, user)
        return (
            f"`{user.display_name}` assigned to Jira issue "
            f"[{issue_key}]({browse_url(instance, issue_key)})"
        )

    def unassign_issue(self, instance: BaseInstance, host_user_id: str, issue_key: str) -> str:
        client, _connection = self._client_for(instance, host_user_id)
        self._require_issue(client, issue_key)
        try:
            client.update_assignee(issue_key, None)
        except RESTError as exc:
            if exc.status_code == HTTPStatus.FORBIDDEN:
                raise RESTError(NO_PERMISSION_MESSAGE, exc.status_code) from exc
            raise
        return f"Unassigned Jira issue [{issue_key}]({browse_url(instance, issue_key)})"

    # ----- One-shot wrappers -----
    def get_issue_by_key(self, instance_id: str, host_user_id: str, issue_key: str) -> Issue:
        client, _instance, _connection = self.get_client(instance_id, host_user_id)
        return self._fetch_visible_issue(client, issue_key)

    def list_projects(
        self, instance_id: str, host_user_id: str, expand_issue_types: bool = False
    ) -> tuple[list[Project], Connection]:
        client, _instance, connection = self.get_client(instance_id, host_user_id)
        return client.list_projects("", -1, expand_issue_types), connection

    def get_issue_types(self, instance_id: str, host_user_id: str, project_id: str) -> list[IssueType]:
        client, _instance, _connection = self.get_client(instance_id, host_user_id)
        return client.get_issue_types(project_id)

    def get_self(self, instance_id: str, host_user_id: str) -> JiraUser:
        client, _instance, _connection = self.get_client(instance_id, host_user_id)
        return client.get_self()

    def search_autocomplete_fields(
        self, instance_id: str, host_user_id: str, params: dict[str, str]
    ) -> list[dict[str, Any]]:
        client, _instance, _connection = self.get_client(instance_id, host_user_id)
        result = client.search_autocomplete_fields(params)
        return [suggestion.to_wire() for suggestion in result.results]

    def get_user_visibility_groups(
        self, instance_id: str, host_user_id: str, params: dict[str, str]
    ) -> list[str]:
        client, _instance, _connection = self.get_client(instance_id, host_user_id)
        result = client.get_user_visibility_groups(params)
        return [group.name for group in result.groups.items]

    # ----- Background attachment work -----
    def _upload_files(
        self,
        client: JiraClient,
        host_user_id: str,
        issue_id: str,
        issue_key: str,
        file_ids: list[str],
    ) -> AttachmentReport:
        report = AttachmentReport()
        for file_id in file_ids:
            try:
                host_name, jira_name, mime_type = client.add_attachment(
                    self.host, issue_id, file_id, self.max_attachment_size
                )
            except Exception as exc:
                name = exc.file_name if isinstance(exc, AttachmentUploadError) and exc.file_name else file_id
                report.failed.append(name)
                self.notify_failed_attachment(host_user_id, issue_key, exc, f"file: {name}")
                continue
            report.uploaded.append(UploadedFile(host_name, jira_name, mime_type))
        return report

    def _upload_comment_files(
        self,
        client: JiraClient,
        host_user_id: str,
        issue_key: str,
        comment: Comment,
        file_ids: list[str],
    ) -> AttachmentReport:
        report = self._upload_files(client, host_user_id, issue_key, issue_key, file_ids)
        extra = "".join(attachment_markup(f.jira_name, f.mime_type) for f in report.uploaded)
        if not extra:
            return report

        updated = Comment(id=comment.id, body=comment.body + extra)
        try:
            client.update_comment(issue_key, updated)
        except RESTError as exc:
            logger.warning(
                "comment_attachment_update_failed",
                issue_key=issue_key,
                comment_id=comment.id,
                status_code=exc.status_code,
            )
            self.notify_failed_attachment(
                host_user_id,
                issue_key,
                exc,
                "failed to completely update comment with attachments",
            )
        return report

    def notify_failed_attachment(
        self, host_user_id: str, issue_key: str, exc: BaseException, detail: str
    ) -> None:
        message = f"Failed to attach to issue: {issue_key}, {detail}"
        logger.error(
            "attachment_upload_failed",
            issue_key=issue_key,
            detail=detail,
            status_code=status_code(exc),
            error=str(exc),
        )
        error_text = str(exc)[:MAX_NOTIFIED_ERROR_LENGTH]
        self.host.create_bot_dm(
            host_user_id,
            f"{message}. Please notify your system administrator.\n{error_text}",
        )

    # ----- Helpers -----
    def _load_post(self, post_id: str) -> Post:
        post = self.host.get_post(post_id)
        if post is None:
            raise NotFoundError(f"failed to load post {post_id}: not found")
        return post

    def _ephemeral(self, host_user_id: str, channel_id: str, root_id: str, message: str) -> None:
        self.host.send_ephemeral_post(
            host_user_id,
            Post(
                user_id=self.host.bot_user_id,
                channel_id=channel_id,
                root_id=root_id,
                message=message,
            ),
        )

    @staticmethod
    def _require_issue(client: JiraClient, issue_key: str) -> None:
        try:
            client.get_issue(issue_key)
        except RESTError as exc:
            raise NotFoundError(
                f"We couldn't find the issue key `{issue_key}`. "
                "Please confirm the issue key and try again."
            ) from exc

    @staticmethod
    def _fetch_visible_issue(client: JiraClient, issue_key: str) -> Issue:
        try:
            return client.get_issue(issue_key)
        except RESTError as exc:
            if exc.status_code == HTTPStatus.NOT_FOUND:
                raise RESTError(ISSUE_NOT_VISIBLE_MESSAGE, exc.status_code) from exc
            if exc.status_code == HTTPStatus.UNAUTHORIZED:
                raise RESTError(
                    "you do not have the appropriate permissions to view the issue. "
                    "Please contact your Jira administrator",
                    exc.status_code,
                ) from exc
            raise RESTError(f"request to Jira failed: {exc.message}", exc.status_code) from exc
