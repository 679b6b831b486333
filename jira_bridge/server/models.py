"""Upstream issue-tracker wire models (REST API v2/v3 JSON shapes)."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class WireModel(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_unset=True)


class JiraUser(WireModel):
    account_id: str = Field(default="", alias="accountId")
    name: str = ""
    key: str = ""
    display_name: str = Field(default="", alias="displayName")
    email_address: str = Field(default="", alias="emailAddress")

    def assignment_payload(self) -> dict[str, Any]:
        """Upstream accepts exactly one of accountId and name on assignment."""
        if self.account_id:
            return {"accountId": self.account_id}
        return {"name": self.name}


class Status(WireModel):
    id: str = ""
    name: str = ""


class Transition(WireModel):
    id: str
    name: str = ""
    to: Status = Field(default_factory=Status)


class IssueType(WireModel):
    id: str = ""
    name: str = ""
    subtask: bool = False


class Priority(WireModel):
    id: str = ""
    name: str = ""


class Project(WireModel):
    id: str = ""
    key: str = ""
    name: str = ""
    issue_types: list[IssueType] = Field(default_factory=list, alias="issueTypes")


class IssueFields(WireModel):
    """Standard issue fields; custom fields (``customfield_*``) ride along as extras."""

    project: Project | None = None
    type: IssueType | None = Field(default=None, alias="issuetype")
    summary: str = ""
    description: str = ""
    reporter: JiraUser | None = None
    assignee: JiraUser | None = None
    priority: Priority | None = None
    status: Status | None = None
    labels: list[str] = Field(default_factory=list)

    def custom_fields(self) -> dict[str, Any]:
        return dict(self.model_extra or {})


class Issue(WireModel):
    id: str = ""
    key: str = ""
    fields: IssueFields | None = None

    @property
    def summary(self) -> str:
        return self.fields.summary if self.fields else ""


class Attachment(WireModel):
    id: str = ""
    filename: str = ""
    mime_type: str = Field(default="", alias="mimeType")
    size: int = 0


class Comment(WireModel):
    id: str = ""
    body: str = ""


class UpstreamErrorBody(WireModel):
    """Structured error body: per-field messages plus free-text messages."""

    errors: dict[str, Any] = Field(default_factory=dict)
    error_messages: list[str] = Field(default_factory=list, alias="errorMessages")


class AutoCompleteSuggestion(WireModel):
    value: str = ""
    display_name: str = Field(default="", alias="displayName")


class AutoCompleteResult(WireModel):
    results: list[AutoCompleteSuggestion] = Field(default_factory=list)


class UserGroup(WireModel):
    name: str = ""


class UserGroupCollection(WireModel):
    items: list[UserGroup] = Field(default_factory=list)


class CommentVisibilityResult(WireModel):
    groups: UserGroupCollection = Field(default_factory=UserGroupCollection)
