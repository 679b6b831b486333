"""Host messaging platform collaborator: posts, DMs, files, broadcasts, commands."""

from __future__ import annotations

import io
import threading
from dataclasses import dataclass, field
from typing import Any, BinaryIO, Protocol

import structlog

from jira_bridge.server.errors import NotFoundError

logger = structlog.get_logger()

WEBSOCKET_EVENT_INSTANCE_STATUS = "instance_status"


@dataclass
class Post:
    user_id: str
    channel_id: str
    message: str
    root_id: str = ""
    id: str = ""
    file_ids: list[str] = field(default_factory=list)
    props: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class FileInfo:
    id: str
    name: str
    path: str
    size: int
    mime_type: str


@dataclass(frozen=True)
class HostUser:
    id: str
    username: str


class HostPlatform(Protocol):
    """Everything the bridge needs from the messaging platform it runs inside."""

    site_url: str
    bot_user_id: str

    def get_post(self, post_id: str) -> Post | None: ...

    def create_post(self, post: Post) -> Post: ...

    def send_ephemeral_post(self, user_id: str, post: Post) -> None: ...

    def create_bot_dm(self, user_id: str, message: str) -> None: ...

    def get_user(self, user_id: str) -> HostUser: ...

    def get_file_info(self, file_id: str) -> FileInfo: ...

    def open_file(self, path: str) -> BinaryIO: ...

    def publish_websocket_event(self, event: str, payload: dict[str, Any]) -> None: ...

    def register_command(self, enable_autocomplete: bool, multi_instance: bool) -> None: ...


class InMemoryHostPlatform:
    """Host platform kept entirely in memory; records every outbound effect."""

    def __init__(self, site_url: str = "http://localhost:8065", bot_user_id: str = "jira-bot") -> None:
        self.site_url = site_url.rstrip("/")
        self.bot_user_id = bot_user_id
        self.posts: dict[str, Post] = {}
        self.users: dict[str, HostUser] = {}
        self.files: dict[str, FileInfo] = {}
        self.file_contents: dict[str, bytes] = {}
        self.created_posts: list[Post] = []
        self.ephemeral_posts: list[tuple[str, Post]] = []
        self.direct_messages: list[tuple[str, str]] = []
        self.websocket_events: list[tuple[str, dict[str, Any]]] = []
        self.command_registrations: list[tuple[bool, bool]] = []
        self.register_command_error: Exception | None = None
        self._lock = threading.Lock()

    # ----- Seeding -----
    def add_user(self, user_id: str, username: str) -> HostUser:
        user = HostUser(id=user_id, username=username)
        self.users[user_id] = user
        return user

    def add_post(self, post: Post) -> Post:
        self.posts[post.id] = post
        return post

    def add_file(self, file_id: str, name: str, content: bytes, mime_type: str = "application/octet-stream") -> FileInfo:
        info = FileInfo(
            id=file_id, name=name, path=f"files/{file_id}/{name}", size=len(content), mime_type=mime_type
        )
        self.files[file_id] = info
        self.file_contents[info.path] = content
        return info

    # ----- HostPlatform -----
    def get_post(self, post_id: str) -> Post | None:
        return self.posts.get(post_id)

    def create_post(self, post: Post) -> Post:
        with self._lock:
            if not post.id:
                post.id = f"post-{len(self.posts) + 1}"
            self.posts[post.id] = post
            self.created_posts.append(post)
        return post

    def send_ephemeral_post(self, user_id: str, post: Post) -> None:
        with self._lock:
            self.ephemeral_posts.append((user_id, post))

    def create_bot_dm(self, user_id: str, message: str) -> None:
        with self._lock:
            self.direct_messages.append((user_id, message))

    def get_user(self, user_id: str) -> HostUser:
        user = self.users.get(user_id)
        if user is None:
            raise NotFoundError(f"user {user_id!r} not found")
        return user

    def get_file_info(self, file_id: str) -> FileInfo:
        info = self.files.get(file_id)
        if info is None:
            raise NotFoundError(f"file {file_id!r} not found")
        return info

    def open_file(self, path: str) -> BinaryIO:
        content = self.file_contents.get(path)
        if content is None:
            raise NotFoundError(f"file {path!r} not found")
        return io.BytesIO(content)

    def publish_websocket_event(self, event: str, payload: dict[str, Any]) -> None:
        logger.debug("websocket_event_published", websocket_event=event)
        with self._lock:
            self.websocket_events.append((event, payload))

    def register_command(self, enable_autocomplete: bool, multi_instance: bool) -> None:
        if self.register_command_error is not None:
            raise self.register_command_error
        with self._lock:
            self.command_registrations.append((enable_autocomplete, multi_instance))
