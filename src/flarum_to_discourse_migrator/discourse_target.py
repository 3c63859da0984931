"""Discourse admin API client implementing the TargetSystem protocol."""

from __future__ import annotations

import contextlib
import logging
import secrets
import time
from typing import TYPE_CHECKING, Any, Final
from urllib.parse import quote

import requests

from .exceptions import MigrationError, StoreConnectionError, TargetCreateError
from .models import CreatedPost, User

if TYPE_CHECKING:
    from collections.abc import Iterator, Mapping
    from datetime import datetime
    from pathlib import Path

    from .config import Settings
    from .models import Category, Post, Topic
    from .protocols import TargetSystem

logger: logging.Logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT: Final[float] = 60.0
MAX_RATE_LIMIT_RETRIES: Final[int] = 5
LIKE_POST_ACTION_TYPE: Final[int] = 2
DEFAULT_CATEGORY_COLOR: Final[str] = "0088CC"
DEFAULT_RETRY_AFTER: Final[int] = 10


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _error_reason(response: requests.Response) -> str:
    """Extract Discourse's error text from a failed response."""
    try:
        payload: Any = response.json()
    except ValueError:
        return f"HTTP {response.status_code}: {response.text[:200]}"
    if isinstance(payload, dict):
        errors = payload.get("errors")
        if isinstance(errors, list) and errors:
            return f"HTTP {response.status_code}: {'; '.join(str(e) for e in errors)}"
        if payload.get("message"):
            return f"HTTP {response.status_code}: {payload['message']}"
    return f"HTTP {response.status_code}"


def _retry_after_seconds(response: requests.Response) -> int:
    """Seconds to wait from a Retry-After header; the default when it is missing or an HTTP-date."""
    try:
        return max(int(response.headers.get("Retry-After", "")), 0)
    except ValueError:
        return DEFAULT_RETRY_AFTER


def _is_already_done(reason: str) -> bool:
    return "already" in reason.lower()


class DiscourseTarget:
    """Creates users, categories, posts and their side artifacts through the Discourse API.

    Requests are made with an admin API key. Actions that Discourse attributes
    to the acting user (posts, likes, reactions) are sent with that user's
    username in the Api-Username header.
    """

    _base_url: str
    _api_username: str
    _session: requests.Session
    _timeout: float
    _usernames: dict[int, str]
    _username_lookups: dict[str, str | None]

    def __init__(
        self,
        base_url: str,
        api_key: str,
        api_username: str = "system",
        *,
        session: requests.Session | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        if not base_url:
            msg = "Discourse URL is required"
            raise MigrationError(msg)
        self._base_url = base_url.rstrip("/")
        self._api_username = api_username
        self._session = session or requests.Session()
        self._session.headers.update({"Api-Key": api_key, "Accept": "application/json"})
        self._timeout = timeout
        self._usernames = {}
        self._username_lookups = {}

    @classmethod
    def from_settings(cls, settings: Settings) -> DiscourseTarget:
        if not settings.discourse_api_key:
            msg = "Discourse API key is required (DISCOURSE_API_KEY or pass)"
            raise MigrationError(msg)
        return cls(settings.discourse_url, settings.discourse_api_key, settings.discourse_api_username)

    # --- transport -----------------------------------------------------------

    def _request(
        self,
        method: str,
        path: str,
        *,
        as_user: str | None = None,
        allow: tuple[int, ...] = (),
        **kwargs: Any,  # noqa: ANN401 - passed through to requests
    ) -> requests.Response:
        """Send a request, retrying on rate limiting.

        Raises:
            StoreConnectionError: If Discourse cannot be reached or does not answer in time
            TargetCreateError: If Discourse answers with an error status not listed in allow
        """
        headers = {"Api-Username": as_user or self._api_username}
        url = f"{self._base_url}{path}"
        for attempt in range(MAX_RATE_LIMIT_RETRIES + 1):
            try:
                response = self._session.request(method, url, headers=headers, timeout=self._timeout, **kwargs)
            except (requests.ConnectionError, requests.Timeout) as e:
                msg = f"Discourse is unreachable ({method} {path}): {e}"
                raise StoreConnectionError(msg) from e

            if response.status_code == 429:
                if attempt == MAX_RATE_LIMIT_RETRIES:
                    break
                wait_time = _retry_after_seconds(response)
                logger.info(f"Rate limited on {method} {path}, waiting {wait_time} seconds...")
                time.sleep(wait_time)
                continue
            if response.ok or response.status_code in allow:
                return response
            msg = f"{method} {path} failed: {_error_reason(response)}"
            raise TargetCreateError(msg)

        msg = f"{method} {path} still rate limited after {MAX_RATE_LIMIT_RETRIES} retries"
        raise TargetCreateError(msg)

    def _username_for(self, user_id: int) -> str:
        username = self._usernames.get(user_id)
        if username is None:
            payload = self._request("GET", f"/admin/users/{user_id}.json").json()
            username = str(payload["username"])
            self._usernames[user_id] = username
        return username

    # --- users ---------------------------------------------------------------

    def create_user(self, user: User) -> int:
        response = self._request(
            "POST",
            "/users.json",
            json={
                "name": user.name,
                "username": user.username,
                "email": user.email,
                "password": secrets.token_urlsafe(24),
                "active": True,
                "approved": user.approved,
            },
        )
        payload = response.json()
        if not payload.get("success") or not payload.get("user_id"):
            msg = f"User {user.username} not created: {payload.get('message', 'unknown reason')}"
            raise TargetCreateError(msg)
        user_id = int(payload["user_id"])
        self._usernames[user_id] = user.username
        self._username_lookups[user.username.lower()] = user.username
        self._apply_profile(user_id, user)
        return user_id

    def _apply_profile(self, user_id: int, user: User) -> None:
        """Set the profile fields /users.json does not accept. The user exists either way."""
        try:
            if user.bio_raw:
                self._request("PUT", f"/u/{quote(user.username, safe='')}.json", json={"bio_raw": user.bio_raw})
            if user.suspended_till is not None:
                self._request(
                    "PUT",
                    f"/admin/users/{user_id}/suspend.json",
                    json={"suspend_until": _iso(user.suspended_till), "reason": "Suspended before migration"},
                )
        except TargetCreateError as e:
            logger.warning(f"User {user.username} created, but updating the profile failed: {e}")

    def upload_avatar(self, user_id: int, path: Path) -> None:
        username = self._username_for(user_id)
        with path.open("rb") as f:
            upload = self._request(
                "POST",
                "/uploads.json",
                data={"type": "avatar", "user_id": user_id, "synchronous": "true"},
                files={"file": (path.name, f)},
            ).json()
        self._request(
            "PUT",
            f"/u/{quote(username, safe='')}/preferences/avatar/pick.json",
            json={"upload_id": upload["id"], "type": "uploaded"},
        )

    def find_username(self, username: str) -> str | None:
        key = username.lower()
        if key not in self._username_lookups:
            response = self._request("GET", f"/u/{quote(username, safe='')}.json", allow=(404,))
            found: str | None = None
            if response.status_code != 404:
                user = response.json()["user"]
                found = str(user["username"])
                self._usernames[int(user["id"])] = found
            self._username_lookups[key] = found
        return self._username_lookups[key]

    def ensure_user(self, username: str, email: str, name: str) -> int:
        response = self._request("GET", f"/u/{quote(username, safe='')}.json", allow=(404,))
        if response.status_code != 404:
            user = response.json()["user"]
            user_id = int(user["id"])
            self._usernames[user_id] = str(user["username"])
            return user_id

        logger.info(f"Creating user {username}")
        return self.create_user(User(username=username, email=email, name=name, approved=True))

    # --- categories ----------------------------------------------------------

    def create_category(self, category: Category) -> int:
        payload: dict[str, Any] = {
            "name": category.name,
            "color": category.color or DEFAULT_CATEGORY_COLOR,
            "text_color": "FFFFFF",
            "permissions": {"staff": 1} if category.read_restricted else {"everyone": 1},
        }
        if category.slug:
            payload["slug"] = category.slug
        if category.parent_category_id is not None:
            payload["parent_category_id"] = category.parent_category_id
        if category.position is not None:
            payload["position"] = category.position
        if category.description:
            payload["description"] = category.description
        if category.icon:
            payload["style_type"] = "icon"
            payload["icon"] = category.icon

        response = self._request("POST", "/categories.json", json=payload)
        return int(response.json()["category"]["id"])

    # --- posts ---------------------------------------------------------------

    def create_post(self, post: Post, topic: Topic | None = None) -> CreatedPost:
        payload: dict[str, Any] = {"raw": post.raw, "skip_validations": True}
        if post.created_at is not None:
            payload["created_at"] = _iso(post.created_at)
        if topic is not None:
            payload["title"] = topic.title
            if topic.category_id is not None:
                payload["category"] = topic.category_id
        else:
            if post.topic_id is None:
                msg = "A reply needs the id of an existing topic"
                raise TargetCreateError(msg)
            payload["topic_id"] = post.topic_id
            if post.reply_to_post_number is not None:
                payload["reply_to_post_number"] = post.reply_to_post_number

        response = self._request("POST", "/posts.json", as_user=self._username_for(post.user_id), json=payload)
        data = response.json()
        created = CreatedPost(id=int(data["id"]), topic_id=int(data["topic_id"]), post_number=int(data["post_number"]))

        if topic is not None:
            topic.id = created.topic_id
            self._apply_topic_flags(topic)
        return created

    def get_post_number(self, post_id: int) -> int:
        payload = self._request("GET", f"/posts/{post_id}.json").json()
        return int(payload["post_number"])

    def _apply_topic_flags(self, topic: Topic) -> None:
        """Apply status flags to a topic that was just created. Failures leave the topic as is."""
        assert topic.id is not None
        try:
            if topic.pinned_globally:
                self._set_topic_status(topic.id, "pinned_globally", enabled=True)
            if not topic.visible:
                self._set_topic_status(topic.id, "visible", enabled=False)
            if topic.closed:
                self._set_topic_status(topic.id, "closed", enabled=True)
        except TargetCreateError as e:
            logger.warning(f"Topic {topic.id} created, but setting its status failed: {e}")

    def _set_topic_status(self, topic_id: int, status: str, *, enabled: bool) -> None:
        self._request(
            "PUT",
            f"/t/{topic_id}/status.json",
            json={"status": status, "enabled": "true" if enabled else "false"},
        )

    def close_topic(self, topic_id: int) -> None:
        self._set_topic_status(topic_id, "closed", enabled=True)

    def create_permalink(self, url: str, *, topic_id: int | None = None, post_id: int | None = None) -> None:
        if (topic_id is None) == (post_id is None):
            msg = "A permalink points at exactly one of a topic or a post"
            raise ValueError(msg)
        permalink_type, value = ("topic", topic_id) if topic_id is not None else ("post", post_id)
        self._request(
            "POST",
            "/admin/permalinks.json",
            json={"permalink": {"url": url, "permalink_type": permalink_type, "permalink_type_value": value}},
        )

    # --- likes, reactions, groups --------------------------------------------

    def create_like(self, user_id: int, post_id: int) -> bool:
        try:
            self._request(
                "POST",
                "/post_actions.json",
                as_user=self._username_for(user_id),
                json={"id": post_id, "post_action_type_id": LIKE_POST_ACTION_TYPE},
            )
        except TargetCreateError as e:
            if _is_already_done(str(e)):
                return False
            raise
        return True

    def toggle_reaction(self, user_id: int, post_id: int, reaction: str) -> None:
        self._request(
            "PUT",
            f"/discourse-reactions/posts/{post_id}/custom-reactions/{reaction}/toggle.json",
            as_user=self._username_for(user_id),
        )

    def add_group_member(self, group_name: str, user_id: int) -> bool:
        response = self._request("GET", f"/groups/{group_name}.json", allow=(404,))
        if response.status_code == 404:
            return False
        group_id = int(response.json()["group"]["id"])
        try:
            self._request("PUT", f"/groups/{group_id}/members.json", json={"usernames": self._username_for(user_id)})
        except TargetCreateError as e:
            if not _is_already_done(str(e)):
                raise
        return True

    # --- site settings -------------------------------------------------------

    def get_site_setting(self, name: str) -> str:
        response = self._request("GET", "/admin/site_settings.json", params={"filter_names": name})
        for setting in response.json().get("site_settings", []):
            if setting.get("setting") == name:
                return str(setting.get("value"))
        msg = f"Unknown site setting: {name}"
        raise TargetCreateError(msg)

    def set_site_setting(self, name: str, value: str) -> None:
        self._request("PUT", f"/admin/site_settings/{name}.json", json={name: value})


@contextlib.contextmanager
def site_settings_override(target: TargetSystem, overrides: Mapping[str, str]) -> Iterator[None]:
    """Temporarily change site settings, restoring the previous values on exit.

    Restoration happens even if the block raises. Settings that could not be
    read are not touched.
    """
    previous: dict[str, str] = {}
    try:
        for name, value in overrides.items():
            previous[name] = target.get_site_setting(name)
            target.set_site_setting(name, value)
            logger.debug(f"Site setting {name}: {previous[name]} -> {value}")
        yield
    finally:
        for name, value in previous.items():
            try:
                target.set_site_setting(name, value)
            except MigrationError:
                logger.exception(f"Failed to restore site setting {name} to {value}")
