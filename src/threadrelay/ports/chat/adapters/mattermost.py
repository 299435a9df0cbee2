"""
Mattermost adapter for the relay.

Uses the REST API v4 with a bot token:
- POST /posts, PUT /posts/{id} for streamed replies
- POST /users/me/typing for the typing indicator
- GET /channels/{id}/posts?since=<ms> for inbound messages
- GET /posts/{id}/thread for thread history
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from typing import Any, Deque, Dict, Iterable, List, Optional, Set

import requests

from .base import ChatAdapter, InboundMessage, ThreadPost

logger = logging.getLogger("threadrelay.mattermost")

# Mattermost's server-side limit for post messages.
MATTERMOST_MAX_MESSAGE_LENGTH = 16383
CONNECT_TIMEOUT = 10
READ_TIMEOUT = 15
MAX_RETRIES = 2
RETRY_DELAY = 1.0
SEEN_POSTS_LIMIT = 2000


class MattermostAdapter(ChatAdapter):
    platform = "mattermost"

    def __init__(
        self,
        *,
        url: str,
        token: str,
        bot_id: str,
        channel_ids: Iterable[str],
        session: Optional[requests.Session] = None,
        retry_delay: float = RETRY_DELAY,
    ):
        self.url = url.rstrip("/")
        self.token = token
        self.bot_id = bot_id
        self.channel_ids = [c for c in channel_ids if c]
        self.retry_delay = float(retry_delay)

        self._http = session or requests.Session()
        self._http.headers.update({"Authorization": f"Bearer {token}"})
        self._connected = False
        self._since: Dict[str, int] = {}
        self._seen: Set[str] = set()
        self._seen_order: Deque[str] = deque()
        self._usernames: Dict[str, str] = {}
        self._lock = threading.Lock()

    def api_url(self, path: str) -> str:
        return f"{self.url}/api/v4{path}"

    def _request(
        self,
        method: str,
        path: str,
        *,
        body: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Optional[Any]:
        """
        Call the API and return the decoded JSON body (or {} for empty bodies).

        Connection errors and timeouts are retried; anything else that fails
        is logged and reported as None.
        """
        url = self.api_url(path)
        attempts = 0
        while True:
            attempts += 1
            try:
                resp = self._http.request(
                    method, url, json=body, params=params, timeout=(CONNECT_TIMEOUT, READ_TIMEOUT)
                )
                break
            except (requests.ConnectionError, requests.Timeout) as e:
                if attempts > MAX_RETRIES:
                    logger.error(f"Mattermost API {method} {path} failed after {MAX_RETRIES} retries: {e}")
                    return None
                logger.warning(f"Mattermost API retry {attempts}/{MAX_RETRIES} after {type(e).__name__}: {e}")
                time.sleep(self.retry_delay)
            except requests.RequestException as e:
                logger.error(f"Mattermost API {method} {path} failed: {e}")
                return None

        if not resp.ok:
            logger.error(f"Mattermost API {method} {path} failed: {resp.status_code} {resp.text[:200]}")
            return None
        if not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError:
            logger.warning(f"Mattermost API {method} {path} returned non-JSON body")
            return {}

    def connect(self) -> bool:
        me = self._request("GET", "/users/me")
        if not isinstance(me, dict) or not me.get("id"):
            logger.error("Mattermost connect failed: cannot read bot user")
            return False
        if me.get("id") != self.bot_id:
            logger.warning(f"MATTERMOST_BOT_ID {self.bot_id} does not match token user {me.get('id')}")
        now_ms = int(time.time() * 1000)
        with self._lock:
            for channel_id in self.channel_ids:
                self._since.setdefault(channel_id, now_ms)
            self._connected = True
        logger.info(f"Connected to Mattermost as @{me.get('username', 'unknown')}")
        return True

    def disconnect(self) -> None:
        with self._lock:
            self._connected = False
        self._http.close()
        logger.info("Disconnected from Mattermost")

    def poll(self) -> List[InboundMessage]:
        with self._lock:
            if not self._connected:
                return []
            since = dict(self._since)

        out: List[InboundMessage] = []
        for channel_id in self.channel_ids:
            doc = self._request("GET", f"/channels/{channel_id}/posts", params={"since": since.get(channel_id, 0)})
            if not isinstance(doc, dict):
                continue
            posts = doc.get("posts")
            if not isinstance(posts, dict):
                continue
            ordered = sorted(
                (p for p in posts.values() if isinstance(p, dict)),
                key=lambda p: int(p.get("create_at") or 0),
            )
            latest = since.get(channel_id, 0)
            for post in ordered:
                latest = max(latest, int(post.get("update_at") or 0), int(post.get("create_at") or 0))
                msg = self._normalize(channel_id, post)
                if msg is not None:
                    out.append(msg)
            with self._lock:
                self._since[channel_id] = max(self._since.get(channel_id, 0), latest)
        return out

    def _normalize(self, channel_id: str, post: Dict[str, Any]) -> Optional[InboundMessage]:
        post_id = str(post.get("id") or "")
        user_id = str(post.get("user_id") or "")
        if not post_id or not user_id or user_id == self.bot_id:
            return None
        # System posts (joins, header changes) carry a type; user posts do not.
        if post.get("type") or post.get("delete_at"):
            return None
        if not self._mark_seen(post_id):
            return None
        text = str(post.get("message") or "").strip()
        if not text:
            return None
        return InboundMessage(
            channel_id=channel_id,
            thread_id=str(post.get("root_id") or "") or post_id,
            post_id=post_id,
            user_id=user_id,
            username=self.get_username(user_id),
            text=text,
        )

    def _mark_seen(self, post_id: str) -> bool:
        with self._lock:
            if post_id in self._seen:
                return False
            self._seen.add(post_id)
            self._seen_order.append(post_id)
            while len(self._seen_order) > SEEN_POSTS_LIMIT:
                self._seen.discard(self._seen_order.popleft())
            return True

    def get_username(self, user_id: str) -> str:
        with self._lock:
            cached = self._usernames.get(user_id)
        if cached:
            return cached
        doc = self._request("GET", f"/users/{user_id}")
        name = str(doc.get("username") or "") if isinstance(doc, dict) else ""
        if not name:
            return user_id
        with self._lock:
            self._usernames[user_id] = name
        return name

    def get_thread_posts(self, thread_id: str) -> List[ThreadPost]:
        doc = self._request("GET", f"/posts/{thread_id}/thread")
        posts = doc.get("posts") if isinstance(doc, dict) else None
        if not isinstance(posts, dict):
            return []
        ordered = sorted(
            (p for p in posts.values() if isinstance(p, dict) and not p.get("type") and not p.get("delete_at")),
            key=lambda p: int(p.get("create_at") or 0),
        )
        return [
            ThreadPost(
                post_id=str(p.get("id") or ""),
                user_id=str(p.get("user_id") or ""),
                message=str(p.get("message") or ""),
                is_bot=str(p.get("user_id") or "") == self.bot_id,
            )
            for p in ordered
        ]

    def create_post(self, channel_id: str, message: str, root_id: Optional[str] = None) -> Optional[str]:
        body: Dict[str, Any] = {"channel_id": channel_id, "message": self._clip(message)}
        if root_id:
            body["root_id"] = root_id
        doc = self._request("POST", "/posts", body=body)
        post_id = doc.get("id") if isinstance(doc, dict) else None
        return str(post_id) if post_id else None

    def update_post(self, post_id: str, message: str) -> bool:
        doc = self._request("PUT", f"/posts/{post_id}", body={"id": post_id, "message": self._clip(message)})
        return doc is not None

    def send_typing(self, channel_id: str, parent_id: Optional[str] = None) -> bool:
        body: Dict[str, Any] = {"channel_id": channel_id}
        if parent_id:
            body["parent_id"] = parent_id
        return self._request("POST", "/users/me/typing", body=body) is not None

    @staticmethod
    def _clip(message: str) -> str:
        if len(message) <= MATTERMOST_MAX_MESSAGE_LENGTH:
            return message
        return message[: MATTERMOST_MAX_MESSAGE_LENGTH - 1] + "…"
