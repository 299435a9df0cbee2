import json
import unittest
from typing import Any, Dict, List, Optional


class FakeResponse:
    def __init__(self, status_code: int = 200, body: Any = None) -> None:
        self.status_code = status_code
        self.ok = 200 <= status_code < 300
        self.content = b"" if body is None else json.dumps(body).encode("utf-8")
        self.text = self.content.decode("utf-8")
        self._body = body

    def json(self) -> Any:
        return self._body


class FakeHttp:
    """Just enough of requests.Session for the adapter."""

    def __init__(self, routes: Dict[str, List[Any]]) -> None:
        self.headers: Dict[str, str] = {}
        self.routes = routes
        self.requests: List[Dict[str, Any]] = []
        self.closed = False

    def request(self, method: str, url: str, json: Any = None, params: Any = None, timeout: Any = None) -> FakeResponse:
        self.requests.append({"method": method, "url": url, "json": json, "params": params, "timeout": timeout})
        queue = self.routes.get(f"{method} {url}") or []
        if not queue:
            return FakeResponse(404, {"message": "not found"})
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, Exception):
            raise item
        return item

    def close(self) -> None:
        self.closed = True


API = "https://mm.example.com/api/v4"


class TestMattermostAdapter(unittest.TestCase):
    def _adapter(self, routes: Dict[str, List[Any]], channel_ids: Optional[List[str]] = None):
        from threadrelay.ports.chat.adapters.mattermost import MattermostAdapter

        http = FakeHttp(routes)
        adapter = MattermostAdapter(
            url="https://mm.example.com/",
            token="tok",
            bot_id="bot",
            channel_ids=channel_ids or ["c1"],
            session=http,  # type: ignore[arg-type]
            retry_delay=0,
        )
        return adapter, http

    def test_bearer_auth_and_create_post(self) -> None:
        adapter, http = self._adapter({f"POST {API}/posts": [FakeResponse(201, {"id": "p1"})]})
        self.assertEqual(http.headers["Authorization"], "Bearer tok")
        self.assertEqual(adapter.create_post("c1", "hello", root_id="root1"), "p1")
        req = http.requests[-1]
        self.assertEqual(req["json"], {"channel_id": "c1", "message": "hello", "root_id": "root1"})
        self.assertEqual(req["timeout"], (10, 15))

    def test_update_and_typing(self) -> None:
        adapter, http = self._adapter(
            {
                f"PUT {API}/posts/p1": [FakeResponse(200, {"id": "p1"})],
                f"POST {API}/users/me/typing": [FakeResponse(200, {"status": "OK"})],
            }
        )
        self.assertTrue(adapter.update_post("p1", "edited"))
        self.assertEqual(http.requests[-1]["json"], {"id": "p1", "message": "edited"})
        self.assertTrue(adapter.send_typing("c1", parent_id="root1"))
        self.assertEqual(http.requests[-1]["json"], {"channel_id": "c1", "parent_id": "root1"})

    def test_http_error_is_reported_as_failure(self) -> None:
        adapter, http = self._adapter({f"POST {API}/posts": [FakeResponse(500, {"message": "boom"})]})
        self.assertIsNone(adapter.create_post("c1", "hello"))
        self.assertFalse(adapter.update_post("missing", "x"))

    def test_connection_errors_are_retried(self) -> None:
        import requests

        adapter, http = self._adapter(
            {
                f"POST {API}/posts": [
                    requests.ConnectionError("reset"),
                    requests.Timeout("slow"),
                    FakeResponse(201, {"id": "p9"}),
                ]
            }
        )
        self.assertEqual(adapter.create_post("c1", "hello"), "p9")
        self.assertEqual(len(http.requests), 3)

    def test_gives_up_after_max_retries(self) -> None:
        import requests

        adapter, http = self._adapter({f"POST {API}/posts": [requests.ConnectionError("down")]})
        self.assertIsNone(adapter.create_post("c1", "hello"))
        self.assertEqual(len(http.requests), 3)

    def test_long_messages_are_clipped(self) -> None:
        from threadrelay.ports.chat.adapters.mattermost import MATTERMOST_MAX_MESSAGE_LENGTH

        adapter, http = self._adapter({f"POST {API}/posts": [FakeResponse(201, {"id": "p1"})]})
        adapter.create_post("c1", "x" * (MATTERMOST_MAX_MESSAGE_LENGTH + 10))
        sent = http.requests[-1]["json"]["message"]
        self.assertEqual(len(sent), MATTERMOST_MAX_MESSAGE_LENGTH)
        self.assertTrue(sent.endswith("…"))

    def test_poll_normalizes_user_posts(self) -> None:
        posts = {
            "order": ["a", "b", "c", "d"],
            "posts": {
                "b": {"id": "b", "user_id": "u1", "root_id": "a", "message": "reply", "create_at": 20, "update_at": 20},
                "a": {"id": "a", "user_id": "u1", "root_id": "", "message": "top", "create_at": 10, "update_at": 10},
                "c": {"id": "c", "user_id": "bot", "root_id": "a", "message": "mine", "create_at": 30, "update_at": 30},
                "d": {"id": "d", "user_id": "u1", "type": "system_join_channel", "message": "joined", "create_at": 40},
            },
        }
        adapter, http = self._adapter(
            {
                f"GET {API}/users/me": [FakeResponse(200, {"id": "bot", "username": "relay"})],
                f"GET {API}/channels/c1/posts": [FakeResponse(200, posts)],
                f"GET {API}/users/u1": [FakeResponse(200, {"id": "u1", "username": "alice"})],
            }
        )
        self.assertEqual(adapter.poll(), [])
        self.assertTrue(adapter.connect())

        msgs = adapter.poll()
        self.assertEqual([(m.post_id, m.thread_id, m.username, m.text) for m in msgs], [
            ("a", "a", "alice", "top"),
            ("b", "a", "alice", "reply"),
        ])
        user_lookups = [r for r in http.requests if r["url"] == f"{API}/users/u1"]
        self.assertEqual(len(user_lookups), 1)

        # The same posts come back on the next poll (since= is inclusive); they are not redelivered.
        self.assertEqual(adapter.poll(), [])
        last_poll = [r for r in http.requests if r["url"] == f"{API}/channels/c1/posts"][-1]
        self.assertEqual(last_poll["params"], {"since": 40})

        adapter.disconnect()
        self.assertTrue(http.closed)
        self.assertEqual(adapter.poll(), [])

    def test_thread_posts_are_oldest_first_and_flag_the_bot(self) -> None:
        thread = {
            "order": ["r", "b", "s", "x"],
            "posts": {
                "b": {"id": "b", "user_id": "bot", "root_id": "r", "message": "answer", "create_at": 20},
                "r": {"id": "r", "user_id": "u1", "root_id": "", "message": "question", "create_at": 10},
                "s": {"id": "s", "user_id": "u1", "type": "system_join_channel", "message": "joined", "create_at": 15},
                "x": {"id": "x", "user_id": "u1", "message": "oops", "create_at": 30, "delete_at": 31},
            },
        }
        adapter, http = self._adapter({f"GET {API}/posts/r/thread": [FakeResponse(200, thread)]})
        posts = adapter.get_thread_posts("r")
        self.assertEqual([(p.post_id, p.message, p.is_bot) for p in posts], [
            ("r", "question", False),
            ("b", "answer", True),
        ])
        self.assertEqual(adapter.get_thread_posts("missing"), [])


if __name__ == "__main__":
    unittest.main()
