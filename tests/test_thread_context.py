import unittest
from typing import Any, List, Optional


def _adapter(posts: Optional[List[Any]] = None, error: Optional[Exception] = None):
    from threadrelay.ports.chat.adapters.base import ChatAdapter

    class HistoryAdapter(ChatAdapter):
        def connect(self) -> bool:
            return True

        def disconnect(self) -> None:
            pass

        def poll(self) -> list:
            return []

        def create_post(self, channel_id: str, message: str, root_id: Optional[str] = None) -> Optional[str]:
            return None

        def update_post(self, post_id: str, message: str) -> bool:
            return False

        def send_typing(self, channel_id: str, parent_id: Optional[str] = None) -> bool:
            return True

        def get_thread_posts(self, thread_id: str) -> list:
            if error is not None:
                raise error
            return list(posts or [])

    return HistoryAdapter()


class TestThreadContext(unittest.TestCase):
    def test_no_history_returns_text(self) -> None:
        from threadrelay.daemon.thread_context import build_contextual_message

        self.assertEqual(build_contextual_message(_adapter(), "t1", "hello"), "hello")

    def test_fetch_failure_returns_text(self) -> None:
        from threadrelay.daemon.thread_context import build_contextual_message

        adapter = _adapter(error=RuntimeError("api down"))
        self.assertEqual(build_contextual_message(adapter, "t1", "hello"), "hello")

    def test_current_post_and_blank_posts_are_skipped(self) -> None:
        from threadrelay.daemon.thread_context import build_contextual_message
        from threadrelay.ports.chat.adapters.base import ThreadPost

        posts = [
            ThreadPost(post_id="a", user_id="u1", message="first"),
            ThreadPost(post_id="b", user_id="u1", message="   "),
            ThreadPost(post_id="c", user_id="u1", message="hello again"),
        ]
        out = build_contextual_message(_adapter(posts), "t1", "edited text", post_id="c")
        self.assertEqual(
            out,
            "Here is the conversation so far in this thread:\n\nUser: first\n\n---\n\nUser's latest message: edited text",
        )

    def test_max_posts_zero_disables_history(self) -> None:
        from threadrelay.daemon.thread_context import build_contextual_message
        from threadrelay.ports.chat.adapters.base import ThreadPost

        posts = [ThreadPost(post_id="a", user_id="u1", message="first")]
        self.assertEqual(build_contextual_message(_adapter(posts), "t1", "hi", max_posts=0), "hi")


if __name__ == "__main__":
    unittest.main()
