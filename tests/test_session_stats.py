import unittest


class TestSessionStats(unittest.TestCase):
    def test_usage_sets_turn_counters_only(self) -> None:
        from threadrelay.runners.claude import SessionStats

        s = SessionStats()
        s.apply_result({"usage": {"input_tokens": 100, "output_tokens": 50}})
        self.assertEqual(s.turn_input_tokens, 100)
        self.assertEqual(s.turn_output_tokens, 50)
        self.assertEqual(s.cache_read_tokens, 0)
        self.assertEqual(s.cache_creation_tokens, 0)
        self.assertEqual(s.total_input_tokens, 0)
        self.assertEqual(s.total_output_tokens, 0)

    def test_model_usage_picks_largest_window_and_sums_totals(self) -> None:
        from threadrelay.runners.claude import SessionStats

        s = SessionStats()
        s.apply_result(
            {
                "total_cost_usd": 0.25,
                "modelUsage": {
                    "haiku": {"inputTokens": 10, "outputTokens": 5, "contextWindow": 100000},
                    "opus": {"inputTokens": 1000, "outputTokens": 200, "contextWindow": 200000},
                    "bogus": "not a dict",
                },
            }
        )
        self.assertEqual(s.model_id, "opus")
        self.assertEqual(s.context_window, 200000)
        self.assertEqual(s.total_input_tokens, 1010)
        self.assertEqual(s.total_output_tokens, 205)
        self.assertAlmostEqual(s.total_cost, 0.25)

    def test_context_percent_guards_and_is_not_clamped(self) -> None:
        from threadrelay.runners.claude import SessionStats

        s = SessionStats(turn_input_tokens=100)
        self.assertIsNone(s.context_percent())

        s.context_window = 1000
        s.turn_input_tokens = 0
        self.assertIsNone(s.context_percent())

        s.turn_input_tokens = 800
        s.cache_read_tokens = 300
        s.cache_creation_tokens = 100
        self.assertAlmostEqual(s.context_percent(), 120.0)

    def test_timing_derivations(self) -> None:
        from threadrelay.runners.claude import SessionStats

        s = SessionStats(message_sent_at=10.0)
        self.assertIsNone(s.time_to_first_token())
        self.assertIsNone(s.tokens_per_second())

        s.first_token_at = 11.5
        s.complete_at = 13.5
        s.turn_output_tokens = 100
        self.assertAlmostEqual(s.time_to_first_token(), 1.5)
        self.assertAlmostEqual(s.tokens_per_second(), 50.0)

        s.complete_at = 11.5
        self.assertIsNone(s.tokens_per_second())

        s.complete_at = 13.5
        s.turn_output_tokens = 0
        self.assertIsNone(s.tokens_per_second())

    def test_begin_turn_resets_turn_state_but_keeps_totals(self) -> None:
        from threadrelay.runners.claude import SessionStats

        s = SessionStats(
            total_input_tokens=5,
            turn_input_tokens=1,
            turn_output_tokens=2,
            cache_read_tokens=3,
            first_token_at=1.0,
            complete_at=2.0,
        )
        s.begin_turn()
        self.assertEqual((s.turn_input_tokens, s.turn_output_tokens, s.cache_read_tokens), (0, 0, 0))
        self.assertIsNone(s.first_token_at)
        self.assertIsNone(s.complete_at)
        self.assertIsNotNone(s.message_sent_at)
        self.assertEqual(s.total_input_tokens, 5)

    def test_format_summary(self) -> None:
        from threadrelay.runners.claude import SessionStats

        s = SessionStats(
            total_input_tokens=1000,
            total_output_tokens=234,
            turn_input_tokens=400,
            turn_output_tokens=100,
            context_window=1000,
            model_id="opus",
        )
        line = s.format_summary("Thread abc complete")
        self.assertTrue(line.startswith("Thread abc complete: | 1234 tokens (turn: in:400 out:100)"))
        self.assertIn("40% context", line)
        self.assertIn("model=opus", line)
        self.assertNotIn("TTFT", line)


if __name__ == "__main__":
    unittest.main()
