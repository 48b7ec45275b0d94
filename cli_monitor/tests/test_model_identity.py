import unittest

from cli_monitor.model_identity import (
    canonical_model_name,
    context_window_limit,
    model_family,
)


class ModelIdentityTests(unittest.TestCase):
    def test_canonical_model_strips_trailing_date_suffixes(self) -> None:
        self.assertEqual(
            canonical_model_name("claude-opus-4-5-20251101"),
            "claude-opus-4-5",
        )
        self.assertEqual(
            canonical_model_name("gpt-5-mini-2026-01-15"),
            "gpt-5-mini",
        )
        self.assertEqual(canonical_model_name(None), "")

    def test_model_family_uses_family_token(self) -> None:
        self.assertEqual(model_family("claude-opus-4-5-20251101"), "opus")
        self.assertEqual(model_family("Claude Sonnet 4"), "sonnet")
        self.assertEqual(model_family("claude-3-5-haiku-20241022"), "haiku")
        self.assertEqual(model_family(""), "")
        self.assertEqual(model_family("gpt-5-mini"), "")

    def test_context_window_limit_defaults_to_200k(self) -> None:
        self.assertEqual(context_window_limit("claude-opus-4-5-20251101"), 200_000)
        self.assertEqual(context_window_limit("claude-sonnet-4-20250514"), 200_000)
        self.assertEqual(context_window_limit("some-unknown-model"), 200_000)
        self.assertEqual(context_window_limit(None), 200_000)


if __name__ == "__main__":
    unittest.main()
