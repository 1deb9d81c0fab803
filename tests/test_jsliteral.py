from __future__ import annotations

import unittest

from fb_posts.jsliteral import JSLiteralError, parse_js_literal


class TestParseJsLiteral(unittest.TestCase):
    def test_parses_bare_keys_single_quotes_and_trailing_commas(self) -> None:
        value = parse_js_literal(
            "{a: 1, 'b': [true, false, null,], \"c\": {d: -2.5e1, e: 'x\\'y'},}"
        )
        self.assertEqual(
            value,
            {"a": 1, "b": [True, False, None], "c": {"d": -25.0, "e": "x'y"}},
        )

    def test_parses_json(self) -> None:
        self.assertEqual(parse_js_literal('[{"n": "\\u0041\\n"}]'), [{"n": "A\n"}])
        self.assertEqual(parse_js_literal("  []  "), [])
        self.assertEqual(parse_js_literal("{}"), {})

    def test_rejects_anything_that_is_not_data(self) -> None:
        for text in (
            "alert(1)",
            "{a: foo}",
            "{a: foo()}",
            "[1 + 2]",
            "{a: 1} extra",
            "{a: 'unterminated}",
            "[1, 2",
            "",
            "{a: .5}",
        ):
            with self.subTest(text=text):
                with self.assertRaises(JSLiteralError):
                    parse_js_literal(text)

    def test_rejects_non_strings_and_excessive_nesting(self) -> None:
        with self.assertRaises(JSLiteralError):
            parse_js_literal(None)  # type: ignore[arg-type]
        with self.assertRaises(JSLiteralError):
            parse_js_literal("[" * 100 + "]" * 100)

    def test_error_is_a_value_error(self) -> None:
        self.assertTrue(issubclass(JSLiteralError, ValueError))


if __name__ == "__main__":
    unittest.main()
