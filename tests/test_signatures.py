"""Tests for error signature canonicalization."""

import pytest

from devjournal.signatures import (
    INVALID_INPUT_SIGNATURE,
    MAX_SIGNATURE_LENGTH,
    SHORT_ERROR_SIGNATURE,
    best_match,
    extract_error_type,
    generate_error_signature,
    parse_test_error,
    signature_similarity,
)


class TestGenerateErrorSignature:
    """Tests for generate_error_signature."""

    def test_strips_path_and_line_suffix(self):
        """Path and :line:col are removed, the error prefix is kept."""
        raw = "TypeError: Cannot read property 'email' of undefined at /app/src/auth.ts:42:10"
        sig = generate_error_signature(raw)

        assert sig.startswith("TypeError:")
        assert "Cannot read property 'email' of undefined" in sig
        assert "/app/src/auth.ts" not in sig
        assert "42" not in sig
        assert ":10" not in sig

    def test_same_error_different_paths_match(self):
        """Errors differing only in path and position share a signature."""
        a = "TypeError: x is not a function at /home/alice/proj/src/a.js:10:5"
        b = "TypeError: x is not a function at /srv/build/other/lib/b.js:999:1"
        assert generate_error_signature(a) == generate_error_signature(b)

    def test_windows_paths_stripped(self):
        """Windows paths are removed too."""
        sig = generate_error_signature(r"Error: cannot open C:\Users\bob\app\config.json")
        assert "Users" not in sig
        assert sig.startswith("Error:")

    def test_only_first_line_used(self):
        """Stack trace lines do not affect the signature."""
        a = "ReferenceError: foo is not defined\n    at bar (/a/b.js:1:1)"
        b = "ReferenceError: foo is not defined\n    at baz (/c/d.js:2:2)\n    at main"
        assert generate_error_signature(a) == generate_error_signature(b)
        assert generate_error_signature(a) == "ReferenceError: foo is not defined"

    def test_strips_variable_tokens(self):
        """Addresses, UUIDs, long numbers, hashes and long literals are removed."""
        raw = (
            "Error: request 123456789 for 550e8400-e29b-41d4-a716-446655440000 at 0xdeadbeef00 "
            "hash abcdef0123456789abcd failed with \"this is a very long literal value\""
        )
        sig = generate_error_signature(raw)

        assert "123456789" not in sig
        assert "550e8400" not in sig
        assert "0xdeadbeef00" not in sig
        assert "abcdef0123456789abcd" not in sig
        assert "very long literal" not in sig
        assert sig.startswith("Error: request")

    def test_short_numbers_kept(self):
        """Short numbers carry meaning (status codes) and stay."""
        sig = generate_error_signature("HttpError: request failed with status 404")
        assert "404" in sig

    def test_whitespace_collapsed(self):
        """Runs of whitespace become single spaces."""
        sig = generate_error_signature("Error:   too     many    spaces   here")
        assert sig == "Error: too many spaces here"

    def test_truncated_to_max_length(self):
        """Signatures never exceed the length cap."""
        sig = generate_error_signature("Error: " + "word " * 200)
        assert len(sig) <= MAX_SIGNATURE_LENGTH

    def test_idempotent(self):
        """Canonicalizing a signature again changes nothing."""
        raw = "TypeError: Cannot read property 'id' of undefined at /app/src/auth.ts:42:10"
        sig = generate_error_signature(raw)
        assert generate_error_signature(sig) == sig

    @pytest.mark.parametrize("raw", [None, "", 42, ["Error"]])
    def test_invalid_input_sentinel(self, raw):
        """Empty or non-string input degrades to the invalid-input sentinel."""
        assert generate_error_signature(raw) == INVALID_INPUT_SIGNATURE

    def test_short_error_sentinel(self):
        """A result shorter than five characters degrades to a sentinel."""
        assert generate_error_signature("oops") == SHORT_ERROR_SIGNATURE
        assert generate_error_signature("/a/b/c.js:1:2") == SHORT_ERROR_SIGNATURE

    @pytest.mark.parametrize("raw", ["   ", "\n\t\n", " \r\n "])
    def test_whitespace_only_is_short(self, raw):
        assert generate_error_signature(raw) == SHORT_ERROR_SIGNATURE

    def test_huge_single_line_does_not_raise(self):
        """Pathological input is handled without error."""
        sig = generate_error_signature("Error: " + "x" * 100000)
        assert len(sig) <= MAX_SIGNATURE_LENGTH


class TestExtractErrorType:
    """Tests for extract_error_type."""

    def test_known_prefix(self):
        assert extract_error_type("TypeError: boom") == "TypeError"

    def test_dotted_prefix_keeps_last_part(self):
        assert extract_error_type("requests.exceptions.ConnectionError: refused") == "ConnectionError"

    def test_exception_suffix(self):
        assert extract_error_type("NullPointerException: at line") == "NullPointerException"

    def test_unknown(self):
        assert extract_error_type("something broke") == "UnknownError"
        assert extract_error_type(None) == "UnknownError"


class TestSimilarity:
    """Tests for signature_similarity and best_match."""

    def test_identical_is_one(self):
        assert signature_similarity("TypeError: a b c", "TypeError: a b c") == 1.0

    def test_empty_is_zero(self):
        assert signature_similarity("", "TypeError: a") == 0.0
        assert signature_similarity(None, "TypeError: a") == 0.0

    def test_jaccard(self):
        """Two of four distinct tokens shared."""
        assert signature_similarity("a b c", "b c d") == pytest.approx(2 / 4)

    def test_case_insensitive(self):
        assert signature_similarity("Foo Bar", "foo bar") == 1.0

    def test_best_match_picks_highest(self):
        candidates = [
            "TypeError: Cannot read property of undefined",
            "TypeError: Cannot read property 'email' of undefined",
            "SyntaxError: unexpected token",
        ]
        match = best_match("TypeError: Cannot read property 'email' of null", candidates, threshold=0.5)
        assert match is not None
        assert match[0] == candidates[1]

    def test_best_match_below_threshold(self):
        assert best_match("completely different words", ["TypeError: boom"], threshold=0.5) is None


class TestParseTestError:
    """Tests for parse_test_error."""

    def test_splits_message_and_stack(self):
        output = "AssertionError: expected 1 to equal 2\n    at Context.<anonymous> (/app/test/a.spec.js:5:3)"
        parsed = parse_test_error("adds numbers", output, test_file="test/a.spec.js")

        assert parsed.error_type == "AssertionError"
        assert parsed.error_message == "AssertionError: expected 1 to equal 2"
        assert parsed.stack_trace.startswith("at Context")
        assert parsed.signature == generate_error_signature(output)
        assert parsed.test_file == "test/a.spec.js"

    def test_empty_output(self):
        parsed = parse_test_error("t", None)
        assert parsed.error_type == "UnknownError"
        assert parsed.signature == INVALID_INPUT_SIGNATURE
        assert parsed.stack_trace is None
