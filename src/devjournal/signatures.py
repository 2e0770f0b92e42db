"""Error signature canonicalization.

Turns raw error or log text into a short, stable signature so the same
failure seen in different projects, files, or runs groups together.
Nothing in this module raises: bad input degrades to a sentinel signature.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Iterable, Optional

INVALID_INPUT_SIGNATURE = "generic:invalid_error_input"
SHORT_ERROR_SIGNATURE = "generic:short_error"

MAX_SIGNATURE_LENGTH = 200
MIN_SIGNATURE_LENGTH = 5
# Bounds regex work on pathological single-line dumps
MAX_LINE_LENGTH = 4096
MAX_PASSES = 10

# Applied in order; each match is replaced with a single space.
STRIP_PATTERNS: list[re.Pattern] = [
    # Absolute/relative paths (unix and windows)
    re.compile(r"(?:[a-zA-Z]:|[\w.-]+)?(?:[\\/][\w.-]+)+[\\/][\w.-]+"),
    # :line:col suffixes
    re.compile(r":\d+:\d+"),
    # Memory addresses
    re.compile(r"0x[a-fA-F0-9]{6,}"),
    # UUIDs
    re.compile(r"[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}"),
    # Timestamps and ids
    re.compile(r"\b\d{6,}\b"),
    # Hashes
    re.compile(r"\b[a-fA-F0-9]{16,}\b"),
    # Long string literals
    re.compile(r'"[^"]{20,}"'),
    re.compile(r"'[^']{20,}'"),
]

ERROR_PREFIX_RE = re.compile(r"^([A-Za-z_][\w.]*?(?:Error|Exception))\s*:\s*(.*)$")

_WHITESPACE_RE = re.compile(r"\s+")


@dataclass
class ParsedTestError:
    """Normalized view of a failing test's output."""
    test_name: str
    error_type: str
    error_message: str
    signature: str
    stack_trace: Optional[str] = None
    test_file: Optional[str] = None


def _first_line(text: str) -> str:
    lines = text.strip().splitlines()
    return lines[0].strip()[:MAX_LINE_LENGTH] if lines else ""


def _strip_variable_content(text: str) -> str:
    for pattern in STRIP_PATTERNS:
        text = pattern.sub(" ", text)
    return _WHITESPACE_RE.sub(" ", text).strip()


def _canonical_line(line: str) -> str:
    match = ERROR_PREFIX_RE.match(line)
    if match:
        prefix, rest = match.group(1), _strip_variable_content(match.group(2))
        result = f"{prefix}: {rest}" if rest else f"{prefix}:"
    else:
        result = _strip_variable_content(line)
    return result[:MAX_SIGNATURE_LENGTH].rstrip()


def generate_error_signature(raw: Any) -> str:
    """Canonicalize raw error text into a stable signature.

    Only the first line is considered; a leading ``SomeError:`` token is
    kept verbatim, and paths, line:col suffixes, addresses, UUIDs, long
    numbers, hashes and long quoted literals are removed.

    Args:
        raw: Raw error message or log line

    Returns:
        Signature string, or a ``generic:*`` sentinel for degenerate input
    """
    if not isinstance(raw, str) or not raw:
        return INVALID_INPUT_SIGNATURE

    signature = _canonical_line(_first_line(raw))
    # Truncation can expose a fresh token at the tail; settle on a fixpoint.
    for _ in range(MAX_PASSES):
        again = _canonical_line(signature)
        if again == signature:
            break
        signature = again

    if len(signature) < MIN_SIGNATURE_LENGTH:
        return SHORT_ERROR_SIGNATURE
    return signature


def extract_error_type(raw: Any) -> str:
    """Return the leading error type name, or ``UnknownError``."""
    if not isinstance(raw, str):
        return "UnknownError"
    match = ERROR_PREFIX_RE.match(_first_line(raw))
    if match:
        return match.group(1).rsplit(".", 1)[-1]
    return "UnknownError"


def _tokens(signature: str) -> set[str]:
    return {t for t in signature.lower().split() if t}


def signature_similarity(a: Any, b: Any) -> float:
    """Jaccard similarity over whitespace tokens.

    Returns 1.0 for identical signatures and 0.0 when either side is empty.
    """
    if not isinstance(a, str) or not isinstance(b, str):
        return 0.0
    if a == b and a.strip():
        return 1.0
    tokens_a, tokens_b = _tokens(a), _tokens(b)
    if not tokens_a or not tokens_b:
        return 0.0
    return len(tokens_a & tokens_b) / len(tokens_a | tokens_b)


def best_match(
    signature: str,
    candidates: Iterable[str],
    threshold: float = 0.5,
) -> Optional[tuple[str, float]]:
    """Find the most similar candidate signature above a threshold.

    Args:
        signature: Signature to match
        candidates: Known signatures
        threshold: Minimum Jaccard similarity to accept

    Returns:
        (candidate, score) or None if nothing reaches the threshold
    """
    best: Optional[tuple[str, float]] = None
    for candidate in candidates:
        score = signature_similarity(signature, candidate)
        if score >= threshold and (best is None or score > best[1]):
            best = (candidate, score)
    return best


def parse_test_error(
    test_name: str,
    output: Any,
    test_file: Optional[str] = None,
) -> ParsedTestError:
    """Split failing test output into type, message, signature and trace."""
    text = output if isinstance(output, str) else ""
    lines = text.strip().splitlines()
    message = lines[0].strip() if lines else ""
    stack = "\n".join(lines[1:]).strip() or None
    return ParsedTestError(
        test_name=test_name,
        error_type=extract_error_type(text),
        error_message=message,
        signature=generate_error_signature(text),
        stack_trace=stack,
        test_file=test_file,
    )
