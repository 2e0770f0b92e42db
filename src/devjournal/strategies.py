"""Strategy classification for hypothesis text.

An ordered table of (pattern, tag) pairs. The first matching row gives the
primary strategy; every matching row contributes a tag. The table can be
replaced from configuration, and a callable classifier can stand in for it
entirely.
"""

from __future__ import annotations

import re
from typing import Callable, Iterable, Optional, Union

DEFAULT_STRATEGY = "general-logic-fix"

DEFAULT_STRATEGY_PATTERNS: list[tuple[str, str]] = [
    (r"mock|reset|spy|jest\.clear|afterEach|lifecycle", "mock-lifecycle-fix"),
    (r"cache|stale|redis|invalidat", "cache-invalidation"),
    (r"null|undefined|missing|default|optional", "defensive-coding"),
    (r"wait|timeout|async|await|promise|race", "concurrency-fix"),
    (r"permission|auth|role|access|deny|allow|rule", "auth-policy-fix"),
    (r"import|require|module|export|path", "import-resolution"),
    (r"type|interface|typescript|cast|as\s", "type-fix"),
    (r"config|env|environment|setting|\.env|\bttl\b", "config-fix"),
    (r"dependency|package|version|upgrade|npm|yarn|pip", "dependency-fix"),
    (r"network|http|fetch|api|endpoint|cors", "network-fix"),
    (r"database|query|sql|orm|migration", "database-fix"),
    (r"memory|leak|gc|heap", "memory-fix"),
    (r"state|redux|context|store", "state-management-fix"),
    (r"render|component|react|vue|dom", "ui-render-fix"),
]

PatternSpec = Union[tuple[str, str], list[str]]


class StrategyClassifier:
    """Maps free text to strategy tags."""

    def __init__(
        self,
        patterns: Optional[Iterable[PatternSpec]] = None,
        default: str = DEFAULT_STRATEGY,
        classify_hook: Optional[Callable[[str], Iterable[str]]] = None,
    ):
        """Build a classifier.

        Args:
            patterns: Ordered (regex, tag) pairs; defaults to the built-in table
            default: Tag used when nothing matches
            classify_hook: Optional callable replacing the table lookup
        """
        rows = DEFAULT_STRATEGY_PATTERNS if patterns is None else patterns
        self.table: list[tuple[re.Pattern, str]] = [
            (re.compile(pattern, re.IGNORECASE), tag) for pattern, tag in rows
        ]
        self.default = default
        self.classify_hook = classify_hook

    def classify(self, text: Optional[str]) -> list[str]:
        """All matching tags in table order; never empty."""
        if not text:
            return [self.default]

        if self.classify_hook is not None:
            tags = [t for t in self.classify_hook(text) if t]
            return tags or [self.default]

        tags = []
        for pattern, tag in self.table:
            if pattern.search(text) and tag not in tags:
                tags.append(tag)
        return tags or [self.default]

    def primary(self, text: Optional[str]) -> str:
        """First tag for the text."""
        return self.classify(text)[0]
