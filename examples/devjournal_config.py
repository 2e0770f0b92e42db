"""devjournal Configuration - Advanced Python Example

Copy to your working directory (or ~/.config/devjournal/) as
devjournal_config.py for full extensibility.

Convention:
- CONFIG dict for static configuration (same structure as TOML)
- Functions named hook_* become lifecycle hooks
- STRATEGY_PATTERNS replaces the built-in strategy table
"""

import logging
import re

logger = logging.getLogger("devjournal.user_config")

# =============================================================================
# Static Configuration (same structure as TOML)
# =============================================================================

CONFIG = {
    "store": {
        "path": "~/.local/share/devjournal/journal.db",
    },
    "projects": [
        {"name": "webapp", "path": "~/src/webapp", "language": "typescript"},
        {"name": "api", "path": "~/src/api", "language": "python"},
    ],
    "watch": {
        "debounce_seconds": 0.5,
        "flush_interval": 5.0,
        "extra_ignore": ["tmp", "storybook-static"],
    },
    "reflection": {
        "reflect_on_end": True,
        "playbook_min_successes": 2,
        "stale_days": 30,
    },
    "tests": {
        "flaky_window_days": 14,
    },
}


# =============================================================================
# Strategy table - ordered (regex, tag); first match is the primary strategy
# =============================================================================

STRATEGY_PATTERNS = [
    (r"firestore|firebase|security rule", "firebase-rules-fix"),
    (r"mock|spy|afterEach|beforeEach", "mock-lifecycle-fix"),
    (r"cache|stale|invalidat", "cache-invalidation"),
    (r"null|undefined|optional chaining", "defensive-coding"),
    (r"timeout|await|promise|race", "concurrency-fix"),
    (r"config|env|\bttl\b", "config-fix"),
    (r"import|module|path alias", "import-resolution"),
]


# =============================================================================
# Hooks - Called during engine operations
# =============================================================================

_TICKET_RE = re.compile(r"\b[A-Z]{2,}-\d+\b")


def hook_post_append(entry):
    """Called after every journal entry is written.

    Args:
        entry: The stored JournalEntry (read-only)
    """
    tickets = _TICKET_RE.findall(entry.summary)
    if tickets:
        logger.info("Entry %s mentions %s", entry.id, ", ".join(tickets))


def hook_post_reflect(result):
    """Called after a session has been reflected on.

    Args:
        result: ReflectionResult with the analysis, pattern, and playbook
    """
    if result.playbook is not None:
        logger.info("Session %s updated playbook %s", result.session_id, result.playbook.id)
