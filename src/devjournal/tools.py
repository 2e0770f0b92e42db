"""MCP tool definitions wrapping the journal engine."""

from __future__ import annotations

import logging
from typing import Any

from .engine import (
    JournalEngine,
    JournalError,
    NotFoundError,
    ReportParseError,
    SessionConflictError,
    StorageUnavailableError,
)
from .models import EntryType, SessionStatus

logger = logging.getLogger(__name__)

_PROJECT_REF = {
    "type": ["string", "integer"],
    "description": "Project id, name, or root path",
}


def make_tools(engine: JournalEngine) -> dict[str, dict]:
    """Create MCP tool definitions for the journal engine.

    Returns:
        Dict mapping tool names to their definitions.
    """

    tools = {}

    # ========== Sessions ==========
    tools["session_start"] = {
        "name": "session_start",
        "description": "Start a work session for a project. A project can have only one session in progress.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "project": _PROJECT_REF,
                "goal": {
                    "type": "string",
                    "description": "What this session is trying to achieve",
                },
            },
            "required": ["project", "goal"],
        },
    }

    tools["session_end"] = {
        "name": "session_end",
        "description": "End a session. COMPLETED sessions are reflected on so the fix is learned.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "session_id": {"type": "integer"},
                "outcome": {
                    "type": "string",
                    "enum": ["COMPLETED", "ABANDONED"],
                    "description": "Session outcome (default: COMPLETED)",
                },
                "summary": {
                    "type": "string",
                    "description": "What happened",
                },
                "fix_entry_id": {
                    "type": "integer",
                    "description": "Entry known to be the fix; overrides inference",
                },
            },
            "required": ["session_id"],
        },
    }

    tools["session_list"] = {
        "name": "session_list",
        "description": "List recent sessions, newest first.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "project": _PROJECT_REF,
                "status": {
                    "type": "string",
                    "enum": [s.value for s in SessionStatus],
                },
                "limit": {"type": "integer", "description": "Maximum sessions (default: 20)"},
            },
        },
    }

    tools["session_show"] = {
        "name": "session_show",
        "description": "Show a session with its ordered journal entries.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "session_id": {"type": "integer"},
            },
            "required": ["session_id"],
        },
    }

    # ========== Journal ==========
    tools["journal_log"] = {
        "name": "journal_log",
        "description": "Append an entry to the journal. Entries are immutable once written.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "entry_type": {
                    "type": "string",
                    "enum": [t.value for t in EntryType],
                },
                "summary": {
                    "type": "string",
                    "description": "One-line description; for AI_HYPOTHESIS the hypothesis itself",
                },
                "session_id": {
                    "type": "integer",
                    "description": "Session to attach to (project is taken from it)",
                },
                "project": _PROJECT_REF,
                "details": {
                    "type": "object",
                    "description": "Structured payload, e.g. test counts or tool arguments",
                },
                "parent_id": {
                    "type": "integer",
                    "description": "Entry that led to this one",
                },
            },
            "required": ["entry_type", "summary"],
        },
    }

    tools["journal_list"] = {
        "name": "journal_list",
        "description": "List recent journal entries, newest first.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "limit": {"type": "integer", "description": "Maximum entries (default: 50)"},
                "entry_type": {
                    "type": "string",
                    "enum": [t.value for t in EntryType],
                },
                "project": _PROJECT_REF,
                "session_id": {"type": "integer"},
            },
        },
    }

    # ========== Tests ==========
    tools["tests_ingest"] = {
        "name": "tests_ingest",
        "description": "Ingest a Jest JSON or JUnit XML report and report known fixes for its failures.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "path": {"type": "string", "description": "Report file path"},
            },
            "required": ["path"],
        },
    }

    tools["tests_flaky"] = {
        "name": "tests_flaky",
        "description": "Tests that both passed and failed recently, most flaky first.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "limit": {"type": "integer", "description": "Maximum tests (default: 20)"},
                "window_days": {"type": "integer", "description": "Trailing window in days"},
            },
        },
    }

    # ========== Learning ==========
    tools["reflect"] = {
        "name": "reflect",
        "description": "Reflect on one session, or on every session pending reflection when no id is given.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "session_id": {"type": "integer"},
                "fix_entry_id": {
                    "type": "integer",
                    "description": "Entry known to be the fix",
                },
            },
        },
    }

    tools["maintenance"] = {
        "name": "maintenance",
        "description": "Run the maintenance sweep: pending reflection, playbook promotion, decay, and archival.",
        "inputSchema": {"type": "object", "properties": {}},
    }

    tools["playbooks_find"] = {
        "name": "playbooks_find",
        "description": "Find troubleshooting playbooks for an error message.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "error": {"type": "string", "description": "Raw error text"},
                "include_drafts": {
                    "type": "boolean",
                    "description": "Include DRAFT playbooks (default: true)",
                },
                "limit": {"type": "integer"},
            },
            "required": ["error"],
        },
    }

    tools["playbooks_trusted"] = {
        "name": "playbooks_trusted",
        "description": "ACTIVE playbooks at or above the trusted confidence threshold.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "limit": {"type": "integer"},
            },
        },
    }

    tools["playbook_feedback"] = {
        "name": "playbook_feedback",
        "description": "Record whether a playbook helped. Updates its confidence.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "playbook_id": {"type": "integer"},
                "helpful": {"type": "boolean"},
                "session_id": {"type": "integer"},
                "feedback": {"type": "string"},
            },
            "required": ["playbook_id", "helpful"],
        },
    }

    tools["patterns_find"] = {
        "name": "patterns_find",
        "description": "Cross-project patterns for an error message, or the most seen patterns when no error is given.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "error": {"type": "string"},
                "limit": {"type": "integer"},
            },
        },
    }

    tools["journal_stats"] = {
        "name": "journal_stats",
        "description": "Summary statistics: sessions, tests, patterns, playbooks, and strategy effectiveness.",
        "inputSchema": {"type": "object", "properties": {}},
    }

    return tools


async def execute_tool(engine: JournalEngine, name: str, arguments: dict[str, Any]) -> dict[str, Any]:
    """Execute a journal tool and return the result.

    Args:
        engine: JournalEngine instance
        name: Tool name
        arguments: Tool arguments

    Returns:
        Result dict with success status and data or error
    """
    try:
        if name == "session_start":
            session = engine.start_session(arguments["project"], arguments["goal"])
            return {
                "success": True,
                "session": session.to_dict(),
                "message": f"Session {session.id} started",
            }

        elif name == "session_end":
            session = engine.end_session(
                arguments["session_id"],
                outcome=SessionStatus(arguments.get("outcome", "COMPLETED")),
                summary=arguments.get("summary"),
                fix_entry_id=arguments.get("fix_entry_id"),
            )
            return {
                "success": True,
                "session": session.to_dict(),
                "message": f"Session {session.id} ended as {session.status.value}",
            }

        elif name == "session_list":
            status = arguments.get("status")
            sessions = engine.list_sessions(
                limit=arguments.get("limit", 20),
                project=arguments.get("project"),
                status=SessionStatus(status) if status else None,
            )
            return {
                "success": True,
                "count": len(sessions),
                "sessions": [s.to_dict() for s in sessions],
            }

        elif name == "session_show":
            session = engine.get_session(arguments["session_id"])
            entries = engine.session_entries(session.id)
            return {
                "success": True,
                "session": session.to_dict(),
                "entries": [e.to_dict() for e in entries],
            }

        elif name == "journal_log":
            entry = engine.log_entry(
                EntryType(arguments["entry_type"]),
                arguments["summary"],
                session_id=arguments.get("session_id"),
                project=arguments.get("project"),
                details=arguments.get("details"),
                parent_id=arguments.get("parent_id"),
            )
            return {
                "success": True,
                "entry": entry.to_dict(),
                "message": f"Entry {entry.id} logged",
            }

        elif name == "journal_list":
            entry_type = arguments.get("entry_type")
            entries = engine.recent_entries(
                limit=arguments.get("limit", 50),
                entry_type=EntryType(entry_type) if entry_type else None,
                project=arguments.get("project"),
                session_id=arguments.get("session_id"),
            )
            return {
                "success": True,
                "count": len(entries),
                "entries": [e.to_dict() for e in entries],
            }

        elif name == "tests_ingest":
            result = engine.ingest_report(arguments["path"])
            if result is None:
                return {
                    "success": False,
                    "error": f"No known project owns {arguments['path']}",
                    "error_type": "unattributed_report",
                    "suggestion": "Register the project root first",
                }
            return {
                "success": True,
                **result.to_dict(),
            }

        elif name == "tests_flaky":
            flaky = engine.flaky_tests(
                limit=arguments.get("limit", 20),
                window_days=arguments.get("window_days"),
            )
            return {
                "success": True,
                "count": len(flaky),
                "tests": [f.to_dict() for f in flaky],
            }

        elif name == "reflect":
            if arguments.get("session_id") is None:
                report = engine.reflect_pending()
                return {
                    "success": True,
                    **report.to_dict(),
                }
            result = engine.reflect(arguments["session_id"], fix_entry_id=arguments.get("fix_entry_id"))
            return {
                "success": True,
                **result.to_dict(),
            }

        elif name == "maintenance":
            report = engine.run_maintenance()
            return {
                "success": True,
                **report.to_dict(),
            }

        elif name == "playbooks_find":
            playbooks = engine.find_playbooks(
                arguments["error"],
                limit=arguments.get("limit", 5),
                include_drafts=arguments.get("include_drafts", True),
            )
            return {
                "success": True,
                "count": len(playbooks),
                "playbooks": [p.to_dict() for p in playbooks],
            }

        elif name == "playbooks_trusted":
            playbooks = engine.trusted_playbooks(limit=arguments.get("limit", 20))
            return {
                "success": True,
                "count": len(playbooks),
                "playbooks": [p.to_dict() for p in playbooks],
            }

        elif name == "playbook_feedback":
            playbook = engine.record_playbook_usage(
                arguments["playbook_id"],
                helpful=arguments["helpful"],
                session_id=arguments.get("session_id"),
                feedback=arguments.get("feedback"),
            )
            return {
                "success": True,
                "playbook": playbook.to_dict(),
                "message": f"Playbook {playbook.id} confidence now {playbook.confidence_score:.2f}",
            }

        elif name == "patterns_find":
            limit = arguments.get("limit", 5)
            if arguments.get("error"):
                patterns = engine.find_patterns(arguments["error"], limit=limit)
            else:
                patterns = engine.list_patterns(limit=limit)
            return {
                "success": True,
                "count": len(patterns),
                "patterns": [p.to_dict() for p in patterns],
            }

        elif name == "journal_stats":
            return {
                "success": True,
                **engine.stats(),
            }

        else:
            return {
                "success": False,
                "error": f"Unknown tool: {name}",
            }

    except KeyError as e:
        return {
            "success": False,
            "error": f"Missing required argument: {e.args[0]}",
            "error_type": "invalid_arguments",
        }

    except ValueError as e:
        return {
            "success": False,
            "error": str(e),
            "error_type": "invalid_arguments",
        }

    except NotFoundError as e:
        return {
            "success": False,
            "error": str(e),
            "error_type": "not_found",
            "suggestion": "Check that the referenced project, session, entry, or playbook exists",
        }

    except SessionConflictError as e:
        return {
            "success": False,
            "error": str(e),
            "error_type": "session_conflict",
            "suggestion": "End the active session before starting another",
        }

    except ReportParseError as e:
        return {
            "success": False,
            "error": str(e),
            "error_type": "report_parse_error",
        }

    except StorageUnavailableError as e:
        return {
            "success": False,
            "error": str(e),
            "error_type": "storage_unavailable",
        }

    except JournalError as e:
        return {
            "success": False,
            "error": str(e),
            "error_type": "journal_error",
        }

    except Exception as e:
        logger.exception("Tool %s failed", name)
        return {
            "success": False,
            "error": str(e),
            "error_type": "unexpected_error",
        }
