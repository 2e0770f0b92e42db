"""Tests for MCP tool definitions and execution."""

import pytest

from devjournal.tools import execute_tool, make_tools


async def _debug_session(engine, project):
    """Run the login timeout fix through the tool surface."""
    started = await execute_tool(engine, "session_start", {"project": "webapp", "goal": "fix login timeout"})
    session_id = started["session"]["id"]
    await execute_tool(engine, "journal_log", {
        "entry_type": "ERROR_LOG",
        "summary": "TokenExpiredError: jwt expired at /app/src/auth/session.ts:88:14",
        "session_id": session_id,
    })
    for hypothesis, failed in (("check timeout config", 2), ("extend token TTL to 24h", 0)):
        await execute_tool(engine, "journal_log", {
            "entry_type": "AI_HYPOTHESIS",
            "summary": hypothesis,
            "session_id": session_id,
        })
        await execute_tool(engine, "journal_log", {
            "entry_type": "TEST_RUN",
            "summary": "npm test",
            "session_id": session_id,
            "details": {"failed_tests": failed, "passed_tests": 10 - failed},
        })
    return session_id


class TestMakeTools:
    """Tests for make_tools function."""

    def test_make_tools_returns_all_tools(self, engine):
        """make_tools returns all expected tool definitions."""
        tools = make_tools(engine)

        expected_tools = [
            "session_start",
            "session_end",
            "session_list",
            "session_show",
            "journal_log",
            "journal_list",
            "tests_ingest",
            "tests_flaky",
            "reflect",
            "maintenance",
            "playbooks_find",
            "playbooks_trusted",
            "playbook_feedback",
            "patterns_find",
            "journal_stats",
        ]

        for tool_name in expected_tools:
            assert tool_name in tools, f"Missing tool: {tool_name}"
        assert len(tools) == len(expected_tools)

    def test_tool_definitions_have_schema(self, engine):
        """Every tool has a name, description, and object input schema."""
        for name, tool in make_tools(engine).items():
            assert tool["name"] == name
            assert tool["description"]
            assert tool["inputSchema"]["type"] == "object"


class TestSessionTools:
    """Tests for session tools."""

    @pytest.mark.asyncio
    async def test_full_session_through_tools(self, engine, project):
        session_id = await _debug_session(engine, project)
        ended = await execute_tool(engine, "session_end", {"session_id": session_id, "summary": "TTL was 5m"})

        assert ended["success"]
        assert ended["session"]["status"] == "COMPLETED"
        assert ended["session"]["reflection_status"] == "ANALYZED"
        assert ended["session"]["winning_strategy"] == "config-fix"

        shown = await execute_tool(engine, "session_show", {"session_id": session_id})
        types = [e["entry_type"] for e in shown["entries"]]
        assert types[0] == "SESSION_START"
        assert types[-1] == "SESSION_END"

    @pytest.mark.asyncio
    async def test_session_conflict(self, engine, project):
        await execute_tool(engine, "session_start", {"project": project.id, "goal": "a"})
        result = await execute_tool(engine, "session_start", {"project": project.id, "goal": "b"})

        assert not result["success"]
        assert result["error_type"] == "session_conflict"

    @pytest.mark.asyncio
    async def test_unknown_project(self, engine):
        result = await execute_tool(engine, "session_start", {"project": "nope", "goal": "g"})
        assert result["error_type"] == "not_found"

    @pytest.mark.asyncio
    async def test_missing_argument(self, engine):
        result = await execute_tool(engine, "session_start", {"project": "webapp"})
        assert result["error_type"] == "invalid_arguments"
        assert "goal" in result["error"]

    @pytest.mark.asyncio
    async def test_bad_outcome(self, engine, project):
        started = await execute_tool(engine, "session_start", {"project": project.id, "goal": "g"})
        result = await execute_tool(engine, "session_end", {
            "session_id": started["session"]["id"],
            "outcome": "WHATEVER",
        })
        assert result["error_type"] == "invalid_arguments"

    @pytest.mark.asyncio
    async def test_session_list(self, engine, project):
        await execute_tool(engine, "session_start", {"project": project.id, "goal": "g"})
        result = await execute_tool(engine, "session_list", {"status": "IN_PROGRESS"})
        assert result["count"] == 1


class TestJournalTools:
    """Tests for journal entry tools."""

    @pytest.mark.asyncio
    async def test_log_needs_session_or_project(self, engine):
        result = await execute_tool(engine, "journal_log", {"entry_type": "NOTE", "summary": "x"})
        assert result["error_type"] == "journal_error"

    @pytest.mark.asyncio
    async def test_bad_entry_type(self, engine, project):
        result = await execute_tool(engine, "journal_log", {
            "entry_type": "BOGUS",
            "summary": "x",
            "project": project.id,
        })
        assert result["error_type"] == "invalid_arguments"

    @pytest.mark.asyncio
    async def test_journal_list(self, engine, project):
        await execute_tool(engine, "journal_log", {"entry_type": "NOTE", "summary": "a", "project": "webapp"})
        result = await execute_tool(engine, "journal_list", {"entry_type": "NOTE"})
        assert result["count"] == 1
        assert result["entries"][0]["summary"] == "a"


class TestTestTools:
    """Tests for report ingestion tools."""

    @pytest.mark.asyncio
    async def test_ingest(self, engine, project, project_dir, write_report):
        path = write_report(project_dir)
        result = await execute_tool(engine, "tests_ingest", {"path": str(path)})

        assert result["success"]
        assert result["project"] == "webapp"
        assert result["run"]["failed_tests"] == 2
        assert len(result["failures"]) == 2

    @pytest.mark.asyncio
    async def test_ingest_unattributed(self, engine, project, temp_dir, write_report):
        elsewhere = temp_dir / "elsewhere"
        elsewhere.mkdir()
        result = await execute_tool(engine, "tests_ingest", {"path": str(write_report(elsewhere))})
        assert result["error_type"] == "unattributed_report"

    @pytest.mark.asyncio
    async def test_ingest_unparseable(self, engine, project, project_dir):
        engine.config.watch.read_retries = 0
        path = project_dir / "junit.xml"
        path.write_text("garbage")
        result = await execute_tool(engine, "tests_ingest", {"path": str(path)})
        assert result["error_type"] == "report_parse_error"

    @pytest.mark.asyncio
    async def test_flaky_empty(self, engine):
        result = await execute_tool(engine, "tests_flaky", {})
        assert result == {"success": True, "count": 0, "tests": []}


class TestLearningTools:
    """Tests for reflection, playbook, and pattern tools."""

    @pytest.mark.asyncio
    async def test_reflect_pending(self, engine, project):
        engine.config.reflection.reflect_on_end = False
        session_id = await _debug_session(engine, project)
        await execute_tool(engine, "session_end", {"session_id": session_id})

        swept = await execute_tool(engine, "reflect", {})
        assert swept["processed"] == 1

        again = await execute_tool(engine, "reflect", {"session_id": session_id})
        assert again["status"] == "noop"

    @pytest.mark.asyncio
    async def test_reflect_single(self, engine, project):
        engine.config.reflection.reflect_on_end = False
        session_id = await _debug_session(engine, project)
        await execute_tool(engine, "session_end", {"session_id": session_id})

        result = await execute_tool(engine, "reflect", {"session_id": session_id})
        assert result["status"] == "analyzed"
        assert result["analysis"]["winning_index"] == 2
        assert result["pattern"]["success_count"] == 1

    @pytest.mark.asyncio
    async def test_maintenance(self, engine):
        result = await execute_tool(engine, "maintenance", {})
        assert result["success"]
        assert result["processed"] == 0

    @pytest.mark.asyncio
    async def test_playbook_round_trip(self, engine):
        playbook = engine.store.create_playbook("TypeError: jwt expired", "Fixing: jwt expired")

        found = await execute_tool(engine, "playbooks_find", {"error": "TypeError: jwt expired"})
        assert found["count"] == 1

        feedback = await execute_tool(engine, "playbook_feedback", {"playbook_id": playbook.id, "helpful": True})
        assert feedback["playbook"]["success_count"] == 2

        trusted = await execute_tool(engine, "playbooks_trusted", {})
        assert trusted["count"] == 0

    @pytest.mark.asyncio
    async def test_feedback_unknown_playbook(self, engine):
        result = await execute_tool(engine, "playbook_feedback", {"playbook_id": 42, "helpful": False})
        assert result["error_type"] == "not_found"

    @pytest.mark.asyncio
    async def test_patterns(self, engine, project):
        session_id = await _debug_session(engine, project)
        await execute_tool(engine, "session_end", {"session_id": session_id})

        listed = await execute_tool(engine, "patterns_find", {})
        assert listed["count"] == 1
        found = await execute_tool(engine, "patterns_find", {"error": "TokenExpiredError: jwt expired at /b/c/d.ts:1:1"})
        assert found["patterns"][0]["best_strategy"] == "config-fix"

    @pytest.mark.asyncio
    async def test_stats(self, engine, project):
        result = await execute_tool(engine, "journal_stats", {})
        assert result["success"]
        assert result["sessions"]["total"] == 0

    @pytest.mark.asyncio
    async def test_unknown_tool(self, engine):
        result = await execute_tool(engine, "nonexistent_tool", {})
        assert not result["success"]
        assert "Unknown tool" in result["error"]
