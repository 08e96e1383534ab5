"""Tests for per-session context tracking."""
from sidecar.models.research import PendingInjection
from sidecar.services.session_store import SessionStore


def _store(make_settings, clock, **overrides):
    return SessionStore(settings=make_settings(**overrides), clock=clock)


def test_window_keeps_only_latest_entries(make_settings, clock):
    store = _store(make_settings, clock, session_window_size=5)
    for index in range(4):
        store.add_tool_use("s1", "Read", {"file_path": f"src/file{index}.py"}, "ok")

    session = store.get("s1")
    assert len(session.messages) == 5
    assert session.message_count == 8
    assert session.messages[-1].kind == "tool_output"


def test_tool_output_is_truncated_and_flagged(make_settings, clock):
    store = _store(make_settings, clock, tool_output_max_chars=20)
    store.add_tool_use("s1", "Bash", {"command": "ls"}, "x" * 50)

    output = store.get("s1").messages[-1]
    assert output.content == "x" * 20
    assert output.truncated is True


def test_user_prompt_sets_task_topics_and_tech(make_settings, clock):
    store = _store(make_settings, clock)
    store.add_user_prompt("s1", "I need to migrate the billing service to postgres.", project_path="/repo")

    session = store.get("s1")
    assert session.current_task == "migrate the billing service to postgres"
    assert "postgres" in session.topics
    assert "postgres" in session.tech_stack
    assert session.project_path == "/repo"


def test_new_task_pushes_previous_into_history(make_settings, clock):
    store = _store(make_settings, clock)
    store.add_user_prompt("s1", "I need to migrate the billing service.")
    store.add_user_prompt("s1", "Now let's refactor the invoice renderer.")

    session = store.get("s1")
    assert session.current_task == "refactor the invoice renderer"
    assert session.task_history == ["migrate the billing service"]


def test_errors_are_recorded_and_repeats_counted(make_settings, clock):
    store = _store(make_settings, clock)
    output = "TypeError: handler is not a function at app.js:10"
    store.add_tool_use("s1", "Bash", {"command": "node app.js"}, output)
    session = store.get("s1")

    assert session.recent_errors
    assert session.recent_errors[0].signature.startswith("[Bash] ")
    assert session.last_error_category == "type"
    assert session.error_repeats == 0

    store.add_tool_use("s1", "Bash", {"command": "node app.js"}, output)
    assert session.error_repeats == 1


def test_recent_errors_are_bounded(make_settings, clock):
    store = _store(make_settings, clock, session_max_errors=4)
    for index in range(10):
        store.add_tool_use("s1", "Bash", {"command": "make"}, f"error: build step {index} exploded badly")

    assert len(store.get("s1").recent_errors) == 4


def test_repeated_edits_on_one_file_mark_session_stuck(make_settings, clock):
    store = _store(make_settings, clock)
    for _ in range(7):
        store.add_tool_use("s1", "Edit", {"file_path": "src/auth.ts"}, "ok")
    assert store.is_stuck("s1") is False

    store.add_tool_use("s1", "Edit", {"file_path": "src/auth.ts"}, "ok")
    indicator = store.stuck_indicator("s1")
    assert indicator.is_stuck is True
    assert indicator.focus_area == "auth.ts"
    assert indicator.turns == 8


def test_focus_change_records_history_and_resets_turns(make_settings, clock):
    store = _store(make_settings, clock)
    for _ in range(3):
        store.add_tool_use("s1", "Edit", {"file_path": "src/auth.ts"}, "ok")
    store.add_tool_use("s1", "Bash", {"command": "npm test"}, "1 passed")

    session = store.get("s1")
    assert session.focus_area == "testing"
    assert session.focus_turns == 1
    assert [(r.area, r.turns) for r in session.focus_history] == [("auth.ts", 3)]


def test_files_and_directories_are_tracked(make_settings, clock):
    store = _store(make_settings, clock)
    store.add_tool_use("s1", "Read", {"file_path": "api/routes/users.py"}, "")
    store.add_tool_use("s1", "Grep", {"path": "web/components/"}, "")

    session = store.get("s1")
    assert "api/routes/users.py" in session.files_touched
    assert "api/routes" in session.directories_active
    assert "web/components" in session.directories_active


def test_strategic_analysis_threshold_and_interval(make_settings, clock):
    store = _store(make_settings, clock, strategic_threshold=3, strategic_min_interval_seconds=120)
    for _ in range(3):
        store.add_tool_use("s1", "Read", {"file_path": "app/main.py"}, "from fastapi import FastAPI")
    assert store.should_trigger_strategic_analysis("s1") is True

    store.mark_strategic_analysis("s1")
    for _ in range(3):
        store.add_tool_use("s1", "Read", {"file_path": "app/main.py"}, "")
    assert store.should_trigger_strategic_analysis("s1") is False

    clock.advance(121)
    assert store.should_trigger_strategic_analysis("s1") is True


def test_strategic_context_suggests_complementary_areas(make_settings, clock):
    store = _store(make_settings, clock)
    store.add_tool_use("s1", "Read", {"file_path": "app/main.py"}, "from fastapi import FastAPI")

    context = store.strategic_context("s1")
    assert "fastapi" in context.tech_stack
    assert "frontend integration patterns" in context.complementary_areas
    assert "testing strategies" in context.complementary_areas


def test_injections_pop_in_priority_order_and_mark_research(make_settings, clock):
    store = _store(make_settings, clock)
    store.get_or_create("s1")
    store.record_research("s1", "fix login", "t-low")
    store.queue_injection("s1", PendingInjection("low", "low summary", 0.8, 3, clock(), task_id="t-low"))
    store.queue_injection("s1", PendingInjection("high", "high summary", 0.8, 9, clock(), task_id="t-high"))

    assert store.peek_injection("s1").query == "high"
    assert store.pop_injection("s1").query == "high"
    assert store.pop_injection("s1").query == "low"
    assert store.get("s1").research_history[0].injected is True
    assert store.get("s1").messages[-1].kind == "injection"


def test_prune_inactive_ends_stale_sessions(make_settings, clock):
    store = _store(make_settings, clock)
    store.add_user_prompt("old", "hello there")
    clock.advance(3000)
    store.add_user_prompt("new", "hello again")
    clock.advance(1000)

    assert store.prune_inactive() == ["old"]
    assert store.get("old") is None
    assert store.get("new") is not None


def test_end_session_is_not_resurrected_with_old_state(make_settings, clock):
    store = _store(make_settings, clock)
    store.add_user_prompt("s1", "I need to migrate the billing service.")
    ended = store.end_session("s1")
    assert ended.is_active is False

    store.add_user_prompt("s1", "hello")
    assert store.get("s1").current_task is None
