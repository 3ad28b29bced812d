from datetime import datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from issuetrack.core.database import create_db_engine, create_session_factory, init_db
from issuetrack.core.issue_store import (
    CONSOLE_FALLBACK_ID,
    IssueFilters,
    IssueStore,
    LogErrorOptions,
    merge_metadata,
)


class SteppingClock:
    def __init__(self, start=datetime(2026, 3, 1, 12, 0, 0), step=timedelta(seconds=30)):
        self.now = start
        self.step = step

    def __call__(self):
        current = self.now
        self.now = self.now + self.step
        return current


@pytest.fixture
def store(session_factory):
    return IssueStore(session_factory, environment="test", clock=SteppingClock())


async def test_same_report_twice_is_one_issue(store):
    first = await store.log_error("TypeError", "x is undefined", LogErrorOptions(stack="at a\nat b"))
    second = await store.log_error("TypeError", "x is undefined", LogErrorOptions(stack="at a\nat c"))

    assert first == second
    issue = store.get_issue(first)
    assert issue.count == 2
    assert issue.last_seen_at > issue.first_seen_at
    assert issue.environment == "test"
    assert issue.status == "open"


async def test_level_escalates_but_never_drops(store):
    issue_id = await store.log_warning("Slow", "query took 5s")
    assert store.get_issue(issue_id).level == "warning"

    await store.log_error("Slow", "query took 5s")
    assert store.get_issue(issue_id).level == "error"

    await store.log_info("Slow", "query took 5s")
    issue = store.get_issue(issue_id)
    assert issue.level == "error"
    assert issue.count == 3


async def test_metadata_is_merged_and_last_occurrence_recorded(store):
    issue_id = await store.log_error("E", "boom", LogErrorOptions(metadata={"a": 1, "b": 1}))
    await store.log_error(
        "E",
        "boom",
        LogErrorOptions(metadata={"b": 2}, url="/checkout", user_agent="ua/1", user_id="u-1"),
    )

    meta = store.get_issue(issue_id).meta
    assert meta["a"] == 1
    assert meta["b"] == 2
    assert meta["lastOccurrence"]["url"] == "/checkout"
    assert meta["lastOccurrence"]["userAgent"] == "ua/1"
    assert meta["lastOccurrence"]["userId"] == "u-1"
    assert meta["lastOccurrence"]["timestamp"].endswith("Z")


async def test_explicit_fingerprint_groups_different_titles(store):
    a = await store.log_error("Timeout A", "upstream", LogErrorOptions(fingerprint="upstream-timeouts"))
    b = await store.log_error("Timeout B", "upstream", LogErrorOptions(fingerprint="upstream-timeouts"))
    assert a == b
    assert store.get_issue(a).title == "Timeout A"


async def test_new_issue_handler_runs_only_on_creation(session_factory):
    handler = AsyncMock()
    store = IssueStore(session_factory, on_new_issue=handler)

    issue_id = await store.log_error("E", "boom")
    await store.log_error("E", "boom")

    handler.assert_awaited_once()
    assert handler.await_args.args[0].id == issue_id


async def test_concurrent_first_occurrence_is_merged(tmp_path, monkeypatch):
    engine = create_db_engine(f"sqlite:///{tmp_path / 'race.db'}")
    init_db(engine)
    session_factory = create_session_factory(engine)
    handler = AsyncMock()
    store = IssueStore(session_factory, on_new_issue=handler)
    rival = IssueStore(session_factory)
    calls = []

    def find_after_rival_insert(db, fp):
        calls.append(fp)
        if len(calls) == 1:
            # another worker stores the same fingerprint between our lookup and insert
            rival._record_occurrence("E", "boom", LogErrorOptions())
            return None
        return IssueStore._find_by_fingerprint(db, fp)

    monkeypatch.setattr(store, "_find_by_fingerprint", find_after_rival_insert)

    issue_id = await store.log_error("E", "boom")

    [issue] = store.list_issues()
    assert issue.id == issue_id
    assert issue.count == 2
    assert len(calls) == 2
    handler.assert_not_awaited()
    engine.dispose()


async def test_handler_failure_does_not_reach_the_caller(session_factory):
    store = IssueStore(session_factory, on_new_issue=AsyncMock(side_effect=RuntimeError("smtp")))
    issue_id = await store.log_error("E", "boom")
    assert issue_id != CONSOLE_FALLBACK_ID
    assert store.get_issue(issue_id) is not None


async def test_storage_failure_returns_fallback_id(caplog):
    def broken_factory():
        raise RuntimeError("database is locked")

    store = IssueStore(broken_factory)
    with caplog.at_level("ERROR", logger="issuetrack"):
        result = await store.log_error("E", "boom", LogErrorOptions(url="/x"))

    assert result == CONSOLE_FALLBACK_ID
    assert "Failed to log error to database" in caplog.text
    assert "Original error" in caplog.text


async def test_level_shortcuts_do_not_mutate_options(store):
    options = LogErrorOptions(tags=["checkout"])
    issue_id = await store.log_debug("Trace", "cart loaded", options)
    assert options.level == "error"
    assert store.get_issue(issue_id).level == "debug"
    assert store.get_issue(issue_id).tags == ["checkout"]


async def test_list_issues_filters_and_search(store):
    await store.log_error("Database error", "connection refused")
    await store.log_warning("Slow page", "render took 3s")
    await store.log_info("Cache miss", "key user:1")

    assert len(store.list_issues()) == 3
    assert [i.title for i in store.list_issues(IssueFilters(level="warning"))] == ["Slow page"]
    assert [i.title for i in store.list_issues(IssueFilters(search="REFUSED"))] == ["Database error"]
    assert len(store.list_issues(IssueFilters(limit=2))) == 2
    # most recently seen first
    assert store.list_issues()[0].title == "Cache miss"


async def test_resolve_and_reopen(store):
    issue_id = await store.log_error("E", "boom")

    assert store.update_issue_status(issue_id, "resolved", resolved_by="admin-1")
    issue = store.get_issue(issue_id)
    assert issue.status == "resolved"
    assert issue.resolved_at is not None
    assert issue.resolved_by == "admin-1"
    assert store.list_issues(IssueFilters(status="resolved"))[0].id == issue_id

    assert store.update_issue_status(issue_id, "open")
    issue = store.get_issue(issue_id)
    assert issue.status == "open"
    assert issue.resolved_at is None
    assert issue.resolved_by is None


def test_update_unknown_issue_returns_false(store):
    assert store.update_issue_status("missing", "closed") is False


async def test_issue_stats(store):
    a = await store.log_error("A", "a")
    await store.log_error("A", "a")
    await store.log_warning("B", "b")
    await store.log_info("C", "c")
    store.update_issue_status(a, "closed")

    stats = store.get_issue_stats()
    assert stats["total"] == 3
    assert stats["open"] == 2
    assert stats["closed"] == 1
    assert stats["resolved"] == 0
    assert stats["byLevel"] == {"error": 1, "warning": 1, "info": 1, "debug": 0}


def test_stats_on_empty_store(store):
    stats = store.get_issue_stats()
    assert stats["total"] == 0
    assert stats["byLevel"]["error"] == 0


def test_merge_metadata_keeps_existing_keys():
    merged = merge_metadata({"a": 1}, None, {"url": None})
    assert merged == {"a": 1, "lastOccurrence": {"url": None}}
