"""Unit tests for plan storage and ticket comment rendering."""

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from ticketpilot.plans.formatter import (
    BOT_MARKER,
    format_completion_comment,
    format_failure_comment,
    format_plan_comment,
)
from ticketpilot.plans.store import PlanStore
from ticketpilot.storage.db import open_engine
from ticketpilot.storage.kv import TTLStore
from ticketpilot.tasks.models import PlanStatus, Task, TaskMode, TaskSnapshot


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 3, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def plan_store(tmp_path: Path, clock):
    kv = TTLStore(open_engine(tmp_path / "plans.db"), clock=clock)
    return PlanStore(kv, ttl_days=7)


@pytest.fixture
def snapshot():
    return TaskSnapshot(
        ticket_id="issue-1",
        title="Add dark mode",
        description="Users want a dark theme",
        repo_url="https://github.com/acme/web.git",
        branch_name="ralph/feat-ENG-1",
        identifier="ENG-1",
    )


def test_task_serializes_camel_case(snapshot):
    """Queued payloads use camelCase keys and round-trip through validation."""
    task = Task.from_snapshot(snapshot, mode=TaskMode.FULL, additional_feedback="use CSS vars")
    payload = task.to_json_dict()

    assert payload["ticketId"] == "issue-1"
    assert payload["branchName"] == "ralph/feat-ENG-1"
    assert payload["mode"] == "full"
    assert payload["additionalFeedback"] == "use CSS vars"

    restored = Task.model_validate(payload)
    assert restored == task
    assert restored.snapshot() == snapshot


def test_store_and_get_plan(plan_store, snapshot):
    stored = plan_store.store("issue-1", "<plan>Step 1</plan>", snapshot)

    fetched = plan_store.get("issue-1")
    assert fetched is not None
    assert fetched.plan == stored.plan
    assert fetched.status == PlanStatus.PENDING_REVIEW
    assert fetched.task_context == snapshot
    assert fetched.feedback_history == []


def test_empty_plan_text_is_still_a_plan(plan_store, snapshot):
    plan_store.store("issue-1", "", snapshot)
    assert plan_store.get("issue-1") is not None


def test_plan_expires_after_ttl(plan_store, snapshot, clock):
    plan_store.store("issue-1", "plan", snapshot)

    clock.now += timedelta(days=6, hours=23)
    assert plan_store.get("issue-1") is not None

    clock.now += timedelta(hours=2)
    assert plan_store.get("issue-1") is None


def test_feedback_is_appended_in_order(plan_store, snapshot):
    plan_store.store("issue-1", "plan", snapshot)
    plan_store.append_feedback("issue-1", "first")
    updated = plan_store.append_feedback("issue-1", "second")

    assert updated.feedback_history == ["first", "second"]
    assert updated.status == PlanStatus.NEEDS_REVISION
    assert plan_store.get("issue-1").feedback_history == ["first", "second"]


def test_feedback_write_resets_ttl(plan_store, snapshot, clock):
    plan_store.store("issue-1", "plan", snapshot)
    clock.now += timedelta(days=6)
    plan_store.append_feedback("issue-1", "tweak")

    clock.now += timedelta(days=6)
    assert plan_store.get("issue-1") is not None


def test_mutations_on_missing_plan_return_none(plan_store):
    assert plan_store.append_feedback("nope", "x") is None
    assert plan_store.set_status("nope", PlanStatus.APPROVED) is None


def test_set_status_and_delete(plan_store, snapshot):
    plan_store.store("issue-1", "plan", snapshot)
    assert plan_store.set_status("issue-1", PlanStatus.APPROVED).status == PlanStatus.APPROVED

    assert plan_store.delete("issue-1") is True
    assert plan_store.get("issue-1") is None


def test_store_replaces_plan_and_keeps_carried_history(plan_store, snapshot):
    plan_store.store("issue-1", "v1", snapshot)
    plan_store.append_feedback("issue-1", "more tests")

    revised = plan_store.store("issue-1", "v2", snapshot, feedback_history=["more tests"])
    assert revised.status == PlanStatus.PENDING_REVIEW
    assert plan_store.get("issue-1").plan == "v2"
    assert plan_store.get("issue-1").feedback_history == ["more tests"]


def test_unreadable_plan_is_discarded(plan_store):
    plan_store.kv.set(plan_store.key("issue-9"), "{not json", 60)
    assert plan_store.get("issue-9") is None
    assert plan_store.kv.get(plan_store.key("issue-9")) is None


def test_format_plan_comment():
    body = format_plan_comment("<plan>\n1. Do it\n</plan>", "Add dark mode")

    assert body.startswith(BOT_MARKER)
    assert "Ralph's Implementation Plan" in body
    assert "**Task:** Add dark mode" in body
    assert "1. Do it" in body
    assert "<plan>" not in body
    assert "`LGTM`" in body


def test_format_plan_comment_revision_and_phrases():
    body = format_plan_comment("plan", "T", approval_phrases=["go"], revision=2)
    assert "(revision 2)" in body
    assert "Reply with `go` to start execution" in body


def test_format_completion_comment_success():
    body = format_completion_comment("https://github.com/a/b/pull/3", "ralph/feat-1", True, 1)
    assert "finished the implementation" in body
    assert "https://github.com/a/b/pull/3" in body
    assert "Validation output" not in body


def test_format_completion_comment_wip():
    body = format_completion_comment(None, "ralph/feat-1", False, 3, "ruff: E501")
    assert "work in progress" in body
    assert "after 3 attempts" in body
    assert "ruff: E501" in body
    assert "Pull request" not in body


def test_format_failure_comment():
    body = format_failure_comment("ENG-1-full-abc", 3, "RuntimeError: clone failed")
    assert body.startswith(BOT_MARKER)
    assert "`ENG-1-full-abc`" in body
    assert "3 attempt(s)" in body
    assert "clone failed" in body
