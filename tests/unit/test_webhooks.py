"""Unit tests for webhook signatures, repo routing and event classification."""

import os
import threading
from pathlib import Path

import pytest

from ticketpilot.dispatcher.dispatcher import Dispatcher, InFlightMarkers
from ticketpilot.plans.formatter import BOT_MARKER, format_completion_comment, format_failure_comment
from ticketpilot.plans.store import PlanStore
from ticketpilot.storage.db import open_engine
from ticketpilot.storage.kv import TTLStore
from ticketpilot.storage.queue import JobQueue
from ticketpilot.tasks.models import PlanStatus, TaskMode, TaskSnapshot
from ticketpilot.webhooks.classifier import ApprovalMatcher, EventClassifier
from ticketpilot.webhooks.repos import RepoNotConfigured, RepoResolver
from ticketpilot.webhooks.signature import SignatureInvalid, compute_signature, verify_signature

DEFAULT_REPO = "https://github.com/acme/default.git"


@pytest.fixture
def kv(tmp_path: Path) -> TTLStore:
    return TTLStore(open_engine(tmp_path / "hooks.db"))


@pytest.fixture
def plan_store(kv) -> PlanStore:
    return PlanStore(kv)


@pytest.fixture
def classifier(kv, plan_store, tracker) -> EventClassifier:
    resolver = RepoResolver(kv, team_repos={"ENG": "https://github.com/acme/eng.git"}, default_repo_url=DEFAULT_REPO)
    return EventClassifier(
        plan_store,
        resolver,
        tracker,
        bot_user_ids=["bot-user"],
        bot_names=["Ralph Bot"],
        bot_signatures=["Ralph's Implementation Plan"],
        now_ms=lambda: 1700000000000,
    )


def issue_event(action="create", state="Todo", labels=("ralph",), **extra):
    data = {
        "id": "issue-1",
        "identifier": "ENG-1",
        "title": "Add dark mode",
        "description": "Users want it",
        "state": {"name": state},
        "team": {"key": "ENG"},
        "labels": [{"name": name} for name in labels],
    }
    data.update(extra)
    return {"type": "Issue", "action": action, "data": data}


def comment_event(body, issue_id="issue-1", issue=None, **extra):
    data = {"body": body, "issueId": issue_id, "user": {"id": "human", "name": "Dana"}}
    if issue is not None:
        data["issue"] = issue
    data.update(extra)
    return {"type": "Comment", "action": "create", "data": data}


def store_plan(plan_store, ticket_id="issue-1"):
    snapshot = TaskSnapshot(
        ticket_id=ticket_id,
        title="Add dark mode",
        repo_url="https://github.com/acme/eng.git",
        branch_name="ralph/feat-ENG-1",
        identifier="ENG-1",
    )
    return plan_store.store(ticket_id, "1. Add a toggle", snapshot)


# Signatures


def test_verify_signature_accepts_valid_digest():
    body = b'{"type":"Issue"}'
    verify_signature(body, compute_signature(body, "s3cret"), "s3cret")
    verify_signature(body, compute_signature(body, "s3cret").upper(), "s3cret")


@pytest.mark.parametrize(
    "signature, secret",
    [
        (None, "s3cret"),
        ("", "s3cret"),
        ("deadbeef", "s3cret"),
        ("\u00e9" * 64, "s3cret"),
        ("\ud800", "s3cret"),
        ("anything", None),
    ],
)
def test_verify_signature_rejects(signature, secret):
    with pytest.raises(SignatureInvalid):
        verify_signature(b"{}", signature, secret)


def test_signature_covers_exact_bytes():
    signature = compute_signature(b'{"a": 1}', "k")
    with pytest.raises(SignatureInvalid):
        verify_signature(b'{"a":1}', signature, "k")


# Repo routing


def test_repo_resolver_precedence(kv, tmp_path):
    mapping = tmp_path / "repos.yml"
    mapping.write_text("ENG: https://github.com/acme/mounted.git\n")
    resolver = RepoResolver(
        kv,
        mapping_file=mapping,
        team_repos={"ENG": "https://github.com/acme/legacy.git", "OPS": "https://github.com/acme/ops.git"},
        default_repo_url=DEFAULT_REPO,
    )

    assert resolver.resolve("ENG") == "https://github.com/acme/mounted.git"
    assert resolver.resolve("OPS") == "https://github.com/acme/ops.git"
    assert resolver.resolve("DATA") == DEFAULT_REPO
    assert resolver.resolve(None) == DEFAULT_REPO


def test_repo_resolver_reloads_changed_mapping(kv, tmp_path):
    mapping = tmp_path / "repos.json"
    mapping.write_text('{"ENG": "https://github.com/acme/v1.git"}')
    resolver = RepoResolver(kv, mapping_file=mapping)
    assert resolver.resolve("ENG") == "https://github.com/acme/v1.git"

    mapping.write_text('{"ENG": "https://github.com/acme/v2.git"}')
    stat = mapping.stat()
    os.utime(mapping, ns=(stat.st_atime_ns, stat.st_mtime_ns + 1_000_000_000))
    assert resolver.resolve("ENG") == "https://github.com/acme/v2.git"


def test_repo_resolver_missing_mapping_file(kv, tmp_path):
    resolver = RepoResolver(kv, mapping_file=tmp_path / "missing.yml", default_repo_url=DEFAULT_REPO)
    assert resolver.resolve("ENG") == DEFAULT_REPO


def test_repo_resolver_no_match_raises(kv):
    with pytest.raises(RepoNotConfigured):
        RepoResolver(kv).resolve("ENG")


# Approval phrases


@pytest.mark.parametrize(
    "body, approved",
    [
        ("LGTM", True),
        ("Looks good, ship it!", True),
        ("Approved.", True),
        ("please proceed", True),
        ("not approved yet", False),
        ("Don't proceed", False),
        ("this is not yet lgtm", False),
        ("Can you add tests first?", False),
        ("disapproved", False),
    ],
)
def test_approval_matcher(body, approved):
    assert ApprovalMatcher(["lgtm", "approved", "proceed", "ship it"]).is_approval(body) is approved


# Issue events


@pytest.mark.asyncio
async def test_issue_create_queues_plan(classifier):
    decision = await classifier.classify(issue_event())

    assert decision.status == "queued"
    assert decision.job_id == "issue-1-plan-1700000000000"
    assert decision.task.mode == TaskMode.PLAN_ONLY
    assert decision.task.repo_url == "https://github.com/acme/eng.git"
    assert decision.task.branch_name == "ralph/feat-ENG-1"
    assert decision.response() == {"status": "queued", "jobId": "issue-1-plan-1700000000000"}


@pytest.mark.asyncio
async def test_issue_create_without_review_queues_full(classifier):
    classifier.enable_plan_review = False
    decision = await classifier.classify(issue_event())

    assert decision.task.mode == TaskMode.FULL
    assert "-full-" in decision.job_id


@pytest.mark.asyncio
async def test_trigger_label_is_case_insensitive(classifier):
    decision = await classifier.classify(issue_event(labels=("Ralph",)))
    assert decision.enqueues


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "event, reason",
    [
        (issue_event(labels=("bug",)), "no_trigger_label"),
        (issue_event(state="Done"), "terminal_state"),
        (issue_event(state="Canceled"), "terminal_state"),
        (issue_event(action="remove"), "unsupported_event"),
        (issue_event(action="update", state="In Progress"), "work_in_progress"),
        (issue_event(action="update", state="In Review"), "work_in_progress"),
        ({"type": "Project", "action": "create", "data": {}}, "unsupported_event"),
    ],
)
async def test_ignored_issue_events(classifier, event, reason):
    decision = await classifier.classify(event)

    assert not decision.enqueues
    assert decision.response() == {"status": "ignored", "reason": reason}


@pytest.mark.asyncio
async def test_issue_update_with_plan_is_ignored(classifier, plan_store):
    store_plan(plan_store)
    decision = await classifier.classify(issue_event(action="update"))
    assert decision.reason == "plan_exists"


@pytest.mark.asyncio
async def test_issue_create_with_plan_still_queues(classifier, plan_store):
    store_plan(plan_store)
    decision = await classifier.classify(issue_event(action="create"))
    assert decision.enqueues


@pytest.mark.asyncio
async def test_redelivered_issue_event_maps_to_same_job(classifier, kv):
    event = issue_event(action="update", updatedAt="2024-03-01T10:00:00.000Z")
    queue = JobQueue(kv.engine, "tasks")
    dispatcher = Dispatcher(queue)

    first = await classifier.classify(event)
    dispatcher.enqueue(first.task, first.job_id)
    second = await classifier.classify(event)
    dispatcher.enqueue(second.task, second.job_id)

    assert first.job_id == second.job_id == "issue-1-plan-1709287200000"
    assert queue.counts()["waiting"] == 1


@pytest.mark.asyncio
async def test_issue_update_while_job_in_flight_is_ignored(kv, plan_store, tracker):
    markers = InFlightMarkers(kv)
    classifier = EventClassifier(
        plan_store,
        RepoResolver(kv, default_repo_url=DEFAULT_REPO),
        tracker,
        markers=markers,
    )
    dispatcher = Dispatcher(JobQueue(kv.engine, "tasks"), markers)

    first = await classifier.classify(issue_event(updatedAt="2024-03-01T10:00:00Z"))
    dispatcher.enqueue(first.task, first.job_id)
    again = await classifier.classify(
        issue_event(action="update", updatedAt="2024-03-01T10:05:00Z", title="Add dark mode!")
    )

    assert first.status == "queued"
    assert again.reason == "work_in_progress"


@pytest.mark.asyncio
async def test_event_without_timestamps_uses_clock(classifier):
    decision = await classifier.classify(issue_event(updatedAt="not a date"))
    assert decision.job_id == "issue-1-plan-1700000000000"


@pytest.mark.asyncio
async def test_issue_without_repo_is_ignored(kv, plan_store, tracker):
    classifier = EventClassifier(plan_store, RepoResolver(kv), tracker)
    decision = await classifier.classify(issue_event())
    assert decision.reason == "no_repo_configured"


# Comment events


@pytest.mark.asyncio
async def test_approval_comment_queues_execution(classifier, plan_store):
    store_plan(plan_store)
    decision = await classifier.classify(comment_event("LGTM, go ahead"))

    assert decision.status == "execution_queued"
    assert decision.job_id == "issue-1-exec-1700000000000"
    assert decision.task.mode == TaskMode.EXECUTE_ONLY
    assert decision.task.existing_plan == "1. Add a toggle"
    assert plan_store.get("issue-1").status == PlanStatus.APPROVED


@pytest.mark.asyncio
async def test_feedback_comment_queues_replan(classifier, plan_store):
    store_plan(plan_store)
    decision = await classifier.classify(comment_event("Please also cover mobile"))

    assert decision.status == "replanning_queued"
    assert "-replan-" in decision.job_id
    assert decision.task.additional_feedback == "Please also cover mobile"
    assert decision.task.existing_plan == "1. Add a toggle"
    stored = plan_store.get("issue-1")
    assert stored.feedback_history == ["Please also cover mobile"]
    assert stored.status == PlanStatus.NEEDS_REVISION


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "extra",
    [
        {"body": f"{BOT_MARKER}\n# Plan\nReply LGTM"},
        {"body": "Ralph's Implementation Plan\nLGTM", "user": {"id": "human"}},
        {"body": "LGTM", "user": {"id": "bot-user"}},
        {"body": "LGTM", "userId": "bot-user"},
        {"body": "LGTM", "user": {"id": "other", "name": "ralph bot"}},
    ],
)
async def test_self_authored_comments_are_ignored(classifier, plan_store, extra):
    store_plan(plan_store)
    event = comment_event(extra.pop("body"), **extra)

    decision = await classifier.classify(event)
    assert decision.reason == "self_authored"
    assert plan_store.get("issue-1").status == PlanStatus.PENDING_REVIEW


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "body",
    [
        format_failure_comment("issue-1-plan-1", 3, "push rejected"),
        format_completion_comment("https://github.com/acme/eng/pull/7", "ralph/feat-ENG-1", True, 1),
        format_completion_comment(None, "ralph/feat-ENG-1", False, 3, "1 test failed"),
    ],
)
async def test_bot_comments_without_marker_are_ignored(kv, plan_store, tracker, body):
    classifier = EventClassifier(plan_store, RepoResolver(kv, default_repo_url=DEFAULT_REPO), tracker)
    store_plan(plan_store)
    event = comment_event(body.replace(BOT_MARKER, ""), user={"id": "integration", "name": "Acme Linear Integration"})

    decision = await classifier.classify(event)
    assert decision.reason == "self_authored"
    stored = plan_store.get("issue-1")
    assert stored.status == PlanStatus.PENDING_REVIEW
    assert stored.feedback_history == []


@pytest.mark.asyncio
async def test_comment_without_plan_is_ignored(classifier):
    decision = await classifier.classify(comment_event("LGTM", issue={"state": {"name": "Todo"}}))
    assert decision.reason == "no_stored_plan"


@pytest.mark.asyncio
async def test_comment_on_in_review_ticket_queues_iteration(classifier):
    issue = {
        "id": "issue-1",
        "identifier": "ENG-1",
        "title": "Add dark mode",
        "state": {"name": "In Review"},
        "team": {"key": "ENG"},
    }
    decision = await classifier.classify(comment_event("The toggle is misaligned", issue=issue))

    assert decision.status == "iteration_queued"
    assert decision.job_id == "issue-1-iter-1700000000000"
    assert decision.task.is_iteration
    assert decision.task.mode == TaskMode.PLAN_ONLY
    assert decision.task.additional_feedback == "The toggle is misaligned"
    assert decision.task.branch_name == "ralph/feat-ENG-1"


@pytest.mark.asyncio
async def test_iteration_fetches_missing_issue_details(classifier, tracker):
    tracker.add_issue("issue-1", "In Review", identifier="ENG-7", title="Fix header")
    decision = await classifier.classify(comment_event("Header overlaps on mobile"))

    assert decision.status == "iteration_queued"
    assert decision.task.title == "Fix header"
    assert decision.task.branch_name == "ralph/feat-ENG-7"
    assert decision.task.repo_url == "https://github.com/acme/eng.git"


@pytest.mark.asyncio
async def test_comment_edit_is_ignored(classifier):
    event = comment_event("LGTM")
    event["action"] = "update"
    assert (await classifier.classify(event)).reason == "unsupported_event"


@pytest.mark.asyncio
async def test_plan_store_is_read_off_the_event_loop_thread(classifier, plan_store, monkeypatch):
    store_plan(plan_store)
    loop_thread = threading.get_ident()
    threads = []
    original_get = plan_store.get

    def get(ticket_id):
        threads.append(threading.get_ident())
        return original_get(ticket_id)

    monkeypatch.setattr(plan_store, "get", get)

    decision = await classifier.classify(comment_event("LGTM"))
    assert decision.status == "execution_queued"
    assert threads and loop_thread not in threads
