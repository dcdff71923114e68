"""Unit tests for workflow synonyms and tracker state reconciliation."""

import pytest

from ticketpilot.integrations.linear import TrackerState
from ticketpilot.state.reconciler import StateReconciler
from ticketpilot.state.workflow import SynonymTable, WorkflowState


def test_default_outbound_labels():
    table = SynonymTable()
    assert table.outbound_label(WorkflowState.AWAITING_APPROVAL) == "Plan Review"
    assert table.outbound_label(WorkflowState.WORKING) == "In Progress"
    assert table.outbound_label(WorkflowState.IN_EXTERNAL_REVIEW) == "In Review"
    assert table.outbound_label(WorkflowState.TERMINAL) == "Done"


@pytest.mark.parametrize(
    "label, expected",
    [
        ("Todo", WorkflowState.AWAITING_APPROVAL),
        ("  plan-review ", WorkflowState.AWAITING_APPROVAL),
        ("IN PROGRESS", WorkflowState.WORKING),
        ("Under Review", WorkflowState.IN_EXTERNAL_REVIEW),
        ("Cancelled", WorkflowState.TERMINAL),
        ("merged", WorkflowState.TERMINAL),
    ],
)
def test_inbound_synonyms_are_case_insensitive(label, expected):
    assert SynonymTable().canonical(label) == expected


def test_unknown_label_falls_back_to_state_type():
    table = SynonymTable()
    assert table.canonical("Shipped", "completed") == WorkflowState.TERMINAL
    assert table.canonical("QA", "started") == WorkflowState.WORKING
    assert table.canonical("Mystery") is None
    assert table.canonical(None) is None


def test_overrides_replace_default_labels():
    table = SynonymTable({"working": ["Building", "in progress"]})
    assert table.outbound_label(WorkflowState.WORKING) == "Building"
    assert table.canonical("building") == WorkflowState.WORKING
    assert table.canonical("started") is None


def test_invalid_override_key():
    with pytest.raises(ValueError):
        SynonymTable({"not-a-state": ["x"]})


def test_find_target_prefers_outbound_label(tracker):
    reconciler = StateReconciler(tracker)
    states = [
        TrackerState("a", "Todo"),
        TrackerState("b", "Plan Review"),
    ]
    assert reconciler.find_target_state(states, WorkflowState.AWAITING_APPROVAL).id == "b"


def test_find_target_uses_synonyms_in_order(tracker):
    reconciler = StateReconciler(tracker)
    states = [TrackerState("x", "Ready"), TrackerState("y", "Triage")]
    assert reconciler.find_target_state(states, WorkflowState.AWAITING_APPROVAL).id == "y"


@pytest.mark.asyncio
async def test_transition_writes_target_state(tracker):
    tracker.add_issue("issue-1", "Todo")
    reconciler = StateReconciler(tracker)

    assert await reconciler.transition("issue-1", WorkflowState.WORKING) is True
    assert tracker.state_name("issue-1") == "In Progress"
    assert tracker.updates == [("issue-1", "s-progress")]


@pytest.mark.asyncio
async def test_transition_skips_write_when_already_in_state(tracker):
    tracker.add_issue("issue-1", "In Progress")

    assert await StateReconciler(tracker).transition("issue-1", WorkflowState.WORKING) is True
    assert tracker.updates == []


@pytest.mark.asyncio
async def test_transition_without_match_does_not_write(tracker):
    """No state is created or guessed when nothing matches."""
    tracker.states = [s for s in tracker.states if s.name not in ("In Progress",)]
    tracker.add_issue("issue-1", "Todo")

    assert await StateReconciler(tracker).transition("issue-1", WorkflowState.WORKING) is False
    assert tracker.updates == []


@pytest.mark.asyncio
async def test_awaiting_approval_without_matching_state_does_not_write(tracker):
    """A team without an AwaitingApproval state is left untouched, not moved to review."""
    tracker.states = [
        TrackerState("s-progress", "In Progress", "started"),
        TrackerState("s-review", "In Review", "started"),
    ]
    tracker.add_issue("issue-1", "In Progress")

    assert await StateReconciler(tracker).transition("issue-1", WorkflowState.AWAITING_APPROVAL) is False
    assert tracker.state_name("issue-1") == "In Progress"
    assert tracker.updates == []


@pytest.mark.asyncio
async def test_transition_tracker_unavailable_returns_false(tracker):
    tracker.add_issue("issue-1", "Todo")
    tracker.available = False

    assert await StateReconciler(tracker).transition("issue-1", WorkflowState.WORKING) is False


@pytest.mark.asyncio
async def test_transition_disabled_tracker(tracker):
    tracker.enabled = False
    assert await StateReconciler(tracker).transition("issue-1", WorkflowState.WORKING) is False


@pytest.mark.asyncio
async def test_transition_unknown_issue(tracker):
    assert await StateReconciler(tracker).transition("ghost", WorkflowState.WORKING) is False


@pytest.mark.asyncio
async def test_settle_skips_write_when_tracker_already_moved(tracker, no_sleep):
    tracker.add_issue("issue-1", "In Review")
    reconciler = StateReconciler(tracker, grace_period_sec=3.0, sleep=no_sleep)

    assert await reconciler.settle_after_change_request("issue-1") is True
    assert no_sleep.calls == [3.0]
    assert tracker.updates == []


@pytest.mark.asyncio
async def test_settle_writes_after_grace_period(tracker, no_sleep):
    tracker.add_issue("issue-1", "In Progress")
    reconciler = StateReconciler(
        tracker, grace_period_sec=3.0, confirm_polls=2, confirm_poll_interval_sec=1.0, sleep=no_sleep
    )

    assert await reconciler.settle_after_change_request("issue-1") is True
    assert no_sleep.calls == [3.0, 1.0, 1.0]
    assert tracker.updates == [("issue-1", "s-review")]


@pytest.mark.asyncio
async def test_settle_sees_late_automation_during_polls(tracker):
    tracker.add_issue("issue-1", "In Progress")

    async def sleep(seconds: float) -> None:
        # Tracker automation lands during the first confirmation wait.
        if seconds == 1.0:
            tracker.move("issue-1", "In Review")

    reconciler = StateReconciler(
        tracker, grace_period_sec=3.0, confirm_polls=1, confirm_poll_interval_sec=1.0, sleep=sleep
    )
    assert await reconciler.settle_after_change_request("issue-1") is True
    assert tracker.updates == []
