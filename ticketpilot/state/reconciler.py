"""Keeps the tracker's visible state in line with the canonical workflow state."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Optional

from ..integrations.linear import LinearClient, TrackerState, TrackerUnavailable
from .workflow import SynonymTable, WorkflowState

logger = logging.getLogger(__name__)


class StateReconciler:
    """Resolves canonical states to tracker states and applies transitions.

    Transitions never create tracker states and never raise: an unknown target
    or an unreachable tracker is logged and reported as False. A write happens
    only when the issue is not already in the target state.
    """

    def __init__(
        self,
        tracker: LinearClient,
        synonyms: Optional[SynonymTable] = None,
        grace_period_sec: float = 3.0,
        confirm_polls: int = 0,
        confirm_poll_interval_sec: float = 2.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initialize reconciler.

        Args:
            tracker: Tracker client
            synonyms: Label table (defaults to the built-in table)
            grace_period_sec: Wait after a change request before re-reading state
            confirm_polls: Extra re-reads after the grace period
            confirm_poll_interval_sec: Delay between re-reads
            sleep: Awaitable sleep (injected in tests)
        """
        self.tracker = tracker
        self.synonyms = synonyms or SynonymTable()
        self.grace_period_sec = grace_period_sec
        self.confirm_polls = confirm_polls
        self.confirm_poll_interval_sec = confirm_poll_interval_sec
        self.sleep = sleep

    def canonical(self, state: Optional[TrackerState]) -> Optional[WorkflowState]:
        if state is None:
            return None
        return self.synonyms.canonical(state.name, state.type)

    def find_target_state(
        self, states: list[TrackerState], target: WorkflowState
    ) -> Optional[TrackerState]:
        """Find the tracker state for target: exact outbound label, then synonyms in order."""
        by_name: dict[str, TrackerState] = {}
        for state in states:
            by_name.setdefault(state.name.strip().lower(), state)

        for label in self.synonyms.candidates(target):
            if label in by_name:
                return by_name[label]
        return None

    async def current_state(self, issue_id: str) -> Optional[WorkflowState]:
        """Canonical state of an issue, or None when unknown or unreachable."""
        try:
            state = await self.tracker.get_issue_state(issue_id)
        except TrackerUnavailable as e:
            logger.warning("Could not read state of %s: %s", issue_id, e)
            return None
        return self.canonical(state)

    async def transition(self, issue_id: str, target: WorkflowState) -> bool:
        """Move issue_id to target unless it is already there.

        Returns:
            True if the issue is (now) in the target state
        """
        if not self.tracker.enabled:
            logger.warning("Tracker disabled, skipping transition of %s to %s", issue_id, target.value)
            return False

        try:
            issue = await self.tracker.get_issue(issue_id)
            if issue is None or issue.team_id is None:
                logger.warning("No team found for issue %s", issue_id)
                return False

            states = await self.tracker.list_team_states(issue.team_id)
            match = self.find_target_state(states, target)
            if match is None:
                logger.warning(
                    "No tracker state matches %s (wanted %r) for issue %s; not updating",
                    target.value,
                    self.synonyms.outbound_label(target),
                    issue_id,
                )
                return False

            if issue.state is not None and issue.state.id == match.id:
                logger.debug("Issue %s already in %s", issue_id, match.name)
                return True

            updated = await self.tracker.update_issue_state(issue_id, match.id)
        except TrackerUnavailable as e:
            logger.warning("Tracker unavailable, could not move %s to %s: %s", issue_id, target.value, e)
            return False

        if updated:
            logger.info(
                "Moved issue %s from %s to %s",
                issue_id,
                issue.state.name if issue.state else "unknown",
                match.name,
            )
        return updated

    async def settle_after_change_request(
        self,
        issue_id: str,
        target: WorkflowState = WorkflowState.IN_EXTERNAL_REVIEW,
    ) -> bool:
        """Reconcile after a change request was opened.

        The tracker may move the issue by itself once it sees the linked change.
        Wait for the grace period, re-read the state, and write only if the
        tracker has not already reached the target. This is best-effort: slower
        tracker automation can still land after our write.
        """
        await self.sleep(self.grace_period_sec)

        for poll in range(self.confirm_polls + 1):
            if poll:
                await self.sleep(self.confirm_poll_interval_sec)
            current = await self.current_state(issue_id)
            if current == target:
                logger.info("Tracker already moved %s to %s, no update needed", issue_id, target.value)
                return True

        return await self.transition(issue_id, target)
