"""Classifies authenticated tracker events into queued tasks."""

import asyncio
import logging
import re
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from ..dispatcher.dispatcher import InFlightMarkers
from ..integrations.linear import IssueInfo, LinearClient, TrackerUnavailable
from ..plans.formatter import BOT_MARKER, BOT_SIGNATURES
from ..plans.store import PlanStore
from ..state.workflow import SynonymTable, WorkflowState
from ..tasks.models import PlanStatus, Task, TaskMode
from .repos import RepoNotConfigured, RepoResolver

logger = logging.getLogger(__name__)

_NEGATION_RE = re.compile(r"(?:\b(?:not|never|no)\s+(?:yet\s+)?|n't\s+(?:yet\s+)?)$", re.IGNORECASE)


@dataclass
class Decision:
    """Outcome of classifying one event.

    ``status`` and ``reason`` form the webhook response body. ``task`` and
    ``job_id`` are set when a job should be enqueued.
    """

    status: str
    reason: Optional[str] = None
    task: Optional[Task] = None
    job_id: Optional[str] = None

    @property
    def enqueues(self) -> bool:
        return self.task is not None

    def response(self) -> dict[str, Any]:
        body: dict[str, Any] = {"status": self.status}
        if self.reason:
            body["reason"] = self.reason
        if self.job_id:
            body["jobId"] = self.job_id
        return body


def ignored(reason: str) -> Decision:
    return Decision(status="ignored", reason=reason)


class ApprovalMatcher:
    """Case-insensitive whole-phrase matching of approval vocabulary."""

    def __init__(self, phrases: list[str]):
        alternatives = "|".join(
            r"\s+".join(re.escape(word) for word in phrase.split()) for phrase in phrases
        )
        self._pattern = re.compile(rf"\b(?:{alternatives})\b", re.IGNORECASE)

    def is_approval(self, body: str) -> bool:
        for match in self._pattern.finditer(body or ""):
            if not _NEGATION_RE.search(body[: match.start()]):
                return True
        return False


class EventClassifier:
    """Turns Issue and Comment events into at most one task.

    The classifier owns the plan-store mutations triggered by comments
    (approval and feedback); enqueueing is left to the caller.
    """

    def __init__(
        self,
        plan_store: PlanStore,
        repo_resolver: RepoResolver,
        tracker: LinearClient,
        synonyms: Optional[SynonymTable] = None,
        trigger_label: str = "ralph",
        enable_plan_review: bool = True,
        branch_prefix: str = "ralph/feat-",
        approval_phrases: Optional[list[str]] = None,
        bot_user_ids: Optional[list[str]] = None,
        bot_names: Optional[list[str]] = None,
        bot_signatures: Optional[list[str]] = None,
        markers: Optional[InFlightMarkers] = None,
        now_ms: Callable[[], int] = lambda: int(time.time() * 1000),
    ):
        self.plan_store = plan_store
        self.repo_resolver = repo_resolver
        self.tracker = tracker
        self.synonyms = synonyms or SynonymTable()
        self.trigger_label = trigger_label.lower()
        self.enable_plan_review = enable_plan_review
        self.branch_prefix = branch_prefix
        self.approval = ApprovalMatcher(approval_phrases or ["lgtm", "approved", "proceed", "ship it"])
        self.bot_user_ids = set(bot_user_ids or [])
        self.bot_names = {n.lower() for n in (bot_names or [])}
        self.bot_signatures = [s.lower() for s in (*BOT_SIGNATURES, *(bot_signatures or []))]
        self.markers = markers
        self.now_ms = now_ms

    async def classify(self, event: dict[str, Any]) -> Decision:
        """Classify a webhook envelope ``{type, action, data}``."""
        event_type = event.get("type")
        action = event.get("action")
        data = event.get("data") or {}
        event_ms = _event_timestamp_ms(event) or self.now_ms()

        if event_type == "Issue":
            decision = await self._classify_issue(action, data, event_ms)
        elif event_type == "Comment":
            decision = await self._classify_comment(action, data, event_ms)
        else:
            decision = ignored("unsupported_event")

        if decision.enqueues:
            logger.info(
                "Event %s/%s on %s -> %s (%s)",
                event_type,
                action,
                decision.task.ticket_id,
                decision.status,
                decision.job_id,
            )
        else:
            logger.info("Event %s/%s ignored: %s", event_type, action, decision.reason)
        return decision

    # Issues

    async def _classify_issue(
        self, action: Optional[str], data: dict[str, Any], event_ms: int
    ) -> Decision:
        if action not in ("create", "update"):
            return ignored("unsupported_event")

        if not self._has_trigger_label(data):
            return ignored("no_trigger_label")

        state = data.get("state") or {}
        canonical = self.synonyms.canonical(state.get("name"), state.get("type"))
        if canonical == WorkflowState.TERMINAL:
            return ignored("terminal_state")

        ticket_id = str(data.get("id"))
        if action == "update":
            # Updates fire for every field change, including our own transitions.
            if canonical in (WorkflowState.WORKING, WorkflowState.IN_EXTERNAL_REVIEW):
                return ignored("work_in_progress")
            if await asyncio.to_thread(self.plan_store.get, ticket_id) is not None:
                return ignored("plan_exists")

        if self.markers is not None:
            holder = await asyncio.to_thread(self.markers.current, ticket_id)
            if holder is not None:
                logger.info("Ticket %s already has job %s in flight", ticket_id, holder)
                return ignored("work_in_progress")

        try:
            repo_url = await asyncio.to_thread(self.repo_resolver.resolve, _team_key(data))
        except RepoNotConfigured as e:
            logger.warning("Ticket %s not routed: %s", ticket_id, e)
            return ignored("no_repo_configured")

        mode = TaskMode.PLAN_ONLY if self.enable_plan_review else TaskMode.FULL
        task = Task(
            ticket_id=ticket_id,
            identifier=data.get("identifier"),
            title=data.get("title") or "",
            description=data.get("description") or "",
            repo_url=repo_url,
            branch_name=self._branch_name(data.get("identifier") or ticket_id),
            mode=mode,
        )
        kind = "plan" if mode == TaskMode.PLAN_ONLY else "full"
        return Decision(status="queued", task=task, job_id=self._job_id(ticket_id, kind, event_ms))

    def _has_trigger_label(self, data: dict[str, Any]) -> bool:
        labels = data.get("labels") or []
        if isinstance(labels, dict):
            labels = labels.get("nodes") or []
        for label in labels:
            name = label.get("name") if isinstance(label, dict) else label
            if isinstance(name, str) and name.lower() == self.trigger_label:
                return True
        return False

    # Comments

    async def _classify_comment(
        self, action: Optional[str], data: dict[str, Any], event_ms: int
    ) -> Decision:
        if action != "create":
            return ignored("unsupported_event")

        # Must run first: the bot's own plan comment contains approval vocabulary.
        if self.is_self_authored(data):
            return ignored("self_authored")

        body = data.get("body") or ""
        issue = data.get("issue") or {}
        ticket_id = data.get("issueId") or issue.get("id")
        if not ticket_id:
            return ignored("unsupported_event")
        ticket_id = str(ticket_id)

        stored = await asyncio.to_thread(self.plan_store.get, ticket_id)
        if stored is not None:
            if self.approval.is_approval(body):
                await asyncio.to_thread(self.plan_store.set_status, ticket_id, PlanStatus.APPROVED)
                task = Task.from_snapshot(
                    stored.task_context,
                    mode=TaskMode.EXECUTE_ONLY,
                    existing_plan=stored.plan,
                )
                return Decision(
                    status="execution_queued",
                    task=task,
                    job_id=self._job_id(ticket_id, "exec", event_ms),
                )

            updated = await asyncio.to_thread(self.plan_store.append_feedback, ticket_id, body)
            if updated is None:
                # Expired between the read and the write.
                return ignored("no_stored_plan")
            task = Task.from_snapshot(
                stored.task_context,
                mode=TaskMode.PLAN_ONLY,
                existing_plan=stored.plan,
                additional_feedback=body,
            )
            return Decision(
                status="replanning_queued",
                task=task,
                job_id=self._job_id(ticket_id, "replan", event_ms),
            )

        return await self._classify_iteration(ticket_id, issue, body, event_ms)

    async def _classify_iteration(
        self, ticket_id: str, issue: dict[str, Any], body: str, event_ms: int
    ) -> Decision:
        state_name = (issue.get("state") or {}).get("name")
        info: Optional[IssueInfo] = None
        if state_name is None or not issue.get("title"):
            info = await self._fetch_issue(ticket_id)
            if info is not None and info.state is not None and state_name is None:
                state_name = info.state.name

        if self.synonyms.canonical(state_name) != WorkflowState.IN_EXTERNAL_REVIEW:
            return ignored("no_stored_plan")

        team_key = _team_key(issue) or (info.team_key if info else None)
        try:
            repo_url = await asyncio.to_thread(self.repo_resolver.resolve, team_key)
        except RepoNotConfigured as e:
            logger.warning("Iteration on %s not routed: %s", ticket_id, e)
            return ignored("no_repo_configured")

        identifier = issue.get("identifier") or (info.identifier if info else None)
        task = Task(
            ticket_id=ticket_id,
            identifier=identifier,
            title=issue.get("title") or (info.title if info else "") or ticket_id,
            description=issue.get("description") or (info.description if info else ""),
            repo_url=repo_url,
            branch_name=self._branch_name(identifier or ticket_id),
            mode=TaskMode.PLAN_ONLY,
            is_iteration=True,
            additional_feedback=body,
        )
        return Decision(
            status="iteration_queued",
            task=task,
            job_id=self._job_id(ticket_id, "iter", event_ms),
        )

    async def _fetch_issue(self, ticket_id: str) -> Optional[IssueInfo]:
        if not self.tracker.enabled:
            return None
        try:
            return await self.tracker.get_issue(ticket_id)
        except TrackerUnavailable as e:
            logger.warning("Could not load issue %s: %s", ticket_id, e)
            return None

    def is_self_authored(self, data: dict[str, Any]) -> bool:
        """True when a comment was written by the bot itself."""
        user = data.get("user") or {}
        user_id = data.get("userId") or user.get("id")
        if user_id and user_id in self.bot_user_ids:
            return True
        name = user.get("name") or user.get("displayName")
        if name and name.lower() in self.bot_names:
            return True

        body = data.get("body") or ""
        if BOT_MARKER in body:
            return True
        lowered = body.lower()
        return any(sig in lowered for sig in self.bot_signatures)

    # Helpers

    def _branch_name(self, identifier: str) -> str:
        return f"{self.branch_prefix}{identifier}"

    def _job_id(self, ticket_id: str, kind: str, event_ms: int) -> str:
        return f"{ticket_id}-{kind}-{event_ms}"


def _team_key(data: dict[str, Any]) -> Optional[str]:
    team = data.get("team") or {}
    return team.get("key")


def _event_timestamp_ms(event: dict[str, Any]) -> Optional[int]:
    """Millisecond timestamp identifying the change an event describes.

    A redelivered webhook carries the same record timestamps, so it yields the
    same value. ``webhookTimestamp`` changes on every delivery and is not used.
    """
    data = event.get("data") or {}
    for value in (data.get("updatedAt"), data.get("createdAt"), event.get("createdAt")):
        if not isinstance(value, str) or not value:
            continue
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            logger.debug("Unparseable event timestamp %r", value)
            continue
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return int(parsed.timestamp() * 1000)
    return None
