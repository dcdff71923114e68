"""Plan persistence on top of the TTL store."""

import logging
from typing import Optional

from pydantic import ValidationError

from ..storage.kv import TTLStore
from ..tasks.models import PlanStatus, StoredPlan, TaskSnapshot

logger = logging.getLogger(__name__)


class PlanStore:
    """Keyed, expiring storage for one live plan per ticket.

    Every mutation re-reads the record before writing it back, and every
    write resets the TTL. ``get`` returns None when the plan is absent or
    expired; an empty plan text is still a plan.
    """

    def __init__(self, kv: TTLStore, ttl_days: float = 7, key_prefix: str = "ticketpilot:plan:"):
        self.kv = kv
        self.ttl_seconds = ttl_days * 24 * 60 * 60
        self.key_prefix = key_prefix

    def key(self, ticket_id: str) -> str:
        return f"{self.key_prefix}{ticket_id}"

    def store(
        self,
        ticket_id: str,
        plan: str,
        task_context: TaskSnapshot,
        feedback_history: Optional[list[str]] = None,
        ttl_seconds: Optional[float] = None,
    ) -> StoredPlan:
        """Store a fresh pending-review plan, replacing any previous one.

        Args:
            ticket_id: Ticket identity
            plan: Plan text
            task_context: Ticket snapshot the plan was made for
            feedback_history: Feedback carried over from a revised plan
            ttl_seconds: TTL override (defaults to the configured plan TTL)

        Returns:
            The stored plan
        """
        stored = StoredPlan(
            task_id=ticket_id,
            plan=plan,
            task_context=task_context,
            feedback_history=list(feedback_history or []),
            status=PlanStatus.PENDING_REVIEW,
        )
        self.save(stored, ttl_seconds=ttl_seconds)
        return stored

    def save(self, stored: StoredPlan, ttl_seconds: Optional[float] = None) -> None:
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        self.kv.set(self.key(stored.task_id), stored.model_dump_json(by_alias=True), ttl)
        logger.info(
            "Stored plan for %s (status=%s, TTL %.1f days)",
            stored.task_id,
            stored.status.value,
            ttl / 86400,
        )

    def get(self, ticket_id: str) -> Optional[StoredPlan]:
        """Return the live plan for ticket_id, or None."""
        raw = self.kv.get(self.key(ticket_id))
        if raw is None:
            return None
        try:
            return StoredPlan.model_validate_json(raw)
        except ValidationError as e:
            logger.error("Discarding unreadable plan for %s: %s", ticket_id, e)
            self.kv.delete(self.key(ticket_id))
            return None

    def append_feedback(self, ticket_id: str, feedback: str) -> Optional[StoredPlan]:
        """Append feedback and mark the plan as needing revision.

        Returns:
            The updated plan, or None when no live plan exists
        """
        stored = self.get(ticket_id)
        if stored is None:
            logger.warning("Cannot append feedback: plan %s not found", ticket_id)
            return None

        stored.feedback_history.append(feedback)
        stored.status = PlanStatus.NEEDS_REVISION
        self.save(stored)
        logger.info(
            "Appended feedback to plan %s (%s entries)", ticket_id, len(stored.feedback_history)
        )
        return stored

    def set_status(self, ticket_id: str, status: PlanStatus) -> Optional[StoredPlan]:
        """Change plan status.

        Returns:
            The updated plan, or None when no live plan exists
        """
        stored = self.get(ticket_id)
        if stored is None:
            logger.warning("Cannot update status: plan %s not found", ticket_id)
            return None

        stored.status = status
        self.save(stored)
        return stored

    def delete(self, ticket_id: str) -> bool:
        removed = self.kv.delete(self.key(ticket_id))
        logger.info("Deleted plan %s", ticket_id)
        return removed
