"""Canonical workflow states and their tracker label synonyms."""

from enum import Enum
from typing import Optional


class WorkflowState(str, Enum):
    """Orchestrator-side workflow states, independent of tracker naming."""

    AWAITING_APPROVAL = "awaiting_approval"
    WORKING = "working"
    IN_EXTERNAL_REVIEW = "in_external_review"
    TERMINAL = "terminal"


# First label of each list is the one written outbound; the rest are accepted
# spellings, tried in order.
DEFAULT_SYNONYMS: dict[WorkflowState, list[str]] = {
    WorkflowState.AWAITING_APPROVAL: [
        "Plan Review",
        "plan-review",
        "pending review",
        "awaiting approval",
        "todo",
        "triage",
        "backlog",
        "unstarted",
        "ready",
    ],
    WorkflowState.WORKING: ["In Progress", "started", "doing", "working"],
    WorkflowState.IN_EXTERNAL_REVIEW: ["In Review", "under review", "peer review", "review", "pr"],
    WorkflowState.TERMINAL: [
        "Done",
        "completed",
        "canceled",
        "cancelled",
        "closed",
        "merged",
        "duplicate",
    ],
}

# Linear state categories, used when a state name is not in the table.
_STATE_TYPES: dict[str, WorkflowState] = {
    "completed": WorkflowState.TERMINAL,
    "canceled": WorkflowState.TERMINAL,
    "started": WorkflowState.WORKING,
}


class SynonymTable:
    """Many-to-one mapping from tracker labels to canonical states."""

    def __init__(self, overrides: Optional[dict[str, list[str]]] = None):
        """Initialize table.

        Args:
            overrides: Label lists keyed by WorkflowState value; each replaces the default list
        """
        self.labels: dict[WorkflowState, list[str]] = {
            state: list(labels) for state, labels in DEFAULT_SYNONYMS.items()
        }
        for key, labels in (overrides or {}).items():
            if labels:
                self.labels[WorkflowState(key)] = list(labels)

        self._reverse: dict[str, WorkflowState] = {}
        for state, labels in self.labels.items():
            for label in labels:
                # First definition wins if two states share a spelling.
                self._reverse.setdefault(label.lower(), state)

    def outbound_label(self, state: WorkflowState) -> str:
        return self.labels[state][0]

    def candidates(self, state: WorkflowState) -> list[str]:
        """Lower-cased labels to search for, outbound label first."""
        return [label.lower() for label in self.labels[state]]

    def canonical(self, label: Optional[str], state_type: Optional[str] = None) -> Optional[WorkflowState]:
        """Map a tracker state name (and optional category) to a canonical state."""
        if label:
            found = self._reverse.get(label.strip().lower())
            if found is not None:
                return found
        if state_type:
            return _STATE_TYPES.get(state_type.lower())
        return None
