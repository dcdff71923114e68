"""Task and plan records exchanged between the classifier, the queue and workers."""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class TaskMode(str, Enum):
    """What a job does with its ticket."""

    PLAN_ONLY = "plan-only"
    EXECUTE_ONLY = "execute-only"
    FULL = "full"


class PlanStatus(str, Enum):
    """Review status of a stored plan."""

    PENDING_REVIEW = "pending-review"
    APPROVED = "approved"
    NEEDS_REVISION = "needs-revision"


class _CamelModel(BaseModel):
    # Records are serialized camelCase so queued payloads read like tracker data.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json_dict(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class TaskSnapshot(_CamelModel):
    """Ticket context captured when a plan is stored."""

    ticket_id: str
    title: str
    description: str = ""
    repo_url: str
    branch_name: str
    identifier: Optional[str] = Field(default=None, description="Human ticket key, e.g. ENG-12")


class Task(TaskSnapshot):
    """A unit of work enqueued for a worker."""

    mode: TaskMode = TaskMode.PLAN_ONLY
    is_iteration: bool = False
    existing_plan: Optional[str] = Field(default=None, description="Plan being revised")
    additional_feedback: Optional[str] = Field(default=None, description="Latest reviewer note")

    def snapshot(self) -> TaskSnapshot:
        return TaskSnapshot(
            ticket_id=self.ticket_id,
            title=self.title,
            description=self.description,
            repo_url=self.repo_url,
            branch_name=self.branch_name,
            identifier=self.identifier,
        )

    @classmethod
    def from_snapshot(cls, snapshot: TaskSnapshot, **overrides) -> "Task":
        return cls(**snapshot.model_dump(), **overrides)


class StoredPlan(_CamelModel):
    """A plan awaiting or past human review, one per ticket."""

    task_id: str
    plan: str
    task_context: TaskSnapshot
    feedback_history: list[str] = Field(default_factory=list)
    status: PlanStatus = PlanStatus.PENDING_REVIEW
    created_at: datetime = Field(default_factory=lambda: datetime.now(tz=timezone.utc))
