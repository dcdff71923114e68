"""Job processing: plan, execute, validate and deliver one task."""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Optional

from ..agents.base import BaseAgent
from ..agents.claude import ClaudeAgent
from ..agents.openai_tools import OpenAIToolsAgent
from ..agents.prompts import (
    build_execute_prompt,
    build_plan_prompt,
    extract_plan,
    list_skills,
    read_project_guide,
)
from ..config.models import TicketPilotConfig
from ..integrations.github import GitHubIntegration, generate_pr_description
from ..integrations.linear import LinearClient, TrackerUnavailable
from ..plans.formatter import format_completion_comment, format_plan_comment
from ..plans.store import PlanStore
from ..state.reconciler import StateReconciler
from ..state.workflow import WorkflowState
from ..tasks.models import Task, TaskMode
from ..utils.tracing import Tracer, TraceSpan, build_tracer
from ..validation.runner import ValidationResult, ValidationRunner
from ..workspace.manager import Workspace, WorkspaceManager

logger = logging.getLogger(__name__)


@dataclass
class DeliveryResult:
    """What an execute job left behind."""

    commit_message: str
    commit_hash: str
    validation_passed: bool
    attempts: int
    pr_url: Optional[str] = None
    validation_output: str = ""


@dataclass
class JobOutcome:
    """Summary returned to the dispatcher and stored on the completed job."""

    ticket_id: str
    mode: TaskMode
    plan: Optional[str] = None
    delivery: Optional[DeliveryResult] = None

    def to_dict(self) -> dict:
        body: dict = {"ticketId": self.ticket_id, "mode": self.mode.value}
        if self.plan is not None:
            body["planChars"] = len(self.plan)
        if self.delivery is not None:
            body.update(
                {
                    "commit": self.delivery.commit_hash,
                    "validationPassed": self.delivery.validation_passed,
                    "attempts": self.delivery.attempts,
                    "prUrl": self.delivery.pr_url,
                }
            )
        return body


class JobProcessor:
    """Runs one task end to end.

    Workspace, agent and git failures propagate so the dispatcher retries
    the job. Tracker errors are logged and the job carries on.
    """

    def __init__(
        self,
        workspaces: WorkspaceManager,
        agent: BaseAgent,
        plan_store: PlanStore,
        tracker: LinearClient,
        reconciler: StateReconciler,
        validator: Optional[ValidationRunner] = None,
        github_factory: Optional[Callable[[Workspace], GitHubIntegration]] = None,
        create_pr: bool = True,
        max_iterations: int = 3,
        approval_phrases: Optional[list[str]] = None,
        tracer: Optional[Tracer] = None,
    ):
        self.workspaces = workspaces
        self.agent = agent
        self.plan_store = plan_store
        self.tracker = tracker
        self.reconciler = reconciler
        self.validator = validator
        self.github_factory = github_factory or (lambda ws: GitHubIntegration(ws.git, env=ws.env()))
        self.create_pr = create_pr
        self.max_iterations = max_iterations
        self.approval_phrases = approval_phrases
        self.tracer = tracer or Tracer()

    @classmethod
    def from_config(
        cls,
        config: TicketPilotConfig,
        plan_store: PlanStore,
        tracker: LinearClient,
        reconciler: StateReconciler,
    ) -> "JobProcessor":
        """Wire a processor from configuration."""
        if config.agent.executor == "openai_tools":
            agent: BaseAgent = OpenAIToolsAgent(config.agent, config.sandbox)
        else:
            agent = ClaudeAgent(config.agent)

        validator = None
        if config.validation.enabled:
            validator = ValidationRunner(
                timeout_sec=config.validation.timeout_sec,
                node=config.validation.node,
                python=config.validation.python,
                security=config.validation.security,
                install_dependencies=config.validation.install_dependencies,
                trivy_cache_root=config.validation.trivy_cache_root,
            )

        gh = config.github

        def github_factory(workspace: Workspace) -> GitHubIntegration:
            return GitHubIntegration(
                workspace.git,
                token=gh.token,
                remote=gh.remote_name,
                base_branch=gh.base_branch,
                env=workspace.env(),
            )

        workspaces = WorkspaceManager(
            base_dir=config.workspace.base_dir,
            bot_name=config.workspace.bot_name,
            bot_email=config.workspace.bot_email,
            github_token=gh.token,
            clone_timeout_sec=config.workspace.clone_timeout_sec,
            clone_depth=config.workspace.clone_depth,
            seed_home=config.workspace.seed_home,
        )
        return cls(
            workspaces=workspaces,
            agent=agent,
            plan_store=plan_store,
            tracker=tracker,
            reconciler=reconciler,
            validator=validator,
            github_factory=github_factory,
            create_pr=gh.create_pr,
            max_iterations=config.agent.max_iterations,
            approval_phrases=config.workflow.approval_phrases,
            tracer=build_tracer(config.tracing),
        )

    async def process(self, task: Task, job_id: str) -> JobOutcome:
        """Run task according to its mode."""
        logger.info(
            "Processing %s for ticket %s (mode=%s, iteration=%s)",
            job_id,
            task.ticket_id,
            task.mode.value,
            task.is_iteration,
        )
        with self.tracer.trace(
            "ticketpilot-job",
            ticket_id=task.ticket_id,
            job_id=job_id,
            mode=task.mode.value,
            iteration=task.is_iteration,
        ) as trace:
            if task.mode == TaskMode.PLAN_ONLY:
                outcome = await self.run_plan_only(task, trace)
            else:
                outcome = await self.run_execution(task, trace)
            trace.record(output=outcome.to_dict())
        return outcome

    # Plan-only

    async def run_plan_only(self, task: Task, trace: Optional[TraceSpan] = None) -> JobOutcome:
        """Generate a plan, store it, post it for review."""
        trace = trace or TraceSpan()
        previous = self.plan_store.get(task.ticket_id)
        feedback_history = list(previous.feedback_history) if previous else []

        async with self.workspaces.acquire(task.repo_url, task.branch_name) as workspace:
            prompt = build_plan_prompt(
                task,
                project_guide=read_project_guide(workspace.repo_dir),
                skills=list_skills(workspace.repo_dir),
                feedback_history=feedback_history,
            )
            with trace.span("plan", input=prompt) as span:
                plan = extract_plan(await self.agent.plan(prompt, workspace))
                span.record(output=plan)

        self.plan_store.store(task.ticket_id, plan, task.snapshot(), feedback_history)
        await self._comment(
            task.ticket_id,
            format_plan_comment(
                plan,
                task.title,
                approval_phrases=self.approval_phrases,
                revision=len(feedback_history),
            ),
        )
        await self.reconciler.transition(task.ticket_id, WorkflowState.AWAITING_APPROVAL)
        return JobOutcome(ticket_id=task.ticket_id, mode=task.mode, plan=plan)

    # Execute-only and full

    async def run_execution(self, task: Task, trace: Optional[TraceSpan] = None) -> JobOutcome:
        """Implement the plan, validate, and deliver a commit and PR."""
        trace = trace or TraceSpan()
        await self.reconciler.transition(task.ticket_id, WorkflowState.WORKING)

        async with self.workspaces.acquire(task.repo_url, task.branch_name) as workspace:
            plan, validation, attempts = await self._implement(task, workspace, trace)
            delivery = await self._deliver(task, workspace, plan, validation, attempts)

        await self._comment(
            task.ticket_id,
            format_completion_comment(
                delivery.pr_url,
                task.branch_name,
                delivery.validation_passed,
                delivery.attempts,
                delivery.validation_output,
            ),
        )
        await self.reconciler.settle_after_change_request(task.ticket_id)
        if self.plan_store.delete(task.ticket_id):
            logger.info("Deleted plan for %s after execution", task.ticket_id)
        return JobOutcome(ticket_id=task.ticket_id, mode=task.mode, plan=plan, delivery=delivery)

    async def _implement(
        self, task: Task, workspace: Workspace, trace: TraceSpan
    ) -> tuple[str, ValidationResult, int]:
        guide = read_project_guide(workspace.repo_dir)
        skills = list_skills(workspace.repo_dir)
        plan = task.existing_plan or ""
        previous_errors: Optional[str] = None
        validation = ValidationResult(success=True, output="")

        for iteration in range(1, self.max_iterations + 1):
            logger.info("Iteration %d/%d for %s", iteration, self.max_iterations, task.ticket_id)

            with trace.span(f"iteration-{iteration}", iteration=iteration) as step:
                # Approved plans are kept; full mode re-plans with the last errors.
                if task.mode == TaskMode.FULL or not plan:
                    prompt = build_plan_prompt(task, guide, skills, previous_errors=previous_errors)
                    with step.span("plan", input=prompt) as span:
                        plan = extract_plan(await self.agent.plan(prompt, workspace))
                        span.record(output=plan)

                execute_prompt = build_execute_prompt(plan, previous_errors)
                with step.span("execute", input=execute_prompt) as span:
                    result = await self.agent.execute(execute_prompt, workspace)
                    span.record(output=result.get("output", "")[-2000:], success=bool(result.get("success")))
                if not result.get("success"):
                    logger.warning("Executor reported an incomplete run: %s", result.get("output", "")[-300:])

                with step.span("validate") as span:
                    validation = await self._validate(workspace)
                    span.record(output=validation.output[-2000:], success=validation.success)
                step.record(output={"validationPassed": validation.success})

            if validation.success:
                logger.info("Validation passed for %s on iteration %d", task.ticket_id, iteration)
                return plan, validation, iteration

            logger.warning("Validation failed for %s on iteration %d", task.ticket_id, iteration)
            previous_errors = validation.output

        return plan, validation, self.max_iterations

    async def _validate(self, workspace: Workspace) -> ValidationResult:
        if self.validator is None:
            return ValidationResult(success=True, output="Validation disabled.\n")
        return await self.validator.validate(workspace.repo_dir, workspace.git, workspace.env())

    async def _deliver(
        self,
        task: Task,
        workspace: Workspace,
        plan: str,
        validation: ValidationResult,
        attempts: int,
    ) -> DeliveryResult:
        if validation.success:
            message = f"feat: {task.title}"
        else:
            message = f"wip: {task.title} (Failed Validation after {attempts} attempts)"

        git = workspace.git
        await git.add_all()
        has_changes = await git.has_changes()
        if not has_changes:
            logger.warning("No file changes for %s; recording an empty commit", task.ticket_id)
        commit_hash = await git.commit(message, allow_empty=not has_changes)

        github = self.github_factory(workspace)
        await github.push_branch(task.branch_name)

        pr_url = None
        if self.create_pr:
            description = generate_pr_description(
                task.identifier or task.ticket_id,
                task.title,
                plan,
                validation.success,
                attempts,
                validation.output,
            )
            pr = await github.create_pr(task.branch_name, message, description)
            if pr.success:
                pr_url = pr.pr_url
            else:
                logger.warning("PR not created for %s: %s", task.branch_name, pr.error_message)

        return DeliveryResult(
            commit_message=message,
            commit_hash=commit_hash,
            validation_passed=validation.success,
            attempts=attempts,
            pr_url=pr_url,
            validation_output="" if validation.success else validation.output,
        )

    async def _comment(self, ticket_id: str, body: str) -> None:
        try:
            await self.tracker.post_comment(ticket_id, body)
        except TrackerUnavailable as e:
            logger.warning("Could not comment on %s: %s", ticket_id, e)
