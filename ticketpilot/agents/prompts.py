"""Prompt builders for the plan and execute phases."""

import logging
import re
from pathlib import Path
from typing import Optional

from ..tasks.models import Task

logger = logging.getLogger(__name__)

SECURITY_GUARDRAILS = """### 🛡️ SECURITY RULES
1. NO SECRETS: Never output API keys.
2. SANDBOX: Only modify files inside the workspace."""

NO_SKILLS_TEXT = "No native skills available."
NO_GUIDE_TEXT = "No CLAUDE.md found. Use general knowledge."
NO_PLAN_TEXT = "No plan"

_PLAN_TAG_RE = re.compile(r"<plan>(.*?)</plan>", re.DOTALL)


def list_skills(repo_dir: Path) -> str:
    """List native skills under `.claude/skills` as `- /name` lines."""
    skills_dir = repo_dir / ".claude" / "skills"
    try:
        names = sorted(p.name for p in skills_dir.iterdir() if p.is_dir())
    except OSError:
        return NO_SKILLS_TEXT
    if not names:
        return NO_SKILLS_TEXT
    return "\n".join(f"- /{name}" for name in names)


def read_project_guide(repo_dir: Path) -> str:
    """Return CLAUDE.md from the repository root, or a fallback note."""
    try:
        return (repo_dir / "CLAUDE.md").read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        return NO_GUIDE_TEXT


def extract_plan(output: str) -> str:
    """Pull the plan out of model output.

    Text inside the first ``<plan>`` block wins. Without tags the whole
    output is used; empty output yields ``"No plan"``.
    """
    match = _PLAN_TAG_RE.search(output or "")
    plan = match.group(1).strip() if match else (output or "").strip()
    if not plan:
        logger.warning("Model returned no plan text")
        return NO_PLAN_TEXT
    return plan


def build_plan_prompt(
    task: Task,
    project_guide: str,
    skills: str,
    previous_errors: Optional[str] = None,
    feedback_history: Optional[list[str]] = None,
) -> str:
    """Prompt for the planner.

    Args:
        task: Task being planned
        project_guide: CLAUDE.md contents (or fallback)
        skills: Skill listing from `list_skills`
        previous_errors: Validation output from the last failed iteration
        feedback_history: Reviewer comments on the existing plan, oldest first
    """
    sections = [
        "You are the Architect/Planner.",
        "Your task is to create an implementation plan for the Executor.",
        "",
        "PROJECT GUIDE (CLAUDE.md):",
        project_guide,
        "",
        "AVAILABLE NATIVE SKILLS (Mention them in your plan if needed):",
        skills,
        "",
        f"TASK: {task.title}",
        f"DESCRIPTION: {task.description}",
    ]

    if task.is_iteration:
        sections += [
            "",
            "ITERATION REQUEST: A previous change for this ticket is already under review or merged.",
            "Plan a follow-up change on the same branch that addresses the reviewer's request:",
            task.additional_feedback or "",
        ]

    if task.existing_plan:
        history = list(feedback_history or [])
        if task.additional_feedback and (not history or history[-1] != task.additional_feedback):
            history.append(task.additional_feedback)
        sections += ["", "CURRENT PLAN (revise it, do not start over):", task.existing_plan]
        if history:
            sections += ["", "REVIEWER FEEDBACK (oldest first):"]
            sections += [f"{i}. {note}" for i, note in enumerate(history, start=1)]

    if previous_errors:
        sections += ["", "⚠️ PREVIOUS ATTEMPT FAILED. Fix these errors:", previous_errors]

    sections += [
        "",
        "YOUR GOAL:",
        "1. Create a detailed step-by-step implementation plan.",
        "2. Explicitly mention which native skills (/name) the Executor should invoke.",
        "3. Do NOT modify any files.",
        "",
        "Output format:",
        "<plan>Your detailed plan here</plan>",
    ]
    return "\n".join(sections)


def build_execute_prompt(plan: str, previous_errors: Optional[str] = None) -> str:
    """Prompt for the executor."""
    sections = [
        "You are the Executor.",
        "Implement this plan using your native tools and skills:",
        plan,
        "",
        SECURITY_GUARDRAILS,
    ]
    if previous_errors:
        sections += ["", "The previous attempt failed validation. Fix these errors:", previous_errors]
    sections += [
        "",
        "Instructions:",
        "1. Follow the plan strictly.",
        "2. Use your native skills if requested in the plan.",
        "3. Verify your work.",
        "4. Do NOT commit.",
    ]
    return "\n".join(sections)
