"""Markdown rendering of the comments the bot posts on tickets."""

import re
from typing import Optional

# Invisible in rendered Markdown; identifies bot-authored comments.
BOT_MARKER = "<!-- ticketpilot:bot -->"

PLAN_HEADING = "Ralph's Implementation Plan"
REVISION_HINT = "Ralph will revise the plan"
COMPLETION_HEADING = "Ralph finished the implementation"
WIP_HEADING = "Ralph pushed work in progress"
FAILURE_HEADING = "Ralph could not complete this task"

# Visible text of every bot comment, for when the HTML marker is stripped.
BOT_SIGNATURES = (PLAN_HEADING, REVISION_HINT, COMPLETION_HEADING, WIP_HEADING, FAILURE_HEADING)

_PLAN_TAG_RE = re.compile(r"</?plan>")


def format_plan_comment(
    plan: str,
    task_title: str,
    approval_phrases: Optional[list[str]] = None,
    revision: int = 0,
) -> str:
    """Render a plan for human review.

    Args:
        plan: Plan text (``<plan>`` tags are stripped)
        task_title: Ticket title
        approval_phrases: Phrases listed in the approval instructions
        revision: Number of feedback rounds already applied

    Returns:
        Markdown comment body carrying the bot marker
    """
    phrases = approval_phrases or ["LGTM", "approved", "proceed", "ship it"]
    clean_plan = _PLAN_TAG_RE.sub("", plan).strip()
    listed = ", ".join(f"`{p}`" for p in phrases[:-1])
    if len(phrases) > 1:
        listed = f"{listed}, or `{phrases[-1]}`"
    else:
        listed = f"`{phrases[0]}`"

    heading = f"# 🤖 {PLAN_HEADING}"
    if revision:
        heading += f" (revision {revision})"

    output = [
        BOT_MARKER,
        heading,
        "",
        f"**Task:** {task_title}",
        "",
        "---",
        "",
        "## Proposed Implementation",
        "",
        clean_plan,
        "",
        "---",
        "",
        "## Approval Instructions",
        "",
        "**To proceed with this plan:**",
        f"- Reply with {listed} to start execution",
        "",
        "**To request changes:**",
        f"- Reply with your feedback, and {REVISION_HINT} accordingly",
        "",
    ]
    return "\n".join(output)


def format_completion_comment(
    pr_url: Optional[str],
    branch_name: str,
    validation_passed: bool,
    attempts: int,
    validation_output: str = "",
) -> str:
    """Render the comment posted after code was pushed."""
    output = [BOT_MARKER]
    if validation_passed:
        output.append(f"## ✅ {COMPLETION_HEADING}")
    else:
        output.append(f"## ⚠️ {WIP_HEADING}")
        output.append("")
        output.append(f"Validation still failed after {attempts} attempts. Changes were committed as WIP.")

    output.append("")
    output.append(f"**Branch:** `{branch_name}`")
    if pr_url:
        output.append(f"**Pull request:** {pr_url}")

    if not validation_passed and validation_output:
        output.extend(["", "<details><summary>Validation output</summary>", "", "```"])
        output.append(validation_output[-3000:])
        output.extend(["```", "", "</details>"])
    output.append("")
    return "\n".join(output)


def format_failure_comment(job_id: str, attempts: int, error: str) -> str:
    """Render the terminal failure notice for a job that ran out of attempts."""
    return "\n".join(
        [
            BOT_MARKER,
            f"## ❌ {FAILURE_HEADING}",
            "",
            f"Job `{job_id}` failed permanently after {attempts} attempt(s).",
            "",
            "```",
            error[-2000:],
            "```",
            "",
            "The ticket was moved back for review. Comment again or update the ticket to retry.",
            "",
        ]
    )
