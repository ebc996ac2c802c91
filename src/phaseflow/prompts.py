from __future__ import annotations

from phaseflow.models import PLAN_REVIEW, Session
from phaseflow.state.artifacts import ARTIFACT_DIR, PLAN_FILE, REVIEWS_DIR, ArtifactStore

ROLE_GUIDANCE = {
    "architect": (
        "Focus on boundaries, interfaces, data flow and long-term maintainability. "
        "Flag designs that will not survive the next change."
    ),
    "developer": (
        "Focus on correctness, edge cases, test coverage and whether the work can be "
        "implemented as described."
    ),
    "product": (
        "Focus on user-visible behavior, scope and whether the change solves the issue "
        "as stated."
    ),
}


def _join(sections: list[str]) -> str:
    return "\n\n".join(section for section in sections if section.strip())


def _fenced(title: str, content: str | None) -> str:
    if not content or not content.strip():
        return ""
    return "\n".join([title, "```markdown", content.strip(), "```"])


def build_review_prompt(
    session: Session,
    *,
    phase: str,
    role: str,
    round: int,
    plan_content: str | None = None,
    role_prompt: str | None = None,
) -> str:
    target = f"{ARTIFACT_DIR}/{REVIEWS_DIR}/{ArtifactStore.review_filename(phase, round, role)}"
    if phase == PLAN_REVIEW:
        subject = f"Review the current implementation plan in {ARTIFACT_DIR}/{PLAN_FILE}."
    else:
        pr_line = f" (pull request: {session.pr})" if session.pr else ""
        subject = f"Review the implementation on branch {session.branch or 'HEAD'}{pr_line}."
    header = "\n".join(
        [
            "decision=approved|changes_requested|pending",
            f"round={round}",
            f"phase={phase}",
            f"role={role}",
            "timestamp=<ISO-8601 UTC>",
            "---",
        ]
    )
    return _join(
        [
            f"You are the {role} reviewer for session {session.id} (round {round}).",
            ROLE_GUIDANCE.get(role, ""),
            f"Role-specific guidance: {role_prompt}" if role_prompt else "",
            subject,
            f"Write your review artifact to {target} using this exact header format:",
            header,
            "Or run: phaseflow review submit --workspace . "
            f"--phase {phase} --round {round} --role {role} --decision <decision> "
            "--message <rationale>",
            "After the header, include concise rationale and concrete requested changes if any.",
            _fenced("Plan snapshot:", plan_content if phase == PLAN_REVIEW else None),
        ]
    )


def build_planning_prompt(
    session: Session,
    *,
    role: str,
    round: int,
    role_prompt: str | None = None,
) -> str:
    issue = f" for issue {session.issue_id}" if session.issue_id else ""
    return _join(
        [
            f"You are the {role} member of the planning swarm for session {session.id}{issue}.",
            f"Role-specific guidance: {role_prompt}" if role_prompt else "",
            f"Draft plan revision {round} as a markdown bullet list of independent work items.",
            f"Write it to {ARTIFACT_DIR}/{PLAN_FILE} and keep the marker line "
            f"<!-- round: {round} --> at the top,",
            f"or run: phaseflow plan submit --workspace . --round {round} <file>",
        ]
    )


def build_implementation_prompt(
    session: Session,
    *,
    role: str,
    round: int,
    work_item: str,
    plan_content: str | None = None,
    role_prompt: str | None = None,
) -> str:
    return _join(
        [
            f"You are the {role} member of the implementation swarm for session {session.id} "
            f"(implementation round {round}).",
            f"Role-specific guidance: {role_prompt}" if role_prompt else "",
            f"Your assigned work item: {work_item}",
            "Implement only this item, commit your changes on your branch and exit when done.",
            _fenced("Full plan for context:", plan_content),
        ]
    )
