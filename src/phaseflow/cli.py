from __future__ import annotations

import json
import logging
from dataclasses import asdict
from pathlib import Path

import click

from phaseflow.config import OrchestratorConfig, ProjectConfig, load_config, save_config
from phaseflow.evaluator import Rounds, decisive_reviews
from phaseflow.models import (
    PHASE_KEY,
    REVIEW_DECISIONS,
    REVIEW_PHASES,
    REVIEW_ROLES,
    ReviewArtifact,
    utcnow_iso,
)
from phaseflow.state import ArtifactStore, MetadataStore, StateError


def _resolve_config_path(root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = root / config_path
    return config_path.resolve()


def _load(config_value: str) -> OrchestratorConfig:
    try:
        return load_config(_resolve_config_path(Path.cwd(), config_value))
    except (TypeError, ValueError) as exc:
        raise click.ClickException(f"Invalid config: {exc}") from exc


def _echo_json(payload: object) -> None:
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Log phase decisions to stderr.")
def cli(verbose: bool) -> None:
    """Phase workflow tools for coding-agent sessions."""
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG, format="%(asctime)s %(levelname)s %(name)s: %(message)s"
        )


@cli.command("init")
@click.option("--config", "config_value", default="phaseflow.toml", show_default=True)
@click.option("--project", "project_id", default=None, help="Register the current directory.")
@click.option("--mode", type=click.Choice(["simple", "full"]), default="full", show_default=True)
def init_command(config_value: str, project_id: str | None, mode: str) -> None:
    root = Path.cwd().resolve()
    config_path = _resolve_config_path(root, config_value)
    config = _load(config_value)
    if project_id:
        project = config.projects.get(project_id) or ProjectConfig(path=str(root), name=project_id)
        project.workflow.mode = mode  # type: ignore[assignment]
        config.projects[project_id] = project
    save_config(config_path, config)
    click.echo(f"Config: {config_path}")
    for known_id, project in config.projects.items():
        click.echo(f"Project {known_id}: {project.path} ({project.workflow.mode} mode)")


@cli.command("status")
@click.argument("session_id")
@click.option("--project", "project_id", required=True)
@click.option("--config", "config_value", default="phaseflow.toml", show_default=True)
def status_command(session_id: str, project_id: str, config_value: str) -> None:
    config = _load(config_value)
    if project_id not in config.projects:
        raise click.ClickException(f"Unknown project: {project_id}")
    store = MetadataStore(config.sessions_dir(project_id))
    try:
        record = store.read(session_id)
    except StateError as exc:
        raise click.ClickException(str(exc)) from exc
    if record is None:
        raise click.ClickException(f"No metadata for session {session_id}")

    rounds = Rounds.from_metadata(record)
    payload: dict[str, object] = {
        "session": session_id,
        "phase": record.get(PHASE_KEY),
        "rounds": asdict(rounds),
        "metadata": record,
    }
    worktree = record.get("worktree")
    if worktree:
        artifacts = ArtifactStore(worktree)
        try:
            payload["plan_present"] = artifacts.read_plan() is not None
            payload["reviews"] = {
                "plan_review": _review_summary(artifacts, "plan_review", rounds.review),
                "code_review": _review_summary(artifacts, "code_review", rounds.code_review),
            }
        except StateError as exc:
            raise click.ClickException(str(exc)) from exc
    _echo_json(payload)


def _review_summary(artifacts: ArtifactStore, phase: str, round: int) -> dict[str, str]:
    reviews = decisive_reviews(artifacts.read_reviews(phase, round))  # type: ignore[arg-type]
    return {
        role: reviews[role].decision if role in reviews else "missing" for role in REVIEW_ROLES
    }


@cli.group("plan")
def plan_group() -> None:
    """Plan artifact commands."""


@plan_group.command("submit")
@click.argument("source", type=click.File("r", encoding="utf-8"))
@click.option("--workspace", type=click.Path(file_okay=False, path_type=Path), default=".")
@click.option("--round", "round_", type=click.IntRange(min=1), default=None)
def plan_submit_command(source, workspace: Path, round_: int | None) -> None:
    content = source.read()
    if not content.strip():
        raise click.ClickException("Plan is empty.")
    try:
        path = ArtifactStore(workspace).write_plan(content, round=round_)
    except StateError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Plan written to {path}")


@cli.group("review")
def review_group() -> None:
    """Review artifact commands."""


@review_group.command("submit")
@click.option("--workspace", type=click.Path(file_okay=False, path_type=Path), default=".")
@click.option("--phase", type=click.Choice(REVIEW_PHASES), required=True)
@click.option("--round", "round_", type=click.IntRange(min=1), required=True)
@click.option("--role", type=click.Choice(REVIEW_ROLES), required=True)
@click.option("--decision", type=click.Choice(REVIEW_DECISIONS), required=True)
@click.option("--message", default="", help="Rationale and requested changes.")
def review_submit_command(
    workspace: Path, phase: str, round_: int, role: str, decision: str, message: str
) -> None:
    review = ReviewArtifact(
        phase=phase,  # type: ignore[arg-type]
        round=round_,
        role=role,  # type: ignore[arg-type]
        decision=decision,  # type: ignore[arg-type]
        timestamp=utcnow_iso(),
        content=message,
    )
    try:
        path = ArtifactStore(workspace).write_review(review)
    except StateError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"{role} {decision} for {phase} round {round_}: {path}")


@review_group.command("list")
@click.option("--workspace", type=click.Path(file_okay=False, path_type=Path), default=".")
@click.option("--phase", type=click.Choice(REVIEW_PHASES), required=True)
@click.option("--round", "round_", type=click.IntRange(min=1), default=None)
def review_list_command(workspace: Path, phase: str, round_: int | None) -> None:
    artifacts = ArtifactStore(workspace)
    try:
        round_ = round_ or artifacts.latest_round(phase)  # type: ignore[arg-type]
        reviews = artifacts.read_reviews(phase, round_) if round_ else []  # type: ignore[arg-type]
    except StateError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_json(
        {
            "phase": phase,
            "round": round_,
            "reviews": [
                {
                    "role": review.role,
                    "decision": review.decision,
                    "timestamp": review.timestamp,
                    "content": review.content,
                }
                for review in reviews
            ],
        }
    )

