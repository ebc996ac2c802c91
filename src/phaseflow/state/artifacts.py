from __future__ import annotations

import logging
import re
from pathlib import Path

from phaseflow.models import (
    REVIEW_DECISIONS,
    REVIEW_ROLES,
    ReviewArtifact,
    ReviewPhase,
)
from phaseflow.state.metadata import StateError

logger = logging.getLogger(__name__)

ARTIFACT_DIR = ".phaseflow"
PLAN_FILE = "plan.md"
REVIEWS_DIR = "reviews"

PLAN_ROUND_PATTERN = re.compile(r"<!--\s*round\s*[:=]\s*(\d+)\s*-->", re.IGNORECASE)
_ROLE_GROUP = "|".join(REVIEW_ROLES)


class ArtifactError(StateError):
    """Raised when a workspace artifact cannot be read or written."""


def plan_round(content: str) -> int | None:
    """Round marker carried by a plan document, if any."""
    match = PLAN_ROUND_PATTERN.search(content)
    if not match:
        return None
    value = int(match.group(1))
    return value if value > 0 else None


def parse_header_and_body(raw: str) -> tuple[dict[str, str], str]:
    lines = raw.splitlines()
    header: dict[str, str] = {}
    separator = -1
    for index, line in enumerate(lines):
        if line.strip() == "---":
            separator = index
            break
        key, sep, value = line.partition("=")
        if not sep:
            continue
        key = key.strip()
        if key:
            header[key] = value.strip()
    body = "" if separator == -1 else "\n".join(lines[separator + 1 :]).strip()
    return header, body


class ArtifactStore:
    """Plan and review documents kept inside a session workspace.

    Layout::

        <workspace>/.phaseflow/plan.md
        <workspace>/.phaseflow/reviews/{phase}-round-{N}-{role}.md
    """

    def __init__(self, workspace_path: Path | str) -> None:
        self.workspace_path = Path(workspace_path)
        self.artifact_dir = self.workspace_path / ARTIFACT_DIR
        self.reviews_dir = self.artifact_dir / REVIEWS_DIR
        self.plan_path = self.artifact_dir / PLAN_FILE

    def _ensure_dirs(self) -> None:
        try:
            self.reviews_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise ArtifactError(f"Cannot create {self.reviews_dir}: {exc}") from exc

    def read_plan(self) -> str | None:
        try:
            return self.plan_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise ArtifactError(f"Cannot read plan artifact: {exc}") from exc

    def write_plan(self, content: str, *, round: int | None = None) -> Path:
        if round is not None and plan_round(content) != round:
            content = PLAN_ROUND_PATTERN.sub("", content).lstrip("\n")
            content = f"<!-- round: {round} -->\n{content}"
        self._ensure_dirs()
        try:
            self.plan_path.write_text(content, encoding="utf-8")
        except OSError as exc:
            raise ArtifactError(f"Cannot write plan artifact: {exc}") from exc
        return self.plan_path

    @staticmethod
    def review_filename(phase: str, round: int, role: str) -> str:
        return f"{phase}-round-{round}-{role}.md"

    def write_review(self, review: ReviewArtifact) -> Path:
        self._ensure_dirs()
        path = self.reviews_dir / self.review_filename(review.phase, review.round, review.role)
        payload = "\n".join(
            [
                f"decision={review.decision}",
                f"round={review.round}",
                f"phase={review.phase}",
                f"role={review.role}",
                f"timestamp={review.timestamp}",
                "---",
                review.content.strip(),
                "",
            ]
        )
        try:
            path.write_text(payload, encoding="utf-8")
        except OSError as exc:
            raise ArtifactError(f"Cannot write review artifact {path.name}: {exc}") from exc
        return path

    def _review_files(self) -> list[str]:
        try:
            return sorted(entry.name for entry in self.reviews_dir.iterdir() if entry.is_file())
        except FileNotFoundError:
            return []
        except OSError as exc:
            raise ArtifactError(f"Cannot list {self.reviews_dir}: {exc}") from exc

    def read_reviews(self, phase: ReviewPhase, round: int) -> list[ReviewArtifact]:
        pattern = re.compile(rf"^{re.escape(phase)}-round-{round}-({_ROLE_GROUP})\.md$")
        artifacts: list[ReviewArtifact] = []
        for name in self._review_files():
            match = pattern.match(name)
            if not match:
                continue
            path = self.reviews_dir / name
            try:
                raw = path.read_text(encoding="utf-8")
            except FileNotFoundError:
                continue
            except OSError as exc:
                raise ArtifactError(f"Cannot read review artifact {name}: {exc}") from exc

            header, body = parse_header_and_body(raw)
            decision = header.get("decision", "")
            if decision not in REVIEW_DECISIONS:
                logger.warning("Skipping review artifact %s: unusable decision %r", name, decision)
                continue
            # The file name is the canonical identity; header copies are informational.
            artifacts.append(
                ReviewArtifact(
                    phase=phase,
                    round=round,
                    role=match.group(1),  # type: ignore[arg-type]
                    decision=decision,  # type: ignore[arg-type]
                    timestamp=header.get("timestamp", ""),
                    content=body,
                    path=str(path),
                )
            )
        return artifacts

    def latest_round(self, phase: ReviewPhase) -> int:
        pattern = re.compile(rf"^{re.escape(phase)}-round-(\d+)-({_ROLE_GROUP})\.md$")
        latest = 0
        for name in self._review_files():
            match = pattern.match(name)
            if match:
                latest = max(latest, int(match.group(1)))
        return latest
