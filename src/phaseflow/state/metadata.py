from __future__ import annotations

import os
import re
import tempfile
from collections.abc import Mapping
from pathlib import Path

SESSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")


class StateError(RuntimeError):
    """Raised when durable state cannot be read or written."""


class MetadataError(StateError):
    """Raised when a session metadata record cannot be read or written."""


def parse_metadata(raw: str) -> dict[str, str]:
    fields: dict[str, str] = {}
    for line in raw.splitlines():
        if not line.strip() or line.lstrip().startswith("#"):
            continue
        key, sep, value = line.partition("=")
        if not sep:
            continue
        key = key.strip()
        if key:
            fields[key] = value.strip()
    return fields


def serialize_metadata(fields: Mapping[str, str]) -> str:
    lines: list[str] = []
    for key, value in fields.items():
        text = str(value)
        if "\n" in text or "=" in key:
            raise MetadataError(f"Metadata field '{key}' cannot be stored as a single line.")
        lines.append(f"{key}={text}")
    return "\n".join(lines) + "\n"


class MetadataStore:
    """Flat ``key=value`` record per session, one file per session id.

    Records are replaced atomically and never locked; callers keep a single
    writer per session.
    """

    def __init__(self, sessions_dir: Path) -> None:
        self.sessions_dir = Path(sessions_dir)

    def _path(self, session_id: str) -> Path:
        if not SESSION_ID_PATTERN.match(session_id):
            raise MetadataError(f"Invalid session id: {session_id!r}")
        return self.sessions_dir / session_id

    def read(self, session_id: str) -> dict[str, str] | None:
        path = self._path(session_id)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise MetadataError(f"Cannot read metadata of '{session_id}': {exc}") from exc
        return parse_metadata(raw)

    def _replace(self, session_id: str, fields: Mapping[str, str]) -> None:
        path = self._path(session_id)
        serialized = serialize_metadata(fields)
        tmp_name: str | None = None
        try:
            with tempfile.NamedTemporaryFile(
                "w",
                encoding="utf-8",
                dir=self.sessions_dir,
                prefix=f".{session_id}.",
                suffix=".tmp",
                delete=False,
            ) as handle:
                tmp_name = handle.name
                handle.write(serialized)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, path)
            tmp_name = None
        except OSError as exc:
            raise MetadataError(f"Cannot write metadata of '{session_id}': {exc}") from exc
        finally:
            if tmp_name is not None:
                try:
                    os.unlink(tmp_name)
                except OSError:
                    pass

    def write(self, session_id: str, fields: Mapping[str, str]) -> None:
        """Replace the whole record atomically."""
        self._path(session_id)
        try:
            self.sessions_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise MetadataError(f"Cannot create {self.sessions_dir}: {exc}") from exc
        self._replace(session_id, fields)
