"""
Pytest configuration and fixtures for Memex tests.

Every test runs against its own temporary data, source and log
directories, so nothing touches the real ``~/.memex`` or transcript root.
"""

import json
from pathlib import Path
from typing import Any, Generator, Iterable, Optional, Union

import pytest

from memex.config import settings
from memex.db import Store, connect

DEFAULT_PROJECT = "-home-dev-webapp"
DEFAULT_CWD = "/home/dev/webapp"


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path, monkeypatch):
    """Point all configured paths into the test's temporary directory."""
    monkeypatch.setattr(settings, "data_dir", str(tmp_path / "data"))
    monkeypatch.setattr(settings, "database_path", None)
    monkeypatch.setattr(settings, "source_dir", str(tmp_path / "projects"))
    monkeypatch.setattr(settings, "log_dir", str(tmp_path / "logs"))
    monkeypatch.setattr(settings, "log_console_enabled", False)
    monkeypatch.delenv("MEMEX_HOOK", raising=False)
    yield settings


@pytest.fixture
def source_dir(tmp_path) -> Path:
    path = tmp_path / "projects"
    path.mkdir(parents=True, exist_ok=True)
    return path


@pytest.fixture
def store(tmp_path) -> Generator[Store, None, None]:
    """A freshly created store in the configured data directory."""
    db = connect(tmp_path / "data" / "memory.db")
    yield db
    db.close()


class SessionLog:
    """Writes JSONL transcripts laid out the way the assistant writes them."""

    def __init__(self, root: Path):
        self.root = root

    def path(self, session_id: str, project: str = DEFAULT_PROJECT) -> Path:
        return self.root / project / f"{session_id}.jsonl"

    def write(
        self,
        session_id: str,
        lines: Iterable[Union[dict[str, Any], str]],
        project: str = DEFAULT_PROJECT,
    ) -> Path:
        path = self.path(session_id, project)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self._render(lines), encoding="utf-8")
        return path

    def append(self, path: Path, lines: Iterable[Union[dict[str, Any], str]]) -> None:
        with path.open("a", encoding="utf-8") as handle:
            handle.write(self._render(lines))

    @staticmethod
    def _render(lines: Iterable[Union[dict[str, Any], str]]) -> str:
        return "".join(
            (line if isinstance(line, str) else json.dumps(line)) + "\n" for line in lines
        )

    @staticmethod
    def user(
        uuid: str,
        text: Union[str, list[dict[str, Any]]],
        timestamp: str = "2025-01-01T10:00:00.000Z",
        parent: Optional[str] = None,
        session_id: str = "s1",
        cwd: str = DEFAULT_CWD,
    ) -> dict[str, Any]:
        return {
            "type": "user",
            "uuid": uuid,
            "parentUuid": parent,
            "sessionId": session_id,
            "timestamp": timestamp,
            "cwd": cwd,
            "version": "2.0.17",
            "message": {"role": "user", "content": text},
        }

    @staticmethod
    def assistant(
        uuid: str,
        text: str = "",
        timestamp: str = "2025-01-01T10:00:05.000Z",
        parent: Optional[str] = None,
        tools: Optional[list[dict[str, Any]]] = None,
        session_id: str = "s1",
        cwd: str = DEFAULT_CWD,
    ) -> dict[str, Any]:
        content: list[dict[str, Any]] = []
        if text:
            content.append({"type": "text", "text": text})
        for tool in tools or []:
            content.append({"type": "tool_use", **tool})
        return {
            "type": "assistant",
            "uuid": uuid,
            "parentUuid": parent,
            "sessionId": session_id,
            "timestamp": timestamp,
            "cwd": cwd,
            "version": "2.0.17",
            "message": {"role": "assistant", "model": "test-model", "content": content},
        }

    @staticmethod
    def summary(text: str, leaf_uuid: Optional[str] = None) -> dict[str, Any]:
        return {"type": "summary", "summary": text, "leafUuid": leaf_uuid}

    @staticmethod
    def tool(tool_id: str, name: str, **tool_input: Any) -> dict[str, Any]:
        return {"id": tool_id, "name": name, "input": tool_input}


@pytest.fixture
def session_log(source_dir) -> SessionLog:
    return SessionLog(source_dir)
