"""Shared fixtures: wire payloads and a started session on a loopback transport."""

from __future__ import annotations

from typing import Any

import pytest

from repobridge.exceptions import error_stats
from repobridge.state import RepoSession
from repobridge.testing import LoopbackTransport

CONFIG_CHANNEL = "gg://repo/config"
STATUS_CHANNEL = "gg://repo/status"
SELECT_CHANNEL = "gg://revision/select"


def commit_payload(hex_id: str = "a1b2c3d4") -> dict[str, Any]:
    return {"hex": hex_id, "prefix": hex_id[:2], "rest": hex_id[2:]}


def status_payload(description: str = "snapshot working copy", commit: str = "a1b2c3d4") -> dict[str, Any]:
    return {"operation_description": description, "working_copy": commit_payload(commit)}


def workspace_payload(path: str = "/home/user/repo", **overrides: Any) -> dict[str, Any]:
    payload = {
        "type": "Workspace",
        "absolute_path": path,
        "git_remotes": ["origin"],
        "default_query": "all()",
        "latest_query": "@",
        "status": status_payload(),
        "theme": None,
        "indicate_disconnected_branches": True,
    }
    payload.update(overrides)
    return payload


def header_payload(commit: str = "c0ffee00", description: str = "fix parser") -> dict[str, Any]:
    return {
        "id": {
            "change": {"hex": "zzyyxxww", "prefix": "zz", "rest": "yyxxww"},
            "commit": commit_payload(commit),
        },
        "description": {"lines": [description]},
        "author": {"email": "dev@example.com", "name": "Dev", "timestamp": "2024-05-01T12:00:00Z"},
        "has_conflict": False,
        "is_working_copy": False,
        "is_immutable": False,
        "refs": ["main"],
        "parent_ids": [commit_payload("0000aaaa")],
    }


@pytest.fixture
def transport() -> LoopbackTransport:
    return LoopbackTransport()


@pytest.fixture
def session(transport: LoopbackTransport) -> RepoSession:
    session = RepoSession(transport)
    session.start()
    yield session
    session.shutdown()


@pytest.fixture
def workspace_session(session: RepoSession, transport: LoopbackTransport) -> RepoSession:
    transport.push_event(CONFIG_CHANNEL, workspace_payload())
    return session


@pytest.fixture(autouse=True)
def reset_error_stats():
    error_stats.reset()
    yield
    error_stats.reset()
