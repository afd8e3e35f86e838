"""Pytest configuration and shared fixtures."""

import os
import subprocess
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import orjson
import pytest

from tangle.config import save_config
from tangle.constants import LOCAL_ONLY_FILES
from tangle.session import Session
from tangle.storage import IssueLog

# Environment variables that skip system/global git config lookups so every
# repo fixture behaves the same on any machine.
_GIT_TEST_ENV = {
    **os.environ,
    "GIT_CONFIG_NOSYSTEM": "1",
    "HOME": "/dev/null",
    "GIT_AUTHOR_NAME": "Test",
    "GIT_AUTHOR_EMAIL": "test@test.com",
    "GIT_COMMITTER_NAME": "Test",
    "GIT_COMMITTER_EMAIL": "test@test.com",
    "GIT_TERMINAL_PROMPT": "0",
}


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep a developer's TANGLE_DIR out of the tests."""
    monkeypatch.delenv("TANGLE_DIR", raising=False)


def make_store(tangle_dir: Path, prefix: str = "tg") -> Path:
    """Create an empty store with a fixed prefix."""
    IssueLog(tangle_dir, create=True)
    (tangle_dir / "tombstones.jsonl").touch()
    save_config(tangle_dir, {"prefix": prefix, "mode": "standalone"})
    return tangle_dir


def read_jsonl(path: Path) -> list[dict[str, Any]]:
    """All records of a JSONL file."""
    return [orjson.loads(line) for line in path.read_bytes().splitlines() if line.strip()]


@pytest.fixture
def tangle_dir(tmp_path: Path) -> Path:
    """An initialized, empty .tangle directory."""
    return make_store(tmp_path / ".tangle")


@pytest.fixture
def session(tangle_dir: Path) -> Iterator[Session]:
    """A session that exports every mutation immediately."""
    with Session(tangle_dir, debounce_seconds=0, writer="tester@example.com") as s:
        yield s


@dataclass
class GitRepo:
    """A temporary git repository with a tangle store committed on main."""

    path: Path
    tangle_dir: Path

    @property
    def issues_path(self) -> Path:
        return self.tangle_dir / "issues.jsonl"

    @property
    def tombstones_path(self) -> Path:
        return self.tangle_dir / "tombstones.jsonl"

    def git(self, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
        """Run a git command in this repo."""
        return subprocess.run(
            ["git", *args],
            cwd=self.path,
            capture_output=True,
            text=True,
            check=check,
            env=_GIT_TEST_ENV,
        )

    def session(self) -> Session:
        """A fresh immediate-export session on this repo's store."""
        return Session(self.tangle_dir, debounce_seconds=0, writer="tester@example.com")

    def commit_all(self, message: str) -> None:
        """Stage all changes and commit."""
        self.git("add", "-A")
        self.git("commit", "-m", message)

    def create_branch(self, name: str) -> None:
        """Create and switch to a new branch from current HEAD."""
        self.git("checkout", "-b", name)

    def switch_branch(self, name: str) -> None:
        """Switch to an existing branch."""
        self.git("checkout", name)

    def merge(self, branch: str) -> subprocess.CompletedProcess[str]:
        """Merge a branch. Returns the CompletedProcess (does not raise on conflict)."""
        return self.git("merge", "--no-edit", branch, check=False)


@pytest.fixture(scope="session")
def _git_template_dir(tmp_path_factory: pytest.TempPathFactory) -> str:
    """Empty template dir to skip copying sample hooks during git init."""
    return str(tmp_path_factory.mktemp("git-tpl"))


@pytest.fixture
def git_repo(tmp_path: Path, _git_template_dir: str) -> GitRepo:
    """Create a temporary git repository with a tangle store."""
    repo_path = tmp_path / "repo"
    repo_path.mkdir()
    tangle_dir = make_store(repo_path / ".tangle")
    (tangle_dir / ".gitignore").write_text("".join(f"{e}\n" for e in LOCAL_ONLY_FILES))

    subprocess.run(
        ["git", "init", "-b", "main", "--template", _git_template_dir, str(repo_path)],
        check=True,
        capture_output=True,
        env=_GIT_TEST_ENV,
    )
    repo = GitRepo(path=repo_path, tangle_dir=tangle_dir)
    repo.commit_all("Initial commit with empty .tangle")
    return repo
