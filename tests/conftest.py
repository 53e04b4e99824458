"""Shared fixtures: a fake command runner standing in for makepkg, repo-add and git."""
from __future__ import annotations

from pathlib import Path

import pytest

import publish_repo
from publish_repo import CommandResult, CommandRunner


ALL_TOOLS = {"makepkg", "repo-add", "tar", "sudo", "pacman", "git", "updpkgsums"}


class FakeRunner(CommandRunner):
    """Records every invocation; handlers simulate tool side effects."""

    def __init__(self, tools=ALL_TOOLS):
        self.tools = set(tools)
        self.calls: list[tuple[list[str], Path | None]] = []
        self.handlers = {}

    def on(self, *prefix, handler):
        self.handlers[tuple(prefix)] = handler
        return self

    def which(self, name):
        return f"/usr/bin/{name}" if name in self.tools else None

    def run(self, cmd, cwd=None, capture=False):
        cmd = list(cmd)
        self.calls.append((cmd, cwd))
        for prefix in sorted(self.handlers, key=len, reverse=True):
            if tuple(cmd[:len(prefix)]) == prefix:
                return self.handlers[prefix](cmd, cwd)
        return CommandResult(0)

    def commands(self, program=None):
        return [cmd for cmd, _ in self.calls if program is None or cmd[0] == program]


class FakeMakepkg:
    """Writes the given package files into the build directory."""

    def __init__(self, *names, returncode=0):
        self.names = names
        self.returncode = returncode

    def __call__(self, cmd, cwd):
        if self.returncode == 0:
            for name in self.names:
                (cwd / name).write_bytes(b"package")
        return CommandResult(self.returncode)


class FakeRepoAdd:
    """Remembers which packages each repo-add call indexed."""

    def __init__(self, returncode=0):
        self.returncode = returncode
        self.indexed: list[list[str]] = []

    def __call__(self, cmd, cwd):
        args = [a for a in cmd[1:] if not a.startswith("-")]
        db, packages = args[0], args[1:]
        self.indexed.append(packages)
        if self.returncode == 0:
            (cwd / db).write_bytes(b"db")
            (cwd / db.replace(".db.", ".files.")).write_bytes(b"files")
        return CommandResult(self.returncode)


class FakeGit:
    """Just enough git state for the publish step."""

    def __init__(self, remotes=None, changes=True, push_rc=0, commit_rc=0):
        self.remotes = dict(remotes or {})
        self.changes = changes
        self.push_rc = push_rc
        self.commit_rc = commit_rc

    def __call__(self, cmd, cwd):
        sub = cmd[1:]
        if sub[0] == "init":
            (cwd / ".git").mkdir()
        elif sub[:2] == ["remote", "get-url"]:
            url = self.remotes.get(sub[2])
            if url is None:
                return CommandResult(2)
            return CommandResult(0, url)
        elif sub[:2] == ["remote", "add"]:
            if sub[2] in self.remotes:
                return CommandResult(3)
            self.remotes[sub[2]] = sub[3]
        elif sub[:2] == ["remote", "set-url"]:
            self.remotes[sub[2]] = sub[3]
        elif sub[0] == "status":
            return CommandResult(0, " M pdlx.db.tar.xz" if self.changes else "")
        elif sub[0] == "commit":
            return CommandResult(self.commit_rc)
        elif sub[0] == "push":
            return CommandResult(self.push_rc)
        return CommandResult(0)


@pytest.fixture(autouse=True)
def no_user_config(tmp_path, monkeypatch):
    """Keep the developer's own config file out of the tests."""
    monkeypatch.setattr(publish_repo, "CONFIG_FILE", str(tmp_path / "no-such-config.yaml"))


@pytest.fixture
def workdir(tmp_path):
    path = tmp_path / "pkg-src"
    path.mkdir()
    (path / "PKGBUILD").write_text("pkgname=pkg\npkgver=1.0\npkgrel=1\nsource=()\n")
    return path


@pytest.fixture
def repo_dir(tmp_path):
    path = tmp_path / "x86_64"
    path.mkdir()
    return path


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def token_file(tmp_path):
    return tmp_path / "github_token"
