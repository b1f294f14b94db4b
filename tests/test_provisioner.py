from __future__ import annotations

import asyncio
from pathlib import Path

import pytest
from git import Repo

from bosun_mcp.errors import RepoAccessError
from bosun_mcp.workspace import (
    BranchExistsError,
    CloneError,
    CommitishNotFoundError,
    WorkspaceExistsError,
    WorkspaceProvisioner,
)


def advance(seed: Repo, branch: str, filename: str) -> str:
    (Path(seed.working_dir) / filename).write_text(filename, encoding="utf-8")
    seed.git.add(filename)
    seed.git.commit("-m", f"add {filename}")
    seed.git.push("origin", f"HEAD:refs/heads/{branch}")
    return seed.head.commit.hexsha


def test_setup_creates_branch_from_commitish(tmp_path: Path, origin_repo) -> None:
    origin, seed = origin_repo
    provisioner = WorkspaceProvisioner(tmp_path / "workspaces")
    messages: list[str] = []

    workdir = asyncio.run(provisioner.setup(str(origin), "main", "feature-x", messages.append))

    repo = Repo(workdir)
    assert workdir == tmp_path / "workspaces" / "worktrees" / "feature-x"
    assert repo.active_branch.name == "feature-x"
    assert repo.head.commit.hexsha == seed.head.commit.hexsha
    assert (workdir / "README.md").read_text(encoding="utf-8") == "hello\n"
    assert repo.remotes.origin.url == str(origin)
    assert any("Cloning" in message for message in messages)
    assert messages[-1] == "Workspace ready on branch feature-x"


def test_setup_uses_latest_remote_state(tmp_path: Path, origin_repo) -> None:
    origin, seed = origin_repo
    provisioner = WorkspaceProvisioner(tmp_path / "workspaces")

    asyncio.run(provisioner.setup(str(origin), "main", "first", None))
    newest = advance(seed, "main", "later.txt")
    second = asyncio.run(provisioner.setup(str(origin), "main", "second", None))

    assert Repo(second).head.commit.hexsha == newest
    assert (second / "later.txt").exists()


def test_setup_accepts_tags_and_shas(tmp_path: Path, origin_repo) -> None:
    origin, seed = origin_repo
    provisioner = WorkspaceProvisioner(tmp_path / "workspaces")
    sha = seed.head.commit.hexsha

    from_tag = asyncio.run(provisioner.setup(str(origin), "v1.0", "from-tag", None))
    from_sha = asyncio.run(provisioner.setup(str(origin), sha[:10], "from-sha", None))

    assert Repo(from_tag).head.commit.hexsha == sha
    assert Repo(from_sha).head.commit.hexsha == sha


def test_setup_rejects_unknown_commitish(tmp_path: Path, origin_repo) -> None:
    origin, _ = origin_repo
    provisioner = WorkspaceProvisioner(tmp_path / "workspaces")

    with pytest.raises(CommitishNotFoundError) as excinfo:
        asyncio.run(provisioner.setup(str(origin), "no-such-branch", "feature-x", None))

    assert excinfo.value.step == "resolve"
    assert not provisioner.worktree_path("feature-x").exists()


def test_setup_rejects_existing_remote_branch(tmp_path: Path, origin_repo) -> None:
    origin, _ = origin_repo
    provisioner = WorkspaceProvisioner(tmp_path / "workspaces")

    with pytest.raises(BranchExistsError):
        asyncio.run(provisioner.setup(str(origin), "main", "develop", None))


def test_setup_rejects_existing_directory(tmp_path: Path, origin_repo) -> None:
    origin, _ = origin_repo
    provisioner = WorkspaceProvisioner(tmp_path / "workspaces")
    provisioner.worktree_path("feature-x").mkdir(parents=True)

    with pytest.raises(WorkspaceExistsError):
        asyncio.run(provisioner.setup(str(origin), "main", "feature-x", None))


def test_clone_failure_leaves_no_cache(tmp_path: Path) -> None:
    provisioner = WorkspaceProvisioner(tmp_path / "workspaces")
    missing = tmp_path / "missing.git"

    with pytest.raises(CloneError):
        asyncio.run(provisioner.setup(str(missing), "main", "feature-x", None))

    assert not provisioner.cache_path(str(missing)).exists()


def test_commit_and_push(tmp_path: Path, origin_repo) -> None:
    origin, _ = origin_repo
    provisioner = WorkspaceProvisioner(tmp_path / "workspaces", author_name="Bot", author_email="bot@example.com")

    async def scenario():
        workdir = await provisioner.setup(str(origin), "main", "feature-x", None)
        nothing = await provisioner.commit_and_push(workdir, "feature-x", "no changes")
        (workdir / "new.txt").write_text("content", encoding="utf-8")
        pushed = await provisioner.commit_and_push(workdir, "feature-x", "Session changes")
        again = await provisioner.commit_and_push(workdir, "feature-x", "still nothing")
        return nothing, pushed, again

    nothing, pushed, again = asyncio.run(scenario())

    assert (nothing, pushed, again) == (False, True, False)
    remote = Repo(origin)
    commit = remote.commit("feature-x")
    assert commit.message.strip() == "Session changes"
    assert "new.txt" in commit.tree


def test_commits_made_by_the_assistant_are_pushed(tmp_path: Path, origin_repo) -> None:
    origin, _ = origin_repo
    provisioner = WorkspaceProvisioner(tmp_path / "workspaces")

    async def scenario():
        workdir = await provisioner.setup(str(origin), "main", "feature-x", None)
        repo = Repo(workdir)
        with repo.config_writer() as writer:
            writer.set_value("user", "name", "Assistant")
            writer.set_value("user", "email", "assistant@example.com")
        (workdir / "made.txt").write_text("by assistant", encoding="utf-8")
        repo.git.add("made.txt")
        repo.git.commit("-m", "assistant commit")
        return await provisioner.commit_and_push(workdir, "feature-x", "unused")

    assert asyncio.run(scenario()) is True
    assert Repo(origin).commit("feature-x").message.strip() == "assistant commit"


def test_cleanup_is_idempotent(tmp_path: Path, origin_repo) -> None:
    origin, _ = origin_repo
    provisioner = WorkspaceProvisioner(tmp_path / "workspaces")

    async def scenario():
        workdir = await provisioner.setup(str(origin), "main", "feature-x", None)
        await provisioner.cleanup(workdir)
        await provisioner.cleanup(workdir)
        return workdir

    assert not asyncio.run(scenario()).exists()


def test_repo_info(tmp_path: Path, origin_repo) -> None:
    origin, _ = origin_repo
    provisioner = WorkspaceProvisioner(tmp_path / "workspaces")

    async def scenario():
        workdir = await provisioner.setup(str(origin), "main", "feature-x", None)
        (workdir / "dirty.txt").write_text("x", encoding="utf-8")
        return await provisioner.repo_info(workdir), await provisioner.repo_info(tmp_path / "nowhere")

    info, missing = asyncio.run(scenario())

    assert info["available"] is True
    assert info["branch"] == "feature-x"
    assert info["dirty"] is True
    assert missing == {"available": False}


def test_validate_repo_url(tmp_path: Path, origin_repo) -> None:
    origin, _ = origin_repo
    provisioner = WorkspaceProvisioner(tmp_path / "workspaces")

    asyncio.run(provisioner.validate_repo_url(str(origin)))
    asyncio.run(provisioner.validate_repo_url("git@github.com:org/repo.git", check_remote=False))
    asyncio.run(provisioner.validate_repo_url("https://github.com/org/repo", check_remote=False))

    with pytest.raises(RepoAccessError):
        asyncio.run(provisioner.validate_repo_url("not a url", check_remote=False))
    with pytest.raises(RepoAccessError):
        asyncio.run(provisioner.validate_repo_url(f"file://{tmp_path / 'missing.git'}"))
