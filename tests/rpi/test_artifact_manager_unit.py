"""Unit tests for ArtifactLifecycleManager and run locks.

Uses a real temporary artifact root so paths, atomic writes and removals
are exercised against the filesystem.
"""

import os

import pytest

from src.rpi.artifacts import (
    LOCK_FILE_NAME,
    ArtifactLifecycleManager,
    DependencyViolationError,
    RunLock,
    RunLockedError,
    get_lock_holder,
    is_locked,
    is_stale,
    locks,
)
from src.rpi.state.models import Artifact, CommitStrategy, PipelineRun, Stage

FEATURE = "add-cache"


@pytest.fixture
def manager(tmp_path):
    return ArtifactLifecycleManager(tmp_path / "docs" / "rpi")


def _make_run(*stages: Stage) -> PipelineRun:
    """A run whose recorded artifacts are not on disk."""
    artifacts = {
        stage: Artifact(
            stage=stage,
            content=f"{stage.value}\n",
            path=f"/nonexistent/{FEATURE}/{stage.value}.md",
        )
        for stage in stages
    }
    return PipelineRun(
        feature_id=FEATURE,
        item_id="acme/api#3",
        repository="acme/api",
        item_number=3,
        title="Add cache",
        artifacts=artifacts,
    )


# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------


def test_paths_are_derived_from_feature_and_stage(manager):
    assert manager.path_for(FEATURE, Stage.RESEARCH) == manager.root / FEATURE / "research.md"
    assert manager.path_for(FEATURE, Stage.PLAN) == manager.root / FEATURE / "plan.md"


def test_implement_has_no_artifact_path(manager):
    with pytest.raises(ValueError):
        manager.path_for(FEATURE, Stage.IMPLEMENT)


@pytest.mark.parametrize("bad_id", ["../escape", "a/b", "", "Upper", ".hidden"])
def test_unsafe_feature_ids_are_rejected(manager, bad_id):
    with pytest.raises(ValueError):
        manager.feature_dir(bad_id)


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------


def test_write_research_creates_file(manager):
    artifact = manager.write(_make_run(), Stage.RESEARCH, "# Findings\n")

    assert manager.read(FEATURE, Stage.RESEARCH) == "# Findings\n"
    assert artifact.stage == Stage.RESEARCH
    assert artifact.path == str(manager.path_for(FEATURE, Stage.RESEARCH))
    assert artifact.committed_as == CommitStrategy.APPEND


def test_write_leaves_no_temporary_files(manager):
    manager.write(_make_run(), Stage.RESEARCH, "content")

    assert sorted(os.listdir(manager.feature_dir(FEATURE))) == ["research.md"]


def test_write_replaces_content_atomically(manager):
    run = _make_run()
    manager.write(run, Stage.RESEARCH, "first")
    manager.write(run, Stage.RESEARCH, "second", committed_as=CommitStrategy.REWRITE)

    assert manager.read(FEATURE, Stage.RESEARCH) == "second"


def test_write_plan_without_research_is_refused(manager):
    with pytest.raises(DependencyViolationError) as exc_info:
        manager.write(_make_run(), Stage.PLAN, "plan")

    assert exc_info.value.missing == [Stage.RESEARCH]
    assert not manager.exists(FEATURE, Stage.PLAN)


def test_write_plan_with_recorded_but_missing_research_is_refused(manager):
    run = _make_run(Stage.RESEARCH)

    with pytest.raises(DependencyViolationError):
        manager.write(run, Stage.PLAN, "plan")


def test_write_plan_after_research(manager):
    run = _make_run()
    research = manager.write(run, Stage.RESEARCH, "research")
    run = run.model_copy(update={"artifacts": {Stage.RESEARCH: research}})

    manager.write(run, Stage.PLAN, "plan")

    assert manager.read(FEATURE, Stage.PLAN) == "plan"
    assert manager.read(FEATURE, Stage.RESEARCH) == "research"


def test_research_cannot_be_overwritten_under_a_recorded_plan(manager):
    run = _make_run(Stage.RESEARCH, Stage.PLAN)

    with pytest.raises(DependencyViolationError):
        manager.write(run, Stage.RESEARCH, "new research")


def test_require_upstream_for_implement(manager):
    run = _make_run()
    research = manager.write(run, Stage.RESEARCH, "research")
    run = run.model_copy(update={"artifacts": {Stage.RESEARCH: research}})

    with pytest.raises(DependencyViolationError) as exc_info:
        manager.require_upstream(run, Stage.IMPLEMENT)
    assert exc_info.value.missing == [Stage.PLAN]

    plan = manager.write(run, Stage.PLAN, "plan")
    run = run.model_copy(
        update={"artifacts": {Stage.RESEARCH: research, Stage.PLAN: plan}}
    )
    manager.require_upstream(run, Stage.IMPLEMENT)


# ---------------------------------------------------------------------------
# Invalidation and removal
# ---------------------------------------------------------------------------


def test_invalidate_removes_only_named_stages(manager):
    run = _make_run()
    research = manager.write(run, Stage.RESEARCH, "research")
    run = run.model_copy(update={"artifacts": {Stage.RESEARCH: research}})
    manager.write(run, Stage.PLAN, "plan")

    removed = manager.invalidate(FEATURE, [Stage.PLAN])

    assert removed == [manager.path_for(FEATURE, Stage.PLAN)]
    assert manager.exists(FEATURE, Stage.RESEARCH)
    assert not manager.exists(FEATURE, Stage.PLAN)


def test_invalidate_missing_files_is_a_noop(manager):
    assert manager.invalidate(FEATURE, [Stage.RESEARCH, Stage.PLAN]) == []


def test_feature_dirs_skips_foreign_entries(manager):
    manager.write(_make_run(), Stage.RESEARCH, "x")
    (manager.root / "README.md").write_text("not a feature")
    (manager.root / "Not_A_Feature").mkdir()

    assert [p.name for p in manager.feature_dirs()] == [FEATURE]


def test_feature_dirs_without_root(tmp_path):
    assert list(ArtifactLifecycleManager(tmp_path / "missing").feature_dirs()) == []


def test_remove_feature_deletes_directory(manager):
    manager.write(_make_run(), Stage.RESEARCH, "x")

    manager.remove_feature(FEATURE)

    assert not manager.feature_dir(FEATURE).exists()


# ---------------------------------------------------------------------------
# Run locks
# ---------------------------------------------------------------------------


def test_run_lock_round_trip(tmp_path):
    feature_dir = tmp_path / FEATURE

    with RunLock(feature_dir) as lock:
        assert is_locked(feature_dir)
        assert lock.path.name == LOCK_FILE_NAME
        assert get_lock_holder(feature_dir) == os.getpid()

    assert not is_locked(feature_dir)


def test_second_lock_is_refused(tmp_path):
    feature_dir = tmp_path / FEATURE
    first = RunLock(feature_dir)
    first.acquire()
    try:
        with pytest.raises(RunLockedError) as exc_info:
            RunLock(feature_dir).acquire()
        assert exc_info.value.holder_pid == os.getpid()
    finally:
        first.release()

    RunLock(feature_dir).acquire()


def test_release_without_acquire_keeps_foreign_lock(tmp_path):
    feature_dir = tmp_path / FEATURE
    holder = RunLock(feature_dir)
    holder.acquire()

    RunLock(feature_dir).release()

    assert is_locked(feature_dir)
    holder.release()


def test_unreadable_lock_holder_is_none(tmp_path):
    feature_dir = tmp_path / FEATURE
    feature_dir.mkdir()
    (feature_dir / LOCK_FILE_NAME).write_text("garbage")

    assert is_locked(feature_dir)
    assert get_lock_holder(feature_dir) is None


def test_lock_of_dead_process_is_stale_and_replaced(tmp_path, monkeypatch):
    feature_dir = tmp_path / FEATURE
    feature_dir.mkdir()
    (feature_dir / LOCK_FILE_NAME).write_text("999999")

    real_kill = os.kill

    def fake_kill(pid, signal):
        if pid == 999999:
            raise ProcessLookupError(pid)
        return real_kill(pid, signal)

    monkeypatch.setattr(locks.os, "kill", fake_kill)

    assert is_stale(feature_dir)
    assert not is_locked(feature_dir)

    with RunLock(feature_dir):
        assert get_lock_holder(feature_dir) == os.getpid()
        assert is_locked(feature_dir)


def test_lock_of_live_process_is_not_stale(tmp_path):
    feature_dir = tmp_path / FEATURE
    with RunLock(feature_dir):
        assert not is_stale(feature_dir)


def test_lock_owned_by_other_user_is_kept(tmp_path, monkeypatch):
    feature_dir = tmp_path / FEATURE
    feature_dir.mkdir()
    (feature_dir / LOCK_FILE_NAME).write_text("1")

    def fake_kill(pid, signal):
        raise PermissionError(pid)

    monkeypatch.setattr(locks.os, "kill", fake_kill)

    assert is_locked(feature_dir)
    with pytest.raises(RunLockedError):
        RunLock(feature_dir).acquire()
