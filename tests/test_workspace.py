from __future__ import annotations

from pathlib import Path

import pytest

from scene_export.errors import AllocationError
from scene_export.workspace import WorkspaceManager


def test_allocate_creates_empty_directory(tmp_path: Path):
    manager = WorkspaceManager(tmp_path / "temp")

    path = manager.allocate("job-a")

    assert path == tmp_path / "temp" / "job-a"
    assert path.is_dir()
    assert list(path.iterdir()) == []


def test_allocate_refuses_existing_workspace(tmp_path: Path):
    manager = WorkspaceManager(tmp_path)
    manager.allocate("job-a")

    with pytest.raises(AllocationError):
        manager.allocate("job-a")


def test_allocate_reports_unavailable_storage(tmp_path: Path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("occupied")
    manager = WorkspaceManager(blocker)

    with pytest.raises(AllocationError):
        manager.allocate("job-a")


def test_reclaim_is_idempotent(tmp_path: Path):
    manager = WorkspaceManager(tmp_path)
    path = manager.allocate("job-a")
    (path / "nested").mkdir()
    (path / "nested" / "output.mp4").write_bytes(b"data")

    assert manager.reclaim(path) is True
    assert not path.exists()
    assert manager.reclaim(path) is False
    assert not path.exists()


def test_reclaim_logs_failures_instead_of_raising(tmp_path: Path, monkeypatch, caplog):
    manager = WorkspaceManager(tmp_path)
    path = manager.allocate("job-a")

    def _locked(_path):  # noqa: ANN001
        raise PermissionError("file in use")

    monkeypatch.setattr("scene_export.workspace.shutil.rmtree", _locked)

    assert manager.reclaim(path) is False
    assert "Failed to reclaim workspace" in caplog.text


def test_purge_orphans_removes_leftover_workspaces(tmp_path: Path):
    manager = WorkspaceManager(tmp_path / "temp")
    manager.allocate("old-1")
    manager.allocate("old-2")

    assert manager.purge_orphans() == 2
    assert list((tmp_path / "temp").iterdir()) == []
    assert WorkspaceManager(tmp_path / "missing").purge_orphans() == 0
