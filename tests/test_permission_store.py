"""Tests for allow-always permission persistence."""
from __future__ import annotations

import json
import tempfile
from pathlib import Path

from claudekeeper.adapters.permission_store import PermissionStore, workdir_slug


def test_workdir_slug() -> None:
    assert workdir_slug("/home/u/repo") == "-home-u-repo"


def test_project_and_global_levels_merge() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        state_dir = Path(tmpdir)
        repo = PermissionStore(state_dir, "/home/u/repo")
        other = PermissionStore(state_dir, "/home/u/other")

        repo.add_project("Bash")
        repo.add_global("Read")
        repo.add_project("Bash")

        assert repo.load() == {"Bash", "Read"}
        assert other.load() == {"Read"}
        saved = json.loads((state_dir / "projects" / "-home-u-repo" / "allowed_tools.json").read_text())
        assert saved == ["Bash"]


def test_no_workdir_falls_back_to_global() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        store = PermissionStore(Path(tmpdir))
        store.add_project("Write")
        assert PermissionStore(Path(tmpdir), "/any").is_allowed("Write")


def test_corrupt_file_reads_as_empty() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        (Path(tmpdir) / "allowed_tools.json").write_text("{oops")
        assert PermissionStore(Path(tmpdir)).load() == set()
