from collections.abc import Callable
from pathlib import Path
from unittest.mock import patch

import pytest

from skillops.config import Settings
from skillops.errors import PartialApplyFailure
from skillops.update.applier import FileApplier
from skillops.update.classifier import FileManifest
from skillops.update.fetcher import ArchiveHandle
from skillops.update.fsops import swap_in, sweep_leftovers
from skillops.update.version import ManifestFile, Version

PROTECTED = ["tasks", "history", "settings.local.json"]


def _archive(tmp_path: Path, files: dict[str, str]) -> ArchiveHandle:
    workdir = tmp_path / "staging" / "fetch_test"
    root = workdir / "tree"
    for name, text in files.items():
        target = root / name
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(text)
    return ArchiveHandle(
        root=root,
        manifest=ManifestFile(Version(1, 3, 0), "2026-02-01"),
        workdir=workdir,
        source="test",
        sha256="",
    )


def _release(extra: dict[str, str] | None = None) -> dict[str, str]:
    files = {
        "manifest.json": '{"version": "1.3.0", "releaseDate": "2026-02-01"}',
        "skills/review/SKILL.md": "review 1.3.0\n",
        "skills/deploy/SKILL.md": "deploy 1.3.0\n",
        "commands/finalize.md": "finalize 1.3.0\n",
        "instructions.md": "instructions 1.3.0\n",
    }
    files.update(extra or {})
    return files


def test_apply_replaces_every_system_path(
    tmp_path: Path, settings: Settings, managed_tree: Path
) -> None:
    applier = FileApplier(managed_tree, FileManifest.from_settings(settings))
    result = applier.apply(_archive(tmp_path, _release()))
    assert result.replaced == ["commands", "instructions.md", "manifest.json", "skills"]
    assert result.removed == []
    assert (managed_tree / "skills" / "deploy" / "SKILL.md").read_text() == "deploy 1.3.0\n"
    assert (managed_tree / "instructions.md").read_text() == "instructions 1.3.0\n"
    assert not list(managed_tree.rglob("*.skillops-new"))
    assert not list(managed_tree.rglob("*.skillops-old"))


def test_apply_never_touches_protected_paths_even_when_archive_ships_them(
    tmp_path: Path,
    settings: Settings,
    managed_tree: Path,
    tree_bytes: Callable[[Path, list[str]], dict[str, bytes]],
) -> None:
    before = tree_bytes(managed_tree, PROTECTED)
    archive = _archive(
        tmp_path,
        _release(
            {
                "tasks/todo.md": "- overwritten by release\n",
                "history/notes.md": "overwritten\n",
                "settings.local.json": '{"theme": "light"}',
                "README.md": "release readme\n",
            }
        ),
    )
    applier = FileApplier(managed_tree, FileManifest.from_settings(settings))
    result = applier.apply(archive)

    assert tree_bytes(managed_tree, PROTECTED) == before
    assert sorted(result.ignored) == ["README.md", "history", "settings.local.json", "tasks"]
    assert not (managed_tree / "README.md").exists()


def test_apply_removes_system_paths_the_release_dropped(
    tmp_path: Path, settings: Settings, managed_tree: Path
) -> None:
    files = _release()
    del files["commands/finalize.md"]
    applier = FileApplier(managed_tree, FileManifest.from_settings(settings))
    result = applier.apply(_archive(tmp_path, files))
    assert result.removed == ["commands"]
    assert not (managed_tree / "commands").exists()


def test_nested_system_entries_do_not_report_parent_as_ignored(
    tmp_path: Path, managed_tree: Path
) -> None:
    manifest = FileManifest.build(["skills/core", "manifest.json"], ["skills/custom"])
    archive = _archive(
        tmp_path,
        {
            "manifest.json": '{"version": "1.3.0"}',
            "skills/core/SKILL.md": "core\n",
            "skills/custom/SKILL.md": "release custom\n",
        },
    )
    (managed_tree / "skills" / "custom").mkdir(parents=True)
    (managed_tree / "skills" / "custom" / "SKILL.md").write_text("mine\n")

    result = FileApplier(managed_tree, manifest).apply(archive)
    assert result.replaced == ["manifest.json", "skills/core"]
    assert result.ignored == []
    assert (managed_tree / "skills" / "custom" / "SKILL.md").read_text() == "mine\n"


def test_partial_failure_reports_replaced_paths(
    tmp_path: Path, settings: Settings, managed_tree: Path
) -> None:
    calls: list[Path] = []

    def flaky_swap(source: Path, target: Path) -> None:
        calls.append(target)
        if len(calls) == 2:
            raise OSError("no space left on device")
        swap_in(source, target)

    applier = FileApplier(managed_tree, FileManifest.from_settings(settings))
    with patch("skillops.update.applier.swap_in", side_effect=flaky_swap):
        with pytest.raises(PartialApplyFailure) as exc_info:
            applier.apply(_archive(tmp_path, _release()))
    assert exc_info.value.replaced == ["commands"]
    assert (managed_tree / "instructions.md").read_text() == "instructions v1\n"


def test_swap_in_keeps_old_content_when_rename_fails(tmp_path: Path) -> None:
    source = tmp_path / "new.md"
    source.write_text("new")
    target = tmp_path / "managed" / "doc.md"
    target.parent.mkdir()
    target.write_text("old")

    real_rename = Path.rename

    def failing_rename(self: Path, destination: Path) -> Path:
        if self.name.endswith(".skillops-new"):
            raise OSError("rename refused")
        return real_rename(self, destination)

    with patch.object(Path, "rename", failing_rename):
        with pytest.raises(OSError, match="rename refused"):
            swap_in(source, target)
    assert target.read_text() == "old"
    assert not (tmp_path / "managed" / "doc.md.skillops-new").exists()


def test_sweep_leftovers(tmp_path: Path) -> None:
    root = tmp_path / "managed"
    (root / "skills.skillops-old").mkdir(parents=True)
    (root / "instructions.md.skillops-new").write_text("half")
    (root / "instructions.md").write_text("kept")
    removed = sweep_leftovers(root, {"skills", "instructions.md", "manifest.json"})
    assert sorted(path.name for path in removed) == [
        "instructions.md.skillops-new",
        "skills.skillops-old",
    ]
    assert [child.name for child in root.iterdir()] == ["instructions.md"]


def test_sweep_leftovers_leaves_protected_look_alikes(managed_tree: Path) -> None:
    (managed_tree / "tasks" / "draft.skillops-old").write_text("user notes")
    (managed_tree / "history" / "run.skillops-new").mkdir()
    (managed_tree / "skills.skillops-new").mkdir()

    removed = sweep_leftovers(managed_tree, {"skills", "instructions.md", "manifest.json"})

    assert removed == [managed_tree / "skills.skillops-new"]
    assert (managed_tree / "tasks" / "draft.skillops-old").read_text() == "user notes"
    assert (managed_tree / "history" / "run.skillops-new").is_dir()
