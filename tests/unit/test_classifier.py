from pathlib import Path

import pytest

from skillops.config import Settings
from skillops.errors import ConfigError
from skillops.update.classifier import FileManifest


def test_from_settings_defaults(settings: Settings) -> None:
    manifest = FileManifest.from_settings(settings)
    assert manifest.system == {"skills", "commands", "instructions.md", "manifest.json"}
    assert manifest.protected == {"tasks", "history", "settings.local.json"}


def test_classify_by_prefix() -> None:
    manifest = FileManifest.build(["skills", "manifest.json"], ["tasks"])
    assert manifest.classify("skills") == "system"
    assert manifest.classify("skills/review/SKILL.md") == "system"
    assert manifest.classify("tasks/todo.md") == "protected"
    assert manifest.classify("skillset/notes.md") is None
    assert manifest.classify("README.md") is None


def test_build_normalizes_paths() -> None:
    manifest = FileManifest.build([" skills/ ", "docs\\guides"], ["/tasks"])
    assert manifest.system == {"skills", "docs/guides"}
    assert manifest.protected == {"tasks"}


@pytest.mark.parametrize(
    ("system", "protected"),
    [
        ([], ["tasks"]),
        (["skills"], ["skills"]),
        (["skills"], ["skills/custom"]),
        (["skills/core"], ["skills"]),
        (["skills", "skills/core"], []),
        (["../outside"], []),
        (["skills/./core"], []),
        (["  "], []),
    ],
)
def test_build_rejects_invalid_partitions(system: list[str], protected: list[str]) -> None:
    with pytest.raises(ConfigError):
        FileManifest.build(system, protected)


def test_unclassified_lists_uncovered_top_level_entries(tmp_path: Path) -> None:
    root = tmp_path / "managed"
    (root / "skills").mkdir(parents=True)
    (root / "tasks").mkdir()
    (root / "scratch").mkdir()
    (root / "notes.txt").write_text("x")
    manifest = FileManifest.build(["skills", "docs/guides"], ["tasks"])
    (root / "docs").mkdir()
    assert manifest.unclassified(root) == ["notes.txt", "scratch"]


def test_unclassified_missing_root(tmp_path: Path) -> None:
    manifest = FileManifest.build(["skills"], [])
    assert manifest.unclassified(tmp_path / "absent") == []
