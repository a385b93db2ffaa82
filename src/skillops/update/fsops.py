"""Filesystem primitives for staging and swapping managed paths."""

from __future__ import annotations

import shutil
from collections.abc import Iterable
from pathlib import Path

_NEW_SUFFIX = ".skillops-new"
_OLD_SUFFIX = ".skillops-old"


def remove_path(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink(missing_ok=True)


def copy_path(source: Path, target: Path) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    if source.is_dir() and not source.is_symlink():
        shutil.copytree(source, target, symlinks=True)
    else:
        shutil.copy2(source, target, follow_symlinks=False)


def swap_in(source: Path, target: Path) -> None:
    """Replace ``target`` with a copy of ``source``.

    The copy is staged beside the target and renamed into place, so a failed copy
    leaves the old content untouched.
    """
    staged = target.with_name(target.name + _NEW_SUFFIX)
    retired = target.with_name(target.name + _OLD_SUFFIX)
    for leftover in (staged, retired):
        if leftover.exists() or leftover.is_symlink():
            remove_path(leftover)
    copy_path(source, staged)
    had_target = target.exists() or target.is_symlink()
    if had_target:
        target.rename(retired)
    try:
        staged.rename(target)
    except OSError:
        if had_target:
            retired.rename(target)
        remove_path(staged)
        raise
    if had_target:
        remove_path(retired)


def sweep_leftovers(root: Path, managed: Iterable[str]) -> list[Path]:
    """Delete staging debris left behind by an interrupted swap of a managed path.

    Only the exact sibling names :func:`swap_in` creates for ``managed`` entries are
    considered; anything else under ``root`` is left alone.
    """
    removed: list[Path] = []
    if not root.is_dir():
        return removed
    for relative in sorted(managed):
        target = root / relative
        for suffix in (_NEW_SUFFIX, _OLD_SUFFIX):
            candidate = target.with_name(target.name + suffix)
            if candidate.exists() or candidate.is_symlink():
                remove_path(candidate)
                removed.append(candidate)
    return removed
