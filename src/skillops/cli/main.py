"""Click CLI group: check, update, restore, version, backups and finalize."""

from __future__ import annotations

import sys
from pathlib import Path

import click

from skillops import __version__
from skillops.cli.report import print_backups, print_check, print_finalize, print_update
from skillops.config import Settings, get_settings, validate_settings_for_env
from skillops.errors import MalformedVersion, SkillOpsError
from skillops.finalize.pipeline import FinalizeController
from skillops.locking import run_lock
from skillops.logging import configure_logging
from skillops.update.backup import BackupManager
from skillops.update.pipeline import CheckResult, UpdateController
from skillops.update.version import read_manifest_file


def _load_settings() -> Settings:
    settings = get_settings()
    try:
        validate_settings_for_env(settings)
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc
    return settings


@click.group()
@click.version_option(__version__, prog_name="skillops")
@click.option("--log-level", default=None, help="Override LOG_LEVEL for this invocation.")
@click.option("--json-logs", is_flag=True, help="Emit JSON log lines on stderr.")
def cli(log_level: str | None, json_logs: bool) -> None:
    """Self-update and session finalization for a managed skills tree."""
    settings = get_settings()
    configure_logging(log_level or settings.log_level, json_output=True if json_logs else None)


@cli.command()
def check() -> None:
    """Compare the local version with the latest release (read-only)."""
    settings = get_settings()
    try:
        validate_settings_for_env(settings)
        result = UpdateController(settings).check()
    except (ValueError, SkillOpsError) as exc:
        click.echo(f"could not check for updates: {exc}")
        return
    print_check(result)


@cli.command()
@click.option("--yes", "-y", is_flag=True, help="Install without asking for confirmation.")
def update(yes: bool) -> None:
    """Back up system files, install the latest release, verify, roll back on failure."""
    settings = _load_settings()

    def confirm(result: CheckResult) -> bool:
        if yes:
            return True
        print_check(result)
        return click.confirm("Install this update?", default=True)

    try:
        outcome = UpdateController(settings).run(confirm=confirm)
    except SkillOpsError as exc:
        raise click.ClickException(str(exc)) from exc
    print_update(outcome)
    if outcome.exit_code:
        sys.exit(outcome.exit_code)


@cli.command()
@click.option("--tag", default=None, help="Restore the newest backup with this tag.")
def restore(tag: str | None) -> None:
    """Restore system files from a backup."""
    settings = _load_settings()
    manager = BackupManager(settings.backup_path, settings.root_path)
    backups = manager.list_backups()
    if not backups:
        raise click.ClickException(f"no backups in {settings.backup_path}")

    try:
        if tag is not None:
            selected = manager.find(tag)
        else:
            print_backups(backups)
            choice = click.prompt(
                "Restore which backup?", type=click.IntRange(1, len(backups)), default=1
            )
            selected = backups[choice - 1]
        with run_lock(settings.staging_path, f"restore_{selected.tag}"):
            result = manager.restore(selected.tag, backup=selected)
    except SkillOpsError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(
        f"restored {selected.tag}: {len(result.restored)} paths restored, "
        f"{len(result.removed)} removed"
    )


@cli.command()
def version() -> None:
    """Print the local manifest."""
    settings = get_settings()
    try:
        manifest = read_manifest_file(settings.manifest_path)
    except MalformedVersion as exc:
        click.echo(f"version: unknown ({exc})")
        return
    click.echo(f"version: {manifest.version}")
    if manifest.release_date:
        click.echo(f"released: {manifest.release_date}")
    click.echo(f"manifest: {settings.manifest_path}")


@cli.command("backups")
def list_backups() -> None:
    """List backups, newest first."""
    settings = get_settings()
    print_backups(BackupManager(settings.backup_path, settings.root_path).list_backups())


@cli.command()
@click.option("--message", "-m", default="", help="Commit message and session log entry.")
@click.option("--json", "json_output", is_flag=True, help="Print the summary as JSON.")
@click.option(
    "--repo",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=None,
    help="Working tree to finalize (default: current directory).",
)
def finalize(message: str, json_output: bool, repo: Path | None) -> None:
    """Log, lint, build, commit, push and (on a feature branch) review and merge."""
    settings = _load_settings()
    try:
        summary = FinalizeController(settings, repo_path=repo).run(message)
    except SkillOpsError as exc:
        raise click.ClickException(str(exc)) from exc
    print_finalize(summary, json_output=json_output)
    if summary.exit_code:
        sys.exit(summary.exit_code)
