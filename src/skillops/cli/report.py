"""Terminal rendering for pipeline results."""

from __future__ import annotations

import json

import click

from skillops.finalize.pipeline import FinalizeSummary
from skillops.update.backup import Backup
from skillops.update.pipeline import CheckResult, CheckStatus, UpdateOutcome


def _green(text: str) -> str:
    return f"\033[32m{text}\033[0m"


def _red(text: str) -> str:
    return f"\033[31m{text}\033[0m"


def _yellow(text: str) -> str:
    return f"\033[33m{text}\033[0m"


def _bold(text: str) -> str:
    return f"\033[1m{text}\033[0m"


def _warn(text: str) -> None:
    click.echo(f"  {_yellow('warning:')} {text}")


def print_check(result: CheckResult) -> None:
    if result.status is CheckStatus.UP_TO_DATE:
        click.echo(_green(result.message))
    elif result.status is CheckStatus.UPDATE_AVAILABLE:
        click.echo(_yellow(result.message))
        click.echo("  run `skillops update` to install it")
        if result.remote is not None and result.remote.notes:
            click.echo(f"  notes: {result.remote.notes}")
    else:
        click.echo(_yellow(result.message))
    for name in result.unclassified:
        _warn(f"{name} is neither a system nor a protected path; updates leave it alone")


def print_update(outcome: UpdateOutcome) -> None:
    if outcome.ok:
        click.echo(_green(outcome.message))
    else:
        click.echo(_red(outcome.message), err=True)
    for result in outcome.run.stage_history:
        icon = _green("✓") if result.ok else _red("✗")
        click.echo(f"  {icon} {result.stage} {result.detail}".rstrip())


def print_backups(backups: list[Backup]) -> None:
    if not backups:
        click.echo("no backups")
        return
    for index, backup in enumerate(backups, start=1):
        click.echo(
            f"{index:>3}. {_bold(backup.tag)}  {backup.created_at:%Y-%m-%d %H:%M:%S} UTC  "
            f"{len(backup.paths)} paths  {backup.location}"
        )


def print_finalize(summary: FinalizeSummary, *, json_output: bool = False) -> None:
    if json_output:
        click.echo(json.dumps(summary.as_dict(), indent=2))
        return
    rows = [
        ("branch", summary.branch or "-"),
        ("lint", summary.lint.status if summary.lint else "not run"),
        ("build", summary.build.status if summary.build else "not run"),
        ("commit", summary.commit_sha[:12] or "-"),
        ("push", summary.push_target or "-"),
        (
            "change request",
            (summary.change_request.url or f"#{summary.change_request.number}")
            if summary.change_request
            else "-",
        ),
        ("review gate", summary.gate.kind.value if summary.gate else "-"),
    ]
    for label, value in rows:
        click.echo(f"  {label:<15} {value}")
    for warning in summary.warnings:
        _warn(warning)
    click.echo()
    if summary.ok:
        click.echo(_green(summary.message))
    else:
        click.echo(_red(summary.message), err=True)
