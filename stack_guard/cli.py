"""
stack-guard CLI
~~~~~~~~~~~~~~~

Command-line interface for stack-guard. One sub-command per verb; each
parses its flags, builds a :class:`StackGuard` and calls one method.
"""

from __future__ import annotations

import argparse
import logging
import sys
from typing import Any

from stack_guard.core.states import BackupType, RecoveryMode
from stack_guard.exceptions import RollbackPartialFailure, StackGuardError

logger = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="stack-guard",
        description="stack-guard: recovery-oriented operations for Docker Compose stacks",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Show version and exit",
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to stack-guard.yaml (default: built-in defaults)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable debug logging",
    )
    subparsers = parser.add_subparsers(dest="command")

    # backup command
    backup_parser = subparsers.add_parser("backup", help="Create a backup archive")
    backup_parser.add_argument(
        "type",
        nargs="?",
        default=BackupType.FULL.value,
        choices=[t.value for t in BackupType],
        help="Backup type (default: full)",
    )
    backup_parser.add_argument("--dir", type=str, default=None, help="Destination directory")
    backup_parser.add_argument("--name", type=str, default=None, help="Archive name")

    # restore command
    restore_parser = subparsers.add_parser("restore", help="Restore a backup archive")
    restore_parser.add_argument("archive", type=str, help="Path to the archive")
    restore_parser.add_argument(
        "--type",
        type=str,
        default=None,
        choices=[t.value for t in BackupType if t != BackupType.INCREMENTAL],
        help="Restore only this part of the archive",
    )
    restore_parser.add_argument(
        "--verify-only",
        action="store_true",
        help="Validate the archive without restoring it",
    )

    # backups command
    backups_parser = subparsers.add_parser("backups", help="List backup archives")
    backups_parser.add_argument("--dir", type=str, default=None, help="Backup directory")

    # update command
    update_parser = subparsers.add_parser("update", help="Update services to a version")
    update_parser.add_argument(
        "--version",
        dest="target_version",
        type=str,
        default=None,
        help="Target version (default: latest)",
    )
    update_parser.add_argument(
        "--service",
        dest="services",
        action="append",
        default=None,
        help="Service to update (repeatable; default: all)",
    )
    update_parser.add_argument(
        "--force", action="store_true", help="Update even if already on the version"
    )
    update_parser.add_argument(
        "--no-backup", action="store_true", help="Skip the pre-update backup"
    )
    update_parser.add_argument(
        "--timeout", type=float, default=None, help="Health timeout in seconds"
    )

    # rollback command
    rollback_parser = subparsers.add_parser(
        "rollback", help="Restore the last pre-update backup and restart"
    )
    rollback_parser.add_argument(
        "archive", nargs="?", default=None, help="Archive to roll back to"
    )

    # lifecycle commands
    for verb, text in (
        ("start", "Start services"),
        ("stop", "Stop services"),
        ("restart", "Restart services"),
    ):
        verb_parser = subparsers.add_parser(verb, help=text)
        verb_parser.add_argument(
            "--timeout", type=float, default=None, help="Timeout in seconds"
        )
    subparsers.choices["restart"].add_argument(
        "--service",
        dest="services",
        action="append",
        default=None,
        help="Restart only this service in place (repeatable)",
    )

    subparsers.add_parser("status", help="Show service state, health and versions")

    # snapshots command
    snapshots_parser = subparsers.add_parser("snapshots", help="List or restore snapshots")
    snapshots_parser.add_argument(
        "--restore", metavar="ID", default=None, help="Restore this snapshot"
    )
    snapshots_parser.add_argument(
        "--force", action="store_true", help="Overwrite differing targets"
    )

    # recover command
    recover_parser = subparsers.add_parser("recover", help="Run disaster recovery")
    recover_parser.add_argument(
        "--mode",
        default=RecoveryMode.AUTO.value,
        choices=[m.value for m in RecoveryMode],
        help="auto picks the newest valid archive; manual needs --source",
    )
    recover_parser.add_argument("--source", default=None, help="Archive to recover from")
    recover_parser.add_argument(
        "--scope",
        default=BackupType.FULL.value,
        choices=[t.value for t in BackupType if t != BackupType.INCREMENTAL],
        help="What to restore (default: full)",
    )

    subparsers.add_parser("reconcile", help="Recover from an interrupted operation")
    subparsers.add_parser("metrics", help="Print audit metrics in Prometheus format")
    return parser


def _make_guard(config_path: str | None) -> Any:
    """Create a StackGuard instance from config or defaults."""
    from stack_guard.core.guard import StackGuard

    if config_path:
        return StackGuard.from_config(config_path)
    return StackGuard.default()


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )


# ── Commands ─────────────────────────────────────────────────────────────────


def _run_backup(guard: Any, args: argparse.Namespace) -> None:
    archive = guard.backup(args.type, args.dir, args.name)
    print(f"Backup created: {archive}")


def _run_restore(guard: Any, args: argparse.Namespace) -> None:
    guard.restore(args.archive, type=args.type, verify_only=args.verify_only)
    if args.verify_only:
        print(f"Archive is valid: {args.archive}")
    else:
        print(f"Restored from {args.archive}")


def _run_backups(guard: Any, args: argparse.Namespace) -> None:
    archives = guard.list_backups(args.dir)
    if not archives:
        print("No backups found.")
        return
    for a in archives:
        kind = a.type.value if a.type else "unreadable"
        print(f"{a.created_at:%Y-%m-%d %H:%M:%S}  {kind:<11}  {a.size:>10}  {a.path.name}")


def _run_update(guard: Any, args: argparse.Namespace) -> None:
    result = guard.update(
        args.target_version,
        services=args.services,
        force=args.force,
        no_backup=args.no_backup,
        timeout=args.timeout,
    )
    print(f"Update complete in {result.duration_ms}ms")


def _run_rollback(guard: Any, args: argparse.Namespace) -> None:
    guard.rollback(args.archive)
    print("Rollback complete")


def _run_lifecycle(guard: Any, args: argparse.Namespace) -> None:
    if args.command == "restart":
        result = guard.restart(args.timeout, args.services)
    else:
        result = getattr(guard, args.command)(args.timeout)
    print(f"{args.command}: done ({guard.controller.state.value})")
    logger.debug("%s took %dms", args.command, result.duration_ms)


def _run_status(guard: Any, args: argparse.Namespace) -> None:
    status = guard.status()
    print(f"State: {status.state.value}")
    if status.interrupted_operation:
        print(f"Interrupted operation pending: {status.interrupted_operation}")
    print()
    for name, result in status.health.items():
        sym = "✅" if result.healthy else "❌"
        version = status.versions.get(name) or "-"
        reason = f"  ({result.reason})" if result.reason else ""
        print(f"  {sym} {name:<12} {version:<12}{reason}")


def _run_snapshots(guard: Any, args: argparse.Namespace) -> None:
    if args.restore:
        restored = guard.restore_snapshot(args.restore, force=args.force)
        print(f"Snapshot {args.restore} restored" if restored else "Nothing restored")
        return
    snapshots = guard.list_snapshots()
    if not snapshots:
        print("No snapshots.")
        return
    for s in snapshots:
        print(f"{s.id}  {s.operation_name:<10}  {s.path_count} paths  {s.size} bytes")


def _run_recover(guard: Any, args: argparse.Namespace) -> None:
    report = guard.disaster_recovery(args.mode, args.source, args.scope)
    print(report.render())
    if report.report_path:
        print(f"Report written to {report.report_path}")


def _run_reconcile(guard: Any, args: argparse.Namespace) -> None:
    result = guard.reconcile()
    if result is None:
        print("No interrupted operation found.")
    else:
        print(f"Reconciled interrupted {result.name}: {result.rollback_summary()}")


def _run_metrics(guard: Any, args: argparse.Namespace) -> None:
    print(guard.get_metrics().to_prometheus(), end="")


_COMMANDS = {
    "backup": _run_backup,
    "restore": _run_restore,
    "backups": _run_backups,
    "update": _run_update,
    "rollback": _run_rollback,
    "start": _run_lifecycle,
    "stop": _run_lifecycle,
    "restart": _run_lifecycle,
    "status": _run_status,
    "snapshots": _run_snapshots,
    "recover": _run_recover,
    "reconcile": _run_reconcile,
    "metrics": _run_metrics,
}


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point."""
    parser = _build_parser()
    args = parser.parse_args(argv)

    if args.version:
        from stack_guard import __version__

        print(f"stack-guard {__version__}")
        return 0

    handler = _COMMANDS.get(args.command)
    if handler is None:
        parser.print_help()
        return 1

    _configure_logging(args.verbose)
    try:
        guard = _make_guard(args.config)
        handler(guard, args)
    except RollbackPartialFailure as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 2
    except StackGuardError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
