import argparse
import json
import os
import sys
from datetime import datetime
from pathlib import Path

from grub_recovery.__version__ import __version__
from grub_recovery.checkpoint import archive
from grub_recovery.config.settings import RecoveryConfig
from grub_recovery.diagnostics.engine import run_diagnostics
from grub_recovery.domain.models import EXIT_FAILED, EXIT_ISSUES_REMAIN, EXIT_OK, HealthReport
from grub_recovery.exceptions import ArchiveError, DetectionError, RepairInProgressError
from grub_recovery.logging import LoggerFactory, operation_context, setup_logging
from grub_recovery.repair.state_machine import RepairStateMachine
from grub_recovery.services.metrics import MetricsStore
from grub_recovery.system.profile import describe_profile, resolve_profile


log = LoggerFactory.for_system()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="grub-auto-recovery",
        description="Diagnose and safely repair a broken GRUB installation",
    )
    modes = parser.add_mutually_exclusive_group()
    modes.add_argument(
        "--auto-check",
        action="store_true",
        help="Diagnose and repair if issues are found (default)",
    )
    modes.add_argument("--check-only", action="store_true", help="Diagnose without repairing")
    modes.add_argument(
        "--force-repair", action="store_true", help="Repair without diagnosing first"
    )
    modes.add_argument("--backup", action="store_true", help="Create a backup archive")
    modes.add_argument("--status", action="store_true", help="Show system and health status")
    modes.add_argument("--metrics", action="store_true", help="Print stored run metrics")
    modes.add_argument("--clean", action="store_true", help="Delete old backup archives")
    modes.add_argument("--version", action="store_true", help="Print version and exit")
    parser.add_argument("-d", "--debug", action="store_true", help="Enable verbose debug output")
    parser.add_argument("--trace", action="store_true", help="Log raw command output")
    parser.add_argument("--log-dir", type=Path, default=None, help="Directory for log files")
    return parser


def is_root() -> bool:
    return os.geteuid() == 0


def format_report(report: HealthReport) -> list[str]:
    lines = [f"Health Score: {report.score}/100 (Issues: {report.total_issues})"]
    for entry in report.entries:
        marker = "?" if entry.inconclusive else ("x" if entry.issues else "ok")
        line = f"  [{marker:>2}] {entry.check_id}: {entry.issues}"
        if entry.detail:
            line += f" ({entry.detail})"
        lines.append(line)
    return lines


def _diagnose(profile, config: RecoveryConfig) -> HealthReport:
    return run_diagnostics(
        profile, max_workers=config.parallel_jobs, probe_timeout=config.probe_timeout
    )


def show_status(profile, config: RecoveryConfig, metrics: MetricsStore) -> int:
    report = _diagnose(profile, config)
    metrics.record_health(report)
    lines = ["=== GRUB Recovery Status ===", *describe_profile(profile), ""]
    lines.extend(format_report(report))
    lines.append("")
    data = metrics.load()
    lines.append(f"Repairs performed: {data.get('repair_count', 0)}")
    for key in ("last_repair_timestamp", "last_backup_timestamp"):
        value = data.get(key)
        when = datetime.fromtimestamp(value).isoformat(sep=" ") if value else "never"
        lines.append(f"{key.replace('_', ' ').capitalize()}: {when}")
    archives = archive.list_archives(config.backup_dir)
    latest = archive.latest_archive(config.backup_dir)
    lines.append(f"Backups: {len(archives)} in {config.backup_dir}")
    lines.append(f"Latest backup: {latest or 'none'}")
    print("\n".join(lines))
    return EXIT_OK


def check_only(profile, config: RecoveryConfig, metrics: MetricsStore) -> int:
    report = _diagnose(profile, config)
    metrics.record_health(report)
    print("\n".join(format_report(report)))
    if report.needs_repair:
        log.warning("Issues detected; run with --auto-check or --force-repair to repair")
        return EXIT_ISSUES_REMAIN
    return EXIT_OK


def create_backup(profile, config: RecoveryConfig, metrics: MetricsStore) -> int:
    try:
        with operation_context("backup", backup_dir=str(config.backup_dir)):
            checkpoint = archive.create_archive(
                profile, config.backup_dir, retention=config.backup_retention
            )
    except ArchiveError as error:
        log.error(str(error))
        return EXIT_FAILED
    metrics.record_backup(checkpoint.created_at.timestamp())
    print(checkpoint.location)
    return EXIT_OK


def clean_backups(config: RecoveryConfig) -> int:
    with operation_context("clean", backup_dir=str(config.backup_dir)) as op_log:
        removed = archive.clean_archives(config.backup_dir, config.clean_max_age_days)
        op_log.info(
            f"Removed {len(removed)} backup(s) older than {config.clean_max_age_days} days"
        )
    return EXIT_OK


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        print(f"grub-auto-recovery {__version__}")
        return EXIT_OK

    setup_logging(debug=args.debug, trace=args.trace, log_dir=args.log_dir)
    config = RecoveryConfig.from_settings()
    metrics = MetricsStore(config.metrics_path)

    if args.metrics:
        print(json.dumps(metrics.load(), indent=2, sort_keys=True))
        return EXIT_OK

    if not is_root():
        log.error("This tool must be run as root")
        return EXIT_FAILED

    if args.clean:
        return clean_backups(config)

    try:
        profile = resolve_profile(
            custom_grub_target=config.custom_grub_target,
            custom_target_disk=config.custom_target_disk,
        )
    except DetectionError as error:
        log.critical(str(error))
        return EXIT_FAILED

    if args.backup:
        return create_backup(profile, config, metrics)
    if args.status:
        return show_status(profile, config, metrics)
    if args.check_only:
        return check_only(profile, config, metrics)
    if not args.force_repair and not config.auto_recovery_enabled:
        log.info("Automatic recovery is disabled, running diagnostics only")
        return check_only(profile, config, metrics)

    machine = RepairStateMachine(profile, config, metrics=metrics)
    try:
        attempt = machine.run(force=args.force_repair)
    except RepairInProgressError as error:
        log.error(str(error))
        return EXIT_FAILED
    return attempt.exit_code


if __name__ == "__main__":
    sys.exit(main())
