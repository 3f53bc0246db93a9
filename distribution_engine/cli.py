"""CLI entry point for the distribution engine.

Usage:
    distribution-engine schedule --content-id ID --targets discord,mastodon:main [--title T] [--url U] [--at ISO]
    distribution-engine status JOB_ID [--json]
    distribution-engine cancel JOB_ID
    distribution-engine retry JOB_ID
    distribution-engine reschedule JOB_ID --at ISO
    distribution-engine run [--once]
    distribution-engine sweep
    distribution-engine log [--failures] [--job JOB_ID]
    distribution-engine channels
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import datetime
from pathlib import Path

from distribution_engine.config import EngineConfig, load_config
from distribution_engine.delivery_log import DeliveryLog
from distribution_engine.distributor import Distributor, JobStatus
from distribution_engine.errors import DistributionError, ValidationError
from distribution_engine.factory import build_distributor, build_worker_pool
from distribution_engine.models import ContentSnapshot, DistributionResult, Target

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s | %(message)s"


def _parse_time(value: str) -> datetime:
    try:
        return datetime.fromisoformat(value)
    except ValueError as exc:
        raise ValidationError(f"Invalid time {value!r}, expected ISO-8601") from exc


def _print_status(status: JobStatus) -> None:
    job = status.job
    print(f"Job {job.id} [{job.state.value.upper()}]")
    print(f"  content:   {job.content_id}")
    print(f"  scheduled: {job.scheduled_time.isoformat()}")
    for t in job.targets:
        detail = t.external_id or (t.last_error.message if t.last_error else "")
        print(f"  [{t.state.value.upper()}] {t.key} attempts={t.attempt_count} {detail}".rstrip())


def _print_result(r: DistributionResult) -> None:
    mark = "OK" if r.success else (r.error_class.value.upper() if r.error_class else "FAIL")
    print(f"  [{mark}] {r.job_id} {r.target_key} #{r.attempt_number}: {r.external_id or r.message}")


def cmd_schedule(dist: Distributor, args: argparse.Namespace) -> None:
    targets = [Target.parse(t) for t in args.targets.split(",") if t.strip()]
    snapshot = ContentSnapshot(
        content_id=args.content_id,
        title=args.title,
        body=args.body,
        canonical_url=args.url,
    )
    at = _parse_time(args.at) if args.at else None
    job_id = dist.schedule_distribution(args.content_id, targets, at, snapshot)
    print(job_id)


def cmd_status(dist: Distributor, job_id: str, as_json: bool) -> None:
    status = dist.get_status(job_id)
    if as_json:
        print(json.dumps(status.to_dict(), indent=2))
        return
    _print_status(status)


def cmd_run(cfg: EngineConfig, dist: Distributor, once: bool) -> None:
    if once:
        results = dist.run_pending()
        print(f"Dispatched {len(results)} target(s).")
        for r in results:
            _print_result(r)
        return
    build_worker_pool(cfg, dist).run_forever()


def cmd_log(cfg: EngineConfig, failures_only: bool, job_id: str | None) -> None:
    log_path = Path(cfg.delivery_log_path) if cfg.delivery_log_path else None
    log = DeliveryLog(log_path)
    records = log.get_by_job(job_id) if job_id else log.all_records
    if failures_only:
        records = [r for r in records if not r.success]
    print(f"{'Failures' if failures_only else 'All records'}: {len(records)}")
    for r in records:
        _print_result(r)


def cmd_channels(cfg: EngineConfig) -> None:
    print(f"Live mode: {cfg.live_mode}")
    if not cfg.channels:
        print("No channels configured.")
    for name, settings in sorted(cfg.channels.items()):
        print(f"  {name}: {settings.get('type', 'webhook')}")


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="distribution-engine", description="Content distribution scheduler",
    )
    parser.add_argument("--config", type=Path, default=None, help="Config YAML file")
    sub = parser.add_subparsers(dest="command")

    schedule_p = sub.add_parser("schedule", help="Schedule content for distribution")
    schedule_p.add_argument("--content-id", required=True)
    schedule_p.add_argument("--targets", required=True,
                            help="Comma-separated channel[:account] list")
    schedule_p.add_argument("--title", default="")
    schedule_p.add_argument("--body", default="")
    schedule_p.add_argument("--url", default="")
    schedule_p.add_argument("--at", default=None, help="ISO-8601 publication time (default: now)")

    status_p = sub.add_parser("status", help="Show a job and its targets")
    status_p.add_argument("job_id")
    status_p.add_argument("--json", action="store_true")

    cancel_p = sub.add_parser("cancel", help="Cancel a job")
    cancel_p.add_argument("job_id")

    retry_p = sub.add_parser("retry", help="Retry the failed targets of a job")
    retry_p.add_argument("job_id")

    reschedule_p = sub.add_parser("reschedule", help="Move a scheduled job")
    reschedule_p.add_argument("job_id")
    reschedule_p.add_argument("--at", required=True)

    run_p = sub.add_parser("run", help="Dispatch due targets")
    run_p.add_argument("--once", action="store_true", help="Single pass instead of a worker pool")

    sub.add_parser("sweep", help="Release expired leases")

    log_p = sub.add_parser("log", help="View delivery log")
    log_p.add_argument("--failures", action="store_true")
    log_p.add_argument("--job", default=None)

    sub.add_parser("channels", help="Show configured channels")

    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return

    try:
        cfg = load_config(args.config)
        logging.basicConfig(level=cfg.log_level.upper(), format=LOG_FORMAT)

        if args.command == "log":
            cmd_log(cfg, args.failures, args.job)
            return
        if args.command == "channels":
            cmd_channels(cfg)
            return

        dist = build_distributor(cfg)
        try:
            if args.command == "schedule":
                cmd_schedule(dist, args)
            elif args.command == "status":
                cmd_status(dist, args.job_id, args.json)
            elif args.command == "cancel":
                _print_status(dist.cancel(args.job_id))
            elif args.command == "retry":
                _print_status(dist.retry_failed(args.job_id))
            elif args.command == "reschedule":
                _print_status(dist.reschedule(args.job_id, _parse_time(args.at)))
            elif args.command == "run":
                cmd_run(cfg, dist, args.once)
            elif args.command == "sweep":
                released = dist.dispatcher.release_expired_leases()
                print(f"Released {released} expired lease(s).")
        finally:
            dist.dispatcher.close()
    except DistributionError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
