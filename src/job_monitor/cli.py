from __future__ import annotations

import argparse
import asyncio

from job_monitor.config import (
    RUN_REQUIRED_ENVS,
    assert_required_envs,
    assert_slack_configured,
    load_settings,
    mask_secret,
    missing_envs,
)
from job_monitor.pipeline import build_monitor, run_once
from job_monitor.storage import SnapshotStore


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="job-monitor")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("run", help="Poll employers continuously and notify new matches")
    subparsers.add_parser("run-once", help="Run one poll cycle, wait for scoring and notifications, then exit")
    subparsers.add_parser("healthcheck", help="Validate config and local runtime readiness")

    add_parser = subparsers.add_parser("add-employer", help="Register an employer to monitor")
    add_parser.add_argument("name", help="Display name of the employer")
    add_parser.add_argument("external_id", help="Job-board identifier of the employer")

    status_parser = subparsers.add_parser("status", help="Show monitored employers and recent polls")
    status_parser.add_argument("--limit", type=int, default=20, help="Number of recent polls to show")

    return parser


def _cmd_run() -> int:
    settings = load_settings()
    assert_required_envs(RUN_REQUIRED_ENVS)

    async def _main() -> None:
        async with build_monitor(settings) as monitor:
            await monitor.run_forever()

    try:
        asyncio.run(_main())
    except KeyboardInterrupt:
        print("stopped")
    return 0


def _cmd_run_once() -> int:
    settings = load_settings()
    assert_required_envs(RUN_REQUIRED_ENVS)
    result = asyncio.run(run_once(settings))

    print(
        "run summary:",
        f"employers_polled={result.employers_polled}",
        f"employers_failed={result.employers_failed}",
        f"new_postings={result.new_postings}",
        f"batches={result.batches_processed}",
        f"matches={result.matches}",
        f"delivered={result.delivered}",
        f"delivery_failures={result.delivery_failures}",
    )
    for message in result.error_messages:
        print(f"- {message}")

    if result.employers_polled > 0 and result.employers_failed == result.employers_polled:
        return 1
    return 0


def _cmd_healthcheck() -> int:
    settings = load_settings()
    missing = missing_envs(RUN_REQUIRED_ENVS)
    if missing:
        print("missing required env vars:", ", ".join(missing))
        return 1

    try:
        assert_slack_configured(settings)
    except ValueError as exc:
        print(f"slack check failed: {exc}")
        return 1

    try:
        with SnapshotStore(settings.snapshot_db_path) as store:
            employer_count = store.count_employers()
    except Exception as exc:
        print(f"snapshot db check failed: {exc}")
        return 1

    print(f"mistral api key: {mask_secret(settings.mistral_api_key)}")
    if settings.candidate_profile_path is not None and not settings.candidate_profile_path.exists():
        print(f"candidate profile not found at {settings.candidate_profile_path}; default profile will be used")
    if employer_count == 0:
        print("no employers registered yet; use add-employer")
    else:
        print(f"employers registered: {employer_count}")
    print("healthcheck passed")
    return 0


def _cmd_add_employer(args: argparse.Namespace) -> int:
    name = args.name.strip()
    external_id = args.external_id.strip()
    if not name or not external_id:
        raise ValueError("employer name and external id must not be blank")

    settings = load_settings()
    with SnapshotStore(settings.snapshot_db_path) as store:
        added = store.add_employer(name, external_id)
    if added:
        print(f"added employer {name} ({external_id})")
    else:
        print(f"employer {name} already registered")
    return 0


def _cmd_status(args: argparse.Namespace) -> int:
    settings = load_settings()
    with SnapshotStore(settings.snapshot_db_path) as store:
        employers = store.list_employers()
        print(f"employers: {len(employers)}")
        for employer in employers:
            updated_at = store.get_updated_at(employer.name)
            has_snapshot = store.get_snapshot(employer.name) is not None
            print(
                f"- {employer.name} ({employer.external_id})",
                f"snapshot={'yes' if has_snapshot else 'no'}",
                f"updated_at={updated_at}",
            )

        polls = store.recent_polls(limit=args.limit)
        if polls:
            print("recent polls:")
        for row in polls:
            error = f" error={row['error']}" if row["error"] else ""
            print(f"- {row['polled_at']} {row['employer_name']} {row['status']} new={row['new_count']}{error}")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    try:
        if args.command == "run":
            return _cmd_run()
        if args.command == "run-once":
            return _cmd_run_once()
        if args.command == "healthcheck":
            return _cmd_healthcheck()
        if args.command == "add-employer":
            return _cmd_add_employer(args)
        if args.command == "status":
            return _cmd_status(args)
    except ValueError as exc:
        print(exc)
        return 1

    parser.print_help()
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
