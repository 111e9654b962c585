#!/usr/bin/env python3
"""DriveSorter - Classify and file Google Drive documents."""

import argparse
import asyncio
import json
import sys

import structlog

from drivesorter import DriveSorter, __version__
from drivesorter.logging_config import configure_logging
from runs import (
    ConfigProfile,
    OwnerIdentity,
    RunError,
    RunManager,
    RunRequest,
    owner_hash,
)
from storage import create_blob_store

log = structlog.get_logger(__name__)


def print_json(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def create_manager() -> RunManager:
    """Build a RunManager from DriveSorter settings."""
    blobs = create_blob_store(DriveSorter.gcs_bucket, DriveSorter.state_dir)
    return RunManager(
        blobs,
        dry_run_output=DriveSorter.dry_run_output,
        max_llm_chars=DriveSorter.max_llm_chars,
    )


async def run_and_follow(manager: RunManager, request: RunRequest) -> int:
    """Queue a run and print its status until it ends.

    Returns:
        Process exit code (0 if the run succeeded)
    """
    started = await manager.start_run(request)
    run_id = started["runId"]
    print(f"Run queued: {run_id}")

    record = None
    try:
        async for record in manager.stream_status(run_id):
            progress = record.progress or {}
            if progress:
                print(f"[{record.state}] {progress.get('done', 0)}/{progress.get('total', 0)} "
                      f"moved={progress.get('moved', 0)} errors={progress.get('errors', 0)}")
    except (KeyboardInterrupt, asyncio.CancelledError):
        manager.cancel(run_id)
        await manager.worker.join()
        record = await manager.get_status(run_id)
    finally:
        await manager.shutdown()

    print_json(record.to_dict())
    return 0 if record.state == "succeeded" else 1


async def follow(manager: RunManager, run_id: str) -> None:
    async for record in manager.stream_status(run_id):
        print_json(record.to_dict())


def save_profile(manager: RunManager, args) -> None:
    owner = owner_hash(args.email, args.access_key)
    settings = {}
    if args.settings:
        with open(args.settings, "r", encoding="utf-8") as f:
            settings = json.load(f)
    profile = ConfigProfile(
        owner_hash=owner,
        profile_id=args.profile or "",
        label=args.label or args.profile or "default",
        source_folder_ref=args.source,
        target_root_ref=args.target,
        settings=settings,
    )
    profile = manager.configs.save_profile(profile, make_default=args.default)
    print_json(profile.to_dict())


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Drive document sorter")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    # Identity
    parser.add_argument("--email", type=str,
                        help="Owner email (selects legacy configs and owns runs)")
    parser.add_argument("--access-key", type=str,
                        help="Access key; its fingerprint owns runs instead of the email")
    parser.add_argument("--profile", type=str,
                        help="Profile id (defaults to the owner's default profile)")

    # Actions
    parser.add_argument("--dry-run", action="store_true",
                        help="Plan every document without moving anything")
    parser.add_argument("--run", action="store_true",
                        help="Sort documents and follow the run until it ends")
    parser.add_argument("--reprocess", action="store_true",
                        help="Include documents that were already processed")
    parser.add_argument("--status", type=str, metavar="RUN_ID",
                        help="Print the status of a run")
    parser.add_argument("--stream", type=str, metavar="RUN_ID",
                        help="Print status updates of a run until it ends")
    parser.add_argument("--list", action="store_true",
                        help="List the owner's most recent runs")
    parser.add_argument("--limit", type=int, default=20,
                        help="Number of runs for --list")
    parser.add_argument("--artifacts", type=str, metavar="RUN_ID",
                        help="Print signed URLs for a run's status and logs")
    parser.add_argument("--ttl", type=int, default=3600,
                        help="Lifetime of signed URLs in seconds")

    # Profiles
    parser.add_argument("--save-profile", action="store_true",
                        help="Create or update a profile (needs --source and --target)")
    parser.add_argument("--source", type=str,
                        help="Source folder (Drive ID, URL or name)")
    parser.add_argument("--target", type=str,
                        help="Target root (Drive folder ID or local:path)")
    parser.add_argument("--label", type=str,
                        help="Human readable profile name")
    parser.add_argument("--settings", type=str,
                        help="JSON file with sorting settings for the profile")
    parser.add_argument("--default", action="store_true",
                        help="Make the saved profile the owner's default")
    parser.add_argument("--set-default", type=str, metavar="PROFILE_ID",
                        help="Make an existing profile the owner's default")
    parser.add_argument("--profiles", action="store_true",
                        help="List the owner's profiles")
    args = parser.parse_args()

    DriveSorter.configure()
    configure_logging(DriveSorter.log_level, DriveSorter.log_format)
    manager = create_manager()
    identity = OwnerIdentity(email=args.email, access_key=args.access_key)
    request = RunRequest(
        email=args.email,
        profile_id=args.profile,
        access_key=args.access_key,
        reprocess=args.reprocess,
    )

    try:
        if args.save_profile:
            if not args.source or not args.target:
                parser.error("--save-profile needs --source and --target")
            save_profile(manager, args)

        elif args.set_default:
            manager.configs.set_default_profile(owner_hash(args.email, args.access_key), args.set_default)
            print(f"Default profile: {args.set_default}")

        elif args.profiles:
            owner = owner_hash(args.email, args.access_key)
            default_id = manager.configs.get_default_profile_id(owner)
            print_json({
                "items": [p.to_dict() for p in manager.configs.list_profiles(owner)],
                "defaultId": default_id,
            })

        elif args.dry_run:
            print_json(asyncio.run(manager.start_dry_run(request)))

        elif args.run:
            sys.exit(asyncio.run(run_and_follow(manager, request)))

        elif args.status:
            record = asyncio.run(manager.get_status(args.status))
            if record is None:
                print(f"Run not found: {args.status}")
                sys.exit(1)
            print_json(record.to_dict())

        elif args.stream:
            asyncio.run(follow(manager, args.stream))

        elif args.list:
            records = asyncio.run(manager.list_runs(identity, args.limit))
            print_json({"items": [r.to_dict() for r in records]})

        elif args.artifacts:
            print_json(asyncio.run(manager.get_artifact_urls(args.artifacts, args.ttl, identity)))

        else:
            parser.print_help()

    except RunError as e:
        log.error("command failed", code=e.code, detail=e.detail, run_id=e.run_id)
        print_json({"ok": False, "error": e.code, "detail": e.detail, "runId": e.run_id})
        sys.exit(1)
    except ValueError as e:
        print(f"Error: {e}")
        sys.exit(2)
