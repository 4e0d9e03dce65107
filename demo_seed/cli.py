"""
demo-seed command line.

    demo-seed inject --records dataset.json [--config injection_config.json] [--env NAME] [--no-bulk] [--dry-run]
    demo-seed cleanup --ids injected_ids.json
    demo-seed verify --ids injected_ids.json
    demo-seed snapshot capture --name baseline [--ids FILE] [--golden]
    demo-seed snapshot restore --id SNAPSHOT_ID [--delete-existing] [--dry-run]
    demo-seed snapshot list | golden --id SNAPSHOT_ID | reset
"""

import argparse
import json
import logging
import os
import sys
from datetime import datetime
from typing import Any, Dict, List

from pydantic import ValidationError

from .bulk_api import BulkApi
from .cleanup import CleanupEngine, ids_by_type
from .config import SeedSettings, load_injection_config
from .connection import connect
from .exceptions import SeedError
from .injector import InjectionEngine
from .models import InjectionResult, LogicalRecord
from .rest_api import RestApi
from .schema_cache import DescribeCache
from .snapshots import FileSnapshotStore, SnapshotService
from .transport import TransportSelector

logger = logging.getLogger(__name__)

DEFAULT_SNAPSHOT_DIR = os.path.join("local_data", "snapshots")


def setup_logging(command: str, log_dir: str = "logs", verbose: bool = False) -> str:
    """Log to logs/<command>/<command>_<timestamp>.log and the console."""
    directory = os.path.join(log_dir, command)
    os.makedirs(directory, exist_ok=True)
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_path = os.path.join(directory, f"{command}_{timestamp}.log")

    formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    file_handler = logging.FileHandler(log_path, encoding="utf-8")
    file_handler.setFormatter(formatter)
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))

    root = logging.getLogger()
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    for handler in list(root.handlers):
        root.removeHandler(handler)
    root.addHandler(file_handler)
    root.addHandler(console_handler)
    logging.captureWarnings(True)
    return log_path


def load_records(path: str) -> List[LogicalRecord]:
    """
    Read records from JSON.

    Accepts a list of {objectType, localId, parentLocalId, attributes} objects,
    or generator output: {ObjectType: [{_localId, _parentLocalId, ...fields}]}.
    """
    with open(path, 'r', encoding='utf-8') as f:
        data = json.load(f)
    if isinstance(data, list):
        return [LogicalRecord.model_validate(item) for item in data]
    if isinstance(data, dict):
        return [
            LogicalRecord.from_generated(object_type, item)
            for object_type, items in data.items()
            for item in items
        ]
    raise SeedError(f"{path}: expected a JSON list or object")


def load_ids(path: str) -> Dict[str, List[str]]:
    with open(path, 'r', encoding='utf-8') as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise SeedError(f"{path}: expected a JSON object of object type -> ids")
    return {object_type: list(ids) for object_type, ids in data.items()}


def write_json(path: str, data: Any) -> None:
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    with open(path, 'w', encoding='utf-8') as f:
        json.dump(data, f, indent=2, default=str)


class Engines:
    """Everything one command needs, wired from settings and one connection."""

    def __init__(self, environment: str, settings: SeedSettings, use_bulk_api: bool = True,
                 snapshot_dir: str = DEFAULT_SNAPSHOT_DIR):
        sf = connect(environment, settings)
        self.rest_api = RestApi(sf)
        bulk_api = BulkApi(
            sf,
            poll_interval=settings.bulk_poll_interval_seconds,
            poll_timeout=settings.bulk_poll_timeout_seconds,
        )
        self.selector = TransportSelector(
            self.rest_api,
            bulk_api,
            threshold=settings.bulk_threshold,
            use_bulk_api=settings.use_bulk_api and use_bulk_api,
            row_workers=settings.row_workers,
        )
        self.schema_cache = DescribeCache(ttl_seconds=settings.describe_cache_ttl_seconds)
        self.injector = InjectionEngine(self.rest_api, self.selector, self.schema_cache, environment)
        self.cleanup = CleanupEngine(self.rest_api, self.selector)
        self.snapshots = SnapshotService(
            self.rest_api, self.injector, self.cleanup, FileSnapshotStore(snapshot_dir),
            environment_id=environment, schema_cache=self.schema_cache, demo_marker=settings.demo_marker,
        )


def print_injection_summary(result: InjectionResult) -> None:
    print(f"\n{'='*60}")
    print("Injection Summary")
    print(f"{'='*60}")
    print(f"Total records:   {result.summary.total}")
    print(f"✅ Successful:   {result.summary.successful}")
    print(f"❌ Failed:       {result.summary.failed}")
    if result.summary.not_processed:
        print(f"⏭️  Not processed: {result.summary.not_processed}")
    for object_type, samples in result.error_samples.items():
        print(f"\n  {object_type} errors:")
        for sample in samples:
            print(f"    - {sample}")
    print(f"{'='*60}\n")


def _progress(processed: int, total: int) -> None:
    print(f"  Progress: {processed}/{total} records")


def cmd_inject(args, settings: SeedSettings) -> int:
    records = load_records(args.records)
    config = load_injection_config(args.config)
    engines = Engines(args.env, settings, use_bulk_api=not args.no_bulk, snapshot_dir=args.snapshot_dir)

    if args.dry_run:
        reports = engines.injector.preview(records, config)
        print(f"\n{'='*60}")
        print("🔍 DRY RUN - nothing will be created")
        print(f"{'='*60}")
        for object_type, report in reports.items():
            print(f"  {object_type}: {len(report.valid)} valid, {len(report.failed)} invalid")
            for rejection in report.failed[:3]:
                print(f"    - {rejection.record.local_id}: {rejection.error}")
        print()
        return 0

    if args.snapshot_first:
        snapshot = engines.snapshots.create_pre_injection_snapshot()
        print(f"📸 Pre-injection snapshot {snapshot.id} ({snapshot.metadata.total_records} records)")

    result = engines.injector.inject(records, config, progress=_progress)
    print_injection_summary(result)

    if args.output:
        write_json(args.output, ids_by_type(result))
        print(f"Injected ids written to {args.output}")
    return 0


def cmd_cleanup(args, settings: SeedSettings) -> int:
    engines = Engines(args.env, settings, use_bulk_api=not args.no_bulk, snapshot_dir=args.snapshot_dir)
    result = engines.cleanup.cleanup(load_ids(args.ids), progress=_progress)
    print(f"\n{'='*60}")
    print("Cleanup Summary")
    print(f"{'='*60}")
    print(f"✅ Deleted: {result.success}")
    print(f"❌ Failed:  {result.failed}")
    for object_type, samples in result.error_samples.items():
        print(f"  {object_type}: {'; '.join(samples)}")
    print(f"{'='*60}\n")
    return 0


def cmd_verify(args, settings: SeedSettings) -> int:
    engines = Engines(args.env, settings, snapshot_dir=args.snapshot_dir)
    missing = 0
    for object_type, ids in load_ids(args.ids).items():
        exists = engines.cleanup.verify_records(object_type, ids)
        found = sum(1 for present in exists.values() if present)
        missing += len(exists) - found
        print(f"  {object_type}: {found}/{len(exists)} found")
    return 0 if missing == 0 else 1


def cmd_snapshot(args, settings: SeedSettings) -> int:
    engines = Engines(args.env, settings, snapshot_dir=args.snapshot_dir)
    service = engines.snapshots

    if args.snapshot_command == "capture":
        record_ids = load_ids(args.ids) if args.ids else None
        snapshot = service.create_snapshot(args.name, description=args.description, record_ids=record_ids)
        if args.golden:
            snapshot = service.set_as_golden_image(snapshot.id)
        print(f"📸 Snapshot {snapshot.id}: {snapshot.metadata.total_records} records, {snapshot.size_bytes} bytes")
        for object_type, count in snapshot.metadata.object_counts.items():
            print(f"  {object_type}: {count}")
        return 0

    if args.snapshot_command == "list":
        for snapshot in service.list_snapshots():
            golden = " (golden image)" if snapshot.is_golden_image else ""
            print(f"  {snapshot.id}  {snapshot.name}  {snapshot.status.value}  "
                  f"{snapshot.metadata.total_records} records{golden}")
        return 0

    if args.snapshot_command == "golden":
        service.set_as_golden_image(args.id)
        print(f"⭐ Snapshot {args.id} set as golden image")
        return 0

    config = load_injection_config(args.config)
    if args.snapshot_command == "reset":
        result = service.reset_to_golden_image(config, progress=_progress)
    else:
        result = service.restore(args.id, delete_existing=args.delete_existing, dry_run=args.dry_run,
                                 config=config, progress=_progress)

    print(f"\n{'='*60}")
    print("Restore Summary" + (" (DRY RUN)" if getattr(args, "dry_run", False) else ""))
    print(f"{'='*60}")
    if result.deleted is not None:
        print(f"🗑️  Deleted existing: {result.deleted.success} ({result.deleted.failed} failed)")
    print(f"✅ Restored: {result.records_restored}")
    for error in result.errors[:10]:
        print(f"  ❌ {error}")
    print(f"{'='*60}\n")
    return 0 if result.success else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Inject, clean up and snapshot Salesforce demo data")
    parser.add_argument("--env", type=str, default="default",
                        help="Environment name; reads SALESFORCE_<ENV>_* credentials")
    parser.add_argument("--snapshot-dir", type=str, default=DEFAULT_SNAPSHOT_DIR,
                        help="Directory holding snapshot JSON files")
    parser.add_argument("--verbose", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    inject = subparsers.add_parser("inject", help="Create records in dependency order")
    inject.add_argument("--records", required=True, help="Records JSON file")
    inject.add_argument("--config", default=None, help="Injection configuration JSON file")
    inject.add_argument("--output", default=None, help="Write created ids by object type to this file")
    inject.add_argument("--no-bulk", action="store_true", help="Never use the Bulk API")
    inject.add_argument("--dry-run", action="store_true", help="Validate without creating anything")
    inject.add_argument("--snapshot-first", action="store_true",
                        help="Capture a pre-injection snapshot of current demo data")

    cleanup = subparsers.add_parser("cleanup", help="Delete records, children first")
    cleanup.add_argument("--ids", required=True, help="JSON file of object type -> ids")
    cleanup.add_argument("--no-bulk", action="store_true", help="Never use the Bulk API")

    verify = subparsers.add_parser("verify", help="Check which records still exist")
    verify.add_argument("--ids", required=True, help="JSON file of object type -> ids")

    snapshot = subparsers.add_parser("snapshot", help="Snapshot capture and restore")
    snapshot_commands = snapshot.add_subparsers(dest="snapshot_command", required=True)

    capture = snapshot_commands.add_parser("capture", help="Capture demo records")
    capture.add_argument("--name", required=True)
    capture.add_argument("--description", default=None)
    capture.add_argument("--ids", default=None, help="Capture these ids instead of discovering by marker")
    capture.add_argument("--golden", action="store_true", help="Mark as golden image")

    restore = snapshot_commands.add_parser("restore", help="Recreate records from a snapshot")
    restore.add_argument("--id", required=True)
    restore.add_argument("--delete-existing", action="store_true")
    restore.add_argument("--dry-run", action="store_true")
    restore.add_argument("--config", default=None, help="Injection configuration JSON file")

    snapshot_commands.add_parser("list", help="List snapshots for the environment")

    golden = snapshot_commands.add_parser("golden", help="Mark a snapshot as golden image")
    golden.add_argument("--id", required=True)

    reset = snapshot_commands.add_parser("reset", help="Delete demo data and restore the golden image")
    reset.add_argument("--config", default=None, help="Injection configuration JSON file")

    return parser


COMMANDS = {
    "inject": cmd_inject,
    "cleanup": cmd_cleanup,
    "verify": cmd_verify,
    "snapshot": cmd_snapshot,
}


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    settings = SeedSettings.from_env()
    log_path = setup_logging(args.command, settings.log_dir, args.verbose)
    logger.info(f"Logging to {log_path}")

    try:
        return COMMANDS[args.command](args, settings)
    except (SeedError, ValidationError, OSError, json.JSONDecodeError) as e:
        logger.exception(f"{args.command} failed: {e}")
        print(f"\n❌ Error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
