"""Command line interface for running migration scripts."""

import argparse
import json
import logging
import sys
from typing import List, Optional

from .config import load_script
from .errors import OrgSyncError
from .job import MigrationJob
from .models.migration import MigrationStatus

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="orgsync",
        description="Migrate object records between orgs and CSV files",
    )
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Run a script
    run_parser = subparsers.add_parser("run", help="Run a migration script")
    run_parser.add_argument("--path", default=".", help="Directory holding export.json, or the file itself")
    run_parser.add_argument("--source", help="Source org name, or csvfile")
    run_parser.add_argument("--target", help="Target org name, or csvfile")
    run_parser.add_argument("--simulation", action="store_true", help="Simulate writes without calling the target")
    run_parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")
    api_group = run_parser.add_mutually_exclusive_group()
    api_group.add_argument("--use-bulk", action="store_true", help="Always use the bulk API")
    api_group.add_argument("--use-rest", action="store_true", help="Always use the REST API")
    run_parser.add_argument("--passphrase", help="Passphrase of the CSV file encryption")
    run_parser.add_argument("--report", help="Write the run summary as JSON to this file")

    # Validate a script
    validate_parser = subparsers.add_parser("validate", help="Validate a migration script")
    validate_parser.add_argument("--path", default=".", help="Directory holding export.json, or the file itself")
    validate_parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    # Set up logging
    log_level = logging.DEBUG if getattr(args, "verbose", False) else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    try:
        if args.command == "run":
            return run_migration(args)
        elif args.command == "validate":
            return run_validation(args)
        parser.print_help()
        return 0
    except OrgSyncError as e:
        logger.error(f"{type(e).__name__}: {e}")
        return 1


def run_migration(args) -> int:
    """Run a migration script."""
    script = load_script(args.path, args.source, args.target)
    if args.simulation:
        script.simulation_mode = True
    if args.use_bulk:
        script.always_use_bulk_api = True
    if args.use_rest:
        script.always_use_rest_api = True
    if args.passphrase:
        script.encryption_passphrase = args.passphrase

    job = MigrationJob(script)
    result = job.execute()

    print("\n" + "=" * 60)
    print("MIGRATION COMPLETE" + (" (SIMULATION)" if result.simulation else ""))
    print("=" * 60)
    print(f"Status: {result.status.value}")
    print(f"Passes: {result.passes_executed}")
    print(f"Records Processed: {result.total_records_processed}")
    for step in result.steps:
        print(f"  {step.object_name}: {step.records_processed} processed, {step.records_failed} failed")
    if result.duration_seconds:
        print(f"Duration: {result.duration_seconds:.2f} seconds")

    if args.report:
        with open(args.report, "w", encoding="utf-8") as f:
            json.dump(result.to_dict(), f, indent=2, default=str)
        print(f"Report saved to {args.report}")

    return 0 if result.status == MigrationStatus.COMPLETED else 1


def run_validation(args) -> int:
    """Load and validate a migration script."""
    script = load_script(args.path)

    print("\n=== Validating Script ===")
    print(f"Source: {script.source_org.name if script.source_org else '-'}")
    print(f"Target: {script.target_org.name if script.target_org else '-'}")
    for obj in script.objects:
        state = "excluded" if obj.excluded else obj.operation.value
        print(f"  {obj.name} ({state}), external id: {obj.external_id}")
    print("\nScript is valid!")
    return 0


if __name__ == "__main__":
    sys.exit(main())
