"""
Command-line interface for the Rally to Azure DevOps migration tool.
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys
from typing import TYPE_CHECKING

from .ado_target import AdoTarget
from .config import load_settings
from .exceptions import MigrationError
from .field_mapping import FieldMapper, load_mapping_configuration
from .mapping_table import MappingTable
from .models import AllInProject, ControlState, ExplicitIds, MigrationOptions
from .orchestrator import MigrationOrchestrator
from .rally_source import RallySource
from .retry import RequestThrottle
from .utils import PassError, setup_logging

if TYPE_CHECKING:
    from types import FrameType

    from .models import MigrationProgress, Scope

logger: logging.Logger = logging.getLogger(__name__)


def parse_arguments(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Migrate Rally work items to Azure DevOps Boards with their hierarchy, links and comments"
    )

    # Positional arguments
    _ = parser.add_argument("source_ids", nargs="*", help="Rally ObjectIDs or FormattedIDs (e.g. US123 F45)")

    _ = parser.add_argument("--all", action="store_true", help="Migrate every work item of the Rally project")

    _ = parser.add_argument("--mapping-config", "-m", required=True, help="Field mapping configuration (JSON)")
    _ = parser.add_argument("--mapping-table", help="Persisted source -> target ID table (JSON)")

    _ = parser.add_argument("--rally-server", help="Rally server URL (default: https://rally1.rallydev.com)")
    _ = parser.add_argument("--rally-workspace", help="Rally workspace name or ObjectID (env: RALLY_WORKSPACE)")
    _ = parser.add_argument("--rally-project", help="Rally project name or ObjectID (env: RALLY_PROJECT)")
    _ = parser.add_argument("--ado-organization-url", help="Azure DevOps organization URL (env: ADO_ORGANIZATION_URL)")
    _ = parser.add_argument("--ado-project", help="Azure DevOps project (env: ADO_PROJECT)")

    _ = parser.add_argument(
        "--no-difference-patch",
        action="store_true",
        help="Do not synchronize new comments and attachments of already migrated items",
    )
    _ = parser.add_argument(
        "--include-children", action="store_true", help="Also migrate the children of the requested items"
    )
    _ = parser.add_argument("--workers", type=int, default=4, help="Concurrent items per wave (default: 4)")
    _ = parser.add_argument("--dry-run", action="store_true", help="Log target writes instead of performing them")
    _ = parser.add_argument(
        "--bypass-rules", action="store_true", help="Bypass Azure DevOps work item rules (needs project admin)"
    )

    _ = parser.add_argument(
        "--rally-pass-key", help="Path for the Rally API key in pass utility (default: rally/api_key)"
    )
    _ = parser.add_argument(
        "--ado-pass-token", help="Path for the Azure DevOps PAT in pass utility (default: azure-devops/pat)"
    )

    _ = parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")

    args = parser.parse_args(argv)
    if args.all == bool(args.source_ids):
        parser.error("give either source IDs or --all")
    if args.workers < 1:
        parser.error("--workers must be at least 1")
    return args


def _install_signal_handlers(orchestrator: MigrationOrchestrator) -> None:
    def request_cancel(_signum: int, _frame: FrameType | None) -> None:
        orchestrator.cancel()
        # A second Ctrl-C aborts immediately
        _ = signal.signal(signal.SIGINT, signal.default_int_handler)

    def toggle_pause(_signum: int, _frame: FrameType | None) -> None:
        if orchestrator.state is ControlState.PAUSED:
            orchestrator.resume()
        else:
            orchestrator.pause()

    _ = signal.signal(signal.SIGINT, request_cancel)
    if hasattr(signal, "SIGUSR1"):
        _ = signal.signal(signal.SIGUSR1, toggle_pause)


def print_report(progress: MigrationProgress, table: MappingTable) -> None:
    """Print the final run report."""
    print(f"\nMigration {progress.state.value}")
    if progress.failure_cause:
        print(f"  Cause: {progress.failure_cause}")
    print(f"  Items:     {progress.processed_items}/{progress.total_items} processed")
    print(f"  Created:   {progress.created_items}")
    print(f"  Updated:   {progress.updated_items}")
    print(f"  Skipped:   {progress.skipped_items}")
    print(f"  Failed:    {progress.failed_items}")
    for key, value in progress.link_stats.items():
        print(f"  Links {key}: {value}")
    for key, value in progress.patch_stats.items():
        print(f"  Patch {key}: {value}")
    for item_type, names in sorted(progress.unmapped_fields_by_type.items()):
        print(f"  Unmapped {item_type} fields: {', '.join(names)}")
    for error in progress.errors:
        print(f"  Error: {error}")
    print(f"  Mapping table: {len(table)} entries" + (f" in {table.path}" if table.path else ""))


def main(argv: list[str] | None = None) -> None:
    """Main entry point."""
    args = parse_arguments(argv)

    # Setup logging
    verbose: bool = getattr(args, "verbose", False)
    setup_logging(verbose=verbose)

    try:
        settings = load_settings(
            rally_pass_path=args.rally_pass_key,
            ado_pass_path=args.ado_pass_token,
            rally_server=args.rally_server,
            rally_workspace=args.rally_workspace,
            rally_project=args.rally_project,
            ado_organization_url=args.ado_organization_url,
            ado_project=args.ado_project,
            mapping_config_path=args.mapping_config,
            mapping_table_path=args.mapping_table,
            max_concurrent_requests=args.workers,
            bypass_rules=args.bypass_rules,
            dry_run=args.dry_run,
        )
        mapping = load_mapping_configuration(args.mapping_config)

        # One throttle for both connectors keeps the total request rate bounded
        throttle = RequestThrottle(settings.max_concurrent_requests)
        source = RallySource.from_settings(settings, throttle=throttle)
        target = AdoTarget.from_settings(settings, throttle=throttle)
        table = MappingTable(None if settings.dry_run else settings.mapping_table_path)

        orchestrator = MigrationOrchestrator(
            source, target, FieldMapper(mapping, marker=target.source_marker, source_url=source.item_url), table=table
        )
        _install_signal_handlers(orchestrator)

        scope: Scope = AllInProject() if args.all else ExplicitIds(args.source_ids)
        options = MigrationOptions(
            enable_difference_patch=not args.no_difference_patch,
            include_children=args.include_children,
            max_workers=args.workers,
        )
        progress = orchestrator.start(scope, options)
        print_report(progress, table)

        if progress.state is ControlState.COMPLETED and progress.failed_items == 0:
            sys.exit(0)
        else:
            sys.exit(1)

    except (MigrationError, PassError):
        logger.exception("Migration failed")
        sys.exit(1)
