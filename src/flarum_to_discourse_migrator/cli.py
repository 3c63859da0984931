"""
Command-line interface for the Flarum to Discourse migration tool.
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import TYPE_CHECKING

from . import discourse_mapping, flarum_source
from .config import Settings
from .discourse_mapping import DiscourseMappingStore
from .discourse_target import DiscourseTarget
from .exceptions import MigrationError
from .flarum_source import FlarumSource
from .identity import IdentityMapper, InMemoryMappingStore
from .orchestrator import PHASES, MigrationResult, Migrator
from .utils import PassError, setup_logging

if TYPE_CHECKING:
    from .protocols import MappingStore

logger: logging.Logger = logging.getLogger(__name__)


def parse_arguments(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Migrate a Flarum forum to Discourse. Safe to re-run: records migrated earlier are skipped."
    )

    _ = parser.add_argument("--discourse-url", help="Base URL of the Discourse site (default: $DISCOURSE_URL)")
    _ = parser.add_argument("--table-prefix", help="Prefix of the Flarum tables (default: $TABLE_PREFIX)")
    _ = parser.add_argument("--batch-size", type=int, help="Rows fetched per page (default: $BATCH_SIZE or 5000)")
    _ = parser.add_argument("--uploads-dir", help="Directory holding Flarum's avatar files (default: $FLARUM_UPLOADS_DIR)")

    _ = parser.add_argument(
        "--flarum-pass-password", help="Path for the Flarum database password in pass utility (default: flarum/db/password)"
    )
    _ = parser.add_argument(
        "--discourse-pass-key", help="Path for the Discourse API key in pass utility (default: discourse/api/key)"
    )

    _ = parser.add_argument(
        "--only",
        action="append",
        choices=PHASES,
        metavar="PHASE",
        help=f"Run only this phase. Can be specified multiple times. Phases: {', '.join(PHASES)}",
    )

    _ = parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")

    return parser.parse_args(argv)


def build_settings(args: argparse.Namespace) -> Settings:
    """Environment settings with the command line flags applied on top."""
    settings = Settings.from_env(
        flarum_pass_path=args.flarum_pass_password,
        discourse_pass_path=args.discourse_pass_key,
    )
    if args.batch_size is not None and args.batch_size <= 0:
        msg = f"--batch-size must be positive, got {args.batch_size}"
        raise ValueError(msg)
    return settings.with_overrides(
        discourse_url=args.discourse_url.rstrip("/") if args.discourse_url else None,
        table_prefix=args.table_prefix,
        batch_size=args.batch_size,
        uploads_dir=Path(args.uploads_dir) if args.uploads_dir else None,
    )


def build_migrator(settings: Settings) -> Migrator:
    """Connect to both forums and wire up the migrator."""
    source = FlarumSource(flarum_source.get_connection(settings), settings.table_prefix)
    target = DiscourseTarget.from_settings(settings)

    store: MappingStore
    if settings.discourse_db_dsn:
        store = DiscourseMappingStore(discourse_mapping.get_connection(settings.discourse_db_dsn))
    else:
        logger.warning("DISCOURSE_DB_DSN is not set: mappings are kept in memory and a re-run will create duplicates")
        store = InMemoryMappingStore()

    return Migrator(
        source,
        target,
        IdentityMapper(store),
        batch_size=settings.batch_size,
        uploads_dir=settings.uploads_dir,
        guest_username=settings.guest_username,
        guest_email=settings.guest_email,
    )


def print_report(result: MigrationResult) -> None:
    """Print the per-phase summary of a run."""
    print("\nMigration summary:")
    for name, phase in result.stats.phases.items():
        print(
            f"  {name}: {phase.created} created, {phase.already_mapped} already migrated, "
            f"{phase.skipped} skipped, {phase.failed} failed (of {phase.total})"
        )
        for failure in phase.failures:
            print(f"    - {failure}")
    for error in result.stats.errors:
        print(f"  phase error: {error}")
    print("Migration succeeded" if result.success else "Migration finished with errors")


def main(argv: list[str] | None = None) -> None:
    """Main entry point."""
    args = parse_arguments(argv)

    # Setup logging
    verbose: bool = getattr(args, "verbose", False)
    setup_logging(verbose=verbose)

    try:
        settings = build_settings(args)
        migrator = build_migrator(settings)
        result = migrator.migrate(args.only)
    except (MigrationError, PassError, ValueError):
        logger.exception("Migration failed")
        sys.exit(1)

    print_report(result)
    sys.exit(0 if result.success else 1)
