"""
enginedb - Entry Point

Run with: python -m enginedb <command> <library.db>
"""

import argparse
import asyncio
import logging
import sys
from collections.abc import Sequence
from pathlib import Path

from enginedb import __version__
from enginedb.config import EngineConfig, load_config
from enginedb.core import CoreError
from enginedb.core import batch
from enginedb.core.checker import FindingKind
from enginedb.core.housekeeping import BatchOutcome, ProgressEvent, RepairPolicy
from enginedb.core.library import Library
from enginedb.core.playlists import ImportMode, read_m3u

logger = logging.getLogger(__name__)

COMMANDS = (
    "info",
    "analyze",
    "repair",
    "shrink-artwork",
    "purge-unused-artwork",
    "delete-empty-crates",
    "import-playlist",
    "housekeeping",
    "find-missing-tracks",
    "upgrade",
    "optimize",
)


def setup_logging(verbose: bool = False) -> None:
    """Configure logging for the application."""
    level = logging.DEBUG if verbose else logging.INFO

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    # Reduce noise from third-party libraries
    logging.getLogger("asyncio").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)
    logging.getLogger("PIL").setLevel(logging.WARNING)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="enginedb",
        description="enginedb - inspect, repair and batch-update Engine DJ library databases",
    )

    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose (debug) logging",
    )

    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="TOML file overriding the packaged defaults",
    )

    parser.add_argument(
        "--concurrency",
        type=int,
        default=None,
        help="Maximum work items in flight (default: from config)",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    sub = parser.add_subparsers(dest="command", required=True, metavar="COMMAND")
    helps = {
        "info": "Show library information and row counts",
        "analyze": "Run the consistency checker and list findings",
        "repair": "Check the library and repair findings",
        "shrink-artwork": "Re-encode lossless artwork as JPEG where that saves space",
        "purge-unused-artwork": "Delete artwork no track references",
        "delete-empty-crates": "Delete crates without tracks and without child crates",
        "import-playlist": "Add the tracks of an M3U playlist to a crate",
        "housekeeping": "Purge unused artwork, shrink artwork, then optimize",
        "find-missing-tracks": "Report tracks whose audio file is missing or unreadable",
        "upgrade": "Upgrade the library to the latest supported schema",
        "optimize": "VACUUM and ANALYZE the database",
    }
    for name in COMMANDS:
        cmd = sub.add_parser(name, help=helps[name])
        cmd.add_argument("database", type=Path, help="Path to the library database (m.db)")
        if name in ("repair", "shrink-artwork", "purge-unused-artwork", "delete-empty-crates"):
            cmd.add_argument(
                "--dry-run",
                action="store_true",
                help="Report what would change without writing",
            )
        if name == "import-playlist":
            cmd.add_argument(
                "--m3u-file",
                type=Path,
                default=None,
                help="M3U file to read (default: stdin)",
            )
            cmd.add_argument(
                "--m3u-base-path",
                type=Path,
                default=None,
                help="Directory relative entries are resolved against (default: the M3U file's)",
            )
            cmd.add_argument(
                "--crate-path",
                default=None,
                help="Crate titles from the root, separated by ';' (default: the M3U file name)",
            )
            cmd.add_argument(
                "--mode",
                choices=[m.value for m in ImportMode],
                default=ImportMode.APPEND.value,
                help="Append to the crate or replace its tracks (default: append)",
            )
        if name in ("analyze", "repair"):
            cmd.add_argument(
                "--repair",
                dest="kinds",
                action="append",
                default=None,
                metavar="KIND",
                help=(
                    "Finding kind to include (repeatable or comma separated): "
                    + ", ".join(k.value for k in FindingKind)
                ),
            )

    return parser.parse_args(argv)


def _selected_policy(args: argparse.Namespace, config: EngineConfig) -> RepairPolicy:
    names = config.housekeeping.repair_kinds
    if getattr(args, "kinds", None):
        names = [n for value in args.kinds for n in value.split(",") if n.strip()]
    return RepairPolicy.from_names(names)


def _log_progress(event: ProgressEvent) -> None:
    done = event.succeeded + event.skipped + event.failed
    if done % 100 == 0:
        logger.info(
            "Progress: %d done (%d succeeded, %d skipped, %d failed)",
            done,
            event.succeeded,
            event.skipped,
            event.failed,
        )


def _shrink_settings(config: EngineConfig, concurrency: int) -> batch.ShrinkSettings:
    return batch.ShrinkSettings(
        quality=config.artwork.jpeg_quality,
        max_ratio=config.artwork.max_ratio,
        chunk_size=config.chunk_size,
        concurrency=concurrency,
    )


def _read_playlist(args: argparse.Namespace) -> tuple[str, list[Path]]:
    """Crate path and absolute file paths of the M3U named in `args` (or stdin)."""
    m3u_file: Path | None = args.m3u_file
    crate_path = args.crate_path or (m3u_file.stem if m3u_file else None)
    if not crate_path:
        raise ValueError("--crate-path is required when reading from stdin")
    base_path = args.m3u_base_path or (m3u_file.resolve().parent if m3u_file else None)
    if m3u_file is None:
        logger.info("Reading M3U playlist from stdin")
        files = read_m3u(sys.stdin, base_path)
    else:
        logger.info("Reading M3U playlist from %s", m3u_file)
        with open(m3u_file, encoding="utf-8-sig") as f:
            files = read_m3u(f, base_path)
    logger.info("Read %d entries for crate %r", len(files), crate_path)
    return crate_path, files


def _report(outcome: BatchOutcome) -> int:
    print(outcome.summary())
    for failure in outcome.failures:
        print(f"  FAILED {failure}")
    return 0 if outcome.ok else 1


async def run_command(args: argparse.Namespace, config: EngineConfig) -> int:
    """Open the library and run one command; returns the exit status."""
    concurrency = args.concurrency or config.housekeeping.concurrency

    async with Library.from_config(args.database, config) as library:
        if args.command == "info":
            info = library.info
            print(f"uuid:     {info.uuid}")
            print(f"schema:   {info.schema_version}")

            async def _counts(tx):
                return {
                    "tracks": await library.tracks.count(tx),
                    "crates": await library.crates.count(tx),
                    "memberships": await library.memberships.count(tx),
                    "cue points": await library.cue_points.count(tx),
                    "artwork": await library.artwork.count(tx),
                }

            for label, count in (await library.coordinator.run(_counts, read_only=True)).items():
                print(f"{label + ':':<13} {count}")
            return 0

        if args.command == "analyze":
            policy = _selected_policy(args, config) if args.kinds else None
            findings = await library.check(policy.kinds if policy else None)
            for finding in findings:
                print(f"{finding.kind.value:<20} {finding.entity_ref}  {finding.detail}")
            print(f"{len(findings)} findings")
            return 1 if findings else 0

        if args.command == "repair":
            policy = _selected_policy(args, config)
            findings = await library.check(policy.kinds)
            if args.dry_run:
                for item in library.planner.plan_repairs(findings, policy):
                    print(f"would repair {item.key}")
                return 0
            outcome = await library.repair(
                findings, policy=policy, concurrency=concurrency, on_progress=_log_progress
            )
            return _report(outcome)

        if args.command == "shrink-artwork":
            outcome = await batch.shrink_artwork(
                library.coordinator,
                library.artwork,
                _shrink_settings(config, concurrency),
                dry_run=args.dry_run,
            )
            return _report(outcome)

        if args.command == "housekeeping":
            report = await library.housekeep(
                _shrink_settings(config, concurrency),
                concurrency=concurrency,
                on_progress=_log_progress,
            )
            print(report.summary())
            for outcome in (report.purged, report.shrunk):
                if outcome is not None:
                    for failure in outcome.failures:
                        print(f"  FAILED {failure}")
            return 0 if report.ok else 1

        if args.command == "import-playlist":
            crate_path, files = _read_playlist(args)
            result = await library.import_playlist(crate_path, files, mode=ImportMode(args.mode))
            print(
                f"crate {result.crate_id}: {result.added} added, {result.ignored} ignored, "
                f"{result.removed} removed, {result.created_crates} crates created"
            )
            return 0

        if args.command in ("purge-unused-artwork", "delete-empty-crates"):
            if args.command == "purge-unused-artwork":
                items = await batch.purge_unused_artwork_items(library.coordinator, library.artwork)
            else:
                items = await batch.delete_empty_crate_items(library.coordinator, library.crates)
            if args.dry_run:
                for item in items:
                    print(f"would run {item.key}")
                return 0
            engine = library.housekeeping(concurrency=concurrency, on_progress=_log_progress)
            return _report(await engine.run(items))

        if args.command == "find-missing-tracks":
            issues = await library.find_track_file_issues(concurrency=config.file_check_concurrency)
            for issue in issues:
                suffix = f": {issue.message}" if issue.message else ""
                print(f"track {issue.track_id}: {issue.kind.value} {issue.file_path}{suffix}")
            print(f"{len(issues)} track file issues")
            return 1 if issues else 0

        if args.command == "upgrade":
            result = await library.upgrade(chunk_size=config.chunk_size)
            print(f"schema {result.from_version} -> {result.to_version}")
            return 0

        if args.command == "optimize":
            await library.optimize()
            return 0

    raise ValueError(f"unknown command {args.command!r}")


def main(argv: Sequence[str] | None = None) -> int:
    """Main entry point for the application."""
    args = parse_args(argv)
    setup_logging(verbose=args.verbose)

    try:
        config = load_config(args.config)
        return asyncio.run(run_command(args, config))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130
    except (CoreError, OSError, ValueError) as e:
        logger.error("%s: %s", type(e).__name__, e)
        return 1
    except Exception as e:
        logger.exception("Fatal error: %s", e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
