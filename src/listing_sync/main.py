"""Command-line entry point for operator maintenance tasks."""

import argparse
import asyncio
import sys

from listing_sync.config import Settings
from listing_sync.db import PropertyStore
from listing_sync.db.sync_runs import DEFAULT_STALE_MINUTES
from listing_sync.errors import ConflictError, NotFoundError
from listing_sync.logging import configure_from_settings, get_logger
from listing_sync.models import Property, SyncRunStatus, Tag
from listing_sync.reconciler import PropertyStateReconciler

logger = get_logger(__name__)

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def parse_bool(value: str) -> bool:
    """argparse type for true/false flags."""
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise argparse.ArgumentTypeError(f"expected true/false, got {value!r}")


def parse_tag(value: str) -> int | str:
    """Tags are given by numeric id or by name."""
    return int(value) if value.isdigit() else value


def _format_flags(prop: Property) -> str:
    return f"active={int(prop.active)} featured={int(prop.featured)} hot={int(prop.hot)}"


def _format_tag(tag: Tag) -> str:
    description = f" - {tag.description}" if tag.description else ""
    return f"[{tag.id}] {tag.name} ({tag.color}){description}"


async def _set_state(
    store: PropertyStore, reconciler: PropertyStateReconciler, args: argparse.Namespace
) -> int:
    result = await reconciler.set_property_state(
        args.ref, active=args.active, featured=args.featured, hot=args.hot
    )
    state = f"active={int(result.active)} featured={int(result.featured)} hot={int(result.hot)}"
    if result.changed:
        print(f"Property #{args.ref} updated: {state}")
    else:
        print(f"Property #{args.ref} already {state}; nothing to do.")
    return 0


async def _activate(
    store: PropertyStore, reconciler: PropertyStateReconciler, args: argparse.Namespace
) -> int:
    changed = await reconciler.activate_property(args.ref)
    if changed:
        print(f"Property #{args.ref} marked active; state overrides cleared.")
    else:
        print(f"Property #{args.ref} is already active; state overrides cleared.")
    return 0


async def _deactivate(
    store: PropertyStore, reconciler: PropertyStateReconciler, args: argparse.Namespace
) -> int:
    changed = await reconciler.deactivate_property(args.ref)
    if changed:
        print(f"Property #{args.ref} marked inactive.")
    else:
        print(f"Property #{args.ref} is already inactive.")
    return 0


async def _history(
    store: PropertyStore, reconciler: PropertyStateReconciler, args: argparse.Namespace
) -> int:
    prop = await store.require_property(args.ref)
    entries = await store.get_history(args.ref)
    print(f"Property #{prop.ref} ({_format_flags(prop)}): {len(entries)} change(s)")
    for entry in entries:
        print(
            f"  {entry.changed_at.isoformat()}  {entry.field}: "
            f"{entry.old_value!s} -> {entry.new_value!s}"
        )
    return 0


async def _overrides(
    store: PropertyStore, reconciler: PropertyStateReconciler, args: argparse.Namespace
) -> int:
    overrides = await store.list_overrides()
    if not overrides:
        print("No state overrides.")
        return 0
    for o in overrides:
        print(
            f"#{o.property_ref} sync_code={o.sync_code or '-'} active={int(o.active)} "
            f"featured={int(o.featured)} hot={int(o.hot)} modified={o.modified_at.isoformat()}"
        )
    return 0


async def _check(
    store: PropertyStore, reconciler: PropertyStateReconciler, args: argparse.Namespace
) -> int:
    violations = await reconciler.find_invariant_violations()
    if not violations:
        print("Overrides are consistent with property state.")
        return 0
    for v in violations:
        print(f"{v.kind.value}: #{v.property_ref} sync_code={v.sync_code or '-'}")
    return 1


async def _install_triggers(
    store: PropertyStore, reconciler: PropertyStateReconciler, args: argparse.Namespace
) -> int:
    await store.install_state_triggers()
    print("State triggers installed.")
    return 0


async def _drop_triggers(
    store: PropertyStore, reconciler: PropertyStateReconciler, args: argparse.Namespace
) -> int:
    await store.drop_state_triggers()
    print("State triggers dropped. Direct writes to properties.active are no longer mirrored.")
    return 0


async def _runs(
    store: PropertyStore, reconciler: PropertyStateReconciler, args: argparse.Namespace
) -> int:
    runs = await store.sync_runs.list_recent(args.limit)
    if not runs:
        print("No sync runs recorded.")
        return 0
    for run in runs:
        finished = run.finished_at.isoformat() if run.finished_at else "-"
        error = f" error={run.error}" if run.error else ""
        print(
            f"[{run.id}] {run.status.value} {run.kind} started={run.started_at.isoformat()} "
            f"finished={finished} listings={run.listing_count} new={run.new_count} "
            f"updated={run.updated_count} unchanged={run.unchanged_count} "
            f"failed={run.failed_count} deactivated={run.deactivated_count}{error}"
        )
    return 0


async def _clean_runs(
    store: PropertyStore, reconciler: PropertyStateReconciler, args: argparse.Namespace
) -> int:
    if args.run_id is not None:
        run = await store.sync_runs.get(args.run_id)
        if run.status is not SyncRunStatus.RUNNING:
            print(f"Sync run {run.id} is already {run.status.value}.")
            return 0
    cleaned = await store.sync_runs.fail_stale(
        older_than_minutes=args.minutes, run_id=args.run_id
    )
    print(f"Marked {cleaned} sync run(s) as failed.")
    return 0


async def _tags(
    store: PropertyStore, reconciler: PropertyStateReconciler, args: argparse.Namespace
) -> int:
    tags = store.tags
    if args.tags_command == "create":
        tag = await tags.create_tag(args.name, color=args.color, description=args.description)
        print(f"Created tag {_format_tag(tag)}")
    elif args.tags_command == "add":
        if await tags.add_tag(args.ref, args.tag):
            print(f"Tag {args.tag} added to property #{args.ref}.")
        else:
            print(f"Property #{args.ref} already has tag {args.tag}.")
    elif args.tags_command == "remove":
        if await tags.remove_tag(args.ref, args.tag):
            print(f"Tag {args.tag} removed from property #{args.ref}.")
        else:
            print(f"Property #{args.ref} did not have tag {args.tag}.")
    elif args.ref is not None:
        for tag in await tags.list_property_tags(args.ref):
            print(_format_tag(tag))
    elif args.tag is not None:
        for prop in await tags.list_properties_with_tag(args.tag):
            print(f"#{prop.ref} {prop.title or ''} ({_format_flags(prop)})")
    else:
        for tag in await tags.list_tags():
            print(_format_tag(tag))
    return 0


_COMMANDS = {
    "set-state": _set_state,
    "activate": _activate,
    "deactivate": _deactivate,
    "history": _history,
    "overrides": _overrides,
    "check": _check,
    "install-triggers": _install_triggers,
    "drop-triggers": _drop_triggers,
    "runs": _runs,
    "clean-runs": _clean_runs,
    "tags": _tags,
}


async def run_command(args: argparse.Namespace, settings: Settings) -> int:
    """Open the store, run one subcommand, and return the process exit code."""
    async with PropertyStore.from_settings(settings) as store:
        reconciler = PropertyStateReconciler(store, batch_size=settings.reconcile_batch_size)
        try:
            return await _COMMANDS[args.command](store, reconciler, args)
        except (NotFoundError, ConflictError) as e:
            logger.warning("command_failed", command=args.command, error=str(e))
            print(f"Error: {e}")
            return 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="listing-sync",
        description="Listing Sync - manage listing state, overrides and tags",
    )
    parser.add_argument(
        "--db-path",
        default=None,
        help="SQLite database path (overrides LISTING_SYNC_DATABASE_PATH)",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug-level logging for troubleshooting",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    set_state = sub.add_parser("set-state", help="Set active/featured/hot flags of a property")
    set_state.add_argument("ref", type=int, help="Property reference number")
    set_state.add_argument("--active", type=parse_bool, default=None)
    set_state.add_argument("--featured", type=parse_bool, default=None)
    set_state.add_argument("--hot", type=parse_bool, default=None)

    for name, help_text in (
        ("activate", "Mark a property active and clear its state overrides"),
        ("deactivate", "Mark a property inactive"),
        ("history", "Show the change history of a property"),
    ):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("ref", type=int, help="Property reference number")

    sub.add_parser("overrides", help="List state overrides")
    sub.add_parser("check", help="Report properties whose overrides are out of sync")
    sub.add_parser("install-triggers", help="(Re)install the active-state triggers")
    sub.add_parser(
        "drop-triggers", help="Remove the active-state triggers for every client of the database"
    )
    runs = sub.add_parser("runs", help="Show recent sync runs")
    runs.add_argument("--limit", type=int, default=20)
    clean_runs = sub.add_parser("clean-runs", help="Mark sync runs stuck in progress as failed")
    clean_runs.add_argument(
        "--minutes",
        type=int,
        default=DEFAULT_STALE_MINUTES,
        help=f"Age after which a running sync counts as stuck (default: {DEFAULT_STALE_MINUTES})",
    )
    clean_runs.add_argument("--run-id", type=int, default=None, help="Fail one specific run")

    tags = sub.add_parser("tags", help="Manage property tags")
    tags_sub = tags.add_subparsers(dest="tags_command", required=True)
    create = tags_sub.add_parser("create", help="Create a tag")
    create.add_argument("name")
    create.add_argument("--color", default="#3498db")
    create.add_argument("--description", default=None)
    for name in ("add", "remove"):
        cmd = tags_sub.add_parser(name, help=f"{name.capitalize()} a tag on a property")
        cmd.add_argument("ref", type=int, help="Property reference number")
        cmd.add_argument("tag", type=parse_tag, help="Tag id or name")
    listing = tags_sub.add_parser("list", help="List tags, a property's tags, or tagged properties")
    group = listing.add_mutually_exclusive_group()
    group.add_argument("--ref", type=int, default=None)
    group.add_argument("--tag", type=parse_tag, default=None)

    return parser


def main(argv: list[str] | None = None) -> None:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "set-state" and (args.active, args.featured, args.hot) == (None,) * 3:
        parser.error("set-state needs at least one of --active, --featured, --hot")

    try:
        settings = Settings()
    except Exception as e:
        print(f"Error: Failed to load settings. {e}")
        sys.exit(1)
    if args.db_path:
        settings = settings.model_copy(update={"database_path": args.db_path})

    configure_from_settings(settings, debug=args.debug)

    sys.exit(asyncio.run(run_command(args, settings)))


if __name__ == "__main__":
    main()
