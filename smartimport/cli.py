"""CLI entry point for SmartImport.

Commands:
    smartimport import FILE [--owner O] [--format F] [--accept-above X] [--interactive]
                                     Import a statement file and review it
    smartimport paste [...]          Same, reading pasted text from stdin
    smartimport rules [--owner O] [--global] [--stats]
                                     List the rules of an owner (or global rules)
    smartimport maintain [--owner O] Prune old unused rules, decay stale ones
    smartimport rule-add PATTERN CATEGORY [...]
                                     Create a manual rule
    smartimport rule-set RULE [--priority N] [--description D] [--enable|--disable]
                                     Update a rule
    smartimport rule-delete RULE     Delete a rule

Without --accept-above or --interactive an import is only previewed: the
session is cancelled and nothing is persisted.
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path

logger = logging.getLogger(__name__)


def _setup_logging() -> None:
    """Configure logging based on SMARTIMPORT_LOG_LEVEL env var."""
    level = os.environ.get("SMARTIMPORT_LOG_LEVEL", "WARNING").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _get_config():
    """Load application config from config directory."""
    from smartimport.config import Config

    config_dir = os.environ.get("SMARTIMPORT_CONFIG_DIR", "config")
    return Config(config_dir=config_dir)


def _get_repo():
    """Create a migrated Repository connected to the configured database."""
    from smartimport.database.repository import MIGRATIONS_DIR, Repository

    db_path = os.environ.get("SMARTIMPORT_DB_PATH", "smartimport.db")
    repo = Repository(db_path=db_path)
    repo.apply_migrations(Path(os.environ.get(
        "SMARTIMPORT_MIGRATIONS_DIR", MIGRATIONS_DIR,
    )))
    return repo


def _owner(args: argparse.Namespace, config) -> str:
    return args.owner or config.default_owner


# ── Session review ───────────────────────────────────────


def _format_row(row, config) -> str:
    s = row.suggestion
    category = config.category_by_id(s.category_id)
    label = category.name if category else "-"
    flags = []
    if row.is_duplicate:
        flags.append(f"DUPLICATE? ({row.duplicate_warning.confidence:.0%})")
    if s.needs_review:
        flags.append("LOW CONFIDENCE")
    if row.raw.date_fallback:
        flags.append("DATE GUESSED")
    return (
        f"  {row.row_number:>3}  {row.raw.date.isoformat()}"
        f"  {row.raw.description[:32]:<32}  {row.raw.amount:>10}"
        f"  {s.type:<8}  {label[:20]:<20} {s.confidence:>4.0%} {s.source or '-':<10}"
        f"  {s.entity_name or '-'}"
        + (f"  [{', '.join(flags)}]" if flags else "")
    )


def _print_session(service, session, config) -> None:
    print(f"Session {session.session_id} ({session.format})")
    print("-" * 100)
    for row in session.rows:
        print(_format_row(row, config))
    if session.diagnostics:
        print("\nSkipped rows:")
        for diagnostic in session.diagnostics:
            print(f"  {diagnostic}")
    stats = service.summary(session)
    print(
        f"\n{stats.imported} rows, {stats.rejected} rejected,"
        f" {stats.duplicates} possible duplicates,"
        f" {stats.low_confidence} low confidence"
    )


def _review_interactively(service, session, config) -> None:
    from smartimport.learning.store import Decision

    print("\nFor each row: [a]ccept, [r]eject, [c]orrect CATEGORY_ID [ACCOUNT_ID], [s]kip")
    for row in session.rows:
        if row.review_status != "pending":
            continue
        while True:
            answer = input(f"{_format_row(row, config)}\n  > ").strip().split()
            if not answer or answer[0] in ("s", "skip"):
                break
            action = answer[0]
            if action in ("a", "accept") and row.suggestion.category_id:
                service.review(session.session_id, row.row_number, Decision.accepted())
                break
            if action in ("r", "reject"):
                service.review(session.session_id, row.row_number, Decision.rejected())
                break
            if action in ("c", "correct") and len(answer) >= 2:
                if config.category_by_id(answer[1]) is None:
                    print(f"  Unknown category: {answer[1]}")
                    continue
                account_id = answer[2] if len(answer) > 2 else None
                service.review(
                    session.session_id, row.row_number,
                    Decision.corrected(answer[1], account_id),
                )
                break
            print("  ?")


def _run_import(args: argparse.Namespace, blob: bytes | str, file_name: str | None) -> int:
    from smartimport.database.repository import PersistenceFailure
    from smartimport.importer.session import ImportService
    from smartimport.parsers.base import ParseError

    config = _get_config()
    repo = _get_repo()
    service = ImportService(repo, config)
    try:
        try:
            session = service.start_session(
                _owner(args, config), blob, file_name=file_name, fmt=args.format,
            )
        except ParseError as e:
            print(f"Error: {e}")
            return 1

        _print_session(service, session, config)

        if args.accept_above is None and not args.interactive:
            service.cancel(session.session_id)
            print("\nPreview only: nothing imported.")
            return 0

        try:
            if args.accept_above is not None:
                accepted = service.accept_confident(session.session_id, args.accept_above)
                print(f"\nAuto-accepted {len(accepted)} rows at or above {args.accept_above:.0%}")
            if args.interactive:
                _review_interactively(service, session, config)
            result = service.finalize(session.session_id)
        except PersistenceFailure as e:
            print(f"Error: {e}" + (" (retry may succeed)" if e.retryable else ""))
            return 1

        print(f"Imported {len(result.persisted_ids)} transactions, skipped {result.skipped}.")
        return 0
    finally:
        service.close()
        repo.close()


# ── Command handlers ─────────────────────────────────────


def cmd_import(args: argparse.Namespace) -> int:
    """Import a statement file."""
    filepath = args.file.resolve()
    if not filepath.exists():
        print(f"Error: File not found: {filepath}")
        return 1
    return _run_import(args, filepath.read_bytes(), filepath.name)


def cmd_paste(args: argparse.Namespace) -> int:
    """Import pasted statement text from stdin."""
    text = sys.stdin.read()
    if not text.strip():
        print("Error: Nothing to import on stdin")
        return 1
    return _run_import(args, text, None)


def cmd_rules(args: argparse.Namespace) -> int:
    """List the rules of an owner, or the global rules with --global."""
    config = _get_config()
    repo = _get_repo()
    try:
        owner = None if args.global_rules else _owner(args, config)
        if args.stats:
            from smartimport.learning.store import LearningStore

            stats = LearningStore(repo, config.tuning).stats(owner)
            avg = "-" if stats.avg_confidence is None else f"{stats.avg_confidence:.0%}"
            print(f"Rules for {owner or 'all owners (global)'}:")
            print(f"  Rules:           {stats.rule_count} ({stats.active_rules} active)")
            print(f"  Avg confidence:  {avg}")
            print(f"  Total usage:     {stats.total_usage}")
            return 0

        rules = repo.list_rules(owner)
        if not rules:
            print("No rules.")
            return 0

        print(f"Rules for {owner or 'all owners (global)'} ({len(rules)}):")
        print("-" * 80)
        for rule in rules:
            status = "" if rule.is_active else "  (inactive)"
            print(
                f"  {rule.id[:8]}  {'|'.join(rule.pattern_texts)[:30]:<30}"
                f"  -> {rule.category_id:<16} {rule.confidence:>4.0%}"
                f"  used {rule.usage_count:>3}  p{rule.priority}  {rule.origin}{status}"
            )
        return 0
    finally:
        repo.close()


def cmd_maintain(args: argparse.Namespace) -> int:
    """Delete old rarely-used rules and decay stale ones."""
    from smartimport.learning.store import LearningStore

    config = _get_config()
    repo = _get_repo()
    try:
        store = LearningStore(repo, config.tuning)
        result = store.maintain(_owner(args, config))
        print(f"Deleted {len(result.deleted)} rules, decayed {len(result.decayed)} rules.")
        return 0
    finally:
        repo.close()


def cmd_rule_add(args: argparse.Namespace) -> int:
    """Create a manual rule."""
    from smartimport.learning.store import LearningStore

    config = _get_config()
    if config.category_by_id(args.category) is None:
        print(f"Error: Unknown category: {args.category}")
        return 1
    if args.account and config.account_by_id(args.account) is None:
        print(f"Error: Unknown account: {args.account}")
        return 1

    repo = _get_repo()
    try:
        store = LearningStore(repo, config.tuning)
        try:
            rule = store.add_rule(
                owner=None if args.global_rules else _owner(args, config),
                patterns=[p.strip() for p in args.pattern.split("|") if p.strip()],
                category_id=args.category,
                account_id=args.account,
                amount_min=args.min,
                amount_max=args.max,
                type_filter=args.type,
                priority=args.priority,
                weight=args.weight,
                description=args.description,
            )
        except ValueError as e:
            print(f"Error: {e}")
            return 1
        print(f"Created rule {rule.id}")
        return 0
    finally:
        repo.close()


def cmd_rule_set(args: argparse.Namespace) -> int:
    """Change a rule's priority, description or active flag."""
    from smartimport.learning.store import LearningStore, RuleNotFound

    if args.priority is None and args.active is None and args.description is None:
        print("Error: Nothing to change (use --priority, --description, --enable or --disable)")
        return 1

    config = _get_config()
    repo = _get_repo()
    try:
        store = LearningStore(repo, config.tuning)
        try:
            rule = store.update_rule(
                args.rule,
                priority=args.priority,
                is_active=args.active,
                description=args.description,
            )
        except RuleNotFound:
            print(f"Error: Rule not found: {args.rule}")
            return 1
        except ValueError as e:
            print(f"Error: {e}")
            return 1
        status = "active" if rule.is_active else "inactive"
        print(f"Updated rule {rule.id}: priority {rule.priority}, {status}")
        return 0
    finally:
        repo.close()


def cmd_rule_delete(args: argparse.Namespace) -> int:
    """Delete a rule."""
    from smartimport.learning.store import LearningStore, RuleNotFound

    config = _get_config()
    repo = _get_repo()
    try:
        store = LearningStore(repo, config.tuning)
        try:
            rule = store.delete_rule(args.rule)
        except RuleNotFound:
            print(f"Error: Rule not found: {args.rule}")
            return 1
        except ValueError as e:
            print(f"Error: {e}")
            return 1
        print(f"Deleted rule {rule.id}")
        return 0
    finally:
        repo.close()


# ── Main entry point ─────────────────────────────────────


_COMMANDS = {
    "import": cmd_import,
    "paste": cmd_paste,
    "rules": cmd_rules,
    "maintain": cmd_maintain,
    "rule-add": cmd_rule_add,
    "rule-set": cmd_rule_set,
    "rule-delete": cmd_rule_delete,
}


def _add_session_options(p: argparse.ArgumentParser) -> None:
    p.add_argument("--owner", help="Owner of the import (default from settings.yaml)")
    p.add_argument(
        "--format", choices=["csv", "spreadsheet", "text", "pdf"],
        help="Skip format detection",
    )
    p.add_argument(
        "--accept-above", type=float, metavar="X",
        help="Auto-accept non-duplicate rows with confidence >= X (0-1)",
    )
    p.add_argument("--interactive", action="store_true", help="Review rows one by one")


def main(argv: list[str] | None = None):
    _setup_logging()

    parser = argparse.ArgumentParser(
        prog="smartimport",
        description="Smart import of bank statements with learned categorization",
    )
    subparsers = parser.add_subparsers(dest="command")

    # import
    import_p = subparsers.add_parser("import", help="Import a statement file")
    import_p.add_argument("file", type=Path, help="CSV, spreadsheet, text or PDF statement")
    _add_session_options(import_p)

    # paste
    paste_p = subparsers.add_parser("paste", help="Import pasted text from stdin")
    _add_session_options(paste_p)

    # rules
    rules_p = subparsers.add_parser("rules", help="List rules")
    rules_p.add_argument("--owner", help="Owner whose rules to list")
    rules_p.add_argument("--global", dest="global_rules", action="store_true",
                         help="List the global rules instead")
    rules_p.add_argument("--stats", action="store_true",
                         help="Show rule count, average confidence and total usage")

    # maintain
    maintain_p = subparsers.add_parser("maintain", help="Prune and decay stale rules")
    maintain_p.add_argument("--owner", help="Owner whose rules to maintain")

    # rule-add
    add_p = subparsers.add_parser("rule-add", help="Create a manual rule")
    add_p.add_argument("pattern", help="Description keyword(s), '|' separated")
    add_p.add_argument("category", help="Category ID")
    add_p.add_argument("--account", help="Account ID")
    add_p.add_argument("--owner", help="Rule owner (default from settings.yaml)")
    add_p.add_argument("--global", dest="global_rules", action="store_true",
                       help="Create a global rule")
    add_p.add_argument("--min", type=float, help="Minimum amount")
    add_p.add_argument("--max", type=float, help="Maximum amount")
    add_p.add_argument("--type", choices=["income", "expense", "transfer"],
                       help="Transaction type filter")
    add_p.add_argument("--priority", type=int, default=0, help="Higher runs first")
    add_p.add_argument("--weight", type=float, help="Pattern weight (default from settings)")
    add_p.add_argument("--description", help="Label shown in suggestions")

    # rule-set
    set_p = subparsers.add_parser("rule-set", help="Update a rule")
    set_p.add_argument("rule", help="Rule ID (or the prefix shown by 'rules')")
    set_p.add_argument("--priority", type=int, help="Higher runs first")
    set_p.add_argument("--description", help="Label shown in suggestions")
    active = set_p.add_mutually_exclusive_group()
    active.add_argument("--enable", dest="active", action="store_const", const=True,
                        help="Use the rule again")
    active.add_argument("--disable", dest="active", action="store_const", const=False,
                        help="Stop using the rule without deleting it")

    # rule-delete
    delete_p = subparsers.add_parser("rule-delete", help="Delete a rule")
    delete_p.add_argument("rule", help="Rule ID (or the prefix shown by 'rules')")

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    handler = _COMMANDS.get(args.command)
    if handler is None:
        print(f"Unknown command: {args.command}")
        sys.exit(1)

    sys.exit(handler(args))


if __name__ == "__main__":
    main()
