"""Command-line interface (CLI) entrypoint.

Objective:
    Provide a human-friendly CLI wrapper around
    :class:`email_assistant.orchestrator.EmailAssistant`.

Responsibilities:
    - Parse subcommands and options.
    - Configure logging (including suppressing noisy HTTP request logs).
    - Invoke the assistant and print a readable summary.

Commands:
    - ``scan [-n MAX] [--dry-run]``: learn from corrections, classify, apply
    - ``learn``: learn from corrections only
    - ``profile``: print the guidance text and structured rules
    - ``labels [cleanup]``: list labels / remove unused AI labels
    - ``spam ID``, ``unspam ID``, ``label ID LABEL``: act and learn
    - ``delete ID``: move to trash

High-level call tree:
    - :func:`main`
        - :func:`build_parser`
        - :func:`setup_logging`
            - installs :class:`_HttpxRequestInfoToDebugFilter`
        - :class:`EmailAssistant` method for the command
        - :func:`print_summary` / :func:`print_profile`
"""

import argparse
import logging
import sys
from typing import Optional

from .config import Settings, get_settings
from .errors import EmailAssistantError
from .models import DecisionSource, LearningOutcome, NoChange, Profile, RunSummary
from .orchestrator import EmailAssistant, describe_outcome
from .profile_store import ProfileStore

logger = logging.getLogger(__name__)

_SOURCE_ICONS = {
    DecisionSource.RULE: "📏",
    DecisionSource.AI: "🤖",
    DecisionSource.MERGED: "🔀",
}


class _HttpxRequestInfoToDebugFilter(logging.Filter):
    """Filter to suppress noisy httpx "HTTP Request:" INFO logs.

    The Groq SDK logs each HTTP request at INFO level through httpx. This
    filter hides those messages unless the root logger is in DEBUG mode.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        msg = record.getMessage()
        if record.name.startswith("httpx") and msg.startswith("HTTP Request:"):
            return logging.getLogger().isEnabledFor(logging.DEBUG)
        return True


def setup_logging(level: str = "INFO") -> None:
    """
    Configure logging for the application.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR).
    """
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout),
        ],
    )

    root_logger = logging.getLogger()
    downgrade_filter = _HttpxRequestInfoToDebugFilter()
    for handler in root_logger.handlers:
        handler.addFilter(downgrade_filter)


def print_summary(summary: RunSummary, verbose: bool = False) -> None:
    """
    Print a run summary to the console.

    Output format:
        - One line per email with the decision source, labels and action.
        - Counts per decision source, applied and failed.
        - Every warning.

    Args:
        summary: Run summary.
        verbose: If True, print matched rules per email.
    """
    if summary.learning:
        print(f"\n🧠 Learning: {summary.learning}")

    if not summary.results:
        print("\nNo emails processed.")
    else:
        print(f"\n{'='*60}")
        print(f"PROCESSING RESULTS: {len(summary.results)} emails")
        print(f"{'='*60}\n")

        for item in summary.results:
            status = "✅" if item.success else "❌"
            subject = item.subject[:50] + "..." if len(item.subject) > 50 else item.subject
            decision = item.decision
            if decision is None:
                print(f"  {status} {item.sender} {subject}")
                continue

            icon = _SOURCE_ICONS[decision.source]
            labels = ", ".join(sorted(decision.labels)) or "-"
            action = f" → {decision.action.value}" if decision.action else ""
            reply = " ✉️" if decision.needs_reply else ""
            print(f"  {status} {icon} {item.sender} {subject} [{labels}]{action}{reply}")

            if verbose and decision.matched_rules:
                print(f"      Rules: {', '.join(decision.matched_rules)}")

    print(f"\n{'='*60}")
    print(
        f"SUMMARY: {summary.rule_count} rule, {summary.merged_count} merged, "
        f"{summary.ai_count} ai | ✅ {summary.applied_count} applied, "
        f"❌ {summary.failed_count} failed"
    )
    if summary.cancelled:
        print("⚠️  Run was cancelled")
    print(f"{'='*60}\n")

    warnings = summary.all_warnings
    if warnings:
        print(f"⚠️  {len(warnings)} warnings:")
        for warning in warnings:
            print(f"  - {warning}")
        print()


def print_profile(profile: Profile) -> None:
    """Print the guidance text followed by the structured rules."""
    print(profile.text.rstrip())
    print(f"\n{'='*60}")
    print(f"RULES: {len(profile.rules)}")
    print(f"{'='*60}")
    for rule in profile.rules:
        action = rule.action.terminal.value if rule.action.terminal else f"label:{rule.action.label}"
        print(f"  [{rule.source_file}] {rule.name} → {action}")
        if rule.description:
            print(f"      {rule.description}")
    for warning in profile.warnings:
        print(f"⚠️  {warning}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="email-assistant",
        description="Email Assistant - rule + AI email classification that learns from corrections",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s scan                 Learn from corrections, then classify new emails
  %(prog)s scan -n 5 --dry-run  Classify 5 emails without changing anything
  %(prog)s label ID Work        Add a label and learn from it
  %(prog)s labels cleanup       Remove unused AI-created labels
        """,
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose output",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (defaults to LOG_LEVEL)",
    )

    commands = parser.add_subparsers(dest="command", required=True)

    scan = commands.add_parser("scan", help="Learn from corrections, then classify and apply")
    scan.add_argument("-n", "--max", type=int, default=None, dest="limit", help="Maximum emails to fetch")
    scan.add_argument("--dry-run", "-d", action="store_true", help="Classify without applying anything")

    commands.add_parser("learn", help="Detect corrections and learn from them")
    commands.add_parser("profile", help="Show the classification profile")

    labels = commands.add_parser("labels", help="List labels")
    labels.add_argument("action", nargs="?", choices=["cleanup"], help="Remove unused AI-created labels")

    for name, help_text in (
        ("spam", "Mark an email as spam and learn from it"),
        ("unspam", "Move an email out of spam and learn from it"),
        ("delete", "Move an email to the trash"),
    ):
        command = commands.add_parser(name, help=help_text)
        command.add_argument("email_id", help="Message ID")

    label = commands.add_parser("label", help="Add a label to an email and learn from it")
    label.add_argument("email_id", help="Message ID")
    label.add_argument("label", help="Label name")

    return parser


def _print_outcome(outcome: LearningOutcome) -> None:
    print(f"🧠 {describe_outcome(outcome)}")
    reported = outcome.reported
    for correction in reported:
        rules = ", ".join(correction.decision.matched_rules) or "a rule"
        print(f"⚠️  This contradicts {rules}; edit your rule files to change it.")
    if isinstance(outcome, NoChange) and outcome.unresolved:
        print("⚠️  Learning failed; the correction will be retried on the next scan.")


def _run_command(parsed_args: argparse.Namespace, settings: Settings) -> int:
    command = parsed_args.command

    if command == "profile":
        print_profile(ProfileStore(settings).load())
        return 0

    assistant = EmailAssistant(settings=settings)

    if command == "scan":
        print("\n🚀 Starting Email Assistant...\n")
        if parsed_args.dry_run:
            print("⚠️  DRY RUN MODE - nothing will be applied or learned\n")
        summary = assistant.run(limit=parsed_args.limit, dry_run=parsed_args.dry_run)
        print_summary(summary, verbose=parsed_args.verbose)
        return 1 if summary.failed_count else 0

    if command == "learn":
        summary = assistant.learn()
        print_summary(summary, verbose=parsed_args.verbose)
        return 0

    if command == "labels":
        if parsed_args.action == "cleanup":
            removed = assistant.cleanup_labels()
            print(f"Removed {len(removed)} unused AI labels" + (f": {', '.join(removed)}" if removed else ""))
            return 0
        provider_labels, ai_labels = assistant.list_labels()
        print(f"\n📁 Labels ({len(provider_labels)})")
        for name in provider_labels:
            marker = " (AI)" if name in ai_labels else ""
            print(f"  - {name}{marker}")
        return 0

    if command == "delete":
        assistant.delete(parsed_args.email_id)
        print(f"🗑️  Moved {parsed_args.email_id} to trash")
        return 0

    action = f"label:{parsed_args.label}" if command == "label" else command
    outcome = assistant.apply_user_action(parsed_args.email_id, action)
    print(f"✅ {action} applied to {parsed_args.email_id}")
    _print_outcome(outcome)
    return 0


def main(args: Optional[list[str]] = None) -> int:
    """
    Main CLI entry point.

    Pass an explicit ``args`` list instead of relying on ``sys.argv`` in tests.

    Args:
        args: Command line arguments (uses sys.argv if None).

    Returns:
        int: Exit code (0 for success, 1 for error).
    """
    parsed_args = build_parser().parse_args(args)

    settings = get_settings()
    log_level = "DEBUG" if parsed_args.verbose else (parsed_args.log_level or settings.log_level)
    setup_logging(log_level)

    try:
        return _run_command(parsed_args, settings)
    except (EmailAssistantError, OSError, ValueError) as e:
        logger.exception("Fatal error")
        print(f"\n❌ Error: {e}\n")
        return 1


def run() -> None:
    """Console-script entry point."""
    sys.exit(main())


if __name__ == "__main__":
    run()
