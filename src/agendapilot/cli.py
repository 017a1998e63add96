"""Summary: Command-line interface for AgendaPilot.

Importance: Lets cron or an operator run each sweep and manage tokens locally.
Alternatives: Drive everything through the HTTP API.
"""

from __future__ import annotations

import argparse
import logging
from datetime import timedelta

from agendapilot.app import build_context, build_services, run_all_sweeps
from agendapilot.config import AppConfig
from agendapilot.models import ActionKind, FeedbackItemType


def build_parser() -> argparse.ArgumentParser:
    """Summary: Build the CLI argument parser.

    Importance: Defines supported commands for local operation.
    Alternatives: Use a CLI framework like Typer or Click.
    """

    parser = argparse.ArgumentParser(description="AgendaPilot CLI")
    subparsers = parser.add_subparsers(dest="command", required=True)

    ingest = subparsers.add_parser("ingest", help="Fetch and store new messages")
    ingest.add_argument("--days", type=int, default=None)
    ingest.add_argument("--limit", type=int, default=None)

    sync_labels = subparsers.add_parser("sync-labels", help="Re-apply the processed label")
    sync_labels.add_argument("--limit", type=int, default=500)

    analyze = subparsers.add_parser("analyze", help="Extract events and tasks from new messages")
    analyze.add_argument("--limit", type=int, default=None)

    reanalyze = subparsers.add_parser("reanalyze", help="Queue a message for extraction again")
    reanalyze.add_argument("message_id", type=int)

    subparsers.add_parser("sync-calendar", help="Push candidate events to the calendar")
    subparsers.add_parser("cleanup", help="Auto-complete past tasks and purge expired tokens")
    subparsers.add_parser("run-sweeps", help="Run every sweep for every tenant")

    discard_task = subparsers.add_parser("discard-task", help="Delete a candidate task and its links")
    discard_task.add_argument("task_id", type=int)

    set_alias = subparsers.add_parser("set-alias", help="Set the inbound address alias")
    set_alias.add_argument("alias", type=str)

    issue_token = subparsers.add_parser("issue-token", help="Issue an action link")
    issue_token.add_argument("action_kind", choices=[kind.value for kind in ActionKind])
    issue_token.add_argument("target_id", type=int)
    issue_token.add_argument("--ttl-days", type=int, default=None)

    redeem_token = subparsers.add_parser("redeem-token", help="Redeem an action token")
    redeem_token.add_argument("token", type=str)

    subparsers.add_parser("list-failed", help="List analyses and events that gave up")

    add_profile = subparsers.add_parser("add-profile", help="Add a household member profile")
    add_profile.add_argument("name", type=str)
    add_profile.add_argument("--notes", type=str, default=None)

    grade_item = subparsers.add_parser("grade-item", help="Grade an extracted item")
    grade_item.add_argument("item_type", choices=[item.value for item in FeedbackItemType])
    grade_item.add_argument("item_text", type=str)
    grade_item.add_argument("--irrelevant", action="store_true")

    store_credentials = subparsers.add_parser(
        "store-credentials", help="Store OAuth tokens for a provider"
    )
    store_credentials.add_argument("provider_name", choices=["gmail", "google_calendar"])
    store_credentials.add_argument("access_token", type=str)
    store_credentials.add_argument("--refresh-token", type=str, default=None)
    store_credentials.add_argument("--expires-at", type=str, default=None)

    return parser


def run_cli() -> None:
    """Summary: Execute CLI commands based on arguments.

    Importance: Each sweep command runs one bounded batch and exits.
    Alternatives: Run a long-lived scheduler process.
    """

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    parser = build_parser()
    args = parser.parse_args()
    config = AppConfig.from_env()

    if args.command == "run-sweeps":
        reports = run_all_sweeps(build_context(config))
        for tenant_id, report in reports.items():
            for stage, result in report.items():
                print(f"tenant {tenant_id} {stage}: {result}")
        return

    services = build_services(config)

    if args.command == "ingest":
        result = services.ingestion().fetch_and_store(
            timedelta(days=args.days or config.fetch_window_days),
            args.limit or config.fetch_max_results,
        )
        print(
            f"Fetched {result.fetched}, stored {result.stored}, "
            f"skipped {result.skipped}, errors {result.errors}."
        )
        return

    if args.command == "sync-labels":
        result = services.ingestion().sync_labels(args.limit)
        print(f"Labeled {result.labeled} of {result.attempted} messages ({result.failed} failed).")
        return

    if args.command == "analyze":
        result = services.extraction.analyze_unanalyzed(args.limit or config.analysis_batch_size)
        print(
            f"Processed {result.processed}: {result.successful} ok, {result.failed} failed, "
            f"{result.events_created} events, {result.tasks_created} tasks."
        )
        return

    if args.command == "reanalyze":
        if services.extraction.reanalyze(args.message_id):
            print(f"Message {args.message_id} queued for reanalysis.")
        else:
            print(f"Message {args.message_id} not found.")
        return

    if args.command == "sync-calendar":
        result = services.calendar_sync().sync_pending()
        print(f"Processed {result.processed}: {result.synced} synced, {result.failed} failed.")
        return

    if args.command == "cleanup":
        result = services.cleanup.cleanup_past_items()
        print(
            f"Auto-completed {result.tasks_auto_completed} tasks, "
            f"purged {result.tokens_purged} tokens."
        )
        return

    if args.command == "discard-task":
        if services.cleanup.discard_task(args.task_id):
            print(f"Task {args.task_id} discarded.")
        else:
            print(f"Task {args.task_id} not found.")
        return

    if args.command == "set-alias":
        if services.store.set_inbound_alias(services.tenant_id, args.alias):
            print(f"Inbound address: {args.alias.strip().lower()}@{config.inbound_domain}")
        else:
            print(f"Alias {args.alias} is already taken.")
        return

    if args.command == "issue-token":
        token = services.tokens.issue(
            services.tenant_id, ActionKind(args.action_kind), args.target_id, args.ttl_days
        )
        print(f"{config.public_base_url.rstrip('/')}/actions/{token}")
        return

    if args.command == "redeem-token":
        outcome = services.tokens.execute(args.token)
        status = "ok" if outcome.success else outcome.reason.value
        print(f"{status}: {outcome.message}")
        return

    if args.command == "list-failed":
        for analysis in services.review.list_failed():
            print(f"analysis #{analysis.id} message #{analysis.message_id}: {analysis.error}")
        for event in services.store.list_failed_events(services.tenant_id, config.sync_max_retries):
            print(f"event #{event.id} {event.title} ({event.start_at}): {event.sync_error}")
        return

    if args.command == "add-profile":
        profile_id = services.feedback.add_profile(args.name, args.notes)
        print(f"Saved profile {profile_id}: {args.name}")
        return

    if args.command == "grade-item":
        feedback_id = services.feedback.grade_item(
            FeedbackItemType(args.item_type), args.item_text, not args.irrelevant
        )
        print(f"Recorded feedback {feedback_id}.")
        return

    if args.command == "store-credentials":
        services.credentials.store_credentials(
            args.provider_name, args.access_token, args.refresh_token, args.expires_at
        )
        print(f"Stored credentials for {args.provider_name}.")
        return


if __name__ == "__main__":
    run_cli()
