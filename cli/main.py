#!/usr/bin/env python3
"""
qbank-ingest CLI.

Usage:
    qbank init-db
    qbank import exam1.pdf exam2.pdf --subject Genetics --system Renal
    qbank status JOB_ID
    qbank run JOB_ID
    qbank retry SESSION_ID
    qbank cancel JOB_ID
    qbank stats
"""

import json
import logging
import threading

import click

from qbank.config import config


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else getattr(logging, config.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s - %(levelname)s - %(message)s",
    )


def _parse_id(value: str) -> str:
    from qbank.security import InputValidationError, validate_uuid

    try:
        return validate_uuid(value)
    except InputValidationError as e:
        raise click.BadParameter(str(e))


STAGE_COLORS = {
    "completed": "green",
    "failed": "red",
    "cancelled": "yellow",
    "paused": "cyan",
}


def _print_status(report: dict) -> None:
    counters = report["counters"]
    click.echo(f"\nJob {report['name']} ({report['job_id']})")
    click.echo(f"Status: {report['status']}")
    click.echo("=" * 60)
    click.echo(f"Documents:          {counters['completed_items']}/{counters['total_items']} completed")
    click.echo(f"Failed:             {counters['failed_items']:>6}")
    click.echo(f"Cancelled:          {counters['cancelled_items']:>6}")
    click.echo(f"Questions inserted: {counters['inserted_items']:>6}")
    click.echo(f"Duplicates skipped: {counters['duplicates_skipped']:>6}")
    click.echo(f"Invalid dropped:    {counters['invalid_candidates_dropped']:>6}")
    click.echo(f"Needs review:       {counters['needs_review_items']:>6}")
    click.echo()

    for s in report["sessions"]:
        pages = f"{s['processed_units']}/{s['total_units'] if s['total_units'] is not None else '?'}"
        stage = click.style(f"{s['stage']:<18}", fg=STAGE_COLORS.get(s["stage"]))
        click.echo(f"[{s['order_index'] + 1}] {stage} pages {pages:<9} {s['source_name']}")
        click.echo(f"    session {s['session_id']}  retries {s['retry_count']}")
        if s["stage"] == "completed":
            click.echo(
                f"    inserted {s['inserted']}, duplicates {s['duplicates_skipped']}, "
                f"invalid {s['invalid_dropped']}, review {s['needs_review']}"
            )
        if s["error_kind"]:
            click.echo(click.style(f"    {s['error_kind']}: {s['error_message']}", fg="red"))


def _run_with_progress(orchestrator, job_id, action) -> None:
    """
    Run action(job_id) in a worker thread and print progress events.

    Ctrl-C requests a cooperative pause; the job stops at the next chunk
    boundary and can be continued with `qbank run`.
    """
    subscription = orchestrator.channel.subscribe()
    result = {}

    def worker():
        try:
            result["job"] = action(job_id)
        except BaseException as e:  # re-raised in the main thread
            result["error"] = e

    thread = threading.Thread(target=worker, name=f"job-{job_id}", daemon=True)
    thread.start()

    try:
        while thread.is_alive() or subscription.pending:
            try:
                event = subscription.get(timeout=0.5)
            except KeyboardInterrupt:
                click.echo("\nPausing at the next chunk boundary...")
                orchestrator.pause(job_id)
                continue
            if event is None:
                continue
            total = event.total_units if event.total_units is not None else "?"
            line = f"  {event.kind:<20} {event.stage.value:<18} pages {event.processed_units}/{total}"
            if event.message:
                line += f"  {event.message[:80]}"
            click.echo(line)
    finally:
        subscription.close()
        thread.join()

    if "error" in result:
        raise result["error"]


# ============================================================================
# CLI
# ============================================================================

@click.group()
@click.version_option(version="1.0.0")
@click.option("-v", "--verbose", is_flag=True, help="Debug logging")
def cli(verbose: bool):
    """qbank-ingest - question bank ingestion pipeline."""
    _setup_logging(verbose)


@cli.command()
def init_db():
    """Initialize database schema."""
    from qbank.db.schema import apply_schema

    click.echo("\nInitializing Postgres schema...")
    count = apply_schema()
    click.echo(click.style(f"✓ Postgres schema initialized ({count} statements)", fg="green"))


@cli.command(name="import")
@click.argument("sources", nargs=-1, required=True)
@click.option("--subject", help="Subject tag for every document")
@click.option("--system", help="System tag for every document")
@click.option("--category", help="Category tag for every document")
@click.option("--name", help="Batch job name")
@click.option("--no-run", is_flag=True, help="Only enqueue; process later with `run`")
def import_documents(sources, subject, system, category, name, no_run):
    """Import PDF files or URLs as one batch job."""
    from batch.orchestrator import build_orchestrator
    from qbank.ingest.models import ClassificationHints
    from qbank.security import InputValidationError, sanitize_tag, validate_document_source

    try:
        documents = [validate_document_source(source) for source in sources]
    except InputValidationError as e:
        raise click.BadParameter(str(e), param_hint="SOURCES")

    hints = ClassificationHints(
        subject=sanitize_tag(subject),
        category=sanitize_tag(category),
        system=sanitize_tag(system),
    )

    orchestrator = build_orchestrator()
    job = orchestrator.enqueue(documents, name=sanitize_tag(name), hints=hints)
    click.echo(f"\nEnqueued job {job.name}: {job.id} ({job.total_items} documents)")

    if no_run:
        return

    _run_with_progress(orchestrator, job.id, orchestrator.run)
    _print_status(orchestrator.status(job.id))


@cli.command()
@click.argument("job_id")
def run(job_id: str):
    """Continue a paused or partially processed job."""
    from batch.orchestrator import build_orchestrator

    job_id = _parse_id(job_id)
    orchestrator = build_orchestrator()
    _run_with_progress(orchestrator, job_id, orchestrator.resume)
    _print_status(orchestrator.status(job_id))


@cli.command()
@click.argument("job_id")
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
def status(job_id: str, output_json: bool):
    """Show job counters and per-document progress."""
    from batch.orchestrator import build_orchestrator

    report = build_orchestrator().status(_parse_id(job_id))
    if output_json:
        click.echo(json.dumps(report, indent=2))
        return
    _print_status(report)


@cli.command()
@click.argument("session_id")
@click.option("--no-run", is_flag=True, help="Only reopen the session")
def retry(session_id: str, no_run: bool):
    """Retry a failed or cancelled document."""
    from batch.orchestrator import build_orchestrator

    orchestrator = build_orchestrator()
    session = orchestrator.retry(_parse_id(session_id), run=not no_run)

    color = STAGE_COLORS.get(session.stage.value)
    click.echo(click.style(f"\n{session.source_name}: {session.stage.value}", fg=color))
    click.echo(f"  Pages:   {session.processed_units}/{session.total_units}")
    click.echo(f"  Retries: {session.retry_count}")
    if session.error_kind:
        click.echo(click.style(f"  {session.error_kind.value}: {session.error_message}", fg="red"))


@cli.command()
@click.argument("job_id")
def cancel(job_id: str):
    """Cancel a job. Stored page images are kept for later reuse."""
    from batch.orchestrator import build_orchestrator

    job = build_orchestrator().cancel(_parse_id(job_id))
    click.echo(f"\nJob {job.name}: {job.status.value} ({job.cancelled_items} documents cancelled)")


@cli.command()
def stats():
    """Show question bank statistics."""
    from qbank.db.postgres import get_stats

    counts = get_stats()

    click.echo("\nqbank-ingest Statistics")
    click.echo("=" * 40)
    click.echo(f"Questions:         {counts['questions']:>15,}")
    click.echo(f"Needing review:    {counts['questions_needing_review']:>15,}")
    click.echo(f"Page references:   {counts['question_images']:>15,}")
    click.echo(f"Batch jobs:        {counts['batch_jobs']:>15,}")
    click.echo(f"Import sessions:   {counts['import_sessions']:>15,}")
    click.echo(f"Failed sessions:   {counts['failed_sessions']:>15,}")


@cli.command()
def check_config():
    """Validate configuration and database connectivity."""
    from qbank.db.postgres import check_health

    click.echo(f"\n{config!r}\n")

    errors = config.validate()
    for error in errors:
        click.echo(click.style(f"✗ {error}", fg="red"))
    if not errors:
        click.echo(click.style("✓ Configuration valid", fg="green"))

    health = check_health()
    color = "green" if health["status"] == "healthy" else "red"
    click.echo(click.style(f"Database: {health['status']}", fg=color))
    if health.get("missing_tables"):
        click.echo(f"  Missing tables: {', '.join(health['missing_tables'])} (run `qbank init-db`)")
    if health.get("error"):
        click.echo(f"  {health['error']}")


# ============================================================================
# Main Entry Point
# ============================================================================

def main():
    """Main entry point."""
    cli()


if __name__ == "__main__":
    main()
