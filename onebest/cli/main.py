"""CLI commands for the ranking pipeline."""

import json
import logging
import signal
from datetime import UTC, datetime
from pathlib import Path
from types import FrameType
from typing import Any

import click
from pydantic import ValidationError

from onebest import __version__
from onebest.dlq import DeadLetterNotFoundError, DlqReprocessor, ReplayRejectedError
from onebest.events.errors import MalformedEnvelopeError
from onebest.events.models import parse_envelope
from onebest.observability.logging import configure_logging
from onebest.query import QueryService
from onebest.queue import DeadLetterReason, DlqFilter, DurableQueue
from onebest.settings import AppSettings, load_settings
from onebest.store import RankStore
from onebest.worker import PipelineMetrics, PoolResult, WorkerPool


def _settings(ctx: click.Context) -> AppSettings:
    settings: AppSettings = ctx.obj["settings"]
    return settings


def _open_queue(settings: AppSettings) -> DurableQueue:
    return DurableQueue(
        settings.db_path,
        queue_name=settings.queue_name,
        visibility_timeout_seconds=settings.visibility_timeout_seconds,
        max_retries=settings.max_retries,
        dlq_retention_days=settings.dlq_retention_days,
        poll_interval_seconds=settings.poll_interval_seconds,
    )


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


def _echo_pool_result(result: PoolResult, json_output: bool) -> None:
    summary = {
        "run_id": result.run_id,
        "batches": result.batches,
        "messages": result.messages,
        "applied": result.applied,
        "duplicates": result.duplicates,
        "rejected": result.rejected,
        "retried": result.retried,
        "worker_errors": result.worker_errors,
        "duration_ms": round(result.duration_ms, 2),
    }
    if json_output:
        _echo_json({**summary, "metrics": PipelineMetrics.get_instance().to_dict()})
        return
    click.echo(
        f"Processed {result.messages} messages in {result.batches} batches: "
        f"{result.applied} applied, {result.duplicates} duplicates, "
        f"{result.rejected} dead-lettered, {result.retried} left for retry."
    )


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="YAML file overriding ONEBEST_* settings.",
)
@click.option(
    "--db",
    "db_path",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Path to the SQLite database (overrides settings).",
)
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
@click.pass_context
def cli(
    ctx: click.Context,
    config_path: Path | None,
    db_path: Path | None,
    verbose: bool,
) -> None:
    """One-best dish ranking pipeline CLI."""
    try:
        settings = load_settings(config_path)
    except (ValidationError, ValueError) as e:
        raise click.ClickException(f"Invalid settings: {e}") from e
    if db_path is not None:
        settings = settings.model_copy(update={"db_path": db_path})

    configure_logging(
        level=logging.DEBUG if verbose else settings.log_level_value,
        json_format=settings.json_logs,
    )
    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings


# ===== worker =====


@cli.group()
def worker() -> None:
    """Run the event-processing worker pool."""


@worker.command("run")
@click.option("--workers", type=click.IntRange(min=1), help="Override worker count.")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON.")
@click.pass_context
def worker_run(ctx: click.Context, workers: int | None, json_output: bool) -> None:
    """Poll the queue until interrupted (SIGINT/SIGTERM)."""
    settings = _settings(ctx)
    if workers is not None:
        settings = settings.model_copy(update={"worker_count": workers})
    pool = WorkerPool(settings)

    def _request_stop(signum: int, frame: FrameType | None) -> None:  # noqa: ARG001
        pool.stop()

    signal.signal(signal.SIGINT, _request_stop)
    signal.signal(signal.SIGTERM, _request_stop)

    result = pool.run()
    _echo_pool_result(result, json_output)


@worker.command("drain")
@click.option("--workers", type=click.IntRange(min=1), help="Override worker count.")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON.")
@click.pass_context
def worker_drain(ctx: click.Context, workers: int | None, json_output: bool) -> None:
    """Process every visible message, then exit."""
    settings = _settings(ctx)
    if workers is not None:
        settings = settings.model_copy(update={"worker_count": workers})
    result = WorkerPool(settings).drain()
    _echo_pool_result(result, json_output)


# ===== dlq =====


@cli.group()
def dlq() -> None:
    """Inspect and replay dead-lettered messages."""


@dlq.command("list")
@click.option("--source", help="Only messages from this source.")
@click.option("--event-type", help="Only messages of this event type.")
@click.option(
    "--reason",
    type=click.Choice([r.value for r in DeadLetterReason]),
    help="Only messages dead-lettered for this reason.",
)
@click.option("--since", type=click.DateTime(), help="Dead-lettered at or after (UTC).")
@click.option("--until", type=click.DateTime(), help="Dead-lettered before (UTC).")
@click.option("--limit", type=click.IntRange(1, 1000), default=100, show_default=True)
@click.option("--json", "json_output", is_flag=True, help="Output as JSON.")
@click.pass_context
def dlq_list(  # noqa: PLR0913
    ctx: click.Context,
    source: str | None,
    event_type: str | None,
    reason: str | None,
    since: datetime | None,
    until: datetime | None,
    limit: int,
    json_output: bool,
) -> None:
    """List dead letters, newest first."""
    dlq_filter = DlqFilter(
        source=source,
        event_type=event_type,
        reason=DeadLetterReason(reason) if reason else None,
        since=since.replace(tzinfo=UTC) if since else None,
        until=until.replace(tzinfo=UTC) if until else None,
        limit=limit,
    )
    with _open_queue(_settings(ctx)) as queue:
        letters = DlqReprocessor(queue).list_messages(dlq_filter)

    if json_output:
        _echo_json([letter.model_dump(mode="json") for letter in letters])
        return
    if not letters:
        click.echo("Dead-letter queue is empty.")
        return
    for letter in letters:
        click.echo(
            f"{letter.message_id}  {letter.dead_lettered_at.isoformat()}  "
            f"{letter.reason.value:<22} {letter.event_type or '-':<20} "
            f"retries={letter.retry_count}  {letter.error_message or ''}"
        )


@dlq.command("show")
@click.argument("message_id")
@click.pass_context
def dlq_show(ctx: click.Context, message_id: str) -> None:
    """Show one dead letter, including its body."""
    with _open_queue(_settings(ctx)) as queue:
        try:
            letter = DlqReprocessor(queue).get_message(message_id)
        except DeadLetterNotFoundError as e:
            raise click.ClickException(str(e)) from e
    _echo_json(letter.model_dump(mode="json"))


@dlq.command("replay")
@click.argument("message_id")
@click.option(
    "--envelope",
    "envelope_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Corrected envelope JSON to replay instead of the stored body.",
)
@click.pass_context
def dlq_replay(ctx: click.Context, message_id: str, envelope_path: Path | None) -> None:
    """Re-inject a dead letter into the main queue."""
    corrected = None
    if envelope_path is not None:
        try:
            corrected = parse_envelope(envelope_path.read_text(encoding="utf-8"))
        except MalformedEnvelopeError as e:
            raise click.ClickException(f"{e.message}: {e.errors}") from e

    with _open_queue(_settings(ctx)) as queue:
        try:
            new_id = DlqReprocessor(queue).replay(message_id, corrected)
        except (DeadLetterNotFoundError, ReplayRejectedError) as e:
            raise click.ClickException(str(e)) from e
    click.echo(f"Replayed {message_id} as {new_id}")


@dlq.command("discard")
@click.argument("message_id")
@click.confirmation_option(prompt="Discard this dead letter permanently?")
@click.pass_context
def dlq_discard(ctx: click.Context, message_id: str) -> None:
    """Delete a dead letter without replaying it."""
    with _open_queue(_settings(ctx)) as queue:
        try:
            DlqReprocessor(queue).discard(message_id)
        except DeadLetterNotFoundError as e:
            raise click.ClickException(str(e)) from e
    click.echo(f"Discarded {message_id}")


@dlq.command("purge")
@click.pass_context
def dlq_purge(ctx: click.Context) -> None:
    """Delete dead letters past the retention period."""
    settings = _settings(ctx)
    with _open_queue(settings) as queue:
        purged = DlqReprocessor(queue).purge_expired()
    click.echo(
        f"Purged {purged} dead letters older than {settings.dlq_retention_days} days."
    )


# ===== queue =====


@cli.command("queue-stats")
@click.pass_context
def queue_stats(ctx: click.Context) -> None:
    """Show visible, in-flight, and dead-lettered message counts."""
    settings = _settings(ctx)
    with _open_queue(settings) as queue:
        depth = queue.depth()
    _echo_json({"queue": settings.queue_name, **depth.model_dump()})


# ===== rankings =====


@cli.group()
def rankings() -> None:
    """Read rankings from the rank store."""


@rankings.command("list")
@click.argument("user_id")
@click.argument("dish_type")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON.")
@click.pass_context
def rankings_list(
    ctx: click.Context, user_id: str, dish_type: str, json_output: bool
) -> None:
    """List a user's rankings for a dish type."""
    with RankStore(_settings(ctx).db_path) as store:
        view = QueryService(store).get_rankings(user_id, dish_type)

    if json_output:
        _echo_json(view.model_dump(mode="json"))
        return
    click.echo(f"{user_id} / {dish_type} (as of {view.as_of.isoformat()})")
    for ranking in view.rankings:
        rank = str(ranking.rank) if ranking.rank is not None else "-"
        status = ranking.taste_status.value if ranking.taste_status else ""
        click.echo(f"  {rank:>2}  {ranking.dish_id:<24} {status:<14} {ranking.ranking_id}")


@rankings.command("history")
@click.argument("ranking_id")
@click.pass_context
def rankings_history(ctx: click.Context, ranking_id: str) -> None:
    """Show a ranking's history, oldest first."""
    with RankStore(_settings(ctx).db_path) as store:
        view = QueryService(store).get_rank_history(ranking_id)
    _echo_json(view.model_dump(mode="json"))


@rankings.command("top")
@click.argument("dish_id")
@click.option("--limit", type=click.IntRange(1, 100), default=10, show_default=True)
@click.pass_context
def rankings_top(ctx: click.Context, dish_id: str, limit: int) -> None:
    """Show a dish's best placements across users."""
    with RankStore(_settings(ctx).db_path) as store:
        view = QueryService(store).get_top_ranked_across_users(dish_id, limit)
    _echo_json(view.model_dump(mode="json"))


@rankings.command("stats")
@click.argument("dish_id")
@click.pass_context
def rankings_stats(ctx: click.Context, dish_id: str) -> None:
    """Show aggregate ranking statistics of a dish."""
    with RankStore(_settings(ctx).db_path) as store:
        view = QueryService(store).get_dish_stats(dish_id)
    _echo_json(view.model_dump(mode="json"))


if __name__ == "__main__":
    cli()
