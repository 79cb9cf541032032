"""mnemos CLI: root commands and subgroup registration."""

import asyncio
import json
import logging
import os
import sys
from datetime import date, datetime
from pathlib import Path
from typing import Annotated, Any

import typer

from mnemos.application.config import AppConfig, resolve_config
from mnemos.domain.errors import MnemosError
from mnemos.domain.models import DeckSelector, FlagReason
from mnemos.domain.stats.models import AnalyticsWindow, Classification

# ---------------------------------------------------------------------------
# Root app
# ---------------------------------------------------------------------------

app = typer.Typer(
    help="mnemos: spaced-repetition study core.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(levelname)s:%(name)s:%(message)s",
    stream=sys.stderr,
)
logger = logging.getLogger(__name__)

DATE_FORMATS = ["%Y-%m-%d", "%Y-%m-%dT%H:%M:%S"]

# ---------------------------------------------------------------------------
# Register subgroups
# ---------------------------------------------------------------------------

config_app = typer.Typer(help="Manage mnemos configuration.")
app.add_typer(config_app, name="config")

deck_app = typer.Typer(help="Subject tree and deck membership.", no_args_is_help=True)
app.add_typer(deck_app, name="deck")

study_app = typer.Typer(help="Build sessions and submit ratings.", no_args_is_help=True)
app.add_typer(study_app, name="study")

analytics_app = typer.Typer(help="Curator analytics.", no_args_is_help=True)
app.add_typer(analytics_app, name="analytics")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def humanize_error(msg: str) -> str:
    """Translate YAML and store errors into something a curator can act on."""
    if "expected <block end>, but found" in msg:
        return (
            "Indentation Error: a catalog entry is probably mis-indented.\n"
            f"Original: {msg}"
        )
    if "scanner error" in msg or "mapping values are not allowed" in msg:
        return (
            "Syntax Error: the catalog is not valid YAML (check colons and quotes).\n"
            f"Original: {msg}"
        )
    if "did not find expected key" in msg:
        return f"Syntax Error: a list item or key is malformed.\nOriginal: {msg}"
    if "found duplicate key" in msg:
        return f"Duplicate Key: the same field appears twice in one entry.\nOriginal: {msg}"
    if "database is locked" in msg:
        return f"Database Busy: another mnemos process holds the database.\nOriginal: {msg}"
    return msg


def _resolve_with_overrides(ctx: typer.Context, **overrides: Any) -> AppConfig:
    obj = ctx.obj or {}
    merged = {
        "catalog_path": obj.get("catalog"),
        "database_path": obj.get("database"),
        "verbose": obj.get("verbose_bonus"),
        **overrides,
    }
    return resolve_config(merged)


def _service_for(config: AppConfig):
    from mnemos.application.factory import build_study_service
    from mnemos.application.utils.logging_setup import setup_logging

    setup_logging(config.log_dir, config.verbose)
    if config.database_path is None:
        logger.warning("No database configured; progress will not outlive this command")
    try:
        return build_study_service(config)
    except MnemosError as e:
        typer.secho(f"{e.code}: {humanize_error(e.message)}", fg="red", err=True)
        raise typer.Exit(1) from None


def _run(coro):
    """Run a coroutine, turning domain errors into a clean exit code."""
    try:
        return asyncio.run(coro)
    except MnemosError as e:
        typer.secho(f"{e.code}: {humanize_error(e.message)}", fg="red", err=True)
        raise typer.Exit(1) from None


def _jsonable(value: Any) -> Any:
    if isinstance(value, date | datetime):
        return value.isoformat()
    if hasattr(value, "value"):
        return value.value
    return value


# ---------------------------------------------------------------------------
# Global callback
# ---------------------------------------------------------------------------


@app.callback()
def main_callback(
    ctx: typer.Context,
    verbose: Annotated[
        int,
        typer.Option(
            "--verbose", "-v", count=True, help="Increase verbosity. Repeat for more detail."
        ),
    ] = 1,
    catalog: Annotated[
        Path | None, typer.Option("--catalog", help="Content catalog YAML file.")
    ] = None,
    database: Annotated[
        Path | None, typer.Option("--db", help="SQLite database for learner progress.")
    ] = None,
):
    """Global settings for mnemos."""
    ctx.ensure_object(dict)
    ctx.obj["verbose_bonus"] = verbose
    ctx.obj["catalog"] = catalog
    ctx.obj["database"] = database


# ---------------------------------------------------------------------------
# Root commands
# ---------------------------------------------------------------------------


@app.command()
def serve(
    ctx: typer.Context,
    port: Annotated[int | None, typer.Option(help="Port to bind the server to.")] = None,
    host: Annotated[str | None, typer.Option(help="Host to bind the server to.")] = None,
    reload: Annotated[bool, typer.Option(help="Enable auto-reload.")] = False,
):
    """Run the HTTP server."""
    import uvicorn

    config = _resolve_with_overrides(ctx, host=host, port=port)
    # The server resolves its own config; hand the CLI paths over via the environment.
    if config.catalog_path:
        os.environ["MNEMOS_CATALOG_PATH"] = str(config.catalog_path)
    if config.database_path:
        os.environ["MNEMOS_DATABASE_PATH"] = str(config.database_path)
    uvicorn.run("mnemos.server:app", host=config.host, port=config.port, reload=reload)


# ---------------------------------------------------------------------------
# Config subgroup
# ---------------------------------------------------------------------------


@config_app.command("show")
def config_show(ctx: typer.Context):
    """Display final resolved configuration, including global overrides."""
    config = _resolve_with_overrides(ctx)
    d = {k: str(v) if isinstance(v, Path) else v for k, v in config.model_dump(mode="json").items()}
    typer.echo(json.dumps(d, indent=2))


# ---------------------------------------------------------------------------
# Deck subgroup
# ---------------------------------------------------------------------------


@deck_app.command("resolve")
def deck_resolve(
    ctx: typer.Context,
    subject_id: Annotated[str, typer.Argument(help="Subject whose subtree to resolve.")],
    json_output: Annotated[bool, typer.Option("--json", help="Output as JSON.")] = False,
):
    """Recompute and print the cards under a subject and its descendants."""
    service = _service_for(_resolve_with_overrides(ctx))

    try:
        cards = sorted(service.resolve_deck(subject_id))
    except MnemosError as e:
        typer.secho(f"{e.code}: {e.message}", fg="red", err=True)
        raise typer.Exit(1) from None
    if json_output:
        typer.echo(json.dumps({"subject_id": subject_id, "card_ids": cards}, indent=2))
        return
    typer.echo(f"{subject_id}: {len(cards)} card(s)")
    for card_id in cards:
        typer.echo(f"  {card_id}")


@deck_app.command("tree")
def deck_tree(ctx: typer.Context):
    """Print the subject tree with card counts."""
    service = _service_for(_resolve_with_overrides(ctx))
    resolver = service.resolver

    subjects = resolver.subjects()
    if not subjects:
        typer.secho("No subjects loaded.", fg="yellow")
        return
    for subject in subjects:
        indent = "  " * (subject.depth - 1)
        count = len(resolver.resolve_deck_membership(subject.id))
        typer.echo(f"{indent}{subject.name} ({subject.id}) [{count}]")


# ---------------------------------------------------------------------------
# Study subgroup
# ---------------------------------------------------------------------------


@study_app.command("next")
def study_next(
    ctx: typer.Context,
    learner_id: Annotated[str, typer.Argument(help="Learner to build a session for.")],
    deck: Annotated[list[str] | None, typer.Option(help="Deck id (repeatable).")] = None,
    subject: Annotated[list[str] | None, typer.Option(help="Subject id (repeatable).")] = None,
    json_output: Annotated[bool, typer.Option("--json", help="Output as JSON.")] = False,
):
    """Show the next cards for a learner."""
    service = _service_for(_resolve_with_overrides(ctx))
    result = _run(service.next_cards(learner_id, DeckSelector.of(deck, subject)))

    if json_output:
        typer.echo(
            json.dumps(
                {
                    "session_token": result.session_token,
                    "limit_reached": result.limit_reached,
                    "cards": [
                        {k: _jsonable(v) for k, v in vars(view).items()} for view in result.cards
                    ],
                },
                indent=2,
            )
        )
        return

    if result.limit_reached:
        typer.secho("Daily limit reached. Come back tomorrow.", fg="yellow")
        return
    if not result.cards:
        typer.secho("Nothing to study right now.", fg="green")
        return
    typer.echo(f"Session {result.session_token}: {len(result.cards)} card(s)")
    for view in result.cards:
        label = f" [{view.subject_label}]" if view.subject_label else ""
        typer.echo(f"  {view.card_id} ({view.state.value}){label}: {view.front}")


@study_app.command("rate")
def study_rate(
    ctx: typer.Context,
    learner_id: Annotated[str, typer.Argument(help="Learner submitting the rating.")],
    card_id: Annotated[str, typer.Argument(help="Card being rated.")],
    rating: Annotated[str, typer.Argument(help="again, hard, good or easy.")],
    deck: Annotated[list[str] | None, typer.Option(help="Deck id (repeatable).")] = None,
    subject: Annotated[list[str] | None, typer.Option(help="Subject id (repeatable).")] = None,
):
    """Rate one card, opening a fresh session for the learner."""
    service = _service_for(_resolve_with_overrides(ctx))

    async def run():
        session = await service.next_cards(learner_id, DeckSelector.of(deck, subject))
        try:
            return await service.submit_rating(
                learner_id, card_id, rating, session.session_token
            )
        finally:
            service.end_session(session.session_token)

    receipt = _run(run())
    if not receipt.accepted:
        typer.secho(f"Rating for {card_id} withheld: daily limit reached.", fg="yellow")
        raise typer.Exit(2)

    due = receipt.new_due_at.isoformat() if receipt.new_due_at else "-"
    typer.secho(f"{card_id}: {receipt.state.value}, next due {due}", fg="green")
    if receipt.limit_reached:
        typer.secho("Daily limit reached.", fg="yellow")
    for days in receipt.streak_milestones:
        typer.secho(f"Streak milestone: {days} days in a row!", fg="cyan")


@study_app.command("flag")
def study_flag(
    ctx: typer.Context,
    learner_id: Annotated[str, typer.Argument(help="Learner raising the flag.")],
    card_id: Annotated[str, typer.Argument(help="Card being flagged.")],
    reason: Annotated[
        FlagReason, typer.Option(help="Why the card is wrong or unclear.")
    ] = FlagReason.OTHER,
    comment: Annotated[str | None, typer.Option(help="Optional details.")] = None,
):
    """Flag a card for curator review."""
    service = _service_for(_resolve_with_overrides(ctx))
    receipt = _run(service.flag_card(learner_id, card_id, reason, comment))

    typer.secho(f"Flagged {card_id} ({receipt.flag_count} flag(s))", fg="green")
    if receipt.held:
        typer.secho(f"{card_id} is held for review and will not be offered.", fg="yellow")


@study_app.command("streak")
def study_streak(
    ctx: typer.Context,
    learner_id: Annotated[str, typer.Argument(help="Learner to report on.")],
    json_output: Annotated[bool, typer.Option("--json", help="Output as JSON.")] = False,
):
    """Show a learner's consecutive-day study streak."""
    service = _service_for(_resolve_with_overrides(ctx))
    s = _run(service.streak(learner_id))

    if json_output:
        typer.echo(json.dumps({k: _jsonable(v) for k, v in vars(s).items()}, indent=2))
        return

    if not s.active:
        typer.secho(f"{learner_id} has no active streak (longest: {s.longest}).", fg="yellow")
        return
    typer.secho(f"{learner_id}: {s.current}-day streak (longest: {s.longest})", fg="green")
    if s.next_milestone is not None:
        typer.echo(f"Next milestone: {s.next_milestone} days")


# ---------------------------------------------------------------------------
# Analytics subgroup
# ---------------------------------------------------------------------------


@analytics_app.command("problems")
def analytics_problems(
    ctx: typer.Context,
    start: Annotated[
        datetime | None,
        typer.Option(help="Window start (inclusive).", formats=DATE_FORMATS),
    ] = None,
    end: Annotated[
        datetime | None,
        typer.Option(help="Window end (exclusive).", formats=DATE_FORMATS),
    ] = None,
    classification: Annotated[
        Classification | None, typer.Option(help="Only cards with this classification.")
    ] = None,
    limit: Annotated[int | None, typer.Option(help="Maximum cards to list.")] = None,
    json_output: Annotated[bool, typer.Option("--json", help="Output as JSON.")] = False,
):
    """List problem cards, worst first."""
    service = _service_for(_resolve_with_overrides(ctx))
    window = AnalyticsWindow(start, end)
    scores = _run(service.problem_scores(window, classification, limit))

    if json_output:
        typer.echo(
            json.dumps(
                {s.card_id: {k: _jsonable(v) for k, v in vars(s).items()} for s in scores},
                indent=2,
            )
        )
        return

    if not scores:
        typer.secho("No rated cards in this window.", fg="yellow")
        return
    colors = {"high": "red", "medium": "yellow", "low": "green"}
    for s in scores:
        typer.secho(
            f"{s.problem_score:6.2f}  {s.card_id}  {s.classification.value:<8}"
            f" lapse={s.lapse_rate:.2f} drift={s.avg_ease_drift:+.2f}"
            f" stddev={s.success_rate_stddev:.2f} n={s.total_ratings}",
            fg=colors[s.severity.value],
        )
