"""memora CLI: study from the local mirror, sync it, and inspect it."""

import asyncio
import json
import logging
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Annotated, Any, NoReturn

import typer

from memora.application.config import AppConfig, resolve_config
from memora.domain.errors import (
    CardNotFoundError,
    DeckNotFoundError,
    MirrorCorruptError,
    ServerUnavailableError,
)

# ---------------------------------------------------------------------------
# Root app
# ---------------------------------------------------------------------------

app = typer.Typer(
    help="memora: spaced-repetition study with an offline mirror.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

config_app = typer.Typer(help="Manage memora configuration.")
app.add_typer(config_app, name="config")

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(levelname)s:%(name)s:%(message)s",
    stream=sys.stderr,
)
logger = logging.getLogger(__name__)

LOG_LEVELS = {0: logging.WARNING, 1: logging.INFO}


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
    ] = 0,
    mirror: Annotated[Path | None, typer.Option(help="Path to the local mirror database.")] = None,
    timezone: Annotated[str | None, typer.Option(help="IANA study timezone.")] = None,
    server_url: Annotated[str | None, typer.Option(help="Authoritative server URL.")] = None,
):
    """Global settings for memora."""
    ctx.ensure_object(dict)
    ctx.obj["overrides"] = {
        "mirror_path": mirror,
        "timezone": timezone,
        "server_url": server_url,
        "verbose": verbose or None,
    }
    logging.getLogger().setLevel(LOG_LEVELS.get(verbose, logging.DEBUG))


def _config(ctx: typer.Context) -> AppConfig:
    overrides = (ctx.obj or {}).get("overrides", {})
    config = resolve_config(overrides)
    # -v wins when given; otherwise MEMORA_VERBOSE or the config file decide.
    logging.getLogger().setLevel(LOG_LEVELS.get(config.verbose, logging.DEBUG))
    return config


def _store(config: AppConfig):
    from memora.application.factory import get_mirror_store

    return get_mirror_store(config)


def _emit(data: Any) -> None:
    typer.echo(json.dumps(data, indent=2, default=str))


def _fail(message: str, code: int = 1) -> NoReturn:
    typer.secho(f"❌ {message}", fg="red", err=True)
    raise typer.Exit(code=code)


# ---------------------------------------------------------------------------
# Study commands
# ---------------------------------------------------------------------------


@app.command("next")
def next_card(
    ctx: typer.Context,
    deck: Annotated[str | None, typer.Option("--deck", "-d", help="Only study this deck.")] = None,
    exclude_note: Annotated[
        list[str] | None, typer.Option("--exclude-note", help="Skip cards of this note.")
    ] = None,
    ignore_daily_limit: Annotated[
        bool, typer.Option("--ignore-daily-limit", help="Show new cards past today's limit.")
    ] = False,
    json_output: Annotated[bool, typer.Option("--json", help="Output as JSON.")] = False,
):
    """Show the next card due, with the interval each answer would give."""
    from memora.application.factory import get_study_service

    config = _config(ctx)
    with _store(config) as store:
        service = get_study_service(config, store)
        try:
            result = service.get_next_card(
                deck, exclude_note or (), ignore_daily_limit=ignore_daily_limit
            )
        except DeckNotFoundError as e:
            _fail(str(e))

    counts = asdict(result.counts)
    if json_output:
        card = result.card
        card_data = None
        if card is not None:
            card_data = {
                "id": card.id,
                "note_id": card.note_id,
                "deck_id": card.deck_id,
                "queue": card.queue.name,
            }
        _emit(
            {
                "card": card_data,
                "counts": counts,
                "capped_new": result.capped_new,
                "previews": {p.rating.name.lower(): p.label for p in result.interval_previews},
            }
        )
        return

    typer.echo(f"New: {counts['new']}  Learning: {counts['learning']}  Review: {counts['review']}")
    if result.card is None:
        if result.capped_new:
            typer.echo(
                f"Nothing due. {result.capped_new} new cards are waiting; "
                "use --ignore-daily-limit to study ahead."
            )
        else:
            typer.echo("Nothing due. 🎉")
        return
    typer.secho(f"{result.card.id} ({result.card.card_type.value}, {result.card.queue.name})", bold=True)
    typer.echo("  ".join(f"{p.rating.name.title()}: {p.label}" for p in result.interval_previews))


@app.command()
def review(
    ctx: typer.Context,
    card_id: Annotated[str, typer.Argument(help="Card to rate.")],
    rating: Annotated[str, typer.Argument(help="again|hard|good|easy or 1-4.")],
    time_ms: Annotated[int | None, typer.Option("--time-ms", help="Time spent answering.")] = None,
    answer: Annotated[str | None, typer.Option("--answer", help="What the learner typed.")] = None,
    session: Annotated[str | None, typer.Option("--session", help="Study session id.")] = None,
):
    """Rate a card. The result is stored locally and pushed on the next sync."""
    from memora.application.factory import get_study_service

    config = _config(ctx)
    with _store(config) as store:
        service = get_study_service(config, store)
        try:
            outcome = service.submit_review(
                card_id, rating, time_spent_ms=time_ms, user_answer=answer, session_id=session
            )
        except (CardNotFoundError, DeckNotFoundError) as e:
            _fail(str(e))
        except ValueError as e:
            _fail(f"Invalid rating {rating!r}: {e}")

    typer.echo(
        f"{card_id} -> {outcome.next_queue.name}, due {outcome.next_due}"
        + (f" (interval {outcome.next_interval}d)" if outcome.next_interval else "")
    )


@app.command()
def counts(
    ctx: typer.Context,
    deck: Annotated[str | None, typer.Option("--deck", "-d", help="Only this deck.")] = None,
):
    """Show due counts per queue."""
    from memora.application.factory import get_study_service

    config = _config(ctx)
    with _store(config) as store:
        service = get_study_service(config, store)
        try:
            if deck is None:
                _emit(service.describe())
            else:
                _emit(asdict(service.get_queue_counts(deck)))
        except DeckNotFoundError as e:
            _fail(str(e))


# ---------------------------------------------------------------------------
# Sync commands
# ---------------------------------------------------------------------------


async def _run_sync(config: AppConfig, full: bool):
    from memora.application.factory import get_reconciler

    with _store(config) as store:
        reconciler = get_reconciler(config, store)
        try:
            if full:
                return await reconciler.full_resync()
            return await reconciler.sync()
        finally:
            await reconciler.gateway.close()


@app.command()
def sync(ctx: typer.Context):
    """Push pending reviews and pull changes from the server."""
    config = _config(ctx)
    try:
        report = asyncio.run(_run_sync(config, full=False))
    except MirrorCorruptError as e:
        _fail(str(e), code=2)

    if report.errors:
        typer.secho("⚠️  Sync incomplete, working offline:", fg="yellow", err=True)
        for error in report.errors:
            typer.echo(f"  - {error}", err=True)
    typer.echo(
        f"Pushed {report.pushed}, pulled {report.cards} cards and {report.events} events"
        + (" (full resync)" if report.resynced else "")
    )


@app.command()
def resync(
    ctx: typer.Context,
    force: Annotated[
        bool, typer.Option("--force", "-f", help="Resync even if the mirror looks healthy.")
    ] = False,
):
    """Rebuild the mirror from the server, keeping unpushed reviews."""
    config = _config(ctx)
    if not force:
        with _store(config) as store:
            problems = store.check_integrity()
        if not problems:
            typer.echo("Mirror is consistent; use --force to resync anyway.")
            return
        typer.echo(f"Found {len(problems)} problems, resyncing.")
    try:
        report = asyncio.run(_run_sync(config, full=True))
    except ServerUnavailableError as e:
        _fail(f"Can't reach server: {e}")
    except MirrorCorruptError as e:
        _fail(str(e), code=2)
    typer.echo(f"✅ Resynced {report.cards} cards and {report.events} events")


# ---------------------------------------------------------------------------
# Maintenance
# ---------------------------------------------------------------------------


@app.command()
def verify(
    ctx: typer.Context,
    fix: Annotated[bool, typer.Option("--fix", help="Rewrite cards that disagree with replay.")] = False,
):
    """Check every card against a replay of its review history."""
    from memora.application.rebuild import rebuild_card, verify_stored_card

    config = _config(ctx)
    mismatched = []
    with _store(config) as store:
        for card_id in store.card_ids():
            result = verify_stored_card(store, card_id, config.tz)
            if not result.matches:
                mismatched.append(card_id)
                typer.echo(
                    f"✗ {card_id}: stored {result.stored.queue.name}, "
                    f"replay gives {result.computed.queue.name}"
                )
                if fix:
                    rebuild_card(store, card_id, config.tz)

    if not mismatched:
        typer.echo("✅ All cards match their review history.")
    elif fix:
        typer.echo(f"Rebuilt {len(mismatched)} cards.")
    else:
        typer.echo(f"{len(mismatched)} cards differ; run with --fix to rebuild them.")
        raise typer.Exit(code=1)


@app.command()
def stats(ctx: typer.Context):
    """Show mirror statistics."""
    from memora.application.factory import get_study_service

    config = _config(ctx)
    with _store(config) as store:
        data = asdict(store.stats())
        data["schema_version"] = store.schema_version()
        service = get_study_service(config, store)
        data["retrievability"] = {
            deck.id: service.average_retrievability(deck.id) for deck in store.list_decks()
        }
    _emit(data)


@app.command()
def serve(
    port: Annotated[int, typer.Option(help="Port to bind the server to.")] = 8777,
    host: Annotated[str, typer.Option(help="Host to bind the server to.")] = "127.0.0.1",
    reload: Annotated[bool, typer.Option(help="Enable auto-reload.")] = False,
):
    """Run the reference scheduling server."""
    import uvicorn

    uvicorn.run("memora.server:app", host=host, port=port, reload=reload)


# ---------------------------------------------------------------------------
# Config subgroup
# ---------------------------------------------------------------------------


@config_app.command("show")
def config_show(ctx: typer.Context):
    """Print the merged configuration."""
    config = _config(ctx)
    d = {k: str(v) if isinstance(v, Path) else v for k, v in config.model_dump().items()}
    typer.echo(json.dumps(d, indent=2))
