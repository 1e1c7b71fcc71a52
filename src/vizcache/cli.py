"""Typer CLI definition for vizcache."""

import asyncio
import json
import logging
from pathlib import Path

import typer

from .cache import ClearScope
from .config import load_config
from .core import (
    PERSONALIZATION,
    SPEECH,
    clear_caches,
    collect_stats,
    load_speech_requests,
    personalize_visualization,
    preload_speech,
    quota_status,
    speak_text,
    sync_remote,
)
from .errors import CacheError, QuotaError
from .models import PersonalizationContext, PersonalizationRequest

app = typer.Typer(help="Cache and quota control for generated visualization content")

_state = {"debug": False}


def _fail(message: str, error: Exception) -> None:
    """Print an error the way --debug asks for, then exit 1."""
    if _state["debug"]:
        typer.echo(f"Debug - {message}: {error!r}", err=True)
    else:
        typer.echo(f"Error: {error}", err=True)
    raise typer.Exit(1) from None


def _describe_quota_error(error: QuotaError) -> str:
    if error.wait_seconds is None:
        return str(error)
    return f"{error} (retry in {error.wait_seconds:.0f}s)"


def _run(coro, message: str):  # type: ignore[no-untyped-def]
    """Run a coroutine, turning known failures into CLI errors."""
    try:
        return asyncio.run(coro)
    except QuotaError as e:
        typer.echo(f"Error: {_describe_quota_error(e)}", err=True)
        raise typer.Exit(2) from None
    except CacheError as e:
        _fail(message, e)
    except (ValueError, KeyError) as e:
        _fail(message, e)
    except OSError as e:
        _fail(f"{message} (file system)", e)
    except Exception as e:
        if _state["debug"]:
            typer.echo(f"Debug - Unexpected error: {e!r}", err=True)
        else:
            typer.echo("Error: An unexpected error occurred", err=True)
        raise typer.Exit(1) from None


def _format_bytes(size: float) -> str:
    for unit in ("B", "KB", "MB"):
        if size < 1024:
            return f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} GB"


@app.callback()
def main(
    debug: bool = typer.Option(
        False, "--debug", help="Show verbose error messages and cache activity"
    ),
) -> None:
    """Cache and quota control for generated visualization content."""
    # Configure logging for debug mode
    if debug:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        )
    _state["debug"] = debug


@app.command()
def speak(
    text: str = typer.Argument(..., help="Text to synthesize"),
    output: Path | None = typer.Option(
        None, "-o", "--output", help="Copy the audio to this file"
    ),
    voice: str | None = typer.Option(
        None, "-v", "--voice", help="Voice ID (from config if omitted)"
    ),
    model: str | None = typer.Option(
        None, "-m", "--model", help="Speech model ID (from config if omitted)"
    ),
    speed: float = typer.Option(1.0, "--speed", help="Speaking rate (0.25-4.0)"),
    sport: str | None = typer.Option(None, "--sport", help="Personalization sport"),
) -> None:
    """Fetch synthesized speech, generating it on a cache miss."""
    context = PersonalizationContext(sport=sport) if sport else None
    handle = _run(
        speak_text(
            text,
            voice=voice,
            model=model,
            speed=speed,
            context=context,
            output_file=str(output) if output else None,
            config=load_config(),
        ),
        "Speech fetch failed",
    )

    if output:
        typer.echo(f"Audio saved to {output} ({handle.source.value})")
    else:
        typer.echo(f"{handle.path or '<inline>'} ({handle.source.value})")


@app.command()
def personalize(
    visualization_id: str = typer.Argument(..., help="Visualization template ID"),
    steps_file: Path = typer.Option(
        ..., "-f", "--file", help="Base step texts, one per line"
    ),
    title: str | None = typer.Option(None, "--title", help="Visualization title"),
    sport: str | None = typer.Option(None, "--sport"),
    event: str | None = typer.Option(None, "--event", help="Track and field event"),
    level: str | None = typer.Option(None, "--level", help="Experience level"),
    focus: str | None = typer.Option(None, "--focus", help="Primary focus"),
    tone: str = typer.Option("motivational", "--tone"),
    length: str = typer.Option("medium", "--length"),
    time_until: str | None = typer.Option(None, "--time-until", help="Time until event"),
    mood: str | None = typer.Option(None, "--mood"),
    model: str | None = typer.Option(
        None, "-m", "--model", help="LLM model ID (from config if omitted)"
    ),
    as_json: bool = typer.Option(False, "--json", help="Print the raw JSON artifact"),
) -> None:
    """Fetch a personalized visualization, generating it on a cache miss."""
    try:
        base_content = [
            line.strip() for line in steps_file.read_text().splitlines() if line.strip()
        ]
        request = PersonalizationRequest(
            visualization_id=visualization_id,
            context=PersonalizationContext(
                sport=sport,
                track_field_event=event,
                experience_level=level,
                primary_focus=focus,
            ),
            base_content=tuple(base_content),
            title=title,
            tone=tone,
            length=length,
            time_until_event=time_until,
            mood=mood,
            model=model,
        )
    except (OSError, ValueError) as e:
        _fail("Invalid personalization request", e)

    content, handle = _run(
        personalize_visualization(request, config=load_config()),
        "Personalization failed",
    )

    if as_json:
        typer.echo(content.to_bytes().decode("utf-8"))
        return

    typer.echo(f"{content.visualization_id} ({handle.source.value}, {content.model})")
    for i, step in enumerate(content.steps, 1):
        duration = f" [{step.duration}s]" if step.duration else ""
        typer.echo(f"\n{i}.{duration} {step.content}")


@app.command()
def preload(
    requests_file: Path = typer.Argument(..., help="JSON-lines file of speech requests"),
) -> None:
    """Warm the speech cache from a batch of requests."""
    config = load_config()
    try:
        requests = load_speech_requests(
            requests_file, voice=config.speech.voice, model=config.speech.model
        )
    except (OSError, ValueError) as e:
        _fail("Could not read requests", e)

    def on_progress(completed, total, result):  # type: ignore[no-untyped-def]
        if result.ok:
            status = result.handle.source.value
        elif result.skipped:
            status = "skipped"
        else:
            status = f"failed: {result.error}"
        typer.echo(f"[{completed}/{total}] {result.key or '-'} {status}")

    summary = _run(
        preload_speech(requests, on_progress=on_progress, config=config),
        "Preload failed",
    )
    counts = summary.as_dict()
    typer.echo(
        f"Done: {counts['succeeded']}/{counts['total']} ready "
        f"({counts['generated']} generated, {counts['cache_hits']} cached), "
        f"{counts['failed']} failed, {counts['skipped']} skipped"
    )
    if counts["failed"] or counts["skipped"]:
        raise typer.Exit(1)


@app.command()
def stats(
    as_json: bool = typer.Option(False, "--json", help="Print raw statistics"),
) -> None:
    """Show tier usage, hit rates and quota usage."""
    report = _run(collect_stats(config=load_config()), "Could not collect stats")
    if as_json:
        typer.echo(json.dumps(report, indent=2, default=str))
        return

    for name, cache in report.items():
        memory = cache["memory"]
        local = cache["local"]
        typer.echo(f"=== {name} ({cache['generator']}) ===")
        typer.echo(
            f"Memory: {memory['entries']} entries, "
            f"{_format_bytes(memory['used_bytes'])} / {_format_bytes(memory['max_bytes'])}"
        )
        if "error" in local:
            typer.echo(f"Local: unavailable ({local['error']})")
        else:
            typer.echo(
                f"Local: {local['entries']} entries, "
                f"{_format_bytes(local['used_bytes'])} / {_format_bytes(local['max_bytes'])}, "
                f"{local['pending_uploads']} not uploaded"
            )
        typer.echo(f"Remote: {'enabled' if cache['remote'] is not None else 'disabled'}")
        quota = cache["quota"]
        if quota:
            typer.echo(
                f"Quota: {quota['used']}/{quota['limit']} ({quota['percentage']:.1f}%), "
                f"{quota['state']}"
            )
        typer.echo("")


@app.command()
def quota(
    reset: str | None = typer.Option(
        None, "--reset", help=f"Reset a cache's quota ({SPEECH} or {PERSONALIZATION})"
    ),
) -> None:
    """Show daily quota usage per generator."""
    report = _run(quota_status(reset=reset, config=load_config()), "Quota check failed")
    for name, status in report.items():
        typer.echo(f"=== {name} ({status['provider']}, {status['tier']} tier) ===")
        typer.echo(f"Used: {status['used']:,}/{status['limit']:,} ({status['percentage']:.1f}%)")
        typer.echo(f"State: {status['state']}")
        typer.echo(f"Resets at: {status['reset_at']}")
        typer.echo(f"Minimum interval: {status['min_interval']}s")
        typer.echo("")


@app.command()
def clear(
    scope: ClearScope = typer.Option(
        ClearScope.ALL, "--scope", help="Tiers to clear (remote is never cleared)"
    ),
    cache: str | None = typer.Option(
        None, "--cache", help=f"Only this cache ({SPEECH} or {PERSONALIZATION})"
    ),
) -> None:
    """Empty cache tiers."""
    removed = _run(
        clear_caches(scope, name=cache, config=load_config()), "Clear failed"
    )
    for name, count in removed.items():
        typer.echo(f"{name}: removed {count} entries ({scope.value})")


@app.command()
def sync() -> None:
    """Upload local entries the remote store does not have yet."""
    report = _run(sync_remote(config=load_config()), "Sync failed")
    failed = 0
    for name, counts in report.items():
        typer.echo(f"{name}: uploaded {counts['uploaded']}, failed {counts['failed']}")
        failed += counts["failed"]
    if failed:
        raise typer.Exit(1)
