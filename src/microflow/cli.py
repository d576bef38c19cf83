"""CLI entry point for microflow."""

from __future__ import annotations

import json
from pathlib import Path

import click

from .core.config import load_settings
from .core.errors import MicroflowError
from .core.models import Candle


def _load_candles(path: Path) -> list[Candle]:
    """Read candles from JSON: Binance kline arrays or candle objects."""
    from .data.normalizer import normalize_kline

    raw = json.loads(path.read_text())
    if not isinstance(raw, list):
        raise click.BadParameter("expected a JSON array of candles", param_hint="CANDLES_JSON")

    candles: list[Candle] = []
    for item in raw:
        if isinstance(item, list):
            candles.append(normalize_kline(item))
        else:
            candles.append(Candle.model_validate(item))
    return candles


@click.group()
@click.option("--config", "config_path", default=None, help="TOML config file path")
@click.option("--log-level", default=None, help="Override log level")
@click.pass_context
def main(ctx: click.Context, config_path: str | None, log_level: str | None) -> None:
    """Market microstructure analytics."""
    from .observability.logger import setup_logging

    overrides: dict = {}
    if log_level:
        overrides["observability"] = {"log_level": log_level}
    settings = load_settings(config_path, overrides=overrides)
    setup_logging(settings.observability.log_level, settings.observability.log_format)
    ctx.obj = settings


@main.command()
@click.argument("candles_json", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--tick-size", type=float, default=None, help="Profile tick size")
@click.option("--session-start", default=None, help="Session start (HH:MM UTC)")
@click.option("--session-end", default=None, help="Session end (HH:MM UTC)")
@click.option("--long-term", is_flag=True, help="Whole history, coarser ticks")
@click.pass_obj
def profile(
    settings,
    candles_json: Path,
    tick_size: float | None,
    session_start: str | None,
    session_end: str | None,
    long_term: bool,
) -> None:
    """Compute profile, session levels and auction context for CANDLES_JSON."""
    from .session import ProfileSession

    updates: dict = {}
    if tick_size is not None:
        updates["tick_size"] = tick_size
    if session_start:
        updates["session_start"] = session_start
    if session_end:
        updates["session_end"] = session_end

    try:
        profile_cfg = settings.profile.model_validate(
            {**settings.profile.model_dump(), **updates}
        )
        session = ProfileSession(profile_cfg, settings.auction, long_term=long_term)
        snapshot = session.on_candles(_load_candles(candles_json))
    except (MicroflowError, ValueError) as exc:
        raise click.ClickException(str(exc)) from exc

    out = snapshot.model_dump(mode="json", exclude={"candles"})
    click.echo(json.dumps(out, indent=2))


@main.command("config")
@click.pass_obj
def show_config(settings) -> None:
    """Print the effective settings."""
    click.echo(settings.model_dump_json(indent=2))


if __name__ == "__main__":
    main()
