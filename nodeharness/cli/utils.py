"""CLI utility decorators and helpers."""

import functools
from collections.abc import Callable
from pathlib import Path
from typing import Any

import click
from rich.console import Console

from nodeharness.config import HarnessConfig, load_config
from nodeharness.logging_config import get_logger
from nodeharness.utils.maybe import Maybe

log = get_logger(__name__)
console = Console()


def handle_exceptions(
    specific_exceptions: dict[type[Exception], str] | None = None,
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            try:
                return func(*args, **kwargs)
            except (click.exceptions.Exit, click.ClickException, click.Abort):
                raise
            except Exception as e:
                ctx = Maybe.find(lambda arg: isinstance(arg, click.Context), args)

                # Check for specific exception handling
                if specific_exceptions:
                    for exc_type, message in specific_exceptions.items():
                        if isinstance(e, exc_type):
                            console.print(f"❌ {message}: {e}", style="bold red")
                            ctx.tap(lambda c: c.exit(1))
                            return None

                # Log and display unhandled errors
                log.exception("Unexpected error", command=func.__name__)
                console.print(f"❌ Unexpected error: {e}", style="bold red")
                ctx.tap(lambda c: c.exit(1))
                raise click.Abort() from e

        return wrapper

    return decorator


def config_options(func: Callable[..., Any]) -> Callable[..., Any]:
    """Adds `--config` and repeatable `--set key=value` to a command."""
    func = click.option(
        "--set",
        "overrides",
        multiple=True,
        metavar="KEY=VALUE",
        help="Override a config value, e.g. --set timeouts.readiness=600",
    )(func)
    return click.option(
        "--config",
        "config_path",
        type=click.Path(path_type=Path, dir_okay=False),
        help="YAML harness config file",
    )(func)


def load_cli_config(config_path: Path | None, overrides: tuple[str, ...]) -> HarnessConfig:
    cfg = load_config(config_path, overrides)
    log.debug("Loaded harness config", path=str(config_path) if config_path else None, overrides=list(overrides))
    return cfg
