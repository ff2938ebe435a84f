"""Command-line entry point (Typer-based).

Provides :func:`build_cli`, which constructs a Typer app that parses
options (``--version``, ``--log-level``, ``--log-format``,
``--env-file``, ``--host``, ``--port``), configures logging and serves
the FastAPI application under uvicorn.
"""

from __future__ import annotations

import logging
import sys
from typing import Annotated, get_args

import typer
import uvicorn
from pydantic import ValidationError

from farmhub._http import create_app
from farmhub._logging import configure_logging
from farmhub._settings import LoggingSettings, Settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Exit codes
# ---------------------------------------------------------------------------

EXIT_OK = 0
EXIT_CONFIG_ERROR = 1
EXIT_RUNTIME_ERROR = 3

# ---------------------------------------------------------------------------
# Allowed values (extracted from LoggingSettings Literal types)
# ---------------------------------------------------------------------------

_VALID_LOG_LEVELS: tuple[str, ...] = get_args(
    LoggingSettings.model_fields["level"].annotation,
)
_VALID_LOG_FORMATS: tuple[str, ...] = get_args(
    LoggingSettings.model_fields["format"].annotation,
)


def build_cli(
    *,
    name: str = "farmhub",
    version: str = "0.0.0",
    settings_class: type[Settings] = Settings,
) -> typer.Typer:
    """Construct the ``farmhub`` Typer CLI.

    Args:
        name: Program name shown in ``--version`` and help output.
        version: Version string shown by ``--version``.
        settings_class: Settings model to instantiate.  Tests pass an
            isolated subclass.

    Returns:
        A configured :class:`typer.Typer` ready to invoke.
    """
    cli = typer.Typer(
        help=f"{name} v{version} — smart-farm device broker (MQTT ↔ WebSocket)",
    )

    @cli.callback(invoke_without_command=True)
    def main(
        version_flag: Annotated[
            bool | None,
            typer.Option(
                "--version",
                is_eager=True,
                help="Show version and exit.",
            ),
        ] = None,
        log_level: Annotated[
            str | None,
            typer.Option("--log-level", help="Override log level."),
        ] = None,
        log_format: Annotated[
            str | None,
            typer.Option("--log-format", help="Override log format."),
        ] = None,
        env_file: Annotated[
            str,
            typer.Option("--env-file", help="Path to .env file."),
        ] = ".env",
        host: Annotated[
            str | None,
            typer.Option("--host", help="Override HTTP bind address."),
        ] = None,
        port: Annotated[
            int | None,
            typer.Option("--port", help="Override HTTP port."),
        ] = None,
    ) -> None:
        # -- version ---------------------------------------------------------
        if version_flag:
            typer.echo(f"{name} v{version}")
            raise typer.Exit()

        # -- validate enum-like options -------------------------------------
        if log_level is not None and log_level.upper() not in _VALID_LOG_LEVELS:
            raise typer.BadParameter(
                f"Invalid log level '{log_level}'. "
                f"Choose from: {', '.join(_VALID_LOG_LEVELS)}",
                param_hint="'--log-level'",
            )

        if log_format is not None and log_format.lower() not in _VALID_LOG_FORMATS:
            raise typer.BadParameter(
                f"Invalid log format '{log_format}'. "
                f"Choose from: {', '.join(_VALID_LOG_FORMATS)}",
                param_hint="'--log-format'",
            )

        # -- build settings -------------------------------------------------
        try:
            settings = settings_class(_env_file=env_file)  # type: ignore[call-arg]
        except ValidationError as exc:
            logger.error("Configuration error: %s", exc)
            raise SystemExit(EXIT_CONFIG_ERROR) from exc

        # -- apply CLI overrides --------------------------------------------
        if log_level is not None:
            settings.logging = settings.logging.model_copy(
                update={"level": log_level.upper()},
            )
        if log_format is not None:
            settings.logging = settings.logging.model_copy(
                update={"format": log_format.lower()},
            )
        if host is not None:
            settings.http = settings.http.model_copy(update={"host": host})
        if port is not None:
            settings.http = settings.http.model_copy(update={"port": port})

        configure_logging(settings.logging, service=name, version=version)
        logger.info("Starting %s v%s", name, version)

        # -- serve ------------------------------------------------------------
        try:
            uvicorn.run(
                create_app(settings, version=version),
                host=settings.http.host,
                port=settings.http.port,
                log_config=None,
            )
        except SystemExit:
            raise
        except Exception as exc:
            logger.error("Runtime error: %s", exc)
            sys.exit(EXIT_RUNTIME_ERROR)

    return cli


def main() -> None:
    """Console-script entry point."""
    from farmhub import __version__  # noqa: PLC0415

    build_cli(version=__version__)()
