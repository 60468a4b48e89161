"""Entry-point for the Lecture Capture service."""

from __future__ import annotations

import importlib
import inspect
import logging
from pathlib import Path
from typing import Optional

import httpx
import typer
import uvicorn

from lecture_capture.bootstrap import BootstrapError, initialize_app
from lecture_capture.logging_utils import build_default_handlers, configure_logging
from lecture_capture.services.consolidation import NoteGenerator
from lecture_capture.services.sessions import SessionRegistry
from lecture_capture.services.uploads import FrameStore
from lecture_capture.ui.sessions import SessionsUI, fetch_sessions
from lecture_capture.web import create_app
from lecture_capture.web.server import get_max_upload_bytes


LOGGER = logging.getLogger("lecture_capture.run")


cli = typer.Typer(add_completion=False, help="Lecture Capture management commands")


DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8000


def _prepare_logging(storage_root: Path) -> None:
    configure_logging(handlers=build_default_handlers(storage_root))


def _normalize_root_path(root_path: Optional[str]) -> str:
    if root_path is None:
        return ""
    normalized = root_path.strip()
    if not normalized:
        return ""
    if not normalized.startswith("/"):
        normalized = f"/{normalized}"
    return normalized.rstrip("/")


def _load_generator(target: Optional[str]) -> Optional[NoteGenerator]:
    """Import ``module:attribute`` and return a note generator instance.

    The attribute may be a generator instance or a zero-argument factory.
    """

    if not target:
        return None
    module_name, _, attribute = target.partition(":")
    if not module_name or not attribute:
        raise typer.BadParameter(
            "Expected the form 'package.module:attribute'.",
            param_hint="--generator",
        )
    try:
        module = importlib.import_module(module_name)
        candidate = getattr(module, attribute)
    except (ImportError, AttributeError) as error:
        raise typer.BadParameter(f"Cannot load '{target}': {error}", param_hint="--generator") from error

    if inspect.isclass(candidate) or (callable(candidate) and not hasattr(candidate, "generate")):
        try:
            candidate = candidate()
        except TypeError as error:
            raise typer.BadParameter(
                f"Cannot build a generator from '{target}': {error}",
                param_hint="--generator",
            ) from error
    if not callable(getattr(candidate, "generate", None)):
        raise typer.BadParameter(
            f"'{target}' does not provide a generate(request) method.",
            param_hint="--generator",
        )
    return candidate


@cli.callback(invoke_without_command=True)
def main(ctx: typer.Context) -> None:
    """Launch the web server when no explicit command is provided."""

    if ctx.invoked_subcommand is None:
        ctx.invoke(serve, host=DEFAULT_HOST, port=DEFAULT_PORT, root_path=None, generator=None)


@cli.command()
def serve(
    host: str = typer.Option(DEFAULT_HOST, help="Host interface for the web server"),
    port: int = typer.Option(DEFAULT_PORT, help="Port for the web server"),
    root_path: Optional[str] = typer.Option(
        None,
        help="Prefix the application expects when mounted behind a proxy",
        envvar="LECTURE_CAPTURE_ROOT_PATH",
    ),
    generator: Optional[str] = typer.Option(
        None,
        help="Note generator to use for consolidation, as 'package.module:attribute'",
        envvar="LECTURE_CAPTURE_GENERATOR",
    ),
) -> None:
    """Run the FastAPI capture service."""

    try:
        app_config = initialize_app()
    except BootstrapError as error:
        typer.echo(f"Startup failed: {error}")
        raise typer.Exit(code=1) from error
    _prepare_logging(app_config.storage_root)

    registry = SessionRegistry(
        ttl_seconds=app_config.session_ttl_seconds,
        max_frames=app_config.max_frames_per_session,
    )
    frame_store = FrameStore(app_config.uploads_root)
    normalized_root = _normalize_root_path(root_path)
    app = create_app(
        registry,
        config=app_config,
        frame_store=frame_store,
        generator=_load_generator(generator),
        root_path=normalized_root,
    )

    config_kwargs = {}
    max_upload_bytes = get_max_upload_bytes()
    if max_upload_bytes > 0:
        config_signature = inspect.signature(uvicorn.Config.__init__)
        if "limit_max_request_size" in config_signature.parameters:
            config_kwargs["limit_max_request_size"] = max_upload_bytes
        else:
            LOGGER.debug(
                "uvicorn.Config has no 'limit_max_request_size'; relying on the "
                "application upload limit.",
            )

    server_config = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_config=None,
        root_path=normalized_root,
        **config_kwargs,
    )
    server = uvicorn.Server(server_config)
    app.state.server = server
    server.run()


@cli.command()
def sessions(
    url: str = typer.Option(
        f"http://{DEFAULT_HOST}:{DEFAULT_PORT}",
        help="Base URL of a running Lecture Capture server",
        envvar="LECTURE_CAPTURE_URL",
    ),
) -> None:
    """Show the capture sessions currently held by a running server."""

    try:
        rows = fetch_sessions(url)
    except httpx.HTTPError as error:
        typer.echo(f"Could not reach {url}: {error}")
        raise typer.Exit(code=1) from error
    SessionsUI(rows).run()


if __name__ == "__main__":
    cli()
