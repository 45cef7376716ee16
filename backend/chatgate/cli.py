from __future__ import annotations

import asyncio
import sys
from typing import Optional

import structlog
import typer

from chatgate import __version__
from chatgate.core.config import Settings, settings as default_settings
from chatgate.core.log import configure_logging
from chatgate.errors import GatewayError
from chatgate.lifecycle import LifecycleError, LifecycleManager
from chatgate.schemas import ChatMessage
from chatgate.services.router import BackendCapabilitySource

MAX_STDIN_BYTES = 1024 * 1024

app = typer.Typer(add_completion=False)
logger = structlog.get_logger()


class InputError(Exception):
    pass


def read_piped_stdin() -> Optional[str]:
    """Returns piped text, or None when stdin is a terminal or the pipe is empty."""
    if sys.stdin is None or sys.stdin.isatty():
        return None
    data = sys.stdin.buffer.read(MAX_STDIN_BYTES + 1)
    if len(data) > MAX_STDIN_BYTES:
        raise InputError("Input too large (max 1MB)")
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError as e:
        raise InputError("Invalid UTF-8 input. Binary data not supported.") from e
    text = text.strip()
    # an empty pipe is not an error; the caller falls through to server mode
    return text or None


async def run_single_prompt(prompt: str, settings: Settings) -> str:
    source = BackendCapabilitySource(settings)
    provider = await source.acquire()
    return await provider.generate([ChatMessage(role="user", content=prompt)])


def _version_callback(value: bool):
    if value:
        typer.echo(__version__)
        raise typer.Exit()


@app.command()
def main(
    port: int = typer.Option(default_settings.PORT, "--port", "-p", help="Port to run the server on"),
    host: str = typer.Option(default_settings.HOST, "--host", help="Interface to bind"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
    no_streaming: bool = typer.Option(
        False, "--no-streaming", help="Answer stream=true requests with a single JSON response"
    ),
    instructions: str = typer.Option(
        default_settings.INSTRUCTIONS, "--instructions", "-i", help="Custom instructions for the assistant"
    ),
    single_prompt: Optional[str] = typer.Option(
        None, "--single-prompt", "-s", help="Run a single prompt without starting the server"
    ),
    version: bool = typer.Option(False, "--version", callback=_version_callback, is_eager=True),
):
    """Serve an OpenAI-compatible chat completions API backed by a local generator."""
    settings = default_settings.model_copy(
        update={
            "PORT": port,
            "HOST": host,
            "VERBOSE": verbose or default_settings.VERBOSE,
            "STREAMING_ENABLED": default_settings.STREAMING_ENABLED and not no_streaming,
            "INSTRUCTIONS": instructions,
        }
    )
    configure_logging(settings.VERBOSE, settings.LOG_FORMAT)

    prompt = single_prompt
    if prompt is None:
        try:
            prompt = read_piped_stdin()
        except InputError as e:
            typer.echo(f"Error: {e}")
            raise typer.Exit(code=1)

    if prompt is not None:
        try:
            result = asyncio.run(run_single_prompt(prompt, settings))
        except GatewayError as e:
            typer.echo(f"Error: {e.message}")
            raise typer.Exit(code=1)
        except Exception as e:
            logger.debug("single_prompt_failed", exc_info=True)
            typer.echo(f"Error: {e}")
            raise typer.Exit(code=1)
        typer.echo(result)
        return

    # imported here so single-prompt mode does not build the app
    from chatgate.main import create_app

    manager = LifecycleManager(create_app(settings), settings)
    try:
        manager.run()
    except LifecycleError as e:
        typer.echo(f"Error starting server: {e}")
        raise typer.Exit(code=1)
    typer.echo("Server shutdown complete.")


if __name__ == "__main__":
    app()
