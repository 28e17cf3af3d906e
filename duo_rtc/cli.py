"""Unified CLI for duo-rtc using Click."""

import asyncio
import sys

import click
from loguru import logger

from duo_rtc.presence_server import serve_presence
from duo_rtc.rtc_room import run_room

LOG_LEVELS = ["TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR"]


@click.group()
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="INFO",
    show_default=True,
    help="Minimum level of log messages written to stderr.",
)
def cli(log_level):
    logger.remove()
    logger.add(sys.stderr, level=log_level.upper())


@cli.command()
@click.option(
    "--room",
    "-r",
    type=str,
    required=True,
    help="Room to join. The first member hosts, the second one joins the call.",
)
@click.option(
    "--name",
    "-n",
    type=str,
    required=True,
    help="Display name shown to the other member.",
)
@click.option(
    "--signaling",
    "-s",
    type=str,
    required=False,
    help="Presence relay WebSocket URL (overrides configuration).",
)
def join(room, name, signaling):
    """Join a two-person call room.

    Type chat messages on stdin. /mic, /camera and /screen toggle local media,
    /leave exits.
    """
    if not room.strip():
        logger.error("--room must not be empty")
        sys.exit(1)
    if not name.strip():
        logger.error("--name must not be empty")
        sys.exit(1)

    sys.exit(run_room(room=room.strip(), name=name.strip(), signaling_url=signaling))


@cli.command()
@click.option(
    "--host",
    type=str,
    default="localhost",
    show_default=True,
    help="Interface to listen on.",
)
@click.option(
    "--port",
    "-p",
    type=int,
    default=8080,
    show_default=True,
    help="Port to listen on.",
)
def serve(host, port):
    """Run a presence relay for duo-rtc rooms."""
    try:
        asyncio.run(serve_presence(host=host, port=port))
    except KeyboardInterrupt:
        logger.info("Presence relay stopped by user.")


if __name__ == "__main__":
    cli()
