"""CLI and serving functions for running a rendezvous server."""
from __future__ import annotations

import asyncio
import datetime
import logging
import logging.handlers
import os
import pprint
import signal
import ssl
import sys

import click
from websockets.asyncio.server import serve as websockets_serve

from nexusrelay.config import RendezvousServingConfig
from nexusrelay.server import RendezvousServer
from nexusrelay.service import Rendezvous
from nexusrelay.utils.tasks import cancel_task
from nexusrelay.utils.tasks import spawn_periodic_task

logger = logging.getLogger(__name__)


def periodic_peer_logger(
    rendezvous: Rendezvous,
    interval: float = 60,
    limit: int | None = 32,
    level: int = logging.INFO,
) -> asyncio.Task[None]:
    """Create an asyncio task which logs currently registered peers.

    Args:
        rendezvous: Rendezvous service to log the peers of.
        interval: Seconds between logging registered peers.
        limit: Only log the detailed peer list if the number of peers is
            less than this number. If `None`, the list is never logged.
        level: Logging level.

    Returns:
        Asyncio task.
    """

    def _log() -> None:
        records = sorted(
            rendezvous.registry.snapshot(),
            key=lambda r: r.peer_id,
        )
        message = f'Registered peers: {len(records)}'
        if limit is not None and 0 < len(records) < limit:
            details = '\n'.join(repr(record) for record in records)
            message = f'{message}\n{details}'
        logger.log(level, message)

    return spawn_periodic_task(_log, interval, name='rendezvous-peer-logger')


async def serve(config: RendezvousServingConfig) -> None:
    """Run the rendezvous server.

    Initializes a [`Rendezvous`][nexusrelay.service.Rendezvous] service and
    a [`RendezvousServer`][nexusrelay.server.RendezvousServer] and starts a
    websocket server listening for new connections and incoming messages.
    Stale peers are evicted in the background while serving.

    Note:
        This function will not configure any logging. Configuring logging
        according to
        [`RendezvousServingConfig.logging`][nexusrelay.config.RendezvousServingConfig]
        is the responsibility of the caller.

    Args:
        config: Serving configuration.
    """
    rendezvous = Rendezvous(config)
    server = RendezvousServer(
        rendezvous,
        max_message_bytes=config.max_message_bytes,
    )

    # Set the stop condition when receiving SIGINT (ctrl-C) and SIGTERM.
    loop = asyncio.get_running_loop()
    stop = loop.create_future()
    loop.add_signal_handler(signal.SIGINT, stop.set_result, None)
    loop.add_signal_handler(signal.SIGTERM, stop.set_result, None)

    ssl_context: ssl.SSLContext | None = None
    if config.certfile is not None:
        ssl_context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        ssl_context.load_cert_chain(config.certfile, keyfile=config.keyfile)

    peer_logger_task: asyncio.Task[None] | None = None
    if config.logging.current_peer_interval is not None:  # pragma: no branch
        level = (
            config.logging.default_level
            if isinstance(config.logging.default_level, int)
            else logging.getLevelName(config.logging.default_level)
        )
        peer_logger_task = periodic_peer_logger(
            rendezvous,
            config.logging.current_peer_interval,
            config.logging.current_peer_limit,
            level=level,
        )

    config_repr = pprint.pformat(config, indent=2)
    logger.info(f'Rendezvous serving configuration:\n{config_repr}')

    rendezvous.start()
    async with websockets_serve(
        server.handler,
        config.host,
        config.port,
        process_request=server.process_request,
        logger=None,
        ssl=ssl_context,
    ):
        logger.info(
            f'Rendezvous server {config.server_id} listening on port '
            f'{config.port}',
        )
        logger.info('Use ctrl-C to stop')
        await stop

    await rendezvous.stop()
    await cancel_task(peer_logger_task)

    loop.remove_signal_handler(signal.SIGINT)
    loop.remove_signal_handler(signal.SIGTERM)

    logger.info('Rendezvous server shutdown')


def configure_logging(config: RendezvousServingConfig) -> None:
    """Configure the root logger from the serving configuration."""
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if config.logging.log_dir is not None:
        os.makedirs(config.logging.log_dir, exist_ok=True)
        handlers.append(
            logging.handlers.TimedRotatingFileHandler(
                os.path.join(config.logging.log_dir, 'server.log'),
                # Rotate logs Sunday at midnight
                when='W6',
                atTime=datetime.time(hour=0, minute=0, second=0),
            ),
        )

    logging.basicConfig(
        format=(
            '[%(asctime)s.%(msecs)03d] %(levelname)-5s (%(name)s) :: '
            '%(message)s'
        ),
        datefmt='%Y-%m-%d %H:%M:%S',
        level=config.logging.default_level,
        handlers=handlers,
    )

    logging.getLogger('websockets').setLevel(config.logging.websockets_level)


@click.command()
@click.option('--config', '-c', 'config_path', help='Configuration file.')
@click.option('--host', metavar='ADDR', help='Interface to bind to.')
@click.option('--port', type=int, metavar='PORT', help='Port to bind to.')
@click.option('--server-id', metavar='ID', help='Server identifier.')
@click.option('--log-dir', metavar='PATH', help='Logging directory.')
@click.option(
    '--log-level',
    type=click.Choice(
        ['CRITICAL', 'ERROR', 'WARNING', 'INFO', 'DEBUG'],
        case_sensitive=False,
    ),
    help='Minimum logging level.',
)
def cli(
    config_path: str | None,
    host: str | None,
    port: int | None,
    server_id: str | None,
    log_dir: str | None,
    log_level: str | None,
) -> None:
    """Run a rendezvous server instance.

    Peers use the rendezvous server to discover each other and to relay
    WebRTC signaling messages. If no configuration file is provided, a
    default configuration will be created from
    [`RendezvousServingConfig()`][nexusrelay.config.RendezvousServingConfig].
    The remaining CLI options will override the options provided in the
    configuration object.
    """
    config = (
        RendezvousServingConfig()
        if config_path is None
        else RendezvousServingConfig.from_toml(config_path)
    )

    # Override config with CLI options if given
    if host is not None:
        config.host = host
    if port is not None:
        config.port = port
    if server_id is not None:
        config.server_id = server_id
    if log_dir is not None:
        config.logging.log_dir = log_dir
    if log_level is not None:
        config.logging.default_level = logging.getLevelName(log_level.upper())

    configure_logging(config)

    asyncio.run(serve(config))
