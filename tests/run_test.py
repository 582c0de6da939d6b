from __future__ import annotations

import asyncio
import logging
import multiprocessing
import os
import pathlib
from unittest import mock
from unittest.mock import AsyncMock

import click.testing
import pytest
import websockets
from websockets.asyncio.client import connect

from nexusrelay.config import RendezvousServingConfig
from nexusrelay.messages import decode_message
from nexusrelay.messages import encode_message
from nexusrelay.messages import RegistrationRequest
from nexusrelay.messages import RegistrationResponse
from nexusrelay.run import cli
from nexusrelay.run import periodic_peer_logger
from nexusrelay.run import serve
from nexusrelay.service import Rendezvous
from nexusrelay.utils.tasks import cancel_task
from testing.utils import open_port


@pytest.mark.asyncio()
async def test_periodic_peer_logger(caplog) -> None:
    caplog.set_level(logging.INFO)

    rendezvous = Rendezvous()
    rendezvous.registry.register('peer-abc', '127.0.0.1')

    task = periodic_peer_logger(rendezvous, 0.001)
    await asyncio.sleep(0.01)
    await cancel_task(task)

    assert any(
        [
            'Registered peers: 1' in record.message
            and record.levelname == 'INFO'
            for record in caplog.records
        ],
    )
    assert any(
        [
            'peer-abc' in record.message and record.levelname == 'INFO'
            for record in caplog.records
        ],
    )


@pytest.mark.asyncio()
async def test_periodic_peer_logger_no_details(caplog) -> None:
    caplog.set_level(logging.INFO)

    rendezvous = Rendezvous()
    rendezvous.registry.register('peer-abc', '127.0.0.1')

    task = periodic_peer_logger(rendezvous, 0.001, limit=None)
    await asyncio.sleep(0.01)
    await cancel_task(task)

    messages = [record.message for record in caplog.records]
    assert any('Registered peers: 1' in m for m in messages)
    assert not any('peer-abc' in m for m in messages)


def test_invoke() -> None:
    runner = click.testing.CliRunner()
    with mock.patch(
        'nexusrelay.run.serve',
        AsyncMock(),
    ) as mock_serve:
        runner.invoke(cli)
        mock_serve.assert_awaited_once()


def test_invoke_and_override_defaults(tmp_path: pathlib.Path) -> None:
    tmp_dir = os.path.join(tmp_path, 'log-dir')
    assert not os.path.isdir(tmp_dir)

    async def _mock_serve(config: RendezvousServingConfig) -> None:
        assert config.host == 'test-host'
        assert config.port == 1234
        assert config.server_id == 'nexus-bootstrap-9'
        assert config.logging.log_dir == str(tmp_dir)
        assert config.logging.default_level == logging.WARNING

    options: list[str] = []
    options += ['--host', 'test-host']
    options += ['--port', '1234']
    options += ['--server-id', 'nexus-bootstrap-9']
    options += ['--log-dir', str(tmp_dir)]
    options += ['--log-level', 'WARNING']

    runner = click.testing.CliRunner()
    with mock.patch(
        'nexusrelay.run.serve',
        AsyncMock(side_effect=_mock_serve),
    ) as mock_serve:
        result = runner.invoke(cli, options)
        mock_serve.assert_awaited_once()

    assert result.exit_code == 0
    assert os.path.isdir(tmp_dir)


def test_invoke_with_config_file(tmp_path: pathlib.Path) -> None:
    filepath = tmp_path / 'rendezvous.toml'
    RendezvousServingConfig(port=4321, server_id='from-file').write_toml(
        filepath,
    )

    async def _mock_serve(config: RendezvousServingConfig) -> None:
        assert config.port == 4321
        assert config.server_id == 'from-file'

    runner = click.testing.CliRunner()
    with mock.patch(
        'nexusrelay.run.serve',
        AsyncMock(side_effect=_mock_serve),
    ):
        result = runner.invoke(cli, ['--config', str(filepath)])

    assert result.exit_code == 0


def _serve(config: RendezvousServingConfig) -> None:
    asyncio.run(serve(config))


@pytest.mark.timeout(5)
@pytest.mark.asyncio()
async def test_serve_in_subprocess() -> None:
    config = RendezvousServingConfig(host='127.0.0.1', port=open_port())
    address = f'ws://{config.host}:{config.port}'

    process = multiprocessing.Process(target=_serve, args=(config,))
    process.start()

    while True:
        try:
            websocket = await connect(address)
        except OSError:  # pragma: no cover
            await asyncio.sleep(0.01)
        else:
            # Coverage doesn't detect the singular break but it does
            # get executed to break from the loop
            break  # pragma: no cover

    await websocket.send(encode_message(RegistrationRequest('peer')))
    response = decode_message(await websocket.recv())
    assert isinstance(response, RegistrationResponse)
    assert response.success

    process.terminate()

    with pytest.raises(websockets.exceptions.ConnectionClosedOK):
        await websocket.recv()

    process.join()
