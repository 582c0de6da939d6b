from __future__ import annotations

import json

import pytest

from nexusrelay import messages
from nexusrelay.messages import MessageType

_MESSAGES = (
    messages.RegistrationRequest(
        'peer',
        address='203.0.113.7',
        port=9000,
        identity_key='0xabc',
        metadata={'bundle_id': 'com.nexus.app'},
    ),
    messages.HeartbeatRequest('peer'),
    messages.ClosestPeersRequest('0xabc', k=3),
    messages.BootstrapPeersRequest(),
    messages.SignalRequest('offer', {'sdp': 'v=0'}, to_peer_id='other'),
    messages.SignalResponse(False, 'offer', reason='TargetNotFound'),
    messages.StatsRequest(),
    messages.ErrorResponse('NotFound', 'Peer not found.'),
)


@pytest.mark.parametrize('message', _MESSAGES)
def test_encode_decode(message: messages.Message) -> None:
    message_str = messages.encode_message(message)
    assert json.loads(message_str)['message_type'] == message.message_type
    assert messages.decode_message(message_str) == message


def test_message_type_names_match_classes() -> None:
    for message_type in MessageType:
        cls = getattr(messages, message_type.value)
        assert issubclass(cls, messages.Message)


def test_decode_client_registration() -> None:
    message = messages.decode_message(
        json.dumps(
            {
                'message_type': 'registration_request',
                'peer_id': 'peer',
                'metadata': {'appName': 'Nexus'},
            },
        ),
    )
    assert isinstance(message, messages.RegistrationRequest)
    assert message.address is None
    assert message.metadata == {'appName': 'Nexus'}


@pytest.mark.parametrize(
    'message_str',
    (
        'not json',
        '[1, 2, 3]',
        '{"peer_id": "peer"}',
        '{"message_type": "not_a_type"}',
        '{"message_type": null}',
        '{"message_type": "heartbeat_request"}',
        '{"message_type": "heartbeat_request", "peer_id": "p", "x": 1}',
    ),
)
def test_decode_error(message_str: str) -> None:
    with pytest.raises(messages.MessageDecodeError):
        messages.decode_message(message_str)


def test_encode_not_a_message() -> None:
    with pytest.raises(messages.MessageEncodeError, match='not an instance'):
        messages.encode_message(object())  # type: ignore[arg-type]


def test_encode_unserializable_payload() -> None:
    message = messages.SignalRequest('offer', payload=object())
    with pytest.raises(messages.MessageEncodeError):
        messages.encode_message(message)
