from __future__ import annotations

import logging

import pytest

from nexusrelay.classify import AppVariant
from nexusrelay.classify import PeerMetadata
from nexusrelay.exceptions import RegistryIndexError
from nexusrelay.exceptions import ValidationError
from nexusrelay.registry import DEFAULT_PORT
from nexusrelay.registry import Registry
from testing.transport import MockTransport
from testing.utils import FakeClock


def test_register_defaults(registry: Registry, clock: FakeClock) -> None:
    record = registry.register('peer', '203.0.113.7')

    assert record.peer_id == 'peer'
    assert record.port == DEFAULT_PORT
    assert record.identity_key == 'peer'
    assert record.metadata == PeerMetadata()
    assert record.classification.app_variant is AppVariant.custom
    assert record.registered_at == clock()
    assert record.last_seen == clock()
    assert record.heartbeat_count == 0
    assert record.transport is None
    assert not record.reachable

    assert len(registry) == 1
    assert 'peer' in registry
    assert registry.get('peer') is record
    assert registry.total_registrations == 1


@pytest.mark.parametrize('peer_id', ('', None))
def test_register_missing_peer_id(registry: Registry, peer_id) -> None:
    with pytest.raises(ValidationError):
        registry.register(peer_id, '203.0.113.7')
    assert len(registry) == 0


@pytest.mark.parametrize('address', ('', None))
def test_register_missing_address(registry: Registry, address) -> None:
    with pytest.raises(ValidationError):
        registry.register('peer', address)
    assert len(registry) == 0


@pytest.mark.parametrize(
    'kwargs',
    (
        {'port': 'abc'},
        {'port': 1.5},
        {'port': True},
        {'identity_key': 42},
        {'metadata': ['x']},
    ),
)
def test_register_wrong_field_types(registry: Registry, kwargs) -> None:
    with pytest.raises(ValidationError):
        registry.register('peer', '203.0.113.7', **kwargs)
    assert len(registry) == 0


def test_register_origin_determines_region(registry: Registry) -> None:
    record = registry.register('peer', '203.0.113.7', origin='127.0.0.1')
    assert record.region == 'local'
    assert record.address == '203.0.113.7'


def test_reregister_replaces_record(
    registry: Registry,
    clock: FakeClock,
) -> None:
    first = registry.register(
        'peer',
        '127.0.0.1',
        metadata={'bundle_id': 'com.nexus.app'},
    )
    registry.heartbeat('peer')
    clock.advance(10)
    second = registry.register('peer', '203.0.113.7')

    assert len(registry) == 1
    assert registry.get('peer') is second
    assert second is not first
    # Fields are not merged from the prior record
    assert second.heartbeat_count == 0
    assert second.classification.app_variant is AppVariant.custom
    assert second.registered_at == clock()
    assert registry.total_registrations == 2

    assert registry.peers_in_region('local') == []
    assert registry.peers_in_region(second.region) == [second]
    assert registry.verify_index()


def test_peer_in_exactly_one_region(registry: Registry) -> None:
    registry.register('a', '127.0.0.1')
    registry.register('b', '203.0.113.7')
    registry.register('a', '198.51.100.20')

    counts = registry.region_counts()
    assert sum(counts.values()) == len(registry) == 2
    regions = [
        region
        for region in counts
        if 'a' in {r.peer_id for r in registry.peers_in_region(region)}
    ]
    assert regions == [registry.get('a').region]  # type: ignore[union-attr]


def test_heartbeat(registry: Registry, clock: FakeClock) -> None:
    registry.register('peer', '127.0.0.1')
    clock.advance(30)
    assert registry.heartbeat('peer')

    record = registry.get('peer')
    assert record is not None
    assert record.last_seen == clock()
    assert record.heartbeat_count == 1


def test_heartbeat_never_moves_backwards(
    registry: Registry,
    clock: FakeClock,
) -> None:
    registry.register('peer', '127.0.0.1')
    last_seen = clock()
    clock.advance(-100)
    assert registry.heartbeat('peer')
    record = registry.get('peer')
    assert record is not None
    assert record.last_seen == last_seen


def test_heartbeat_unknown_peer_does_not_create(registry: Registry) -> None:
    assert not registry.heartbeat('ghost')
    assert 'ghost' not in registry
    assert len(registry) == 0


def test_touch(registry: Registry, clock: FakeClock) -> None:
    assert not registry.touch('peer')
    registry.register('peer', '127.0.0.1')
    clock.advance(5)
    assert registry.touch('peer')
    record = registry.get('peer')
    assert record is not None
    assert record.last_seen == clock()
    assert record.heartbeat_count == 0


def test_attach_transport(registry: Registry) -> None:
    transport = MockTransport()
    assert not registry.attach_transport('peer', transport)
    registry.register('peer', '127.0.0.1')
    assert registry.attach_transport('peer', transport)
    record = registry.get('peer')
    assert record is not None
    assert record.transport is transport
    assert record.reachable


def test_remove_idempotent(registry: Registry) -> None:
    registry.register('peer', '127.0.0.1')
    assert registry.remove('peer')
    assert not registry.remove('peer')
    assert not registry.remove('never-registered')
    assert len(registry) == 0
    assert registry.region_counts() == {}


def test_remove_only_matching_transport(registry: Registry) -> None:
    old, new = MockTransport(), MockTransport()
    registry.register('peer', '127.0.0.1', transport=old)
    registry.register('peer', '127.0.0.1', transport=new)

    assert not registry.remove('peer', transport=old)
    assert 'peer' in registry
    assert registry.remove('peer', transport=new)
    assert 'peer' not in registry


def test_remove_if(registry: Registry) -> None:
    registry.register('peer', '127.0.0.1')
    assert not registry.remove_if('peer', lambda r: False)
    assert registry.remove_if('peer', lambda r: r.peer_id == 'peer')
    assert not registry.remove_if('peer', lambda r: True)


def test_snapshot_allows_modification(registry: Registry) -> None:
    for i in range(5):
        registry.register(f'peer-{i}', '127.0.0.1')

    seen = []
    for record in registry.snapshot():
        seen.append(record.peer_id)
        registry.remove(record.peer_id)

    assert sorted(seen) == [f'peer-{i}' for i in range(5)]
    assert len(registry) == 0


def test_snapshot_predicate(registry: Registry) -> None:
    registry.register('a', '127.0.0.1')
    registry.register('b', '127.0.0.1')
    records = registry.snapshot(lambda r: r.peer_id == 'b')
    assert [r.peer_id for r in records] == ['b']


def test_verify_index_rebuilds(registry: Registry, caplog) -> None:
    caplog.set_level(logging.WARNING)
    registry.register('a', '127.0.0.1')
    registry.register('b', '203.0.113.7')
    registry._regions['local'].discard('a')

    assert not registry.verify_index()
    assert any('Rebuilding' in r.message for r in caplog.records)
    assert registry.verify_index()
    assert 'a' in {r.peer_id for r in registry.peers_in_region('local')}


def test_verify_index_strict(clock: FakeClock) -> None:
    registry = Registry(clock=clock, strict=True)
    registry.register('a', '127.0.0.1')
    registry._regions['phantom'] = {'ghost'}

    with pytest.raises(RegistryIndexError):
        registry.verify_index()


def test_remove_with_missing_index_entry(registry: Registry) -> None:
    registry.register('a', '127.0.0.1')
    registry._regions.clear()

    assert registry.remove('a')
    assert registry.region_counts() == {}
    assert registry.verify_index()


def test_remove_with_missing_index_entry_strict(clock: FakeClock) -> None:
    registry = Registry(clock=clock, strict=True)
    registry.register('a', '127.0.0.1')
    registry._regions.clear()

    with pytest.raises(RegistryIndexError):
        registry.remove('a')


def test_clear(registry: Registry) -> None:
    registry.register('a', '127.0.0.1')
    registry.clear()
    assert len(registry) == 0
    assert registry.region_counts() == {}
    assert registry.total_registrations == 1


def test_public_view_hides_transport(registry: Registry) -> None:
    record = registry.register(
        'peer',
        '127.0.0.1',
        transport=MockTransport(),
    )
    view = record.public_view()
    assert set(view) == {'peer_id', 'address', 'last_seen', 'classification'}
    assert view['classification']['app_variant'] == 'custom'
    assert 'transport' not in repr(record)
