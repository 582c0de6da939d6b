from __future__ import annotations

import pytest

from nexusrelay.classify import AppVariant
from nexusrelay.classify import Classification
from nexusrelay.classify import classify_region
from nexusrelay.classify import DEFAULT_CAPABILITIES
from nexusrelay.classify import DEFAULT_REGIONS
from nexusrelay.classify import is_local_address
from nexusrelay.classify import LOCAL_REGION
from nexusrelay.classify import PeerMetadata
from nexusrelay.classify import RegionClassifier
from nexusrelay.classify import TrustClassifier
from nexusrelay.classify import TrustLevel
from nexusrelay.classify import UNKNOWN
from nexusrelay.exceptions import ValidationError


def test_metadata_defaults() -> None:
    for data in (None, {}):
        metadata = PeerMetadata.from_dict(data)
        assert metadata.bundle_id == UNKNOWN
        assert metadata.app_name == UNKNOWN
        assert metadata.capabilities == DEFAULT_CAPABILITIES


def test_metadata_aliases() -> None:
    metadata = PeerMetadata.from_dict(
        {
            'bundleId': 'com.nexus.app',
            'app_name': 'Nexus',
            'appVersion': '1.2.3',
            'userAgent': '',
            'capabilities': ['webrtc'],
        },
    )
    assert metadata.bundle_id == 'com.nexus.app'
    assert metadata.app_name == 'Nexus'
    assert metadata.app_version == '1.2.3'
    assert metadata.user_agent == UNKNOWN
    assert metadata.capabilities == ('webrtc',)
    assert metadata.to_dict()['capabilities'] == ['webrtc']


@pytest.mark.parametrize('data', (['x'], 'bundle', 42))
def test_metadata_not_a_mapping(data) -> None:
    with pytest.raises(ValidationError, match='metadata must be an object'):
        PeerMetadata.from_dict(data)


@pytest.mark.parametrize('capabilities', ('webrtc', [1, 2], {'a': 1}))
def test_metadata_bad_capabilities(capabilities) -> None:
    with pytest.raises(ValidationError, match='capabilities'):
        PeerMetadata.from_dict({'capabilities': capabilities})


@pytest.mark.parametrize(
    ('metadata', 'variant', 'trust'),
    (
        (
            {'bundle_id': 'com.nexus.app'},
            AppVariant.official,
            TrustLevel.trusted,
        ),
        # Bundle ID takes priority over the application name
        (
            {'bundle_id': 'com.nexus.wallet', 'app_name': 'Other'},
            AppVariant.official,
            TrustLevel.trusted,
        ),
        (
            {'bundle_id': 'org.example', 'app_name': 'My NEXUS Fork'},
            AppVariant.fork,
            TrustLevel.semi_trusted,
        ),
        (
            {'bundle_id': 'org.example', 'app_name': 'Example'},
            AppVariant.custom,
            TrustLevel.untrusted,
        ),
        ({}, AppVariant.custom, TrustLevel.untrusted),
    ),
)
def test_trust_classifier(metadata, variant, trust) -> None:
    classifier = TrustClassifier()
    classification = classifier(PeerMetadata.from_dict(metadata))
    assert classification.app_variant is variant
    assert classification.trust_level is trust
    assert classification.is_official == (variant is AppVariant.official)


def test_trust_classifier_custom_allow_list() -> None:
    classifier = TrustClassifier(['org.example'], brand_token='acme')
    official = classifier.classify(PeerMetadata(bundle_id='org.example'))
    fork = classifier.classify(PeerMetadata(app_name='Acme Lite'))
    assert official.app_variant is AppVariant.official
    assert fork.app_variant is AppVariant.fork


def test_classification_dict() -> None:
    classification = Classification(AppVariant.fork, TrustLevel.semi_trusted)
    data = classification.to_dict()
    assert data == {
        'app_variant': 'fork',
        'trust_level': 'semi-trusted',
        'is_official': False,
    }
    assert Classification.from_dict(data) == classification


@pytest.mark.parametrize(
    ('address', 'expected'),
    (
        ('localhost', True),
        ('127.0.0.1', True),
        ('::1', True),
        ('10.1.2.3', True),
        ('192.168.0.10', True),
        ('169.254.1.1', True),
        ('8.8.8.8', False),
        ('example.com', False),
    ),
)
def test_is_local_address(address: str, expected: bool) -> None:
    assert is_local_address(address) == expected


def test_region_classifier_local() -> None:
    classifier = RegionClassifier()
    assert classifier('127.0.0.1') == LOCAL_REGION
    assert classifier('192.168.1.5') == LOCAL_REGION


def test_region_classifier_deterministic() -> None:
    classifier = RegionClassifier()
    for address in ('8.8.8.8', '203.0.113.7', 'example.com'):
        region = classifier(address)
        assert region in DEFAULT_REGIONS
        assert classifier(address) == region
        assert classify_region(address) == region


def test_region_classifier_spread() -> None:
    classifier = RegionClassifier(['a', 'b'])
    regions = {classifier(f'8.8.{i}.{i}') for i in range(64)}
    assert regions == {'a', 'b'}


def test_region_classifier_requires_regions() -> None:
    with pytest.raises(ValueError, match='region'):
        RegionClassifier([])
