"""NexusRelay is a peer discovery and WebRTC signaling relay service."""
from __future__ import annotations

import importlib.metadata as importlib_metadata

__version__ = importlib_metadata.version('nexusrelay')
