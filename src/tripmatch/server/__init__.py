"""Server-side components for privacy-preserving matching."""
from tripmatch.server.compute import ComputeService, LocalComputeService
from tripmatch.server.index import InMemoryPrefilterIndex, PrefilterIndex, RemotePrefilterIndex
from tripmatch.server.ledger import Ledger, InMemoryColdStorage
from tripmatch.server.lifecycle import MatchLifecycle
from tripmatch.server.api import create_app, run_server

__all__ = [
    "ComputeService",
    "LocalComputeService",
    "InMemoryPrefilterIndex",
    "PrefilterIndex",
    "RemotePrefilterIndex",
    "Ledger",
    "InMemoryColdStorage",
    "MatchLifecycle",
    "create_app",
    "run_server",
]
