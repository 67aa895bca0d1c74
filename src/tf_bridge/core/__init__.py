"""Capability interfaces and their production / in-memory implementations."""

from .async_utils import download_all, run_sync
from .client import TfsClient, TfsWorkspace
from .git_store import GitObjectStore
from .interfaces import (
    LocalObjectStore,
    LockLevel,
    RemoteIdentityService,
    RemoteVersionControlService,
    RemoteWorkspaceService,
)
from .memory import (
    InMemoryIdentityService,
    InMemoryObjectStore,
    InMemoryVersionControlService,
    InMemoryWorkspace,
)

__all__ = [
    "GitObjectStore",
    "InMemoryIdentityService",
    "InMemoryObjectStore",
    "InMemoryVersionControlService",
    "InMemoryWorkspace",
    "LocalObjectStore",
    "LockLevel",
    "RemoteIdentityService",
    "RemoteVersionControlService",
    "RemoteWorkspaceService",
    "TfsClient",
    "TfsWorkspace",
    "download_all",
    "run_sync",
]
