"""
Catalog repository synchronization engine with a local HTTP API.

:author: Christopher O'Brien <obriencj@preoccupied.net>
:license: GNU General Public License v3
:ai-assistant: Auto via Cursor
"""

from preoccupied.catalogsync.config import EngineSettings, get_settings, load_settings
from preoccupied.catalogsync.errors import CatalogSyncError
from preoccupied.catalogsync.github import test_connection, verify_repository
from preoccupied.catalogsync.models import Decision, SyncResult, SyncStage, SyncState
from preoccupied.catalogsync.orchestrator import SyncOrchestrator, SyncRun
from preoccupied.catalogsync.repository import GitRepository, RepositoryStatus
from preoccupied.catalogsync.store import ConfigStore, RepositoryConfig


__all__ = [
    'CatalogSyncError', 'ConfigStore', 'Decision', 'EngineSettings', 'GitRepository',
    'RepositoryConfig', 'RepositoryStatus', 'SyncOrchestrator', 'SyncResult', 'SyncRun',
    'SyncStage', 'SyncState', 'get_settings', 'load_settings', 'test_connection',
    'verify_repository',
]


# The end.
