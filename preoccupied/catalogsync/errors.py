"""
Typed failures raised by the catalogsync engine.

Every failure carries a ``kind`` (the class name, which is also the wire
name reported to callers) and a human readable ``detail``. Details are
built from credential-free text only.

:author: Christopher O'Brien <obriencj@preoccupied.net>
:license: GNU General Public License v3
:ai-assistant: Auto via Cursor
"""

from typing import Any, Dict, List, Optional


class CatalogSyncError(Exception):
    """
    Base class for all engine failures
    """

    def __init__(self, detail: str = ''):
        super().__init__(detail)
        self.detail = detail


    @property
    def kind(self) -> str:
        return type(self).__name__


    def to_dict(self) -> Dict[str, Any]:
        return {'kind': self.kind, 'detail': self.detail}


class InvalidInput(CatalogSyncError):
    pass


# Credential Vault

class VaultError(CatalogSyncError):
    pass


class TamperedOrCorrupt(VaultError):
    """
    The blob did not authenticate under the derived key
    """


class MalformedBlob(TamperedOrCorrupt):
    """
    The blob could not be parsed at all
    """


# Configuration Store

class ConfigStoreError(CatalogSyncError):
    pass


class ConfigWriteFailed(ConfigStoreError):
    pass


class ConfigReadFailed(ConfigStoreError):
    pass


# Repository Client

class RepositoryError(CatalogSyncError):
    pass


class NotARepository(RepositoryError):
    pass


class GitNotInstalled(RepositoryError):
    """
    The git executable is missing or cannot be run
    """


AUTH_FAILURE_MARKERS = (
    'authentication failed',
    'could not read username',
    'could not read password',
    'invalid username or password',
    'returned error: 401',
    'returned error: 403',
    'permission to',
)

NETWORK_FAILURE_MARKERS = (
    'could not resolve host',
    'failed to connect',
    'connection timed out',
    'operation timed out',
    'connection refused',
    'network is unreachable',
    'unable to access',
)

PUSH_REJECTED_MARKERS = (
    '[rejected]',
    'fetch first',
    'non-fast-forward',
    'updates were rejected',
)


class GitOperationFailed(RepositoryError):
    """
    A git invocation exited non-zero or could not be started. The wrapped
    tool has no structured failure classes, so the helpers below classify
    the failure by inspecting its message.
    """

    def __init__(self, operation: str, underlying_message: str):
        self.operation = operation
        self.underlying_message = underlying_message.strip()
        super().__init__(f'git {operation} failed: {self.underlying_message}')


    def _mentions(self, markers) -> bool:
        text = self.underlying_message.lower()
        return any(marker in text for marker in markers)


    @property
    def is_authentication_failure(self) -> bool:
        return self._mentions(AUTH_FAILURE_MARKERS)


    @property
    def is_network_failure(self) -> bool:
        # "unable to access" also prefixes HTTP 401/403 responses
        return not self.is_authentication_failure and self._mentions(NETWORK_FAILURE_MARKERS)


    @property
    def is_push_rejected(self) -> bool:
        return self._mentions(PUSH_REJECTED_MARKERS)


    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['operation'] = self.operation
        return result


# Remote Verifier

class VerificationError(CatalogSyncError):
    pass


class InvalidUrlFormat(VerificationError):
    pass


class InvalidCredential(VerificationError):
    pass


class RepositoryNotFoundOrNoAccess(VerificationError):
    pass


class Forbidden(VerificationError):
    pass


class RemoteApiError(VerificationError):

    def __init__(self, status: int, detail: str):
        self.status = status
        super().__init__(detail)


    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['status'] = self.status
        return result


class NetworkUnavailable(VerificationError):
    pass


# Synchronization Orchestrator

class OrchestrationError(CatalogSyncError):
    pass


class RunAlreadyInProgress(OrchestrationError):
    pass


class UserCancelled(OrchestrationError):
    pass


class IntegrityCheckFailed(OrchestrationError):

    def __init__(self, missing: List[str]):
        self.missing = list(missing)
        super().__init__(f'Required files are missing: {", ".join(self.missing)}')


    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['missing'] = self.missing
        return result


class RemoteMismatchUnresolved(OrchestrationError):

    def __init__(self, current_url: Optional[str], desired_url: str):
        self.current_url = current_url
        self.desired_url = desired_url
        super().__init__(
            f'Working copy is connected to {current_url or "(no remote)"} '
            f'but {desired_url} was requested')


    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['currentUrl'] = self.current_url
        result['desiredUrl'] = self.desired_url
        return result


class FilesystemError(OrchestrationError):
    pass


# The end.
