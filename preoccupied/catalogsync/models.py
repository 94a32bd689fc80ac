"""
Run state, decision requests, and results exchanged between the
orchestrator and its caller.

:author: Christopher O'Brien <obriencj@preoccupied.net>
:license: GNU General Public License v3
:ai-assistant: Auto via Cursor
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .errors import CatalogSyncError


class SyncStage(str, Enum):
    IDLE = 'idle'
    CHECKING_PATH = 'checking-path'
    VALIDATING_INTEGRITY = 'validating-integrity'
    VALIDATING_REMOTE = 'validating-remote'
    CLONING = 'cloning'
    AWAITING_DECISION = 'awaiting-decision'
    RESOLVING = 'resolving'
    PUBLISHING = 'publishing'
    DONE = 'done'
    CANCELLED = 'cancelled'


class DecisionKind(str, Enum):
    MISSING_FILES = 'missingFiles'
    REPO_MISMATCH = 'repoMismatch'
    LOCAL_CHANGES_CONFLICT = 'localChangesConflict'
    NON_EMPTY_FOLDER = 'nonEmptyFolder'


class DecisionOption(BaseModel):
    """
    One named choice offered by a Decision
    """

    id: str
    label: str
    description: str = ''
    recommended: bool = False
    destructive: bool = False


OPTIONS: Dict[DecisionKind, List[DecisionOption]] = {
    DecisionKind.MISSING_FILES: [
        DecisionOption(id='restore', label='Restore from remote',
                       description='Download the missing files again', recommended=True),
        DecisionOption(id='fresh', label='Start completely fresh',
                       description='Delete everything, including repository metadata, and download again',
                       destructive=True),
        DecisionOption(id='cancel', label='Cancel',
                       description='Go back without making changes'),
    ],
    DecisionKind.REPO_MISMATCH: [
        DecisionOption(id='switch', label='Switch connection',
                       description='Keep the files, only change which remote repository is used'),
        DecisionOption(id='reclone', label='Download new repository',
                       description='Delete the current files and download the new repository',
                       destructive=True),
        DecisionOption(id='cancel', label='Cancel',
                       description='Keep the current setup'),
    ],
    DecisionKind.LOCAL_CHANGES_CONFLICT: [
        DecisionOption(id='commit-first', label='Save my changes first',
                       description='Publish local changes, then integrate the remote updates',
                       recommended=True),
        DecisionOption(id='discard', label='Download updates, discard mine',
                       description='Throw away local changes and match the remote',
                       destructive=True),
        DecisionOption(id='cancel', label='Cancel',
                       description='Leave everything as it is'),
    ],
    DecisionKind.NON_EMPTY_FOLDER: [
        DecisionOption(id='delete', label='Delete contents and continue',
                       description='Remove every file in the folder and download the repository',
                       destructive=True),
        DecisionOption(id='cancel', label='Cancel',
                       description='Choose another folder', recommended=True),
    ],
}


class Decision(BaseModel):
    """
    A request for the caller to choose one of a fixed set of options
    """

    kind: DecisionKind
    payload: Dict[str, Any] = Field(default_factory=dict)
    options: List[DecisionOption] = Field(default_factory=list)


    @classmethod
    def create(cls, kind: DecisionKind, **payload: Any) -> 'Decision':
        return cls(kind=kind, payload=payload, options=[o.model_copy() for o in OPTIONS[kind]])


    @property
    def option_ids(self) -> List[str]:
        return [option.id for option in self.options]


def missing_files(missing: List[str]) -> Decision:
    return Decision.create(DecisionKind.MISSING_FILES, files=list(missing))


def repo_mismatch(current_url: Optional[str], desired_url: str) -> Decision:
    return Decision.create(DecisionKind.REPO_MISMATCH, currentUrl=current_url, desiredUrl=desired_url)


def local_changes_conflict(changed_files: List[str], behind: int) -> Decision:
    return Decision.create(DecisionKind.LOCAL_CHANGES_CONFLICT,
                           changedFiles=list(changed_files), behindCount=behind)


def non_empty_folder(path: str, entry_count: int) -> Decision:
    return Decision.create(DecisionKind.NON_EMPTY_FOLDER, path=path, entryCount=entry_count)


class SyncState(BaseModel):
    """
    Progress of one orchestration run
    """

    stage: SyncStage = SyncStage.IDLE
    current_step: Optional[str] = None
    completed_steps: List[str] = Field(default_factory=list)
    pending_decision: Optional[Decision] = None


class SyncOutcome(str, Enum):
    SUCCESS = 'success'
    FAILURE = 'failure'
    CANCELLED = 'cancelled'


class SyncResult(BaseModel):
    """
    Terminal result of a run
    """

    outcome: SyncOutcome
    message: str = ''

    cloned: bool = False
    already_exists: bool = False
    restored: bool = False
    switched: bool = False

    published: bool = False
    nothing_to_publish: bool = False
    discarded: bool = False
    commit: Optional[str] = None

    error: Optional[Dict[str, Any]] = None


    @property
    def success(self) -> bool:
        return self.outcome is SyncOutcome.SUCCESS


    @classmethod
    def failure(cls, error: CatalogSyncError) -> 'SyncResult':
        return cls(outcome=SyncOutcome.FAILURE, message=error.detail, error=error.to_dict())


    @classmethod
    def cancelled(cls, message: str = 'Cancelled') -> 'SyncResult':
        return cls(outcome=SyncOutcome.CANCELLED, message=message)


# The end.
