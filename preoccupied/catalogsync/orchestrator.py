"""
Synchronization orchestrator: reconciles a project folder against its
remote catalog repository.

Each operation (connect, force_clone, publish) starts a SyncRun, which
executes as a single asyncio task. Whenever the run needs a human choice
it publishes a Decision and suspends until the caller resolves it or
cancels the run. At most one run may be active per project path; git
operations against one working copy are never interleaved.

Typical use::

    run = orchestrator.connect(config, token)
    event = await run.next()
    while isinstance(event, Decision):
        run.resolve(ask_user(event))
        event = await run.next()
    # event is now the SyncResult

:author: Christopher O'Brien <obriencj@preoccupied.net>
:license: GNU General Public License v3
:ai-assistant: Auto via Cursor
"""

import asyncio
import logging
import os
import uuid
from functools import partial
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional, Union

from pydantic import SecretStr

from .config import EngineSettings
from .errors import (
    CatalogSyncError, FilesystemError, GitOperationFailed, IntegrityCheckFailed,
    InvalidInput, InvalidUrlFormat, NotARepository, RemoteMismatchUnresolved,
    RunAlreadyInProgress, UserCancelled,
)
from .github import verify_repository
from .models import (
    Decision, SyncOutcome, SyncResult, SyncStage, SyncState,
    local_changes_conflict, missing_files, non_empty_folder, repo_mismatch,
)
from .remote import parse_remote_url, redact, same_repository, strip_credentials
from .repository import GitRepository, RepositoryStatus, purge_directory
from .store import ConfigStore, RepositoryConfig


logger = logging.getLogger(__name__)


ProgressCallback = Callable[[SyncState], None]
Event = Union[Decision, SyncResult]


# project path -> the run currently holding it
_active_runs: Dict[str, 'SyncRun'] = {}


def _run_key(path) -> str:
    return os.path.normcase(os.path.realpath(os.path.expanduser(str(path))))


def active_run(path) -> Optional['SyncRun']:
    """
    The run currently active against path, if any.
    """

    return _active_runs.get(_run_key(path))


def commit_message(status: RepositoryStatus) -> str:
    """
    Describe a set of local changes as a commit message.
    """

    counts = status.counts
    parts = []

    added = counts.get('added', 0) + counts.get('untracked', 0)
    modified = counts.get('modified', 0) + counts.get('renamed', 0)
    deleted = counts.get('deleted', 0)

    if added:
        parts.append(f'Added {added} file(s)')
    if modified:
        parts.append(f'Modified {modified} file(s)')
    if deleted:
        parts.append(f'Deleted {deleted} file(s)')

    return f'Update catalog: {", ".join(parts)}' if parts else 'Update catalog'


class SyncRun:
    """
    One orchestration run. Owns its SyncState for its whole lifetime.
    """

    def __init__(self, project_path: str, on_progress: Optional[ProgressCallback] = None):
        self.id = uuid.uuid4().hex
        self.project_path = project_path
        self.state = SyncState()
        self.result: Optional[SyncResult] = None

        self._on_progress = on_progress
        self._events: asyncio.Queue = asyncio.Queue()
        self._choice: Optional[asyncio.Future] = None
        self._task: Optional[asyncio.Task] = None


    @property
    def done(self) -> bool:
        return self.result is not None


    async def next(self) -> Event:
        """
        Wait for the next Decision, or the terminal SyncResult. Once the
        run has finished this keeps returning the result.
        """

        if self.result is not None and self._events.empty():
            return self.result
        return await self._events.get()


    async def wait(self) -> SyncResult:
        """
        Wait for the terminal result. Pending decisions must still be
        resolved for the run to finish.
        """

        try:
            await asyncio.shield(self._task)
        except asyncio.CancelledError:
            if not self._task.cancelled():
                raise

        return self.result


    def resolve(self, option_id: str) -> None:
        """
        Answer the pending decision with one of its option ids. Each
        decision can be resolved exactly once.
        """

        decision = self.state.pending_decision
        if decision is None or self._choice is None or self._choice.done():
            raise InvalidInput('There is no pending decision to resolve')

        if option_id not in decision.option_ids:
            raise InvalidInput(
                f'{option_id!r} is not an option for {decision.kind.value}; '
                f'expected one of {", ".join(decision.option_ids)}')

        self._choice.set_result(option_id)


    def cancel(self) -> bool:
        """
        Cancel the run. Returns False if it had already finished.
        """

        if self._task is None or self._task.done():
            return False

        logger.info(f'Cancelling run {self.id} for {self.project_path}')
        self._task.cancel()
        return True


    def _start(self, flow: Callable[[], Awaitable[SyncResult]], secrets=()) -> None:
        self._task = asyncio.ensure_future(self._drive(flow, secrets))
        self._task.add_done_callback(self._task_done)


    def _notify(self) -> None:
        if self._on_progress is not None:
            self._on_progress(self.state.model_copy(deep=True))


    def _advance(self, stage: SyncStage, step: Optional[str] = None) -> None:
        state = self.state
        previous = state.current_step
        if previous and previous != step and previous not in state.completed_steps:
            state.completed_steps.append(previous)

        state.stage = stage
        state.current_step = step
        logger.debug(f'Run {self.id}: {stage.value} / {step}')
        self._notify()


    async def _ask(self, decision: Decision) -> str:
        """
        Publish decision and suspend until it is resolved.
        """

        self._choice = asyncio.get_running_loop().create_future()
        self.state.pending_decision = decision
        self.state.stage = SyncStage.AWAITING_DECISION
        self._notify()

        logger.info(f'Run {self.id} awaiting {decision.kind.value} decision')
        self._events.put_nowait(decision)

        try:
            choice = await self._choice
        finally:
            self._choice = None
            self.state.pending_decision = None

        logger.info(f'Run {self.id} resolved {decision.kind.value} with {choice!r}')
        self.state.stage = SyncStage.RESOLVING
        self._notify()
        return choice


    def _release(self) -> None:
        key = _run_key(self.project_path)
        if _active_runs.get(key) is self:
            del _active_runs[key]


    def _finish(self, result: SyncResult) -> SyncResult:
        self._release()

        if result.outcome is SyncOutcome.CANCELLED:
            self.state.stage = SyncStage.CANCELLED
        else:
            self.state.stage = SyncStage.DONE
            if result.success and self.state.current_step:
                self.state.completed_steps.append(self.state.current_step)

        self.state.current_step = None
        self.state.pending_decision = None
        self.result = result
        self._notify()
        self._events.put_nowait(result)
        return result


    async def _drive(self, flow: Callable[[], Awaitable[SyncResult]], secrets) -> SyncResult:
        try:
            result = await flow()

        except asyncio.CancelledError:
            logger.info(f'Run {self.id} for {self.project_path} was cancelled')
            result = SyncResult.cancelled('Cancelled; changes already completed were kept')

        except UserCancelled as e:
            logger.info(f'Run {self.id} for {self.project_path} cancelled by choice')
            result = SyncResult.cancelled(e.detail or 'Cancelled')

        except CatalogSyncError as e:
            logger.error(f'Run {self.id} for {self.project_path} failed: {e.kind}: {e.detail}')
            result = SyncResult.failure(e)

        except OSError as e:
            error = FilesystemError(f'{e.strerror or e}: {e.filename or self.project_path}')
            logger.error(f'Run {self.id} for {self.project_path} failed: {error.detail}')
            result = SyncResult.failure(error)

        except Exception as e:
            logger.error(f'Run {self.id} for {self.project_path} failed unexpectedly: {e}', exc_info=True)
            result = SyncResult(
                outcome=SyncOutcome.FAILURE,
                message=f'Unexpected error: {e}',
                error={'kind': 'UnexpectedError', 'detail': str(e)})

        result.message = redact(result.message, *secrets)
        if result.error and 'detail' in result.error:
            result.error['detail'] = redact(result.error['detail'], *secrets)

        return self._finish(result)


    def _task_done(self, task: asyncio.Task) -> None:
        # a task cancelled before its first step never enters _drive
        if self.result is None:
            self._finish(SyncResult.cancelled('Cancelled before starting'))


class SyncOrchestrator:
    """
    Sequences the repository client, remote verifier, and configuration
    store for connect, force-clone, and publish runs.
    """

    def __init__(self,
                 settings: Optional[EngineSettings] = None,
                 store: Optional[ConfigStore] = None,
                 verifier: Optional[Callable[..., Awaitable]] = None,
                 repository_factory: Optional[Callable[[Path], GitRepository]] = None):

        self.settings = settings or EngineSettings()
        self.store = store
        self.verifier = verifier or self._verify
        self._repository_factory = repository_factory


    def _repository(self, path: Path) -> GitRepository:
        if self._repository_factory is not None:
            return self._repository_factory(path)
        return GitRepository(path, git=self.settings.git_binary)


    async def _verify(self, remote_url: str, username: str, token: str):
        return await verify_repository(
            remote_url, username, token,
            api_url=self.settings.github_api_url,
            host=self.settings.github_host,
            timeout=self.settings.request_timeout)


    def _begin(self, config: RepositoryConfig, token: Optional[str], flow,
               on_progress: Optional[ProgressCallback], *args) -> SyncRun:

        key = _run_key(config.project_path)
        existing = _active_runs.get(key)
        if existing is not None and not existing.done:
            raise RunAlreadyInProgress(
                f'A synchronization run is already in progress for {config.project_path}')

        token = token or config.secret()

        run = SyncRun(config.project_path, on_progress)
        _active_runs[key] = run
        run._start(partial(flow, run, config, token, *args), secrets=(token,))

        logger.info(f'Started run {run.id} ({flow.__name__.strip("_")}) for {config.project_path}')
        return run


    def connect(self, config: RepositoryConfig, token: Optional[str] = None,
                on_progress: Optional[ProgressCallback] = None) -> SyncRun:
        """
        Bring config.project_path in line with config.remote_url, cloning,
        restoring, or relinking as needed.
        """

        return self._begin(config, token, self._connect, on_progress)


    def force_clone(self, config: RepositoryConfig, token: Optional[str] = None,
                    on_progress: Optional[ProgressCallback] = None) -> SyncRun:
        """
        Purge the project folder unconditionally and clone it again. Only
        for explicit "start over" requests.
        """

        return self._begin(config, token, self._force_clone, on_progress)


    def publish(self, config: RepositoryConfig, token: Optional[str] = None,
                message: Optional[str] = None,
                on_progress: Optional[ProgressCallback] = None) -> SyncRun:
        """
        Commit and push local changes in config.project_path.
        """

        return self._begin(config, token, self._publish, on_progress, message)


    def _persist(self, config: RepositoryConfig, token: Optional[str]) -> None:
        if self.store is None:
            return

        if token:
            config = config.model_copy(update={'token': SecretStr(token)})
        self.store.save(config)


    def _missing_files(self, path: Path) -> List[str]:
        return [name for name in self.settings.required_files if not (path / name).exists()]


    async def _prepare(self, repo: GitRepository) -> None:
        """
        Fail early when git cannot be run, and clear lock files left by a
        killed git process. The run holds the project path, so no other
        git operation of this engine is using it.
        """

        version = await repo.check_installation()
        logger.debug(f'Using git {version} for {repo.path}')

        removed = repo.remove_stale_locks()
        if removed:
            logger.warning(f'Removed stale lock files from {repo.path}: {", ".join(removed)}')


    async def _connect(self, run: SyncRun, config: RepositoryConfig,
                       token: Optional[str]) -> SyncResult:

        path = Path(config.project_path)
        repo = self._repository(path)

        run._advance(SyncStage.CHECKING_PATH, 'folder')
        await self._prepare(repo)

        if not path.exists():
            return await self._clone(run, repo, config, token)
        if not path.is_dir():
            raise FilesystemError(f'{path} exists but is not a directory')

        entries = list(path.iterdir())
        if not entries:
            return await self._clone(run, repo, config, token)

        if not await repo.is_repository():
            choice = await run._ask(non_empty_folder(str(path), len(entries)))
            if choice == 'cancel':
                raise UserCancelled(f'{path} was left untouched')

            purge_directory(path)
            return await self._clone(run, repo, config, token)

        run._advance(SyncStage.VALIDATING_INTEGRITY, 'files')

        missing = self._missing_files(path)
        if missing:
            choice = await run._ask(missing_files(missing))
            if choice == 'cancel':
                raise UserCancelled('No changes were made')

            if choice == 'fresh':
                purge_directory(path)
                return await self._clone(run, repo, config, token)

            return await self._restore(run, repo, config, token)

        run._advance(SyncStage.VALIDATING_REMOTE, 'connection')

        current = strip_credentials(await repo.get_remote_url(self.settings.remote_name))
        desired = strip_credentials(config.remote_url)

        if same_repository(current, desired):
            self._persist(config, token)
            return SyncResult(
                outcome=SyncOutcome.SUCCESS,
                already_exists=True,
                message='Repository is already configured; nothing was downloaded')

        choice = await run._ask(repo_mismatch(current, desired))
        if choice == 'cancel':
            raise UserCancelled('The current setup was kept')

        if choice == 'reclone':
            purge_directory(path)
            return await self._clone(run, repo, config, token)

        return await self._switch(run, repo, config, token, current)


    async def _force_clone(self, run: SyncRun, config: RepositoryConfig,
                           token: Optional[str]) -> SyncResult:

        path = Path(config.project_path)
        repo = self._repository(path)

        run._advance(SyncStage.CLONING, 'preparing')
        await self._prepare(repo)

        logger.warning(f'Force clone requested; purging {path}')
        purge_directory(path)

        return await self._clone(run, repo, config, token)


    async def _clone(self, run: SyncRun, repo: GitRepository, config: RepositoryConfig,
                     token: Optional[str]) -> SyncResult:
        """
        Clone the desired remote into the (now empty) project path.
        """

        run._advance(SyncStage.CLONING, 'connecting')

        source = strip_credentials(config.remote_url)
        if not source:
            raise InvalidInput('A repository URL is required')

        try:
            remote = parse_remote_url(source, self.settings.github_host)
        except InvalidUrlFormat:
            # unverified runs may clone from local paths and other hosts
            if self.settings.verify_before_clone:
                raise
            remote = None

        if self.settings.verify_before_clone:
            await self.verifier(config.remote_url, config.username, token)

        run._advance(SyncStage.CLONING, 'downloading')

        authenticated = None
        if remote is not None and token:
            authenticated = remote.authenticated_url(config.username or 'x-access-token', token)

        try:
            await repo.clone(source, authenticated, token=token)
        except GitOperationFailed:
            logger.warning(f'Clone into {repo.path} failed; removing partial contents')
            purge_directory(repo.path)
            raise

        run._advance(SyncStage.CLONING, 'finalizing')
        self._persist(config, token)

        name = remote.full_name if remote is not None else source
        return SyncResult(
            outcome=SyncOutcome.SUCCESS,
            cloned=True,
            message=f'Downloaded {name} to {repo.path}')


    async def _restore(self, run: SyncRun, repo: GitRepository, config: RepositoryConfig,
                       token: Optional[str]) -> SyncResult:
        """
        Hard-reset the working copy to its remote's current state, keeping
        the repository's own remote linkage.
        """

        run._advance(SyncStage.RESOLVING, 'restoring')

        remote_name = self.settings.remote_name
        branch = await repo.current_branch() or self.settings.default_branch

        await repo.fetch(remote_name, config.username, token)
        await repo.reset_hard(f'{remote_name}/{branch}')

        still_missing = self._missing_files(repo.path)
        if still_missing:
            raise IntegrityCheckFailed(still_missing)

        self._persist(config, token)
        return SyncResult(
            outcome=SyncOutcome.SUCCESS,
            restored=True,
            message=f'Restored the working copy from {remote_name}/{branch}')


    async def _switch(self, run: SyncRun, repo: GitRepository, config: RepositoryConfig,
                      token: Optional[str], current: Optional[str]) -> SyncResult:
        """
        Point the working copy at the desired remote without touching files.
        """

        run._advance(SyncStage.RESOLVING, 'switching')

        remote_name = self.settings.remote_name
        desired = strip_credentials(config.remote_url)

        if current is None:
            await repo.add_remote(remote_name, desired)
        else:
            await repo.set_remote_url(remote_name, desired)

        updated = strip_credentials(await repo.get_remote_url(remote_name))
        if not same_repository(updated, desired):
            raise RemoteMismatchUnresolved(updated, desired)

        self._persist(config, token)
        return SyncResult(
            outcome=SyncOutcome.SUCCESS,
            switched=True,
            message=f'Now connected to {desired}; local files were kept')


    async def _publish(self, run: SyncRun, config: RepositoryConfig, token: Optional[str],
                       message: Optional[str] = None) -> SyncResult:

        path = Path(config.project_path)
        repo = self._repository(path)
        remote_name = self.settings.remote_name

        run._advance(SyncStage.PUBLISHING, 'checking-changes')
        await self._prepare(repo)

        if not await repo.is_repository():
            raise NotARepository(f'{path} is not a repository; connect it first')

        current = strip_credentials(await repo.get_remote_url(remote_name))
        desired = strip_credentials(config.remote_url)
        if not same_repository(current, desired):
            raise RemoteMismatchUnresolved(current, desired)

        status = await repo.status()
        if status.is_clean:
            return SyncResult(
                outcome=SyncOutcome.SUCCESS,
                nothing_to_publish=True,
                message='Nothing to publish')

        branch = status.current_branch or self.settings.default_branch

        run._advance(SyncStage.PUBLISHING, 'fetching')
        await repo.fetch(remote_name, config.username, token)
        status = await repo.status()

        if status.behind > 0:
            choice = await run._ask(local_changes_conflict(status.changed_files, status.behind))
            if choice == 'cancel':
                raise UserCancelled('Nothing was changed')

            if choice == 'discard':
                run._advance(SyncStage.PUBLISHING, 'discarding')
                await repo.reset_hard(f'{remote_name}/{branch}', clean=True)
                return SyncResult(
                    outcome=SyncOutcome.SUCCESS,
                    discarded=True,
                    message=f'Local changes discarded; now matching {remote_name}/{branch}')

        return await self._commit_and_push(run, repo, config, token, status, branch, message)


    async def _commit_and_push(self, run: SyncRun, repo: GitRepository,
                               config: RepositoryConfig, token: Optional[str],
                               status: RepositoryStatus, branch: str,
                               message: Optional[str]) -> SyncResult:
        """
        Commit everything and push it. A push rejected because the remote
        advanced is retried exactly once after pulling.
        """

        remote_name = self.settings.remote_name
        message = message or commit_message(status)

        run._advance(SyncStage.PUBLISHING, 'committing')
        author_email = None
        if config.username:
            author_email = f'{config.username}@{self.settings.author_email_domain}'
        await repo.commit(message, author_name=config.username or None, author_email=author_email)

        run._advance(SyncStage.PUBLISHING, 'pushing')
        try:
            await repo.push(remote_name, branch, config.username, token)

        except GitOperationFailed as e:
            if not e.is_push_rejected:
                raise

            logger.warning(f'Push to {remote_name}/{branch} rejected; pulling and retrying once')
            run._advance(SyncStage.PUBLISHING, 'pulling')
            await repo.pull(remote_name, branch, config.username, token, rebase=True,
                            author_name=config.username or None, author_email=author_email)

            run._advance(SyncStage.PUBLISHING, 'pushing')
            await repo.push(remote_name, branch, config.username, token)

        commit = await repo.head()
        return SyncResult(
            outcome=SyncOutcome.SUCCESS,
            published=True,
            commit=commit,
            message=f'Published {status.total_changes} change(s) to {remote_name}/{branch}')


# The end.
