"""
FastAPI application exposing the catalogsync engine to a local UI.

Runs are started with one request and then driven by further requests:
every response carries the run's state and the next event, which is
either a decision awaiting an option or the run's terminal result.

:author: Christopher O'Brien <obriencj@preoccupied.net>
:license: GNU General Public License v3
:ai-assistant: Auto via Cursor
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import Body, FastAPI, HTTPException
from pydantic import BaseModel, Field, SecretStr, ValidationError

from . import github
from .config import get_settings
from .errors import (
    CatalogSyncError, ConfigStoreError, GitNotInstalled, InvalidInput, NotARepository,
    OrchestrationError, RunAlreadyInProgress, VerificationError,
)
from .models import Decision, SyncResult
from .orchestrator import SyncOrchestrator, SyncRun
from .repository import GitRepository, git_version
from .store import ConfigStore, RepositoryConfig


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


ERROR_STATUS = (
    (InvalidInput, 400),
    (GitNotInstalled, 503),
    (RunAlreadyInProgress, 409),
    (NotARepository, 409),
    (OrchestrationError, 409),
    (VerificationError, 502),
    (ConfigStoreError, 500),
)


# finished runs are kept for reading back, the oldest dropped first
MAX_FINISHED_RUNS = 16

_runs: Dict[str, SyncRun] = {}
_orchestrator: Optional[SyncOrchestrator] = None


class SettingsUpdate(BaseModel):
    """
    Connection settings as posted by the UI; omitted fields are kept
    """

    remote_url: Optional[str] = Field(default=None, alias='remoteUrl')
    username: Optional[str] = None
    project_path: Optional[str] = Field(default=None, alias='projectPath')
    token: Optional[str] = None

    model_config = {'populate_by_name': True}


class PublishRequest(SettingsUpdate):
    message: Optional[str] = None


class DecisionRequest(BaseModel):
    option: str


def get_store() -> ConfigStore:
    return ConfigStore(get_settings().config_path)


def get_orchestrator() -> SyncOrchestrator:
    global _orchestrator

    if _orchestrator is None:
        _orchestrator = SyncOrchestrator(settings=get_settings(), store=get_store())

    return _orchestrator


def http_error(e: CatalogSyncError) -> HTTPException:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(e, error_type):
            break
    else:
        status_code = 500

    return HTTPException(status_code=status_code, detail=e.to_dict())


def run_config(changes: Optional[SettingsUpdate]) -> RepositoryConfig:
    """
    The stored configuration, with its token freshly decrypted, overlaid
    by any fields supplied with the request.
    """

    stored = get_store().load(with_secret=True)

    merged: Dict[str, Any] = {}
    if stored is not None:
        merged = stored.model_dump(exclude={'token', 'encrypted_token'})
        merged['token'] = stored.token

    if changes is not None:
        update = changes.model_dump(exclude={'message'}, exclude_none=True)
        if update.get('token'):
            update['token'] = SecretStr(update['token'])
        merged.update(update)

    if not merged.get('project_path'):
        raise InvalidInput('No project path has been configured')

    try:
        return RepositoryConfig.model_validate(merged)
    except ValidationError as e:
        raise InvalidInput(f'Invalid configuration: {e.errors()[0]["msg"]}') from e


def describe_event(event) -> Dict[str, Any]:
    if isinstance(event, Decision):
        return {'type': 'decision', **event.model_dump(mode='json')}
    return {'type': 'result', **event.model_dump(mode='json')}


def describe_run(run: SyncRun, event=None) -> Dict[str, Any]:
    body = {
        'runId': run.id,
        'projectPath': run.project_path,
        'state': run.state.model_dump(mode='json'),
    }
    if event is not None:
        body['event'] = describe_event(event)
    if run.result is not None:
        body['result'] = run.result.model_dump(mode='json')
    return body


def remember_run(run: SyncRun) -> None:
    _runs[run.id] = run

    finished = [run_id for run_id, known in _runs.items() if known.done]
    for run_id in finished[:-MAX_FINISHED_RUNS]:
        del _runs[run_id]


def find_run(run_id: str) -> SyncRun:
    run = _runs.get(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail=f"Run '{run_id}' not found")
    return run


async def start_run(starter, changes: Optional[SettingsUpdate], **kwargs) -> Dict[str, Any]:
    try:
        config = run_config(changes)
        run = starter(config, **kwargs)
    except CatalogSyncError as e:
        raise http_error(e)

    remember_run(run)
    event = await run.next()
    return describe_run(run, event)


async def app_startup():
    """
    Startup event handler for the app
    """

    try:
        settings = get_settings()
    except Exception as e:
        logger.error(f'Failed to load settings: {e}', exc_info=True)
        raise

    logger.info(f'Repository configuration is kept at {settings.config_path}')


@asynccontextmanager
async def app_lifespan(app: FastAPI):
    """
    Lifespan event handler for the app
    """

    logger.info('Starting up...')

    await app_startup()

    try:
        yield
    finally:
        logger.info('Shutting down...')

        for run in list(_runs.values()):
            if run.cancel():
                await run.wait()


app = FastAPI(lifespan=app_lifespan)


@app.get('/settings')
async def read_settings():
    """
    The stored configuration, safe for display
    """

    try:
        return get_store().display()
    except CatalogSyncError as e:
        raise http_error(e)


@app.put('/settings')
async def write_settings(changes: SettingsUpdate):
    """
    Save connection settings. Without a token the stored one is kept.
    """

    store = get_store()
    try:
        store.update(**changes.model_dump(exclude_none=True))
        return store.display()
    except CatalogSyncError as e:
        raise http_error(e)


@app.post('/settings/test')
async def test_settings(changes: Optional[SettingsUpdate] = Body(None)):
    """
    Probe the remote with the posted credentials, falling back to the
    stored ones for anything omitted.
    """

    settings = get_settings()
    posted = changes or SettingsUpdate()

    try:
        stored = get_store().load(with_secret=True)
    except CatalogSyncError as e:
        raise http_error(e)

    remote_url = posted.remote_url or (stored.remote_url if stored else '')
    username = posted.username or (stored.username if stored else '')
    token = posted.token or (stored.secret() if stored else None)

    result = await github.test_connection(
        remote_url, username, token,
        api_url=settings.github_api_url,
        host=settings.github_host,
        timeout=settings.request_timeout)

    return result.model_dump(mode='json', by_alias=True)


@app.get('/git')
async def git_installation():
    """
    Whether the configured git executable can be run, and its version
    """

    binary = get_settings().git_binary

    try:
        version = await git_version(binary)
    except GitNotInstalled as e:
        return {'installed': False, 'version': None, 'gitPath': binary, 'message': e.detail}

    return {
        'installed': True,
        'version': version,
        'gitPath': binary,
        'message': f'Git is installed (version {version})',
    }


@app.get('/status')
async def repository_status():
    """
    Working copy status for the configured project path
    """

    try:
        config = run_config(None)
        repo = GitRepository(config.project_path, git=get_settings().git_binary)
        status = await repo.status()
    except CatalogSyncError as e:
        raise http_error(e)

    body = status.model_dump(mode='json')
    body['changedFiles'] = status.changed_files
    return body


@app.post('/runs/connect')
async def start_connect(changes: Optional[SettingsUpdate] = Body(None)):
    return await start_run(get_orchestrator().connect, changes)


@app.post('/runs/force-clone')
async def start_force_clone(changes: Optional[SettingsUpdate] = Body(None)):
    """
    Delete the project folder's contents and download the repository again
    """

    return await start_run(get_orchestrator().force_clone, changes)


@app.post('/runs/publish')
async def start_publish(request: Optional[PublishRequest] = Body(None)):
    message = request.message if request is not None else None
    return await start_run(get_orchestrator().publish, request, message=message)


@app.get('/runs/{run_id}')
async def read_run(run_id: str):
    return describe_run(find_run(run_id))


@app.post('/runs/{run_id}/decision')
async def resolve_decision(run_id: str, request: DecisionRequest):
    """
    Answer the run's pending decision and return its next event
    """

    run = find_run(run_id)

    try:
        run.resolve(request.option)
    except CatalogSyncError as e:
        raise http_error(e)

    event = await run.next()
    return describe_run(run, event)


@app.delete('/runs/{run_id}')
async def cancel_run(run_id: str):
    run = find_run(run_id)

    run.cancel()
    result: SyncResult = await run.wait()
    return describe_run(run, result)


# The end.
