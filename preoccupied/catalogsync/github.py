"""
GitHub-specific remote verification for the catalogsync application.

:author: Christopher O'Brien <obriencj@preoccupied.net>
:license: GNU General Public License v3
:ai-assistant: Auto via Cursor
"""

import logging
from typing import Any, Dict, Optional

import httpx
from pydantic import BaseModel, Field

from .errors import (
    CatalogSyncError, Forbidden, InvalidCredential, InvalidInput,
    NetworkUnavailable, RemoteApiError, RepositoryNotFoundOrNoAccess,
)
from .remote import DEFAULT_HOST, parse_remote_url, redact


logger = logging.getLogger(__name__)


GITHUB_API_URL = 'https://api.github.com'
USER_AGENT = 'preoccupied-catalogsync'


class RepositoryMeta(BaseModel):
    """
    Repository metadata reported by the hosting API
    """

    name: str
    full_name: str = Field(alias='fullName')
    private: bool = False
    default_branch: str = Field(default='main', alias='defaultBranch')

    model_config = {'populate_by_name': True}


class ConnectionResult(BaseModel):
    """
    Outcome of a connection test
    """

    success: bool
    message: str
    error: Optional[Dict[str, Any]] = None
    repo_meta: Optional[RepositoryMeta] = Field(default=None, alias='repoMeta')

    model_config = {'populate_by_name': True}


def _error_detail(response: httpx.Response, default: str) -> str:
    try:
        return response.json().get('message') or default
    except (ValueError, AttributeError):
        return default


async def verify_repository(
        remote_url: str,
        username: str,
        token: str,
        api_url: str = GITHUB_API_URL,
        host: str = DEFAULT_HOST,
        timeout: float = 30.0) -> RepositoryMeta:
    """
    Confirm that token grants access to the repository at remote_url with
    a single authenticated metadata request. No retries are made.

    Raises InvalidUrlFormat before any network traffic when remote_url is
    not recognizable, and InvalidCredential, RepositoryNotFoundOrNoAccess,
    Forbidden, RemoteApiError, or NetworkUnavailable according to the
    response.
    """

    if not (remote_url and username and token):
        raise InvalidInput('Repository URL, username, and token must all be set')

    remote = parse_remote_url(remote_url, host)

    headers = {
        'Authorization': f'Bearer {token}',
        'Accept': 'application/vnd.github+json',
        'User-Agent': USER_AGENT,
    }

    url = f'{api_url.rstrip("/")}/repos/{remote.owner}/{remote.repo}'
    logger.debug(f'Verifying access to {remote.full_name} as {username}')

    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            r = await client.get(url, headers=headers)
    except httpx.TransportError as e:
        raise NetworkUnavailable(
            f'Cannot reach {api_url}: {redact(str(e), token) or type(e).__name__}') from None

    if r.status_code == 200:
        try:
            data = r.json()
        except ValueError:
            data = None

        if not isinstance(data, dict):
            # a proxy or captive portal answering in place of the API
            raise RemoteApiError(200, 'Unexpected response from GitHub API')

        return RepositoryMeta(
            name=data.get('name') or remote.repo,
            full_name=data.get('full_name') or remote.full_name,
            private=bool(data.get('private')),
            default_branch=data.get('default_branch') or 'main',
        )

    if r.status_code == 401:
        raise InvalidCredential('Invalid token. Please check your personal access token.')

    if r.status_code == 404:
        raise RepositoryNotFoundOrNoAccess(
            f'Repository {remote.full_name} was not found, or the token has no access to it.')

    if r.status_code == 403:
        raise Forbidden(_error_detail(r, 'You may not have permission to access this repository.'))

    raise RemoteApiError(r.status_code, f'GitHub API error ({r.status_code}): '
                         f'{_error_detail(r, "Unknown error")}')


async def test_connection(
        remote_url: str,
        username: str,
        token: str,
        api_url: str = GITHUB_API_URL,
        host: str = DEFAULT_HOST,
        timeout: float = 30.0) -> ConnectionResult:
    """
    verify_repository() reported as a result object instead of raising.
    """

    try:
        meta = await verify_repository(remote_url, username, token,
                                       api_url=api_url, host=host, timeout=timeout)
    except CatalogSyncError as e:
        logger.info(f'Connection test failed: {e.kind}: {e.detail}')
        return ConnectionResult(success=False, message=e.detail, error=e.to_dict())

    return ConnectionResult(
        success=True,
        message=f'Connection successful! Repository: {meta.full_name}',
        repo_meta=meta,
    )


# The end.
