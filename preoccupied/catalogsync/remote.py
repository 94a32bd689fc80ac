"""
Remote URL grammar for GitHub-style hosts, credential embedding, and
redaction of secrets from free text.

:author: Christopher O'Brien <obriencj@preoccupied.net>
:license: GNU General Public License v3
:ai-assistant: Auto via Cursor
"""

import re
from typing import NamedTuple, Optional, Tuple
from urllib.parse import quote, urlsplit, urlunsplit

from .errors import InvalidUrlFormat


DEFAULT_HOST = 'github.com'

OWNER_PATTERN = r'[A-Za-z0-9-]+'
REPO_PATTERN = r'[A-Za-z0-9_.-]+?'

_URL_RE = re.compile(
    r'^(?P<scheme>https?|ssh)://(?:[^@/\s]+@)?(?P<host>[^/:\s]+)(?::(?P<port>\d+))?'
    rf'/(?P<owner>{OWNER_PATTERN})/(?P<repo>{REPO_PATTERN})(?:\.git)?/*$')

_SCP_RE = re.compile(
    r'^(?:[^@/\s]+@)(?P<host>[^/:\s]+):'
    rf'(?P<owner>{OWNER_PATTERN})/(?P<repo>{REPO_PATTERN})(?:\.git)?/*$')

_CREDENTIALS_RE = re.compile(r'(?P<scheme>[A-Za-z][A-Za-z0-9+.-]*://)[^/@\s]+@')


class RemoteUrl(NamedTuple):
    """
    A parsed remote repository location
    """

    scheme: str
    host: str
    owner: str
    repo: str
    port: Optional[int] = None


    @property
    def key(self) -> Tuple[str, str, Optional[int], str, str]:
        """
        Comparison key; host is case-insensitive, owner and repo are not.
        """

        return (self.scheme, self.host.lower(), self.port, self.owner, self.repo)


    @property
    def full_name(self) -> str:
        return f'{self.owner}/{self.repo}'


    def _transport(self, userinfo: str = '') -> str:
        # tokens only authenticate over http(s); ssh locations use https
        if self.scheme in ('http', 'https'):
            scheme, port = self.scheme, self.port
        else:
            scheme, port = 'https', None

        netloc = f'{userinfo}@{self.host}' if userinfo else self.host
        if port:
            netloc = f'{netloc}:{port}'
        return f'{scheme}://{netloc}/{self.owner}/{self.repo}.git'


    @property
    def clean_url(self) -> str:
        return self._transport()


    def authenticated_url(self, username: str, token: str) -> str:
        """
        The http(s) transport URL with credentials embedded. Only ever hand
        this to a single git invocation.
        """

        return self._transport(f'{quote(username, safe="")}:{quote(token, safe="")}')


def parse_remote_url(url: str, host: Optional[str] = DEFAULT_HOST) -> RemoteUrl:
    """
    Parse url into its (scheme, host, owner, repo, port) parts. When host is
    given the url must point at it. Raises InvalidUrlFormat.
    """

    text = (url or '').strip()

    found = _URL_RE.match(text)
    if found:
        scheme = found.group('scheme')
    else:
        found = _SCP_RE.match(text)
        scheme = 'ssh'

    if not found:
        raise InvalidUrlFormat(
            f'Invalid repository URL format: {strip_credentials(text)!r}. '
            f'Expected: https://{host or DEFAULT_HOST}/owner/repo')

    port = found.groupdict().get('port')
    parsed = RemoteUrl(scheme, found.group('host'), found.group('owner'), found.group('repo'),
                       int(port) if port else None)
    if host and parsed.host.lower() != host.lower():
        raise InvalidUrlFormat(
            f'Repository URL must point at {host}, not {parsed.host}')

    return parsed


def same_repository(current: Optional[str], desired: str, host: Optional[str] = None) -> bool:
    """
    True if both urls name the same repository. Unparseable urls only
    match when they are textually identical once credentials are removed.
    """

    if not current:
        return False

    try:
        return parse_remote_url(current, host).key == parse_remote_url(desired, host).key
    except InvalidUrlFormat:
        return strip_credentials(current).rstrip('/') == strip_credentials(desired).rstrip('/')


def embed_credentials(url: str, username: str, token: str) -> str:
    """
    Place username and token in the userinfo segment of an http(s) url.
    Other urls (local paths, ssh) are returned unchanged.
    """

    parts = urlsplit(url)
    if parts.scheme not in ('http', 'https') or not token:
        return url

    host = parts.hostname or ''
    if parts.port:
        host = f'{host}:{parts.port}'

    userinfo = f'{quote(username or "git", safe="")}:{quote(token, safe="")}'
    return urlunsplit((parts.scheme, f'{userinfo}@{host}', parts.path, parts.query, parts.fragment))


def strip_credentials(url: Optional[str]) -> Optional[str]:
    """
    Remove any userinfo segment from a url.
    """

    if not url:
        return url
    return _CREDENTIALS_RE.sub(r'\g<scheme>', url)


def redact(text: str, *secrets: Optional[str]) -> str:
    """
    Scrub url credentials and each of secrets from text.
    """

    if not text:
        return text

    for secret in secrets:
        if secret:
            text = text.replace(secret, '***')
            encoded = quote(secret, safe='')
            if encoded != secret:
                text = text.replace(encoded, '***')

    return _CREDENTIALS_RE.sub(r'\g<scheme>***@', text)


# The end.
