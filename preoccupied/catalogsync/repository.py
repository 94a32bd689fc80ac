"""
Repository client: a thin async wrapper around the git executable for a
single local working copy.

Network operations take the username and token per call. The credentials
are embedded in the remote URL only for the duration of that call, and the
stored remote is always written back in its credential-free form.

:author: Christopher O'Brien <obriencj@preoccupied.net>
:license: GNU General Public License v3
:ai-assistant: Auto via Cursor
"""

import asyncio
import logging
import os
import shutil
import signal
import stat
import subprocess
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Dict, List, Optional, Sequence

from pydantic import BaseModel, Field

from .errors import GitNotInstalled, GitOperationFailed, NotARepository
from .remote import embed_credentials, redact, strip_credentials


logger = logging.getLogger(__name__)


CHANGE_KINDS = ('modified', 'added', 'deleted', 'renamed', 'untracked', 'conflicted')

LOCK_FILES = ('index.lock', 'HEAD.lock', 'config.lock', 'shallow.lock')


def git_environment() -> Dict[str, str]:
    """
    Environment for git invocations: never prompt for credentials, and
    keep messages in English so failures can be classified.
    """

    env = dict(os.environ)
    env['GIT_TERMINAL_PROMPT'] = '0'
    env['LC_ALL'] = 'C'
    env['LANG'] = 'C'
    return env


async def run(*args: str, cwd: str = None, env: Dict[str, str] = None,
              secrets: Sequence[str] = ()) -> str:
    """
    Run a command and return its decoded stdout. Raises CalledProcessError
    on a non-zero exit.

    The child is started in a session of its own. If the calling task is
    cancelled, the whole process group is killed, which also takes down
    helpers the child spawned (git runs its http transport as a separate
    git-remote-http process holding the same pipes).
    """

    logger.debug(f'Running {redact(" ".join(args), *secrets)} in {cwd}')
    process = await asyncio.create_subprocess_exec(
        *args,
        cwd=cwd,
        env=env,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        start_new_session=True
    )

    try:
        stdout, stderr = await process.communicate()
    except asyncio.CancelledError:
        kill_process_group(process)
        await process.wait()
        raise

    if process.returncode != 0:
        raise subprocess.CalledProcessError(process.returncode, args, output=stdout, stderr=stderr)

    return stdout.decode('utf-8', 'replace')


def kill_process_group(process) -> None:
    """
    SIGKILL every process in the group led by process.
    """

    if not hasattr(os, 'killpg'):
        # no process groups on Windows
        if process.returncode is None:
            process.kill()
        return

    try:
        os.killpg(process.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass


async def git_version(git: str = 'git') -> str:
    """
    The version of the git executable, such as '2.43.0'. Raises
    GitNotInstalled if it cannot be run.
    """

    try:
        output = await run(git, '--version', env=git_environment())
    except subprocess.CalledProcessError as e:
        raise GitNotInstalled(f'{git} --version exited with status {e.returncode}') from None
    except OSError as e:
        raise GitNotInstalled(
            f'Git is not installed or could not be run ({git}: {e.strerror or e}). '
            f'Please install Git to synchronize the catalog.') from None

    # "git version 2.39.3 (Apple Git-145)"
    words = output.split()
    if len(words) >= 3 and words[:2] == ['git', 'version']:
        return words[2]
    return output.strip()


def remote_head(ls_remote_output: str) -> Optional[str]:
    """
    The default branch named by ``git ls-remote --symref <url> HEAD``, or
    None when the remote did not report one.
    """

    for line in ls_remote_output.splitlines():
        if line.startswith('ref: refs/heads/') and line.endswith('\tHEAD'):
            return line[len('ref: refs/heads/'):-len('\tHEAD')]
    return None


def identity(name: Optional[str], email: Optional[str]) -> List[str]:
    """
    Per-invocation git options setting the commit identity.
    """

    options = []
    if name:
        options += ['-c', f'user.name={name}']
    if email:
        options += ['-c', f'user.email={email}']
    return options


def purge_directory(path) -> None:
    """
    Delete everything inside path, including hidden entries such as the
    .git directory. The directory itself is kept.
    """

    def on_error(func, target, exc_info):
        # git marks pack files read-only, which blocks removal on Windows
        os.chmod(target, stat.S_IWRITE)
        func(target)

    root = Path(path)
    if not root.exists():
        return

    for entry in root.iterdir():
        if entry.is_dir() and not entry.is_symlink():
            shutil.rmtree(entry, onerror=on_error)
        else:
            entry.unlink()

    logger.info(f'Purged contents of {root}')


class RepositoryStatus(BaseModel):
    """
    Snapshot of a working copy relative to its upstream
    """

    is_clean: bool = True
    counts: Dict[str, int] = Field(default_factory=lambda: {kind: 0 for kind in CHANGE_KINDS})
    files: Dict[str, List[str]] = Field(default_factory=lambda: {kind: [] for kind in CHANGE_KINDS})
    current_branch: Optional[str] = None
    upstream: Optional[str] = None
    ahead: int = 0
    behind: int = 0


    @property
    def changed_files(self) -> List[str]:
        changed = []
        for kind in CHANGE_KINDS:
            for name in self.files.get(kind, ()):
                if name not in changed:
                    changed.append(name)
        return changed


    @property
    def total_changes(self) -> int:
        return len(self.changed_files)


def parse_status(output: str) -> RepositoryStatus:
    """
    Parse the output of ``git status --porcelain=v2 --branch -z``.
    """

    files: Dict[str, List[str]] = {kind: [] for kind in CHANGE_KINDS}
    branch = upstream = None
    ahead = behind = 0

    entries = output.split('\0')
    index = 0
    while index < len(entries):
        entry = entries[index]
        index += 1

        if not entry:
            continue

        if entry.startswith('# '):
            header = entry[2:].split(' ')
            if header[0] == 'branch.head' and header[1] != '(detached)':
                branch = header[1]
            elif header[0] == 'branch.upstream':
                upstream = header[1]
            elif header[0] == 'branch.ab':
                ahead = abs(int(header[1]))
                behind = abs(int(header[2]))
            continue

        code = entry[0]
        if code == '1':
            fields = entry.split(' ', 8)
            xy, path = fields[1], fields[8]
            if 'D' in xy:
                files['deleted'].append(path)
            elif 'A' in xy:
                files['added'].append(path)
            else:
                files['modified'].append(path)

        elif code == '2':
            fields = entry.split(' ', 9)
            files['renamed'].append(fields[9])
            # the original path follows as its own field
            index += 1

        elif code == 'u':
            fields = entry.split(' ', 10)
            files['conflicted'].append(fields[10])

        elif code == '?':
            files['untracked'].append(entry[2:])

    counts = {kind: len(names) for kind, names in files.items()}
    return RepositoryStatus(
        is_clean=not any(counts.values()),
        counts=counts,
        files=files,
        current_branch=branch,
        upstream=upstream,
        ahead=ahead,
        behind=behind,
    )


class GitRepository:
    """
    Operations against the working copy rooted at path
    """

    def __init__(self, path, git: str = 'git'):
        self.path = Path(path)
        self.git = git


    async def _git(self, operation: str, *args: str, cwd: Optional[str] = None,
                   secrets: Sequence[str] = ()) -> str:
        """
        Run a git subcommand, translating failures into GitOperationFailed
        with any credentials scrubbed from the message.
        """

        if cwd is None:
            cwd = str(self.path)

        try:
            return await run(self.git, *args, cwd=cwd, env=git_environment(), secrets=secrets)

        except subprocess.CalledProcessError as e:
            message = (e.stderr or e.output or b'').decode('utf-8', 'replace')
            message = redact(message, *secrets) or f'exit status {e.returncode}'
            logger.debug(f'git {operation} failed in {cwd}: {message}')
            raise GitOperationFailed(operation, message) from None

        except OSError as e:
            raise GitOperationFailed(operation, f'could not run {self.git}: {e.strerror or e}') from None


    async def is_repository(self) -> bool:
        """
        True only if the metadata directory exists and a status query works
        against it; a broken index counts as not a repository.
        """

        if not (self.path / '.git').exists():
            return False

        try:
            await self._git('status', 'status', '--porcelain')
        except GitOperationFailed as e:
            logger.warning(f'{self.path} has repository metadata but status failed: {e.underlying_message}')
            return False

        return True


    async def status(self) -> RepositoryStatus:
        if not (self.path / '.git').exists():
            raise NotARepository(f'{self.path} is not a git repository')

        output = await self._git('status', 'status', '--porcelain=v2', '--branch', '-z')
        return parse_status(output)


    async def current_branch(self) -> Optional[str]:
        return (await self.status()).current_branch


    async def changed_files(self) -> List[str]:
        return (await self.status()).changed_files


    async def init(self) -> None:
        self.path.mkdir(parents=True, exist_ok=True)
        await self._git('init', 'init')


    async def add_remote(self, name: str, url: str) -> None:
        await self._git('remote add', 'remote', 'add', name, strip_credentials(url))


    async def set_remote_url(self, name: str, url: str) -> None:
        await self._git('remote set-url', 'remote', 'set-url', name, strip_credentials(url))


    async def get_remote_url(self, name: str = 'origin') -> Optional[str]:
        """
        The configured URL of remote name, or None if there is no such
        remote.
        """

        try:
            output = await self._git('remote get-url', 'remote', 'get-url', name)
        except GitOperationFailed as e:
            if 'no such remote' in e.underlying_message.lower():
                return None
            raise

        return output.strip() or None


    @asynccontextmanager
    async def authenticated_remote(self, name: str, username: Optional[str],
                                   token: Optional[str]) -> AsyncIterator[None]:
        """
        Embed credentials in remote name for the duration of the block,
        then restore its credential-free URL.
        """

        current = await self.get_remote_url(name)
        if current is None:
            raise GitOperationFailed('remote', f"No such remote '{name}'")

        clean = strip_credentials(current)
        authenticated = embed_credentials(clean, username, token) if token else clean

        if authenticated == current:
            yield
            return

        await self._git('remote set-url', 'remote', 'set-url', name, authenticated,
                        secrets=(token,))
        try:
            yield
        finally:
            await self._git('remote set-url', 'remote', 'set-url', name, clean)


    async def clone(self, url: str, authenticated_url: Optional[str] = None,
                    token: Optional[str] = None, remote: str = 'origin') -> None:
        """
        Clone url into this (empty or missing) path.

        The repository is initialized with the credential-free url as its
        remote before anything is transferred. The transfer itself uses
        authenticated_url when given, passing it only on the command line,
        so the credential never reaches .git/config however the clone ends.
        """

        if self.path.exists() and any(self.path.iterdir()):
            raise GitOperationFailed(
                'clone', f"destination path '{self.path}' already exists and is not an empty directory")

        clean = strip_credentials(url)
        source = authenticated_url or url

        logger.info(f'Cloning {clean} to {self.path}')
        await self.init()
        await self.add_remote(remote, clean)

        head = remote_head(await self._git(
            'clone', 'ls-remote', '--symref', source, 'HEAD', secrets=(token,)))

        await self._git('clone', 'fetch', '--tags', source,
                        f'+refs/heads/*:refs/remotes/{remote}/*', secrets=(token,))

        branches = (await self._git(
            'clone', 'for-each-ref', '--format=%(refname:strip=3)', f'refs/remotes/{remote}')).split()
        if head not in branches:
            head = branches[0] if branches else None

        if head is None:
            logger.warning(f'{clean} has no branches; nothing was checked out')
            return

        await self._git('clone', 'symbolic-ref', f'refs/remotes/{remote}/HEAD',
                        f'refs/remotes/{remote}/{head}')
        await self._git('clone', 'checkout', '--track', f'{remote}/{head}')


    async def check_installation(self) -> str:
        return await git_version(self.git)


    def remove_stale_locks(self) -> List[str]:
        """
        Delete lock files left in the metadata directory by a git process
        that was killed. Only call this while nothing else is using the
        working copy. Returns the removed paths, relative to .git
        """

        git_dir = self.path / '.git'
        if not git_dir.is_dir():
            return []

        locks = [git_dir / name for name in LOCK_FILES]
        locks.extend(sorted((git_dir / 'refs').rglob('*.lock')))

        removed = []
        for lock in locks:
            if lock.is_file():
                logger.warning(f'Removing stale git lock file {lock}')
                lock.unlink()
                removed.append(lock.relative_to(git_dir).as_posix())

        return removed


    async def commit(self, message: str, author_name: Optional[str] = None,
                     author_email: Optional[str] = None) -> str:
        """
        Stage every change (including deletions) and commit it. Returns the
        new commit id.
        """

        await self._git('add', 'add', '-A')
        await self._git('commit', *identity(author_name, author_email), 'commit', '-m', message)
        return await self.head()


    async def head(self) -> str:
        output = await self._git('rev-parse', 'rev-parse', 'HEAD')
        return output.strip()


    async def fetch(self, remote: str = 'origin', username: Optional[str] = None,
                    token: Optional[str] = None) -> None:
        async with self.authenticated_remote(remote, username, token):
            await self._git('fetch', 'fetch', '--prune', remote, secrets=(token,))


    async def push(self, remote: str = 'origin', branch: Optional[str] = None,
                   username: Optional[str] = None, token: Optional[str] = None) -> None:
        args = ['push', remote]
        if branch:
            args.append(branch)

        async with self.authenticated_remote(remote, username, token):
            await self._git('push', *args, secrets=(token,))


    async def pull(self, remote: str = 'origin', branch: Optional[str] = None,
                   username: Optional[str] = None, token: Optional[str] = None,
                   rebase: bool = False, author_name: Optional[str] = None,
                   author_email: Optional[str] = None) -> None:
        """
        Pull from remote. By default only fast-forwards are accepted; with
        rebase, local commits are replayed onto the remote tip and a
        conflicting rebase is aborted. The author identity is used for the
        replayed commits.
        """

        args = [*identity(author_name, author_email), 'pull']
        args += ['--rebase' if rebase else '--ff-only', remote]
        if branch:
            args.append(branch)

        async with self.authenticated_remote(remote, username, token):
            try:
                await self._git('pull', *args, secrets=(token,))
            except GitOperationFailed:
                git_dir = self.path / '.git'
                if rebase and ((git_dir / 'rebase-merge').exists() or (git_dir / 'rebase-apply').exists()):
                    await self._git('rebase --abort', 'rebase', '--abort')
                raise


    async def reset_hard(self, ref: str, clean: bool = False) -> None:
        """
        Reset tracked files to ref. With clean, untracked files and
        directories are removed as well.
        """

        await self._git('reset', 'reset', '--hard', ref)
        if clean:
            await self._git('clean', 'clean', '-fd')


# The end.
