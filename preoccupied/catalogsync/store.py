"""
Connection settings model and its on-disk store.

The store owns a single JSON file. The access token is only ever written
as a vault blob, and every write replaces the file atomically.

:author: Christopher O'Brien <obriencj@preoccupied.net>
:license: GNU General Public License v3
:ai-assistant: Auto via Cursor
"""

import json
import logging
import os
import tempfile
from contextlib import suppress
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, SecretStr, ValidationError, field_validator

from . import vault
from .errors import ConfigReadFailed, ConfigWriteFailed, InvalidInput, VaultError


logger = logging.getLogger(__name__)


SCHEMA_VERSION = 1

MASKED_TOKEN = '••••••••'


class RepositoryConfig(BaseModel):
    """
    Connection settings for one catalog repository
    """

    remote_url: str = Field(default='', alias='remoteUrl')
    username: str = ''
    project_path: str = Field(alias='projectPath')

    # plaintext, in memory only; never serialized
    token: Optional[SecretStr] = Field(default=None, exclude=True)

    encrypted_token: Optional[str] = Field(default=None, alias='encryptedToken')
    last_updated: Optional[datetime] = Field(default=None, alias='lastUpdated')
    schema_version: int = Field(default=SCHEMA_VERSION, alias='schemaVersion')

    model_config = {'populate_by_name': True}


    @field_validator('project_path')
    @classmethod
    def absolute_project_path(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError('projectPath is required')
        return os.path.abspath(os.path.expanduser(v.strip()))


    def secret(self) -> Optional[str]:
        """
        The plaintext token, or None when absent or empty.
        """

        if self.token is None:
            return None
        return self.token.get_secret_value() or None


class ConfigStore:
    """
    Persists a RepositoryConfig as JSON, sealing the token with the vault
    """

    def __init__(self, path: str, passphrase: str = vault.APP_PASSPHRASE):
        self._path = os.path.abspath(os.path.expanduser(path))
        self._passphrase = passphrase


    @property
    def path(self) -> str:
        return self._path


    def exists(self) -> bool:
        return os.path.isfile(self._path)


    def save(self, config: RepositoryConfig) -> RepositoryConfig:
        """
        Save a copy of config. A plaintext token is encrypted and stripped,
        lastUpdated is stamped, and the file is replaced atomically. Returns
        the copy as written.
        """

        to_save = config.model_copy(deep=True)

        plaintext = to_save.secret()
        if plaintext:
            to_save.encrypted_token = vault.encrypt(plaintext, self._passphrase)
        elif to_save.encrypted_token and not vault.looks_encrypted(to_save.encrypted_token):
            raise InvalidInput('encryptedToken does not hold an encrypted value')

        to_save.token = None
        to_save.last_updated = datetime.now(timezone.utc)
        to_save.schema_version = SCHEMA_VERSION

        text = to_save.model_dump_json(by_alias=True, exclude={'token'}, indent=2)

        try:
            self._write(text)
        except OSError as e:
            raise ConfigWriteFailed(f'Failed to save configuration to {self._path}: {e}') from e

        logger.info(f'Configuration saved to {self._path}')
        return to_save


    def _write(self, text: str) -> None:
        directory = os.path.dirname(self._path)
        os.makedirs(directory, exist_ok=True)

        fd, temp_path = tempfile.mkstemp(dir=directory, prefix='.config-', suffix='.tmp')
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                f.write(text)
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_path, self._path)
        except BaseException:
            with suppress(OSError):
                os.unlink(temp_path)
            raise


    def _read(self) -> Optional[RepositoryConfig]:
        """
        Read the stored configuration exactly as persisted.
        """

        try:
            with open(self._path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            raise ConfigReadFailed(f'Failed to read configuration from {self._path}: {e}') from e

        try:
            return RepositoryConfig.model_validate(data)
        except ValidationError as e:
            raise ConfigReadFailed(
                f'Configuration in {self._path} is invalid: {e.error_count()} error(s)') from e


    def load(self, with_secret: bool = False) -> Optional[RepositoryConfig]:
        """
        Load the stored configuration, or None when nothing is stored yet.

        Without with_secret the encrypted blob is removed entirely. With it,
        the token is decrypted; a blob that fails to decrypt leaves the
        token as None rather than raising.
        """

        config = self._read()
        if config is None:
            return None

        if not with_secret:
            config.encrypted_token = None
            return config

        if config.encrypted_token:
            try:
                config.token = SecretStr(vault.decrypt(config.encrypted_token, self._passphrase))
            except VaultError as e:
                logger.warning(f'Stored token could not be decrypted ({e.kind}); it must be re-entered')
                config.token = None

        return config


    def display(self) -> Optional[Dict[str, Any]]:
        """
        The stored configuration in a form safe to show, with a hasToken
        flag and a masked token marker in place of the credential.
        """

        config = self._read()
        if config is None:
            return None

        has_token = bool(config.encrypted_token)
        shown = config.model_dump(mode='json', by_alias=True, exclude={'token', 'encrypted_token'})
        shown['hasToken'] = has_token
        shown['token'] = MASKED_TOKEN if has_token else ''
        return shown


    def update(self, **changes: Any) -> RepositoryConfig:
        """
        Merge changes into the stored configuration and save it. Without a
        new token the existing encrypted token is kept.
        """

        existing = self._read()
        merged: Dict[str, Any] = {}
        if existing is not None:
            merged = existing.model_dump(by_alias=False, exclude={'token'})

        token = changes.pop('token', None)
        merged.update({k: v for k, v in changes.items() if v is not None})

        if token:
            merged['token'] = token
            merged['encrypted_token'] = None

        try:
            config = RepositoryConfig.model_validate(merged)
        except ValidationError as e:
            raise InvalidInput(f'Invalid configuration: {e.errors()[0]["msg"]}') from e

        return self.save(config)


    def delete(self) -> bool:
        """
        Remove the stored configuration. Returns False if there was none.
        """

        try:
            os.unlink(self._path)
        except FileNotFoundError:
            return False
        except OSError as e:
            raise ConfigWriteFailed(f'Failed to delete configuration {self._path}: {e}') from e

        logger.info(f'Configuration deleted from {self._path}')
        return True


# The end.
