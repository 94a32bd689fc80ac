"""
Engine settings for the catalogsync application.

Settings come from an optional YAML file, overlaid by CATALOGSYNC_*
environment variables. The engine itself is always handed its settings
explicitly; only the application layer uses the cached get_settings().

:author: Christopher O'Brien <obriencj@preoccupied.net>
:license: GNU General Public License v3
:ai-assistant: Auto via Cursor
"""

import logging
import os
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator


logger = logging.getLogger(__name__)


SETTINGS_PATH = os.environ.get(
    'CATALOGSYNC_SETTINGS_PATH', '~/.config/catalogsync/settings.yaml')


_settings: Optional['EngineSettings'] = None


class EngineSettings(BaseModel):
    """
    Settings shared by the repository client, verifier, and orchestrator
    """

    config_path: str = '~/.config/catalogsync/config.json'
    git_binary: str = 'git'
    remote_name: str = 'origin'
    default_branch: str = 'main'

    github_host: str = 'github.com'
    github_api_url: str = 'https://api.github.com'
    request_timeout: float = 30.0

    required_files: List[str] = Field(default_factory=lambda: ['products.json'])
    verify_before_clone: bool = True
    author_email_domain: str = 'users.noreply.github.com'


    @field_validator('config_path')
    @classmethod
    def expand_config_path(cls, v: str) -> str:
        return os.path.abspath(os.path.expanduser(v))


    @field_validator('required_files', mode='before')
    @classmethod
    def split_required_files(cls, v: Any) -> Any:
        if isinstance(v, str):
            return [name.strip() for name in v.split(',') if name.strip()]
        return v


def _settings_from_env() -> Dict[str, Any]:
    """
    Build a settings dictionary from CATALOGSYNC_* environment variables.
    """

    pairs = (
        ('CATALOGSYNC_CONFIG_PATH', 'config_path'),
        ('CATALOGSYNC_GIT_BINARY', 'git_binary'),
        ('CATALOGSYNC_REMOTE_NAME', 'remote_name'),
        ('CATALOGSYNC_DEFAULT_BRANCH', 'default_branch'),
        ('CATALOGSYNC_GITHUB_HOST', 'github_host'),
        ('CATALOGSYNC_GITHUB_API_URL', 'github_api_url'),
        ('CATALOGSYNC_REQUEST_TIMEOUT', 'request_timeout'),
        ('CATALOGSYNC_REQUIRED_FILES', 'required_files'),
        ('CATALOGSYNC_VERIFY_BEFORE_CLONE', 'verify_before_clone'),
        ('CATALOGSYNC_AUTHOR_EMAIL_DOMAIN', 'author_email_domain'))

    result = {}
    for env_var, settings_key in pairs:
        value = os.environ.get(env_var)
        if value is not None:
            result[settings_key] = value

    return result


def load_settings(path: Optional[str] = None) -> EngineSettings:
    """
    Assemble settings from the YAML file at path (if it exists) and the
    environment. Nothing is cached.
    """

    settings_path = os.path.expanduser(path or SETTINGS_PATH)

    settings_data: Dict[str, Any] = {}
    if os.path.exists(settings_path):
        with open(settings_path, 'r') as f:
            settings_data = yaml.safe_load(f) or {}
        logger.debug(f'Read settings from {settings_path}')

    settings_data.update(_settings_from_env())
    return EngineSettings.model_validate(settings_data)


def get_settings() -> EngineSettings:
    """
    Get the application's settings object.
    """

    global _settings

    if _settings is None:
        _settings = load_settings()
        logger.info(f'Loaded settings; configuration file is {_settings.config_path}')

    return _settings


# The end.
