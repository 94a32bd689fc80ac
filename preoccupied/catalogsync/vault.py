"""
Credential vault: encrypts the remote access token at rest.

Tokens are sealed with AES-256-GCM under a key derived by scrypt from a
fixed application passphrase and a fixed salt. This keeps the token out of
plain sight in the configuration file; it is NOT a defense against anyone
able to read this source, who can derive the same key.

:author: Christopher O'Brien <obriencj@preoccupied.net>
:license: GNU General Public License v3
:ai-assistant: Auto via Cursor
"""

import base64
import binascii
import json
import logging
import os
from functools import lru_cache

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from .errors import InvalidInput, MalformedBlob, TamperedOrCorrupt


logger = logging.getLogger(__name__)


APP_PASSPHRASE = 'preoccupied.catalogsync/credential-vault/v1'

BLOB_VERSION = 1
KDF_SALT = b'catalogsync-vault'
KEY_LENGTH = 32
NONCE_LENGTH = 12
TAG_LENGTH = 16


@lru_cache(maxsize=4)
def derive_key(passphrase: str) -> bytes:
    """
    Derive the 256-bit vault key for a passphrase.
    """

    kdf = Scrypt(salt=KDF_SALT, length=KEY_LENGTH, n=2 ** 14, r=8, p=1)
    return kdf.derive(passphrase.encode('utf-8'))


def encrypt(plaintext: str, passphrase: str = APP_PASSPHRASE) -> str:
    """
    Seal plaintext and return the blob as a base64 string. A fresh random
    nonce is generated for every call.
    """

    if not plaintext:
        raise InvalidInput('A non-empty value is required for encryption')

    nonce = os.urandom(NONCE_LENGTH)
    sealed = AESGCM(derive_key(passphrase)).encrypt(nonce, plaintext.encode('utf-8'), None)
    data, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]

    envelope = {
        'v': BLOB_VERSION,
        'nonce': nonce.hex(),
        'tag': tag.hex(),
        'data': data.hex(),
    }
    return base64.b64encode(json.dumps(envelope).encode('utf-8')).decode('ascii')


def _unpack(blob: str):
    """
    Parse a blob into (nonce, tag, data), raising MalformedBlob.
    """

    if not blob or not isinstance(blob, str):
        raise MalformedBlob('Encrypted value is empty')

    try:
        envelope = json.loads(base64.b64decode(blob.encode('ascii'), validate=True))
        nonce = bytes.fromhex(envelope['nonce'])
        tag = bytes.fromhex(envelope['tag'])
        data = bytes.fromhex(envelope['data'])
    except (ValueError, TypeError, KeyError, UnicodeError, binascii.Error):
        raise MalformedBlob('Encrypted value could not be parsed') from None

    if envelope.get('v') != BLOB_VERSION:
        raise MalformedBlob(f'Unsupported blob version: {envelope.get("v")!r}')
    if len(nonce) != NONCE_LENGTH or len(tag) != TAG_LENGTH:
        raise MalformedBlob('Encrypted value has an invalid nonce or tag')

    return nonce, tag, data


def decrypt(blob: str, passphrase: str = APP_PASSPHRASE) -> str:
    """
    Open a blob produced by encrypt(). Raises TamperedOrCorrupt when the
    authentication tag does not verify, and MalformedBlob when the blob is
    not parseable.
    """

    nonce, tag, data = _unpack(blob)

    try:
        plaintext = AESGCM(derive_key(passphrase)).decrypt(nonce, data + tag, None)
    except InvalidTag:
        raise TamperedOrCorrupt('Encrypted value failed authentication') from None

    try:
        return plaintext.decode('utf-8')
    except UnicodeDecodeError:
        raise TamperedOrCorrupt('Decrypted value is not valid text') from None


def looks_encrypted(value) -> bool:
    """
    True if value has the shape of a vault blob. This does not verify it.
    """

    try:
        _unpack(value)
    except MalformedBlob:
        return False
    return True


# The end.
