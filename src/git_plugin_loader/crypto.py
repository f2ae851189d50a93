"""
Encryption of the stored GitHub token.

The token is encrypted with Fernet (AES-128-CBC + HMAC-SHA256) using a key
derived from the site secret. Without a configured secret a fixed default
key is used; that only obfuscates the token and is logged as such.
"""

import base64
import hashlib
import logging

from cryptography.fernet import Fernet, InvalidToken

from .errors import AuthFailed

DEFAULT_SECRET = 'git-plugin-loader-default-key'


class TokenCipher:
    """Symmetric cipher for tokens at rest."""

    def __init__(self, secret: str = ''):
        self.logger = logging.getLogger(__name__)
        self.uses_default_key = not secret
        if self.uses_default_key:
            self.logger.warning(
                "No site secret configured (GPL_AUTH_KEY); the GitHub token is "
                "encrypted with the built-in default key and is not protected."
            )
            secret = DEFAULT_SECRET
        key = base64.urlsafe_b64encode(hashlib.sha256(secret.encode('utf-8')).digest())
        self._fernet = Fernet(key)

    def encrypt(self, token: str) -> str:
        if not token:
            return ''
        return self._fernet.encrypt(token.encode('utf-8')).decode('ascii')

    def decrypt(self, encrypted: str) -> str:
        """
        Decrypt a stored token.

        Raises:
            AuthFailed: if the value was not produced with this key
        """
        if not encrypted:
            return ''
        try:
            return self._fernet.decrypt(encrypted.encode('ascii')).decode('utf-8')
        except (InvalidToken, ValueError, UnicodeError):
            raise AuthFailed('Stored GitHub token could not be decrypted. Please save the token again.')
