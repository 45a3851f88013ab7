"""
Encryption of credentials stored in the remote storage config file.

Each installation has one key file, <CONFIG_DIR>/.secret_key, holding a
Fernet key. The configuration wizard stores secrets as ``enc:<token>``;
load_config decrypts them with the same key file.
"""

import os
from pathlib import Path

from cryptography.fernet import Fernet


SECRET_KEY_FILE = '.secret_key'


class KeyFileError(Exception):
    """Raised when the key file is missing, unreadable or does not hold a Fernet key."""
    pass


class CredentialCipher:
    """
    Fernet cipher bound to one key file.

    The key is read lazily on first use, so a cipher can be created for a
    config directory that has no key file yet.
    """

    def __init__(self, key_path):
        self.key_path = Path(key_path)
        self._fernet = None

    @classmethod
    def for_config_dir(cls, config_dir) -> 'CredentialCipher':
        return cls(Path(config_dir) / SECRET_KEY_FILE)

    @property
    def has_key(self) -> bool:
        return self.key_path.is_file()

    def create_key(self) -> bool:
        """
        Write a new key file readable only by the owner.

        Returns:
            False if a key file already existed (it is never overwritten)
        """
        if self.has_key:
            return False
        self.key_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.key_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, 'wb') as f:
            f.write(Fernet.generate_key())
        self._fernet = None
        return True

    @property
    def fernet(self) -> Fernet:
        if self._fernet is None:
            try:
                key = self.key_path.read_bytes().strip()
            except FileNotFoundError:
                raise KeyFileError(f"No secret key file at {self.key_path}")
            except OSError as e:
                raise KeyFileError(f"Cannot read {self.key_path}: {e}")
            try:
                self._fernet = Fernet(key)
            except ValueError:
                raise KeyFileError(f"{self.key_path} does not hold a valid key")
        return self._fernet

    def encrypt(self, plaintext: str) -> str:
        return self.fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, token: str) -> str:
        """
        Raises:
            KeyFileError: If the key file cannot be used
            cryptography.fernet.InvalidToken: If the token was made with another key or is corrupted
        """
        return self.fernet.decrypt(token.encode()).decode()
