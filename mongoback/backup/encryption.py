"""
Passphrase-based encryption of backup archives.

Uses Fernet symmetric encryption with a key derived from the plan passphrase.
Files are processed in chunks so large archives never have to fit in memory:

    MAGIC | salt (16 bytes) | (token length (4 bytes, big endian) | Fernet token)*
"""

import base64
import os
import struct

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .errors import EncryptionFailed
from .types import EncryptionConfig

MAGIC = b'MGBENC1\n'
SALT_SIZE = 16
CHUNK_SIZE = 4 * 1024 * 1024
_LENGTH = struct.Struct('>I')


class FileEncryptor:
    """Encrypts and decrypts archive files for a plan."""

    def __init__(self, config: EncryptionConfig):
        """
        Args:
            config: Plan encryption settings (passphrase, PBKDF2 iterations)
        """
        self.config = config

    def _fernet(self, salt: bytes) -> Fernet:
        # Derive a 32-byte key from the passphrase using PBKDF2
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=self.config.iterations,
        )
        key = base64.urlsafe_b64encode(kdf.derive(self.config.passphrase.encode()))
        return Fernet(key)

    def encrypt(self, source_path: str, dest_path: str) -> str:
        """
        Encrypt a file.

        Args:
            source_path: Plain archive
            dest_path: Encrypted output path

        Returns:
            Diagnostic message

        Raises:
            EncryptionFailed: If reading or writing fails
        """
        salt = os.urandom(SALT_SIZE)
        fernet = self._fernet(salt)
        chunks = 0

        try:
            with open(source_path, 'rb') as src, open(dest_path, 'wb') as dst:
                dst.write(MAGIC)
                dst.write(salt)
                while True:
                    data = src.read(CHUNK_SIZE)
                    if not data:
                        break
                    token = fernet.encrypt(data)
                    dst.write(_LENGTH.pack(len(token)))
                    dst.write(token)
                    chunks += 1
        except OSError as e:
            _discard(dest_path)
            raise EncryptionFailed(f"Encrypting {source_path} failed: {e}") from e

        return f"encrypted {os.path.basename(source_path)} in {chunks} chunks"

    def decrypt(self, source_path: str, dest_path: str) -> str:
        """
        Decrypt a file produced by encrypt().

        Raises:
            EncryptionFailed: If the file is malformed, the passphrase is wrong
                or I/O fails
        """
        try:
            with open(source_path, 'rb') as src, open(dest_path, 'wb') as dst:
                if src.read(len(MAGIC)) != MAGIC:
                    raise EncryptionFailed(f"{source_path} is not an encrypted backup")
                salt = src.read(SALT_SIZE)
                if len(salt) != SALT_SIZE:
                    raise EncryptionFailed(f"{source_path} is truncated")
                fernet = self._fernet(salt)

                while True:
                    header = src.read(_LENGTH.size)
                    if not header:
                        break
                    if len(header) != _LENGTH.size:
                        raise EncryptionFailed(f"{source_path} is truncated")
                    (length,) = _LENGTH.unpack(header)
                    token = src.read(length)
                    if len(token) != length:
                        raise EncryptionFailed(f"{source_path} is truncated")
                    dst.write(fernet.decrypt(token))
        except InvalidToken as e:
            _discard(dest_path)
            raise EncryptionFailed(f"Decrypting {source_path} failed: invalid passphrase or corrupted data") from e
        except EncryptionFailed:
            _discard(dest_path)
            raise
        except OSError as e:
            _discard(dest_path)
            raise EncryptionFailed(f"Decrypting {source_path} failed: {e}") from e

        return f"decrypted {os.path.basename(source_path)}"


def _discard(path: str):
    try:
        os.remove(path)
    except OSError:
        pass
