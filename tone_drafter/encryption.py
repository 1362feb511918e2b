"""
Tone Drafter - Credential Vault
AES-256-GCM mit PBKDF2-abgeleitetem Schlüssel pro Secret

Blob-Format (base64):
    version(1) | key_version(1) | salt(16) | nonce(12) | tag(16) | ciphertext

Das Blob beschreibt sich selbst: Salt, Nonce und die Version des
Master-Keys stehen im Header, eine separate Parameter-Tabelle gibt es nicht.
Der Master-Key selbst wird nie persistiert, er kommt aus der Umgebung.
"""

import base64
import binascii
import hashlib
import logging
import os
import re
from typing import Dict, Mapping, Optional, Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from tone_drafter.exceptions import DecryptionError

logger = logging.getLogger(__name__)


class CredentialVault:
    """Verschlüsselt und entschlüsselt gespeicherte Secrets"""

    FORMAT_VERSION = 1
    SALT_LENGTH = 16
    NONCE_LENGTH = 12
    TAG_LENGTH = 16
    KEY_SIZE = 32
    HEADER_LENGTH = 2
    ITERATIONS = 600000  # OWASP empfiehlt min. 600.000 für PBKDF2-HMAC-SHA256

    @classmethod
    def _derive_key(cls, master_key: str, salt: bytes) -> bytes:
        return hashlib.pbkdf2_hmac(
            "sha256", master_key.encode(), salt, cls.ITERATIONS, dklen=cls.KEY_SIZE
        )

    @classmethod
    def encrypt(cls, plaintext: str, master_key: str, key_version: int = 1) -> str:
        """Verschlüsselt plaintext mit einem frischen Salt und Nonce

        Args:
            plaintext: Zu verschlüsselnder String (leer erlaubt)
            master_key: Master-Key aus der Umgebung
            key_version: Version des Master-Keys, landet im Blob-Header

        Returns:
            Base64-kodiertes Blob
        """
        if not master_key:
            raise ValueError("Master-Key fehlt, Verschlüsselung nicht möglich")
        if not 0 <= key_version <= 255:
            raise ValueError(f"key_version muss zwischen 0 und 255 liegen: {key_version}")

        salt = os.urandom(cls.SALT_LENGTH)
        nonce = os.urandom(cls.NONCE_LENGTH)
        key = cls._derive_key(master_key, salt)

        cipher = Cipher(algorithms.AES(key), modes.GCM(nonce), backend=default_backend())
        encryptor = cipher.encryptor()
        ciphertext = encryptor.update(plaintext.encode("utf-8")) + encryptor.finalize()

        header = bytes([cls.FORMAT_VERSION, key_version])
        blob = header + salt + nonce + encryptor.tag + ciphertext
        return base64.b64encode(blob).decode("ascii")

    @classmethod
    def parse(cls, blob: str) -> Tuple[int, bytes, bytes, bytes, bytes]:
        """Zerlegt ein Blob in (key_version, salt, nonce, tag, ciphertext)"""
        if not blob:
            raise DecryptionError("Leeres Blob")
        try:
            raw = base64.b64decode(blob, validate=True)
        except (binascii.Error, ValueError, TypeError) as e:
            raise DecryptionError("Blob ist kein gültiges base64") from e

        min_length = cls.HEADER_LENGTH + cls.SALT_LENGTH + cls.NONCE_LENGTH + cls.TAG_LENGTH
        if len(raw) < min_length:
            raise DecryptionError(f"Blob zu kurz ({len(raw)} Bytes)")
        if raw[0] != cls.FORMAT_VERSION:
            raise DecryptionError(f"Unbekannte Blob-Version {raw[0]}")

        key_version = raw[1]
        offset = cls.HEADER_LENGTH
        salt = raw[offset : offset + cls.SALT_LENGTH]
        offset += cls.SALT_LENGTH
        nonce = raw[offset : offset + cls.NONCE_LENGTH]
        offset += cls.NONCE_LENGTH
        tag = raw[offset : offset + cls.TAG_LENGTH]
        offset += cls.TAG_LENGTH
        return key_version, salt, nonce, tag, raw[offset:]

    @classmethod
    def key_version_of(cls, blob: str) -> int:
        return cls.parse(blob)[0]

    @classmethod
    def decrypt(cls, blob: str, master_key: Optional[str]) -> str:
        """Entschlüsselt ein Blob

        Raises:
            DecryptionError: Master-Key fehlt oder ist falsch, Tag ungültig,
                Blob korrupt
        """
        if not master_key:
            raise DecryptionError("Master-Key fehlt")

        _, salt, nonce, tag, ciphertext = cls.parse(blob)
        key = cls._derive_key(master_key, salt)

        try:
            cipher = Cipher(algorithms.AES(key), modes.GCM(nonce, tag), backend=default_backend())
            decryptor = cipher.decryptor()
            plaintext = decryptor.update(ciphertext) + decryptor.finalize()
        except InvalidTag as e:
            logger.warning("⚠️ Entschlüsselung fehlgeschlagen: Auth-Tag ungültig")
            raise DecryptionError("Auth-Tag ungültig (falscher Key oder manipuliertes Blob)") from e

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecryptionError("Klartext ist kein UTF-8") from e


def encrypt(plaintext: str, master_key: str) -> str:
    return CredentialVault.encrypt(plaintext, master_key)


def decrypt(blob: str, master_key: Optional[str]) -> str:
    return CredentialVault.decrypt(blob, master_key)


# =============================================================================
# Key-Versionierung & Rotation
# =============================================================================
_VERSIONED_KEY = re.compile(r"^DRAFT_MASTER_KEY_V(\d+)$")


class KeyRing:
    """Master-Keys nach Version

    Nur der aktuelle Key verschlüsselt neue Secrets; jede bekannte Version
    kann entschlüsseln. Alte Keys bleiben als ``DRAFT_MASTER_KEY_V<n>``
    gesetzt, bis ``rotate_all`` gelaufen ist.
    """

    def __init__(self, keys: Dict[int, str], current_version: int = 1):
        self.keys = {int(v): k for v, k in keys.items() if k}
        self.current_version = int(current_version)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "KeyRing":
        env = os.environ if environ is None else environ
        try:
            current_version = int(env.get("DRAFT_MASTER_KEY_VERSION", "1"))
        except ValueError:
            current_version = 1

        keys: Dict[int, str] = {}
        for name, value in env.items():
            match = _VERSIONED_KEY.match(name)
            if match and value:
                keys[int(match.group(1))] = value

        current = env.get("DRAFT_MASTER_KEY")
        if current:
            keys[current_version] = current
        return cls(keys, current_version)

    @property
    def has_current_key(self) -> bool:
        return self.current_version in self.keys

    def encrypt(self, plaintext: str) -> str:
        key = self.keys.get(self.current_version)
        if not key:
            raise ValueError(f"Kein Master-Key für aktuelle Version {self.current_version}")
        return CredentialVault.encrypt(plaintext, key, self.current_version)

    def decrypt(self, blob: str) -> str:
        version = CredentialVault.key_version_of(blob)
        return CredentialVault.decrypt(blob, self.keys.get(version))

    def needs_rotation(self, blob: Optional[str]) -> bool:
        if not blob:
            return False
        return CredentialVault.key_version_of(blob) != self.current_version


def reencrypt(blob: str, keyring: KeyRing) -> str:
    """Entschlüsselt mit der getaggten Version und verschlüsselt mit der aktuellen"""
    return keyring.encrypt(keyring.decrypt(blob))


class CredentialManager:
    """Convenience-Wrapper für die konkreten Secret-Arten"""

    @staticmethod
    def encrypt_mailbox_password(password: str, keyring: KeyRing) -> str:
        return keyring.encrypt(password)

    @staticmethod
    def decrypt_mailbox_password(blob: str, keyring: KeyRing) -> str:
        return keyring.decrypt(blob)

    @staticmethod
    def encrypt_api_key(api_key: str, keyring: KeyRing) -> str:
        return keyring.encrypt(api_key)

    @staticmethod
    def decrypt_api_key(blob: str, keyring: KeyRing) -> str:
        return keyring.decrypt(blob)
