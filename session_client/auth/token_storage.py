"""
Secure Session Storage for the Session Sync Client.

This module persists session records using the system keyring or encrypted
file storage as fallback.
"""

import os
import json
import logging
from datetime import datetime
from typing import Optional, Dict, Any, List
from pathlib import Path
import base64
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from session_shared.exceptions import CredentialStoreError, ErrorCode

logger = logging.getLogger(__name__)


def _write_private(path: Path, data: bytes) -> None:
    """Write `data` to a file readable only by its owner, from the moment it exists."""
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, 'wb') as f:
        f.write(data)
    # The mode argument only applies on creation.
    os.chmod(path, 0o600)


class SecureTokenStorage:
    """
    Secure storage for session records.

    Uses system keyring when available, falls back to an encrypted file.
    Records are JSON dictionaries keyed by namespace.
    """

    def __init__(self, service_name: str = "session-sync-client",
                 storage_path: Optional[str] = None,
                 use_keyring: bool = True):
        self.service_name = service_name
        self.keyring_available = use_keyring and self._check_keyring_availability()
        self.storage_path = Path(storage_path) if storage_path else self._get_storage_path()
        self.storage_path.parent.mkdir(parents=True, exist_ok=True)

        self._encryption_key: Optional[bytes] = None

        logger.info(f"Session storage initialized (keyring: {self.keyring_available})")

    def _check_keyring_availability(self) -> bool:
        """Check if system keyring is available."""
        try:
            import keyring
            test_key = f"{self.service_name}_test"
            keyring.set_password(self.service_name, test_key, "test")
            result = keyring.get_password(self.service_name, test_key)
            keyring.delete_password(self.service_name, test_key)
            return result == "test"
        except Exception as e:
            logger.debug(f"Keyring not available: {e}")
            return False

    def _get_storage_path(self) -> Path:
        """Get path for encrypted file storage."""
        xdg_config = os.environ.get('XDG_CONFIG_HOME')
        if xdg_config:
            config_dir = Path(xdg_config) / 'session-sync'
        else:
            config_dir = Path.home() / '.config' / 'session-sync'
        return config_dir / 'sessions.enc'

    @property
    def key_path(self) -> Path:
        return self.storage_path.with_suffix('.key')

    def _get_encryption_key(self) -> bytes:
        """Get or create encryption key for file storage."""
        if self._encryption_key:
            return self._encryption_key

        if self.keyring_available:
            try:
                import keyring
                stored_key = keyring.get_password(self.service_name, "encryption_key")
                if stored_key:
                    self._encryption_key = base64.b64decode(stored_key.encode())
                    return self._encryption_key
            except Exception as e:
                logger.warning(f"Failed to get encryption key from keyring: {e}")
        elif self.key_path.exists():
            self._encryption_key = self.key_path.read_bytes().strip()
            return self._encryption_key

        password = os.urandom(32)
        salt = os.urandom(16)

        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=100000,
        )
        key = base64.urlsafe_b64encode(kdf.derive(password))

        if self.keyring_available:
            try:
                import keyring
                keyring.set_password(self.service_name, "encryption_key",
                                     base64.b64encode(key).decode())
            except Exception as e:
                logger.warning(f"Failed to store encryption key in keyring: {e}")
        else:
            _write_private(self.key_path, key)

        self._encryption_key = key
        return key

    def _encrypt_data(self, data: str) -> bytes:
        fernet = Fernet(self._get_encryption_key())
        return fernet.encrypt(data.encode())

    def _decrypt_data(self, encrypted_data: bytes) -> str:
        fernet = Fernet(self._get_encryption_key())
        return fernet.decrypt(encrypted_data).decode()

    def store_session(self, namespace: str, session_data: Dict[str, Any]) -> None:
        """
        Store a session record securely.

        Args:
            namespace: Storage namespace (one logical session per namespace)
            session_data: Serialized session (see Session.to_dict)

        Raises:
            CredentialStoreError: If the record could not be written
        """
        record = dict(session_data)
        record['stored_at'] = datetime.now().isoformat()

        try:
            if self.keyring_available:
                self._store_session_keyring(namespace, record)
            else:
                self._store_session_file(namespace, record)

            logger.debug(f"Session stored for namespace {namespace}")

        except Exception as e:
            logger.error(f"Failed to store session: {e}")
            raise CredentialStoreError(
                f"Failed to store session: {e}",
                error_code=ErrorCode.STORE_WRITE_FAILED,
                context={'namespace': namespace},
                cause=e
            )

    def _store_session_keyring(self, namespace: str, record: Dict[str, Any]) -> None:
        import keyring

        keyring.set_password(self.service_name, f"session_{namespace}", json.dumps(record))

    def _store_session_file(self, namespace: str, record: Dict[str, Any]) -> None:
        all_sessions = self._read_all_file()
        all_sessions[namespace] = record
        self._write_all_file(all_sessions)

    def _read_all_file(self) -> Dict[str, Any]:
        if not self.storage_path.exists():
            return {}

        try:
            decrypted_data = self._decrypt_data(self.storage_path.read_bytes())
            return json.loads(decrypted_data)
        except (InvalidToken, ValueError) as e:
            logger.warning(f"Session file is unreadable, starting empty: {e}")
            return {}

    def _write_all_file(self, all_sessions: Dict[str, Any]) -> None:
        encrypted_data = self._encrypt_data(json.dumps(all_sessions))
        _write_private(self.storage_path, encrypted_data)

    def get_session(self, namespace: str) -> Optional[Dict[str, Any]]:
        """
        Retrieve a session record.

        Returns:
            Session dictionary or None if not found or unreadable
        """
        try:
            if self.keyring_available:
                import keyring
                value = keyring.get_password(self.service_name, f"session_{namespace}")
                return json.loads(value) if value else None
            return self._read_all_file().get(namespace)

        except Exception as e:
            logger.error(f"Failed to retrieve session: {e}")
            return None

    def remove_session(self, namespace: str) -> bool:
        """
        Remove a stored session record.

        Returns:
            True if a record was removed
        """
        try:
            if self.keyring_available:
                import keyring
                keyring.delete_password(self.service_name, f"session_{namespace}")
                return True

            all_sessions = self._read_all_file()
            if namespace not in all_sessions:
                return False

            del all_sessions[namespace]
            if all_sessions:
                self._write_all_file(all_sessions)
            else:
                self.storage_path.unlink()
            return True

        except Exception as e:
            logger.warning(f"Failed to remove session: {e}")
            return False

    def list_namespaces(self) -> List[str]:
        """List namespaces held in file storage (keyring cannot enumerate keys)."""
        if self.keyring_available:
            return []
        return sorted(self._read_all_file())
