"""
Broker Console - Credential Ledger
====================================
The user record set consulted by broker client authentication and by the
console login. Records are persisted to data/users.json.

Secrets are stored as bcrypt hashes; the plaintext password is only ever
seen while adding a user or checking a login.

Record shape (users.json):
    {
        "users": [
            {"username": "admin", "secret": "$2b$12$...", "disallowed": false,
             "is_admin": true, "remarks": "Super Admin"}
        ]
    }
"""

import json
import logging
import os
import tempfile
import threading

import bcrypt
from pydantic import BaseModel


logger = logging.getLogger(__name__)

# bcrypt only looks at the first 72 bytes of a password.
MAX_PASSWORD_BYTES = 72


class Credential(BaseModel):
    """A single user record."""
    username: str
    secret: str
    disallowed: bool = False
    is_admin: bool = False
    remarks: str = ""

    def check_password(self, password: str) -> bool:
        """Constant-time comparison of a plaintext password with the hash."""
        encoded = password.encode("utf-8")
        if len(encoded) > MAX_PASSWORD_BYTES:
            return False
        try:
            return bcrypt.checkpw(encoded, self.secret.encode("utf-8"))
        except ValueError:
            # Malformed stored hash
            return False


def hash_password(password: str) -> str:
    """
    Hash a plaintext password with a fresh salt.

    Raises:
        ValueError: If the password is empty or longer than bcrypt accepts.
    """
    if not password:
        raise ValueError("password required")
    encoded = password.encode("utf-8")
    if len(encoded) > MAX_PASSWORD_BYTES:
        raise ValueError(f"password must be at most {MAX_PASSWORD_BYTES} bytes")
    return bcrypt.hashpw(encoded, bcrypt.gensalt()).decode("utf-8")


class CredentialLedger:
    """
    Thread-safe, file-backed user store.

    Attributes:
        users_file: Path to the JSON file holding the records.
    """

    def __init__(self, data_dir: str):
        self.users_file = os.path.join(data_dir, "users.json")
        self._lock = threading.Lock()
        self._users: dict[str, Credential] = {}
        self._load()

    def get_users(self) -> list[Credential]:
        """Return copies of all records in insertion order."""
        with self._lock:
            return [u.model_copy() for u in self._users.values()]

    def get_user(self, username: str) -> Credential | None:
        with self._lock:
            user = self._users.get(username)
            return user.model_copy() if user else None

    def add_user(
        self,
        username: str,
        password: str,
        allow: bool = True,
        remarks: str = "",
        is_admin: bool = False,
    ) -> Credential:
        """
        Create or replace a user record.

        When replacing an existing user, an empty password keeps the stored
        secret so profile fields can be edited without re-entering it.

        Raises:
            ValueError: If the username is empty or the password is unusable.
        """
        if not username:
            raise ValueError("username required")

        with self._lock:
            existing = self._users.get(username)
            if password:
                secret = hash_password(password)
            elif existing is not None:
                secret = existing.secret
            else:
                raise ValueError("password required")

            record = Credential(
                username=username,
                secret=secret,
                disallowed=not allow,
                is_admin=is_admin,
                remarks=remarks,
            )
            previous = dict(self._users)
            self._users[username] = record
            try:
                self._save()
            except OSError:
                self._users = previous
                raise

        logger.info("user saved: %s (admin=%s, allowed=%s)", username, is_admin, allow)
        return record.model_copy()

    def remove_user(self, username: str) -> None:
        """
        Delete a user record.

        Raises:
            KeyError: If the user does not exist.
        """
        with self._lock:
            if username not in self._users:
                raise KeyError(username)
            removed = self._users.pop(username)
            try:
                self._save()
            except OSError:
                self._users[username] = removed
                raise

        logger.info("user removed: %s", username)

    # -- Internal helpers ------------------------------------------------------

    def _load(self) -> None:
        """Load users.json from disk, if present."""
        if not os.path.exists(self.users_file):
            return
        with open(self.users_file, "r", encoding="utf-8") as f:
            data = json.load(f)
        for raw in data.get("users", []):
            user = Credential.model_validate(raw)
            self._users[user.username] = user

    def _save(self) -> None:
        """Atomically write users.json. Caller must hold the lock."""
        directory = os.path.dirname(self.users_file)
        os.makedirs(directory, exist_ok=True)
        payload = {"users": [u.model_dump() for u in self._users.values()]}
        fd, tmp_path = tempfile.mkstemp(prefix=".users-", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2, ensure_ascii=False)
            os.replace(tmp_path, self.users_file)
        except OSError:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
