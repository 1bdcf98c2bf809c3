import base64
import json
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol

import structlog
from cryptography.fernet import Fernet

from usagewatch.errors import PersistenceFailure
from usagewatch.models import (
    DEFAULT_THRESHOLDS,
    AlertState,
    Credential,
    Threshold,
    UsageSnapshot,
)

logger = structlog.get_logger()

SESSION_KEY = "auth.session_key"
SESSION_CAPTURED_AT = "auth.captured_at"
CACHE_LAST_USAGE = "cache.last_usage"
CACHE_LAST_FETCH_TIME = "cache.last_fetch_time"
TRIGGERED_ALERTS = "notifications.triggered_alerts"
LAST_NOTIFICATION_TIMES = "notifications.last_notification_times"
LAST_SESSION_RESET_AT = "notifications.last_session_reset_at"
LAST_WEEKLY_RESET_AT = "notifications.last_weekly_reset_at"
SETTINGS_THRESHOLDS = "settings.thresholds"
SETTINGS_POLL_INTERVAL = "settings.poll_interval_seconds"

STATE_FILE_MODE = 0o600


class Cipher(Protocol):
    """
    symmetric cipher over bytes. cryptography's Fernet satisfies it.
    """

    def encrypt(self, data: "bytes") -> "bytes": ...

    def decrypt(self, token: "bytes") -> "bytes": ...


def load_cipher(key_path: "Path | str") -> "Cipher | None":
    """
    loads the Fernet key kept next to the state file, generating it
    with owner-only permissions on first use. Returns None when the
    key can neither be read nor created; the store then runs in
    plaintext mode.
    """
    key_path = Path(key_path)
    try:
        if key_path.exists():
            key = key_path.read_bytes().strip()
        else:
            key = Fernet.generate_key()
            key_path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(key_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, STATE_FILE_MODE)
            with os.fdopen(fd, "wb") as f:
                f.write(key)
            logger.info("store_key_created", path=str(key_path))
        return Fernet(key)
    except (OSError, ValueError) as e:
        logger.warning("store_key_unavailable", path=str(key_path), error=str(e))
        return None


class KeyValueStore(Protocol):
    """
    KeyValueStore is the generic persistence contract. Encryption
    of sensitive values is delegated to the store itself.
    """

    def get(self, key: "str", default: "Any" = None) -> "Any": ...

    def set(self, key: "str", value: "Any") -> "None": ...

    def delete(self, key: "str") -> "None": ...

    def encrypt(self, value: "str") -> "str": ...

    def decrypt(self, value: "str") -> "str | None": ...


class JsonFileStore:
    """
    JsonFileStore keeps all keys in memory and writes the whole
    document back to a JSON file after every mutation.

    The in-memory copy stays authoritative when a write fails, so
    the process keeps behaving correctly until restart. Writes go
    through a temp file and os.replace() to avoid torn files.
    """

    def __init__(self, path: "Path | str", cipher: "Cipher | None" = None) -> "None":
        self._path = Path(path)
        self._cipher = cipher
        self._data: "dict[str, Any]" = self._load()
        if cipher is None:
            logger.warning("store_encryption_unavailable", path=str(self._path))

    @property
    def path(self) -> "Path":
        return self._path

    def _load(self) -> "dict[str, Any]":
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError, UnicodeDecodeError) as e:
            backup = self._path.with_name(self._path.name + ".bak")
            logger.warning(
                "store_corrupt_resetting",
                path=str(self._path),
                backup=str(backup),
                error=str(e),
            )
            try:
                os.replace(self._path, backup)
            except OSError:
                logger.warning("store_backup_failed", path=str(self._path))
            return {}
        if not isinstance(data, dict):
            logger.warning("store_unexpected_document", path=str(self._path))
            return {}
        return data

    def _flush(self) -> "None":
        tmp = self._path.with_name(self._path.name + ".tmp")
        try:
            payload = json.dumps(self._data, indent=2)
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp.unlink(missing_ok=True)
            # owner-only, the document holds the session credential
            fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_EXCL, STATE_FILE_MODE)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
            os.replace(tmp, self._path)
        except (OSError, TypeError, ValueError) as e:
            raise PersistenceFailure(f"could not write {self._path}: {e}") from e

    def get(self, key: "str", default: "Any" = None) -> "Any":
        return self._data.get(key, default)

    def set(self, key: "str", value: "Any") -> "None":
        self._data[key] = value
        self._flush()

    def delete(self, key: "str") -> "None":
        if key in self._data:
            del self._data[key]
            self._flush()

    def encrypt(self, value: "str") -> "str":
        if self._cipher is None:
            return value
        token = self._cipher.encrypt(value.encode("utf-8"))
        return base64.b64encode(token).decode("ascii")

    def decrypt(self, value: "str") -> "str | None":
        if self._cipher is None:
            return value
        try:
            token = base64.b64decode(value.encode("ascii"), validate=True)
            return self._cipher.decrypt(token).decode("utf-8")
        except Exception as e:
            # binascii.Error and cipher-specific failures such as InvalidToken
            logger.warning("store_decrypt_failed", error=type(e).__name__)
            return None


class CredentialStore:
    """
    get/set/clear of the one session credential. Only the
    SessionManager writes through this class.
    """

    def __init__(self, store: "KeyValueStore") -> "None":
        self._store = store

    def get(self) -> "Credential | None":
        encrypted = self._store.get(SESSION_KEY)
        if not encrypted:
            return None
        value = self._store.decrypt(encrypted)
        if not value:
            return None

        captured_at = datetime.now(timezone.utc)
        raw_captured = self._store.get(SESSION_CAPTURED_AT)
        if raw_captured:
            try:
                captured_at = datetime.fromisoformat(raw_captured)
            except ValueError:
                logger.warning("credential_timestamp_invalid")
        return Credential(value=value, captured_at=captured_at)

    def set(self, credential: "Credential") -> "None":
        try:
            self._store.set(SESSION_KEY, self._store.encrypt(credential.value))
            self._store.set(SESSION_CAPTURED_AT, credential.captured_at.isoformat())
        except PersistenceFailure as e:
            logger.warning("credential_persist_failed", error=str(e))

    def clear(self) -> "None":
        try:
            self._store.delete(SESSION_KEY)
            self._store.delete(SESSION_CAPTURED_AT)
        except PersistenceFailure as e:
            logger.warning("credential_clear_failed", error=str(e))


class SnapshotCache:
    """
    holds the last successfully parsed snapshot for stale fallback.
    """

    def __init__(self, store: "KeyValueStore") -> "None":
        self._store = store

    def get(self) -> "UsageSnapshot | None":
        raw = self._store.get(CACHE_LAST_USAGE)
        if not raw:
            return None
        try:
            return UsageSnapshot.from_dict(raw)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("snapshot_cache_invalid", error=str(e))
            return None

    def last_fetch_time(self) -> "datetime | None":
        raw = self._store.get(CACHE_LAST_FETCH_TIME)
        if not raw:
            return None
        try:
            return datetime.fromisoformat(raw)
        except ValueError:
            return None

    def set(self, snapshot: "UsageSnapshot") -> "None":
        try:
            self._store.set(CACHE_LAST_USAGE, snapshot.to_dict())
            self._store.set(
                CACHE_LAST_FETCH_TIME, datetime.now(timezone.utc).isoformat()
            )
        except PersistenceFailure as e:
            logger.warning("snapshot_cache_persist_failed", error=str(e))


class AlertStateRepository:
    """
    AlertStateRepository loads the alert dedup state once at
    startup and writes it back after every mutation.
    """

    def __init__(self, store: "KeyValueStore") -> "None":
        self._store = store

    def load(self) -> "AlertState":
        try:
            return AlertState.from_dict(
                {
                    "triggered_alerts": self._store.get(TRIGGERED_ALERTS),
                    "last_notification_times": self._store.get(LAST_NOTIFICATION_TIMES),
                    "last_session_reset_at": self._store.get(LAST_SESSION_RESET_AT),
                    "last_weekly_reset_at": self._store.get(LAST_WEEKLY_RESET_AT),
                }
            )
        except (TypeError, ValueError) as e:
            logger.warning("alert_state_invalid", error=str(e))
            return AlertState()

    def save(self, state: "AlertState") -> "None":
        data = state.to_dict()
        try:
            self._store.set(TRIGGERED_ALERTS, data["triggered_alerts"])
            self._store.set(LAST_NOTIFICATION_TIMES, data["last_notification_times"])
            self._store.set(LAST_SESSION_RESET_AT, data["last_session_reset_at"])
            self._store.set(LAST_WEEKLY_RESET_AT, data["last_weekly_reset_at"])
        except PersistenceFailure as e:
            logger.warning("alert_state_persist_failed", error=str(e))

    def clear(self) -> "None":
        self.save(AlertState())


class SettingsStore:
    """
    SettingsStore exposes the externally editable configuration.
    Values are read from the store on every call so edits take
    effect on the next cycle or evaluation.
    """

    def __init__(
        self,
        store: "KeyValueStore",
        default_poll_interval: "float" = 60.0,
    ) -> "None":
        self._store = store
        self._default_poll_interval = default_poll_interval

    def thresholds(self) -> "list[Threshold]":
        raw = self._store.get(SETTINGS_THRESHOLDS)
        if raw is None:
            return list(DEFAULT_THRESHOLDS)

        thresholds: "list[Threshold]" = []
        for entry in raw if isinstance(raw, list) else []:
            try:
                thresholds.append(Threshold.from_dict(entry))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("threshold_setting_invalid", entry=entry, error=str(e))
        return thresholds

    def set_thresholds(self, thresholds: "list[Threshold]") -> "None":
        try:
            self._store.set(SETTINGS_THRESHOLDS, [t.to_dict() for t in thresholds])
        except PersistenceFailure as e:
            logger.warning("settings_persist_failed", error=str(e))

    def poll_interval(self) -> "float":
        raw = self._store.get(SETTINGS_POLL_INTERVAL)
        try:
            value = float(raw) if raw is not None else self._default_poll_interval
        except (TypeError, ValueError):
            logger.warning("poll_interval_setting_invalid", value=raw)
            return self._default_poll_interval
        return value if value > 0 else self._default_poll_interval

    def set_poll_interval(self, seconds: "float") -> "None":
        try:
            self._store.set(SETTINGS_POLL_INTERVAL, seconds)
        except PersistenceFailure as e:
            logger.warning("settings_persist_failed", error=str(e))
