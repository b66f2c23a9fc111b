"""
Durable navigation settings with Redis or file storage
"""
import json
import os
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import redis
from pydantic import ValidationError

from .config import NavigationConfig, get_settings
from .exceptions import InvalidSettingError
from .logging_config import get_logger
from .models import NavigationSettings

logger = get_logger(__name__)


class SettingsBackend(ABC):
    """Key-value storage that survives process restarts"""

    @abstractmethod
    def load(self, key: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    def save(self, key: str, data: Dict[str, Any]) -> bool:
        pass

    @abstractmethod
    def ping(self) -> bool:
        """Whether the storage is currently usable"""
        pass


class MemoryBackend(SettingsBackend):
    """Process-local storage, for tests and ephemeral use"""

    def __init__(self):
        self.data: Dict[str, Dict[str, Any]] = {}

    def load(self, key):
        return self.data.get(key)

    def save(self, key, data):
        self.data[key] = dict(data)
        return True

    def ping(self):
        return True


class JsonFileBackend(SettingsBackend):
    """Stores documents in one JSON file"""

    def __init__(self, path: str):
        self.path = os.path.expanduser(path)

    def _read_all(self) -> Dict[str, Any]:
        if not os.path.exists(self.path):
            return {}
        with open(self.path, "r", encoding="utf-8") as f:
            return json.load(f)

    def load(self, key):
        try:
            return self._read_all().get(key)
        except (OSError, ValueError) as e:
            logger.warning(f"Settings file unreadable, using defaults: {e}")
            return None

    def save(self, key, data):
        try:
            try:
                document = self._read_all()
            except ValueError:
                document = {}
            document[key] = data

            directory = os.path.dirname(self.path)
            if directory:
                os.makedirs(directory, exist_ok=True)

            # Write then rename so a crash never leaves a half-written file
            tmp_path = f"{self.path}.tmp"
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(document, f, indent=2, sort_keys=True)
            os.replace(tmp_path, self.path)
            return True
        except OSError as e:
            logger.error(f"Settings save error: {e}")
            return False

    def ping(self):
        directory = os.path.dirname(self.path) or "."
        try:
            os.makedirs(directory, exist_ok=True)
        except OSError:
            return False
        return os.access(directory, os.W_OK)


class RedisBackend(SettingsBackend):
    """Stores documents as JSON strings in Redis"""

    def __init__(self, url: str, client: Optional[redis.Redis] = None):
        self.client = client or redis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5
        )
        self.client.ping()

    def load(self, key):
        try:
            value = self.client.get(key)
            if value:
                return json.loads(value)
        except (redis.RedisError, ValueError) as e:
            logger.error(f"Settings load error: {e}")
        return None

    def save(self, key, data):
        try:
            return bool(self.client.set(key, json.dumps(data)))
        except redis.RedisError as e:
            logger.error(f"Settings save error: {e}")
            return False

    def ping(self):
        try:
            return bool(self.client.ping())
        except redis.RedisError:
            return False


def build_backend(config: Optional[NavigationConfig] = None) -> SettingsBackend:
    """Redis when configured and reachable, else the settings file"""
    config = config or get_settings()

    if config.redis_url:
        try:
            backend = RedisBackend(config.redis_url)
            logger.info("Redis settings storage initialized successfully")
            return backend
        except redis.RedisError as e:
            logger.warning(f"Redis connection failed, using file storage: {e}")

    return JsonFileBackend(config.settings_path)


def _field_name(key: str) -> Optional[str]:
    """Map a snake_case name or camelCase alias to the model field"""
    fields = NavigationSettings.model_fields
    if key in fields:
        return key
    for name, info in fields.items():
        if info.alias == key:
            return name
    return None


class SettingsStore:
    """
    Navigation presentation preferences, persisted across sessions.

    Readers share one instance; updates are merged under a lock and the
    last writer wins.
    """

    def __init__(self, backend: Optional[SettingsBackend] = None, config: Optional[NavigationConfig] = None):
        self.config = config or get_settings()
        self.backend = backend or build_backend(self.config)
        self.key = self.config.settings_key
        self._lock = threading.Lock()
        self._settings = self._load()

    def _load(self) -> NavigationSettings:
        data = self.backend.load(self.key)
        if data is None:
            return NavigationSettings()

        try:
            return NavigationSettings.model_validate(data)
        except ValidationError as e:
            logger.warning(f"Stored navigation settings invalid, using defaults: {e}")
            return NavigationSettings()

    def reload(self) -> NavigationSettings:
        """Re-read settings from storage"""
        with self._lock:
            self._settings = self._load()
            return self._settings

    def get(self) -> NavigationSettings:
        return self._settings

    def update(self, partial: Optional[Dict[str, Any]] = None, **changes: Any) -> NavigationSettings:
        """
        Merge changes into the settings and persist them.
        Keys may be snake_case or camelCase. Raises InvalidSettingError for
        unknown keys or out-of-range values; nothing is changed then.
        """
        changes = {**(partial or {}), **changes}

        with self._lock:
            merged = self._settings.model_dump()
            for key, value in changes.items():
                name = _field_name(key)
                if name is None:
                    raise InvalidSettingError(key, value)
                merged[name] = value

            try:
                updated = NavigationSettings.model_validate(merged)
            except ValidationError as e:
                loc = e.errors()[0]["loc"]
                field = _field_name(str(loc[0])) if loc else None
                raise InvalidSettingError(field or "settings", merged.get(field) if field else changes)

            self._persist(updated)
            self._settings = updated

        logger.info("Navigation settings updated", extra={"changes": list(changes)})
        return updated

    def reset(self) -> NavigationSettings:
        """Restore defaults"""
        with self._lock:
            self._settings = NavigationSettings()
            self._persist(self._settings)
            return self._settings

    def _persist(self, settings: NavigationSettings) -> None:
        if not self.backend.save(self.key, settings.model_dump(mode="json", by_alias=True)):
            logger.warning("Navigation settings kept in memory only, storage unavailable")
