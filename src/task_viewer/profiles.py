"""
Project Profile Registry

Keeps the list of registered projects (display name, task file path,
project root) and the global viewer settings in JSON files under the
user's home directory. Each change rewrites the whole settings file.
"""

import json
import logging
import re
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError

from .models import GlobalSettings, Profile
from .store import atomic_write_json, local_timestamp

logger = logging.getLogger(__name__)

VERSION = "2.0.0"

# Keys that older releases used for the project list, newest first
PROJECT_LIST_KEYS = ("projects", "profiles", "agents")


class ProfileError(Exception):
    """Settings file could not be written or a profile update is invalid."""


class ProfileNotFoundError(ProfileError):
    pass


def slugify(name: str) -> str:
    """Profile id from a display name: lower-case, `[a-z0-9-]` only, dashes collapsed."""
    slug = re.sub(r"[^a-z0-9-]", "-", name.lower())
    return re.sub(r"-+", "-", slug)


class ProfileRegistry:
    """
    Registered projects backed by a JSON settings file.

    The settings file is read once at construction; a missing or unreadable
    file yields an empty registry and is created on the first save.
    """

    def __init__(self, settings_path: Union[str, Path], global_settings_path: Optional[Union[str, Path]] = None):
        self.settings_path = Path(settings_path).expanduser()
        self.global_settings_path = Path(global_settings_path).expanduser() if global_settings_path else None
        self._lock = threading.RLock()
        self._profiles: List[Profile] = self._load()

    def _load(self) -> List[Profile]:
        try:
            settings = json.loads(self.settings_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            logger.info(f"Settings file not found, starting empty: {self.settings_path}")
            return []
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Error loading settings from {self.settings_path}: {e}")
            return []

        if not isinstance(settings, dict):
            logger.error(f"Settings file {self.settings_path} is not a JSON object")
            return []

        entries: List[Any] = []
        for key in PROJECT_LIST_KEYS:
            if isinstance(settings.get(key), list):
                entries = settings[key]
                break

        profiles = []
        for entry in entries:
            if not isinstance(entry, dict):
                continue
            if not entry.get("id"):
                source_name = entry.get("profileName") or entry.get("name")
                if not source_name:
                    logger.warning(f"Skipping profile without id or name: {entry}")
                    continue
                entry = {**entry, "id": slugify(source_name)}
                logger.info(f"Generated ID '{entry['id']}' from profileName '{source_name}'")
            if not entry.get("name") and entry.get("profileName"):
                entry = {**entry, "name": entry["profileName"]}
            try:
                profiles.append(Profile.model_validate(entry))
            except ValidationError as e:
                logger.warning(f"Skipping invalid profile entry: {e}")
        logger.info(f"Loaded {len(profiles)} projects from {self.settings_path}")
        return profiles

    def _save(self) -> None:
        settings = {
            "projects": [profile.to_record() for profile in self._profiles],
            "lastUpdated": local_timestamp(),
            "version": VERSION,
        }
        try:
            atomic_write_json(self.settings_path, settings)
        except OSError as e:
            raise ProfileError(f"Unable to save settings to {self.settings_path}: {e.strerror or e}") from e

    def list(self) -> List[Profile]:
        with self._lock:
            return list(self._profiles)

    def get(self, profile_id: str) -> Profile:
        with self._lock:
            for profile in self._profiles:
                if profile.id == profile_id:
                    return profile
        raise ProfileNotFoundError(f"Project not found: {profile_id}")

    def add(self, name: str, path: str, project_root: Optional[str] = None) -> Profile:
        """Register a project; an existing profile with the same id is replaced."""
        profile = Profile(id=slugify(name), name=name, path=path, project_root=project_root)
        with self._lock:
            for index, existing in enumerate(self._profiles):
                if existing.id == profile.id:
                    self._profiles[index] = profile
                    break
            else:
                self._profiles.append(profile)
            self._save()
        logger.info(f"Project '{profile.id}' registered for {path}")
        return profile

    def remove(self, profile_id: str) -> None:
        with self._lock:
            self._profiles = [p for p in self._profiles if p.id != profile_id]
            self._save()
        logger.info(f"Project '{profile_id}' removed")

    def rename(self, profile_id: str, name: str) -> Profile:
        return self.update(profile_id, name=name)

    def update(
        self,
        profile_id: str,
        name: Optional[str] = None,
        project_root: Optional[str] = None,
        task_path: Optional[str] = None,
    ) -> Profile:
        """
        Apply the given changes to a profile. A new task path is written to
        `path`, `taskPath` and `filePath` so every reader sees it.

        Raises:
            ProfileNotFoundError: If no profile has `profile_id`
        """
        updates: Dict[str, Any] = {}
        if name is not None:
            if not name.strip():
                raise ProfileError("Project name cannot be empty")
            updates["name"] = name.strip()
        if project_root is not None:
            updates["projectRoot"] = project_root
        if task_path is not None:
            updates.update({"path": task_path, "taskPath": task_path, "filePath": task_path})

        with self._lock:
            for index, profile in enumerate(self._profiles):
                if profile.id == profile_id:
                    updated = Profile.model_validate({**profile.to_record(), **updates})
                    self._profiles[index] = updated
                    self._save()
                    return updated
        raise ProfileNotFoundError(f"Project not found: {profile_id}")

    # Global settings

    def load_global_settings(self) -> GlobalSettings:
        if self.global_settings_path is None:
            return GlobalSettings()
        try:
            data = json.loads(self.global_settings_path.read_text(encoding="utf-8"))
            return GlobalSettings.model_validate(data)
        except FileNotFoundError:
            return GlobalSettings(version=VERSION)
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            logger.error(f"Error loading global settings: {e}")
            return GlobalSettings(version=VERSION)

    def save_global_settings(self, updates: Dict[str, Any]) -> GlobalSettings:
        if self.global_settings_path is None:
            raise ProfileError("Global settings path is not configured")
        current = self.load_global_settings().to_record()
        merged = {**current, **updates, "lastUpdated": local_timestamp(), "version": VERSION}
        try:
            settings = GlobalSettings.model_validate(merged)
        except ValidationError as e:
            raise ProfileError(f"Invalid global settings: {e.errors()[0]['msg']}") from e
        try:
            atomic_write_json(self.global_settings_path, settings.to_record())
        except OSError as e:
            raise ProfileError(f"Unable to save global settings: {e.strerror or e}") from e
        return settings
