"""
Local persistence for the client: stored API keys and saved projects.

Everything lives in one JSON document under ``settings.data_dir``; the
stores only see the small get/set/delete/clear surface of KeyValueStore.
"""

from __future__ import annotations

import json
import random
import string
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

from loguru import logger

from sitebuilder.api_keys import DISPLAY_NAMES, PROVIDERS
from sitebuilder.config import get_settings
from sitebuilder.models import Project

API_KEYS_STORAGE_KEY = "sitebuilder-api-keys"
PROJECTS_STORAGE_KEY = "sitebuilder-projects"
CURRENT_PROJECT_KEY = "sitebuilder-current-project"
OPENROUTER_MODEL_KEY = "sitebuilder-openrouter-model"

REQUIRED_PROVIDERS = ("groq", "daytona")


class KeyValueStore(Protocol):
    def get(self, key: str, default: Any = None) -> Any: ...

    def set(self, key: str, value: Any) -> None: ...

    def delete(self, key: str) -> None: ...

    def clear(self) -> None: ...


class JsonFileStore:
    """KeyValueStore backed by a single JSON file, re-read on every access."""

    def __init__(self, path: str | Path | None = None):
        self.path = Path(path) if path else Path(get_settings().data_dir) / "store.json"

    def _load(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.error(f"[storage] Error loading {self.path}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def _save(self, data: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            with open(self.path, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
        except OSError as e:
            raise RuntimeError(f"Failed to save {self.path}: {e}")

    def get(self, key: str, default: Any = None) -> Any:
        return self._load().get(key, default)

    def set(self, key: str, value: Any) -> None:
        data = self._load()
        data[key] = value
        self._save(data)

    def delete(self, key: str) -> None:
        data = self._load()
        if key in data:
            del data[key]
            self._save(data)

    def clear(self) -> None:
        self._save({})


class ApiKeyStore:
    """Provider keys saved by the user, sent with every request."""

    def __init__(self, store: KeyValueStore):
        self.store = store

    def get_all(self) -> dict[str, str]:
        stored = self.store.get(API_KEYS_STORAGE_KEY) or {}
        return {p: v for p, v in stored.items() if p in PROVIDERS and v}

    def get(self, provider: str) -> str | None:
        return self.get_all().get(provider)

    def save(self, keys: dict[str, str]) -> None:
        """Merge ``keys`` into the stored set; an empty value removes a key."""
        current = self.get_all()
        for provider, value in keys.items():
            if provider not in PROVIDERS:
                raise ValueError(f"Unknown provider: {provider}")
            if value:
                current[provider] = value
            else:
                current.pop(provider, None)
        self.store.set(API_KEYS_STORAGE_KEY, current)

    def clear(self) -> None:
        self.store.delete(API_KEYS_STORAGE_KEY)

    def has_required_keys(self) -> bool:
        return not self.missing_required_keys()

    def missing_required_keys(self) -> list[str]:
        return self.missing_keys(REQUIRED_PROVIDERS)

    def missing_keys(self, providers) -> list[str]:
        """Display names of the given providers that have no stored key."""
        keys = self.get_all()
        return [DISPLAY_NAMES[p] for p in dict.fromkeys(providers) if not keys.get(p)]

    def get_openrouter_model_name(self) -> str | None:
        return self.store.get(OPENROUTER_MODEL_KEY) or None

    def save_openrouter_model_name(self, model_name: str | None) -> None:
        if model_name:
            self.store.set(OPENROUTER_MODEL_KEY, model_name)
        else:
            self.store.delete(OPENROUTER_MODEL_KEY)


def new_project_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"project-{int(time.time() * 1000)}-{suffix}"


class ProjectStore:
    """Saved projects, newest first, plus a pointer to the current one."""

    def __init__(self, store: KeyValueStore):
        self.store = store

    def list(self) -> list[Project]:
        raw = self.store.get(PROJECTS_STORAGE_KEY) or []
        projects = []
        for item in raw:
            try:
                projects.append(Project.model_validate(item))
            except ValueError as e:
                logger.warning(f"[storage] Skipping unreadable project: {e}")
        return projects

    def _save_all(self, projects: list[Project]) -> None:
        self.store.set(PROJECTS_STORAGE_KEY, [p.model_dump(by_alias=True, mode="json") for p in projects])

    def get(self, project_id: str) -> Project | None:
        return next((p for p in self.list() if p.id == project_id), None)

    def add(self, name: str, **fields) -> Project:
        """Create a project, store it first in the list and make it current."""
        now = datetime.now()
        project = Project(id=new_project_id(), name=name, created_at=now, updated_at=now, **fields)
        self._save_all([project, *self.list()])
        self.store.set(CURRENT_PROJECT_KEY, project.id)
        return project

    def update(self, project_id: str, **updates) -> Project | None:
        projects = self.list()
        for i, p in enumerate(projects):
            if p.id == project_id:
                updates.pop("id", None)
                projects[i] = p.model_copy(update={**updates, "updated_at": datetime.now()})
                self._save_all(projects)
                return projects[i]
        return None

    def delete(self, project_id: str) -> bool:
        projects = self.list()
        remaining = [p for p in projects if p.id != project_id]
        if len(remaining) == len(projects):
            return False
        self._save_all(remaining)
        if self.store.get(CURRENT_PROJECT_KEY) == project_id:
            self.store.delete(CURRENT_PROJECT_KEY)
        return True

    def set_current(self, project_id: str | None) -> Project | None:
        if project_id is None:
            self.store.delete(CURRENT_PROJECT_KEY)
            return None
        project = self.get(project_id)
        if project:
            self.store.set(CURRENT_PROJECT_KEY, project.id)
        return project

    @property
    def current(self) -> Project | None:
        project_id = self.store.get(CURRENT_PROJECT_KEY)
        return self.get(project_id) if project_id else None

    def clear_all(self) -> None:
        self.store.delete(PROJECTS_STORAGE_KEY)
        self.store.delete(CURRENT_PROJECT_KEY)
