"""Project store: the configured documentation roots, persisted as JSON."""

import json
import secrets
from pathlib import Path
from typing import Any, Dict, List, Optional

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError


class Project(BaseModel):
    """A named documentation root."""
    model_config = ConfigDict(extra="allow")

    id: str
    name: str
    path: str


class StoredConfig(BaseModel):
    model_config = ConfigDict(extra="allow")

    projects: List[Project] = Field(default_factory=list)
    settings: Dict[str, Any] = Field(default_factory=lambda: {"sidebarSticky": True})


def new_project_id() -> str:
    return secrets.token_hex(4)


class ProjectStore:
    """
    Projects loaded from the JSON config file.

    The live-sync and search services only ever call :meth:`find_project`
    and :meth:`get_projects`; adding a project is limited to registering a
    directory from the command line.
    """

    def __init__(self, config_path: Path):
        self.config_path = Path(config_path)
        self._data = StoredConfig()

    @classmethod
    def load(cls, config_path: Path) -> "ProjectStore":
        store = cls(config_path)
        store.reload()
        return store

    def reload(self) -> None:
        """Read the config file, keeping defaults if it is missing or invalid."""
        if not self.config_path.exists():
            return
        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
                self._data = StoredConfig(**json.load(f))
        except (OSError, json.JSONDecodeError, ValidationError, TypeError) as e:
            logger.error(f"Failed to load config {self.config_path}: {e}")

    def save(self) -> None:
        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.config_path, 'w', encoding='utf-8') as f:
                f.write(self._data.model_dump_json(indent=2))
        except OSError as e:
            logger.error(f"Failed to save config {self.config_path}: {e}")

    def get_projects(self) -> List[Project]:
        return list(self._data.projects)

    def get_settings(self) -> Dict[str, Any]:
        return dict(self._data.settings)

    def find_project(self, project_id: Optional[str]) -> Optional[Project]:
        if not project_id:
            return None
        for project in self._data.projects:
            if project.id == project_id:
                return project
        return None

    def add_project(self, name: str, project_path: str) -> Project:
        project = Project(
            id=new_project_id(),
            name=name,
            path=str(Path(project_path).expanduser().resolve())
        )
        self._data.projects.append(project)
        self.save()
        logger.info(f"Added project {project.name} ({project.id}) at {project.path}")
        return project

    def add_project_from_cli(self, arg_path: Optional[str]) -> Optional[Project]:
        """
        Register ``arg_path`` as a project unless it is already configured.

        Returns the existing or new project, or None if the path is not a
        directory.
        """
        if not arg_path:
            return None
        absolute_path = Path(arg_path).expanduser().resolve()
        if not absolute_path.is_dir():
            logger.warning(f"Not a directory, ignoring: {absolute_path}")
            return None

        for project in self._data.projects:
            if project.path == str(absolute_path):
                return project
        return self.add_project(absolute_path.name or "Default", str(absolute_path))
