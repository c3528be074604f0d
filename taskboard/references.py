"""Cached project and user reference data.

Tasks only carry foreign keys. For display the client attaches the
referenced project and user names it already knows; a missing entry
just leaves the display field empty.
"""

import logging
from typing import Iterable, Optional

from taskboard.models import Reference, Task

logger = logging.getLogger(__name__)


class ReferenceCache:
    """Id -> Reference lookups for projects and users."""

    def __init__(
        self,
        projects: Iterable[Reference] = (),
        users: Iterable[Reference] = (),
    ) -> None:
        self._projects: dict[int, Reference] = {p.id: p for p in projects}
        self._users: dict[int, Reference] = {u.id: u for u in users}

    def set_projects(self, projects: Iterable[Reference]) -> None:
        self._projects = {p.id: p for p in projects}
        logger.debug("Cached %d projects", len(self._projects))

    def set_users(self, users: Iterable[Reference]) -> None:
        self._users = {u.id: u for u in users}
        logger.debug("Cached %d users", len(self._users))

    def project(self, project_id: Optional[int]) -> Optional[Reference]:
        return None if project_id is None else self._projects.get(project_id)

    def user(self, user_id: Optional[int]) -> Optional[Reference]:
        return None if user_id is None else self._users.get(user_id)

    def denormalize(self, task: Task) -> Task:
        """Return *task* with its display references filled from the cache."""
        project = self.project(task.project_id)
        user = self.user(task.assigned_to)
        if project == task.project and user == task.assigned_user:
            return task
        return task.model_copy(update={"project": project, "assigned_user": user})
