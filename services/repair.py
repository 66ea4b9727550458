from __future__ import annotations
import logging
import uuid
from dataclasses import dataclass, field, replace
from typing import Dict, List, Tuple

from core.models import Group, Project, Snapshot, Task

logger = logging.getLogger(__name__)


@dataclass
class RepairReport:
    created_groups: List[str] = field(default_factory=list)   # ids of groups made for projects
    refreshed_parents: List[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.created_groups or self.refreshed_parents)


def project_group_id(project_id: str) -> str:
    """Id of the group made for a project, the same on every device."""
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"deskcal:project-group:{project_id}"))


def repair_project_groups(projects: List[Project], groups: List[Group]) -> Tuple[List[Project], List[Group], List[str]]:
    """Every project must point at an existing group; missing ones are created from the project.

    The new group's id and creation time derive from the project, so devices
    repairing the same project independently produce the same group.
    """
    group_ids = {g.id for g in groups}
    new_projects: List[Project] = []
    new_groups = list(groups)
    created: List[str] = []
    for project in projects:
        if project.linked_group_id and project.linked_group_id in group_ids:
            new_projects.append(project)
            continue
        group_id = project_group_id(project.id)
        if group_id not in group_ids:
            group = Group(id=group_id, name=project.name, icon=project.icon, color=project.color,
                          created_at=project.created_at)
            new_groups.append(group)
            group_ids.add(group_id)
            created.append(group_id)
            logger.info("project %s had no group, linked new group %s", project.id, group_id)
        new_projects.append(replace(project, linked_group_id=group_id))
    return new_projects, new_groups, created


def refresh_subtask_progress(tasks: List[Task]) -> Tuple[List[Task], List[str]]:
    """Recompute the cached sub-task counters of every parent task."""
    totals: Dict[str, List[int]] = {}
    for task in tasks:
        if task.parent_id:
            counts = totals.setdefault(task.parent_id, [0, 0])
            counts[0] += 1
            counts[1] += 1 if task.is_completed else 0

    out: List[Task] = []
    refreshed: List[str] = []
    for task in tasks:
        total, done = totals.get(task.id, (0, 0))
        if (task.sub_task_total, task.sub_task_completed) != (total, done):
            task = replace(task, sub_task_total=total, sub_task_completed=done)
            refreshed.append(task.id)
        out.append(task)
    return out, refreshed


def repair_snapshot(snapshot: Snapshot) -> Tuple[Snapshot, RepairReport]:
    """Cross-collection fix-ups run after a merge. The input snapshot is left untouched."""
    report = RepairReport()
    projects, groups, report.created_groups = repair_project_groups(snapshot.projects, snapshot.groups)
    tasks, report.refreshed_parents = refresh_subtask_progress(snapshot.tasks)
    return replace(snapshot, projects=projects, groups=groups, tasks=tasks), report
