from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from shared.db import Task


def _format_dt(value: Optional[datetime]) -> Optional[str]:
    if not value:
        return None
    return value.isoformat()


def _due_at(task: Task) -> Optional[datetime]:
    try:
        return datetime.strptime(f"{task.due_date} {task.due_time}", "%Y-%m-%d %H:%M")
    except (TypeError, ValueError):
        return None


def effective_status(task: Task, now: Optional[datetime] = None) -> str:
    """Pending tasks whose due date and time have passed are reported as overdue."""
    if task.status != "pending":
        return task.status
    due_at = _due_at(task)
    if due_at and due_at < (now or datetime.utcnow()):
        return "overdue"
    return "pending"


def task_to_dict(task: Task, now: Optional[datetime] = None) -> dict:
    return {
        "id": task.id,
        "organizationId": task.organization_id,
        "title": task.title,
        "description": task.description,
        "dueDate": task.due_date,
        "dueTime": task.due_time,
        "priority": task.priority,
        "category": task.category,
        "status": effective_status(task, now),
        "assignedTo": task.assigned_to,
        "createdBy": task.created_by,
        "completedAt": _format_dt(task.completed_at),
        "createdAt": _format_dt(task.created_at),
        "updatedAt": _format_dt(task.updated_at),
    }


def list_tasks(
    db,
    organization_id: str,
    status: Optional[str] = None,
    assigned_to: Optional[str] = None,
) -> List[Task]:
    query = db.query(Task).filter(Task.organization_id == organization_id)
    if assigned_to:
        query = query.filter(Task.assigned_to == assigned_to)
    if status == "completed":
        query = query.filter(Task.status == "completed")
    elif status in {"pending", "overdue"}:
        query = query.filter(Task.status == "pending")
    rows = query.order_by(Task.due_date.asc(), Task.due_time.asc(), Task.created_at.asc()).all()
    if status in {"pending", "overdue"}:
        now = datetime.utcnow()
        rows = [row for row in rows if effective_status(row, now) == status]
    return rows


def get_task(db, organization_id: str, task_id: str) -> Optional[Task]:
    if not task_id:
        return None
    return (
        db.query(Task)
        .filter(Task.id == str(task_id), Task.organization_id == organization_id)
        .one_or_none()
    )


def create_task(db, organization_id: str, payload: Dict[str, Any], created_by: str) -> Task:
    task = Task(
        organization_id=organization_id,
        title=payload["title"],
        description=payload.get("description"),
        due_date=payload["dueDate"],
        due_time=payload["dueTime"],
        priority=payload.get("priority") or "medium",
        category=payload.get("category") or "other",
        status="pending",
        assigned_to=payload.get("assignedTo") or created_by,
        created_by=created_by,
        created_at=datetime.utcnow(),
        updated_at=datetime.utcnow(),
    )
    db.add(task)
    db.flush()
    return task


def update_task(db, task: Task, updates: Dict[str, Any]) -> Task:
    mapping = {
        "title": "title",
        "description": "description",
        "dueDate": "due_date",
        "dueTime": "due_time",
        "priority": "priority",
        "category": "category",
        "assignedTo": "assigned_to",
    }
    for key, column in mapping.items():
        if key in updates:
            setattr(task, column, updates[key])
    if "status" in updates and updates["status"] != task.status:
        task.status = updates["status"]
        task.completed_at = datetime.utcnow() if task.status == "completed" else None
    task.updated_at = datetime.utcnow()
    db.flush()
    return task


def delete_task(db, task: Task) -> None:
    db.delete(task)
    db.flush()
