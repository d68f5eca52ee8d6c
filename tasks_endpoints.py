from __future__ import annotations

import logging
from typing import Dict, Optional

import azure.functions as func

from crm_shared import (
    CRMActor,
    error_response,
    json_response,
    parse_json_body,
    permission_error,
    repository_error_response,
    resolve_actor_or_error,
    server_error_response,
)
from function_app import app
from repository.errors import RepositoryError
from repository.notifications_repo import create_notification
from repository.rbac_repo import get_member
from repository.tasks_repo import create_task, delete_task, get_task, list_tasks, task_to_dict, update_task
from schemas.crm_schema import normalize_task_status_filter, validate_task_create, validate_task_update
from shared.db import SessionLocal, Task
from utils.cors import build_cors_headers

logger = logging.getLogger(__name__)


def _validation_error(message: str, cors: Dict[str, str]) -> func.HttpResponse:
    return error_response(cors=cors, status_code=400, message=message, code="validation_error")


def _assignee_error(db, actor: CRMActor, assignee_id: Optional[str], cors: Dict[str, str]) -> Optional[func.HttpResponse]:
    if not assignee_id or assignee_id == actor.user_id:
        return None
    if not get_member(db, assignee_id, actor.organization_id):
        return _validation_error("assignedTo must be a member of the organization", cors)
    return None


def _notify_assignee(db, actor: CRMActor, task: Task) -> None:
    if not task.assigned_to or task.assigned_to == actor.user_id:
        return
    create_notification(
        db,
        organization_id=actor.organization_id,
        user_id=task.assigned_to,
        title="New task assigned",
        description=f"{actor.name} assigned you \"{task.title}\" due {task.due_date} {task.due_time}",
        entity_type="task",
        entity_id=task.id,
    )


def handle_tasks_list(req: func.HttpRequest, cors: Dict[str, str], db, actor: CRMActor) -> func.HttpResponse:
    denied = permission_error(actor, "read:task", cors)
    if denied:
        return denied
    try:
        status = normalize_task_status_filter(req.params.get("status"))
    except ValueError as exc:
        return _validation_error(str(exc), cors)
    assigned_to = str(req.params.get("assignedTo") or "").strip() or None
    if assigned_to == "me":
        assigned_to = actor.user_id
    rows = list_tasks(db, actor.organization_id, status=status, assigned_to=assigned_to)
    return json_response({"tasks": [task_to_dict(row) for row in rows]}, status_code=200, cors=cors)


def handle_task_create(req: func.HttpRequest, cors: Dict[str, str], db, actor: CRMActor, body: dict) -> func.HttpResponse:
    denied = permission_error(actor, "create:task", cors)
    if denied:
        return denied
    try:
        payload = validate_task_create(body)
    except ValueError as exc:
        return _validation_error(str(exc), cors)
    invalid = _assignee_error(db, actor, payload.get("assignedTo"), cors)
    if invalid:
        return invalid
    task = create_task(db, actor.organization_id, payload, actor.user_id)
    _notify_assignee(db, actor, task)
    db.commit()
    return json_response({"task": task_to_dict(task)}, status_code=201, cors=cors)


def handle_tasks(req: func.HttpRequest, cors: Dict[str, str]) -> func.HttpResponse:
    body = parse_json_body(req)
    db = SessionLocal()
    try:
        actor, auth_error = resolve_actor_or_error(db, req, body, cors)
        if auth_error:
            return auth_error
        assert actor
        if req.method == "GET":
            return handle_tasks_list(req, cors, db, actor)
        return handle_task_create(req, cors, db, actor, body)
    except RepositoryError as exc:
        db.rollback()
        return repository_error_response(exc, cors)
    except Exception as exc:  # pylint: disable=broad-except
        db.rollback()
        logger.error("Tasks request failed: %s", exc)
        return server_error_response(cors)
    finally:
        db.close()


def handle_task_update(req: func.HttpRequest, cors: Dict[str, str], db, actor: CRMActor, task: Task, body: dict) -> func.HttpResponse:
    # Assignees can always work their own tasks.
    if task.assigned_to != actor.user_id:
        denied = permission_error(actor, "update:task", cors)
        if denied:
            return denied
    try:
        updates = validate_task_update(body)
    except ValueError as exc:
        return _validation_error(str(exc), cors)
    previous_assignee = task.assigned_to
    if "assignedTo" in updates:
        if not updates["assignedTo"]:
            updates["assignedTo"] = task.created_by
        invalid = _assignee_error(db, actor, updates["assignedTo"], cors)
        if invalid:
            return invalid
    update_task(db, task, updates)
    if task.assigned_to != previous_assignee:
        _notify_assignee(db, actor, task)
    db.commit()
    return json_response({"task": task_to_dict(task)}, status_code=200, cors=cors)


def handle_task_detail(req: func.HttpRequest, cors: Dict[str, str]) -> func.HttpResponse:
    body = parse_json_body(req)
    db = SessionLocal()
    try:
        actor, auth_error = resolve_actor_or_error(db, req, body, cors)
        if auth_error:
            return auth_error
        assert actor
        task = get_task(db, actor.organization_id, req.route_params.get("id"))
        if not task:
            return error_response(cors=cors, status_code=404, message="Task not found", code="not_found")
        if req.method == "DELETE":
            denied = permission_error(actor, "delete:task", cors)
            if denied:
                return denied
            delete_task(db, task)
            db.commit()
            return json_response({"success": True}, status_code=200, cors=cors)
        return handle_task_update(req, cors, db, actor, task, body)
    except RepositoryError as exc:
        db.rollback()
        return repository_error_response(exc, cors)
    except Exception as exc:  # pylint: disable=broad-except
        db.rollback()
        logger.error("Task detail request failed: %s", exc)
        return server_error_response(cors)
    finally:
        db.close()


@app.function_name(name="Tasks")
@app.route(route="tasks", methods=["GET", "POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def tasks(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "POST", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    return handle_tasks(req, cors)


@app.function_name(name="TaskDetail")
@app.route(route="tasks/{id}", methods=["PATCH", "DELETE", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def task_detail(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["PATCH", "DELETE", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    return handle_task_detail(req, cors)
