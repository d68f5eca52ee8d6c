from __future__ import annotations

import logging
from typing import Dict

import azure.functions as func

from crm_shared import (
    error_response,
    json_response,
    parse_json_body,
    resolve_actor_or_error,
    server_error_response,
)
from function_app import app
from repository.notifications_repo import (
    create_notification,
    get_notification,
    list_notifications,
    mark_all_read,
    notification_to_dict,
    set_unread,
)
from schemas.crm_schema import validate_notification_create
from shared.db import SessionLocal
from utils.cors import build_cors_headers

logger = logging.getLogger(__name__)


def _truthy(value) -> bool:
    return str(value or "").strip().lower() in {"1", "true", "yes"}


def handle_notifications(req: func.HttpRequest, cors: Dict[str, str]) -> func.HttpResponse:
    body = parse_json_body(req)
    db = SessionLocal()
    try:
        actor, auth_error = resolve_actor_or_error(db, req, body, cors)
        if auth_error:
            return auth_error
        assert actor
        if req.method == "GET":
            rows, unread_count = list_notifications(
                db,
                actor.organization_id,
                actor.user_id,
                unread_only=_truthy(req.params.get("unread")),
            )
            return json_response(
                {"notifications": [notification_to_dict(row) for row in rows], "unreadCount": unread_count},
                status_code=200,
                cors=cors,
            )

        try:
            payload = validate_notification_create(body)
        except ValueError as exc:
            return error_response(cors=cors, status_code=400, message=str(exc), code="validation_error")
        notification = create_notification(
            db,
            organization_id=actor.organization_id,
            user_id=actor.user_id,
            title=payload["title"],
            description=payload["description"],
            time=payload["time"],
            entity_type=payload["entityType"],
            entity_id=payload["entityId"],
        )
        db.commit()
        return json_response({"notification": notification_to_dict(notification)}, status_code=201, cors=cors)
    except Exception as exc:  # pylint: disable=broad-except
        db.rollback()
        logger.error("Notifications request failed: %s", exc)
        return server_error_response(cors)
    finally:
        db.close()


def handle_notification_update(req: func.HttpRequest, cors: Dict[str, str]) -> func.HttpResponse:
    body = parse_json_body(req)
    if not isinstance(body.get("unread"), bool):
        return error_response(cors=cors, status_code=400, message="unread must be a boolean", code="validation_error")
    db = SessionLocal()
    try:
        actor, auth_error = resolve_actor_or_error(db, req, body, cors)
        if auth_error:
            return auth_error
        assert actor
        notification = get_notification(db, actor.organization_id, actor.user_id, req.route_params.get("id"))
        if not notification:
            return error_response(cors=cors, status_code=404, message="Notification not found", code="not_found")
        set_unread(db, notification, body["unread"])
        db.commit()
        return json_response({"notification": notification_to_dict(notification)}, status_code=200, cors=cors)
    except Exception as exc:  # pylint: disable=broad-except
        db.rollback()
        logger.error("Notification update failed: %s", exc)
        return server_error_response(cors)
    finally:
        db.close()


def handle_notifications_read_all(req: func.HttpRequest, cors: Dict[str, str]) -> func.HttpResponse:
    body = parse_json_body(req)
    db = SessionLocal()
    try:
        actor, auth_error = resolve_actor_or_error(db, req, body, cors)
        if auth_error:
            return auth_error
        assert actor
        updated = mark_all_read(db, actor.organization_id, actor.user_id)
        db.commit()
        return json_response({"success": True, "updated": updated}, status_code=200, cors=cors)
    except Exception as exc:  # pylint: disable=broad-except
        db.rollback()
        logger.error("Mark all notifications read failed: %s", exc)
        return server_error_response(cors)
    finally:
        db.close()


@app.function_name(name="Notifications")
@app.route(route="notifications", methods=["GET", "POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def notifications(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "POST", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    return handle_notifications(req, cors)


@app.function_name(name="NotificationsReadAll")
@app.route(route="notifications/read-all", methods=["POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def notifications_read_all(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["POST", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    return handle_notifications_read_all(req, cors)


@app.function_name(name="NotificationDetail")
@app.route(route="notifications/{id}", methods=["PATCH", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def notification_detail(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["PATCH", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    return handle_notification_update(req, cors)
