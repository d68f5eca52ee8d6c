from __future__ import annotations

import logging
from typing import Dict

import azure.functions as func

from crm_shared import (
    error_response,
    extract_organization_id,
    json_response,
    parse_json_body,
    permission_error,
    repository_error_response,
    resolve_actor_or_error,
    resolve_session,
    server_error_response,
)
from function_app import app
from repository.errors import RepositoryError
from repository.rbac_repo import (
    create_custom_role,
    delete_custom_role,
    get_organization_roles,
    get_role_by_id,
    get_user_permissions,
    permission_to_dict,
    role_available_to_organization,
    role_to_dict,
    update_custom_role,
)
from schemas.crm_schema import validate_role_create, validate_role_update
from services.rbac import SALES_STAGES, STAGE_LABELS, accessible_stages, navigation_for
from shared.db import Permission, SessionLocal
from utils.cors import build_cors_headers

logger = logging.getLogger(__name__)


def _stage_catalog() -> list:
    return [
        {"stage": stage, "label": STAGE_LABELS[stage], "order": index + 1}
        for index, stage in enumerate(SALES_STAGES)
    ]


def handle_permission_catalog(req: func.HttpRequest, cors: Dict[str, str]) -> func.HttpResponse:
    db = SessionLocal()
    try:
        actor, auth_error = resolve_actor_or_error(db, req, {}, cors, require_member=False)
        if auth_error:
            return auth_error
        rows = db.query(Permission).order_by(Permission.resource.asc(), Permission.action.asc()).all()
        return json_response(
            {"permissions": [permission_to_dict(row) for row in rows], "stages": _stage_catalog()},
            status_code=200,
            cors=cors,
        )
    except Exception as exc:  # pylint: disable=broad-except
        db.rollback()
        logger.error("Permission catalog failed: %s", exc)
        return server_error_response(cors)
    finally:
        db.close()


def handle_user_permissions(req: func.HttpRequest, cors: Dict[str, str]) -> func.HttpResponse:
    db = SessionLocal()
    try:
        session = resolve_session(db, req)
        if not session:
            return error_response(cors=cors, status_code=401, message="Authentication required", code="auth_required")
        organization_id = extract_organization_id(req) or session.active_organization_id
        if not organization_id:
            return error_response(
                cors=cors, status_code=400, message="organizationId is required", code="no_active_organization"
            )
        target_user_id = str(req.params.get("userId") or "").strip() or session.user_id
        if target_user_id != session.user_id:
            actor, auth_error = resolve_actor_or_error(db, req, {}, cors, organization_id=organization_id)
            if auth_error:
                return auth_error
            assert actor
            denied = permission_error(actor, "read:user", cors)
            if denied:
                return denied
        return json_response(get_user_permissions(db, target_user_id, organization_id), status_code=200, cors=cors)
    except Exception as exc:  # pylint: disable=broad-except
        db.rollback()
        logger.error("User permissions failed: %s", exc)
        return server_error_response(cors)
    finally:
        db.close()


def handle_accessible_stages(req: func.HttpRequest, cors: Dict[str, str]) -> func.HttpResponse:
    db = SessionLocal()
    try:
        actor, auth_error = resolve_actor_or_error(db, req, {}, cors)
        if auth_error:
            return auth_error
        assert actor
        stages = accessible_stages(actor.stage_grants)
        return json_response(
            {"organizationId": actor.organization_id, "stages": actor.stage_grants, **stages},
            status_code=200,
            cors=cors,
        )
    except Exception as exc:  # pylint: disable=broad-except
        db.rollback()
        logger.error("Accessible stages failed: %s", exc)
        return server_error_response(cors)
    finally:
        db.close()


def handle_navigation(req: func.HttpRequest, cors: Dict[str, str]) -> func.HttpResponse:
    db = SessionLocal()
    try:
        actor, auth_error = resolve_actor_or_error(db, req, {}, cors)
        if auth_error:
            return auth_error
        assert actor
        return json_response(
            {
                "organizationId": actor.organization_id,
                "role": actor.role_name,
                "items": navigation_for(actor.permissions, actor.stage_grants),
            },
            status_code=200,
            cors=cors,
        )
    except Exception as exc:  # pylint: disable=broad-except
        db.rollback()
        logger.error("Navigation failed: %s", exc)
        return server_error_response(cors)
    finally:
        db.close()


def handle_roles_list(req: func.HttpRequest, cors: Dict[str, str]) -> func.HttpResponse:
    organization_id = str(req.route_params.get("organizationId") or "").strip()
    db = SessionLocal()
    try:
        actor, auth_error = resolve_actor_or_error(db, req, {}, cors, organization_id=organization_id)
        if auth_error:
            return auth_error
        return json_response({"roles": get_organization_roles(db, organization_id)}, status_code=200, cors=cors)
    except Exception as exc:  # pylint: disable=broad-except
        db.rollback()
        logger.error("Roles list failed: %s", exc)
        return server_error_response(cors)
    finally:
        db.close()


def handle_role_create(req: func.HttpRequest, cors: Dict[str, str]) -> func.HttpResponse:
    organization_id = str(req.route_params.get("organizationId") or "").strip()
    body = parse_json_body(req)
    db = SessionLocal()
    try:
        actor, auth_error = resolve_actor_or_error(db, req, body, cors, organization_id=organization_id)
        if auth_error:
            return auth_error
        assert actor
        denied = permission_error(actor, "create:role", cors)
        if denied:
            return denied
        try:
            payload = validate_role_create(body)
            role = create_custom_role(
                db,
                organization_id,
                payload["name"],
                payload["description"],
                payload["permissions"],
                payload["stages"],
                held_permissions=actor.permissions,
                held_stages=actor.stage_grants,
            )
        except ValueError as exc:
            db.rollback()
            return error_response(cors=cors, status_code=400, message=str(exc), code="validation_error")
        db.commit()
        logger.info("Custom role %s created in %s", role.name, organization_id)
        return json_response({"role": role_to_dict(role, include_display=True)}, status_code=201, cors=cors)
    except RepositoryError as exc:
        db.rollback()
        return repository_error_response(exc, cors)
    except Exception as exc:  # pylint: disable=broad-except
        db.rollback()
        logger.error("Role create failed: %s", exc)
        return server_error_response(cors)
    finally:
        db.close()


def _load_org_role(db, organization_id: str, req: func.HttpRequest, cors: Dict[str, str]):
    role = get_role_by_id(db, req.route_params.get("roleId"))
    if not role_available_to_organization(role, organization_id):
        return None, error_response(cors=cors, status_code=404, message="Role not found", code="not_found")
    return role, None


def handle_role_update(req: func.HttpRequest, cors: Dict[str, str]) -> func.HttpResponse:
    organization_id = str(req.route_params.get("organizationId") or "").strip()
    body = parse_json_body(req)
    db = SessionLocal()
    try:
        actor, auth_error = resolve_actor_or_error(db, req, body, cors, organization_id=organization_id)
        if auth_error:
            return auth_error
        assert actor
        denied = permission_error(actor, "update:role", cors)
        if denied:
            return denied
        role, not_found = _load_org_role(db, organization_id, req, cors)
        if not_found:
            return not_found
        try:
            role = update_custom_role(
                db,
                role,
                validate_role_update(body),
                held_permissions=actor.permissions,
                held_stages=actor.stage_grants,
            )
        except ValueError as exc:
            db.rollback()
            return error_response(cors=cors, status_code=400, message=str(exc), code="validation_error")
        db.commit()
        return json_response({"role": role_to_dict(role, include_display=True)}, status_code=200, cors=cors)
    except RepositoryError as exc:
        db.rollback()
        return repository_error_response(exc, cors)
    except Exception as exc:  # pylint: disable=broad-except
        db.rollback()
        logger.error("Role update failed: %s", exc)
        return server_error_response(cors)
    finally:
        db.close()


def handle_role_delete(req: func.HttpRequest, cors: Dict[str, str]) -> func.HttpResponse:
    organization_id = str(req.route_params.get("organizationId") or "").strip()
    db = SessionLocal()
    try:
        actor, auth_error = resolve_actor_or_error(db, req, {}, cors, organization_id=organization_id)
        if auth_error:
            return auth_error
        assert actor
        denied = permission_error(actor, "delete:role", cors)
        if denied:
            return denied
        role, not_found = _load_org_role(db, organization_id, req, cors)
        if not_found:
            return not_found
        delete_custom_role(db, role)
        db.commit()
        return json_response({"success": True}, status_code=200, cors=cors)
    except RepositoryError as exc:
        db.rollback()
        return repository_error_response(exc, cors)
    except Exception as exc:  # pylint: disable=broad-except
        db.rollback()
        logger.error("Role delete failed: %s", exc)
        return server_error_response(cors)
    finally:
        db.close()


@app.function_name(name="PermissionCatalog")
@app.route(route="permissions", methods=["GET", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def permission_catalog(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    return handle_permission_catalog(req, cors)


@app.function_name(name="UserPermissions")
@app.route(route="permissions/user", methods=["GET", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def user_permissions(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    return handle_user_permissions(req, cors)


@app.function_name(name="AccessibleStages")
@app.route(route="permissions/stages", methods=["GET", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def accessible_stages_api(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    return handle_accessible_stages(req, cors)


@app.function_name(name="Navigation")
@app.route(route="navigation", methods=["GET", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def navigation(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    return handle_navigation(req, cors)


@app.function_name(name="OrganizationRoles")
@app.route(
    route="organizations/{organizationId}/roles",
    methods=["GET", "POST", "OPTIONS"],
    auth_level=func.AuthLevel.ANONYMOUS,
)
def organization_roles(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "POST", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    if req.method == "GET":
        return handle_roles_list(req, cors)
    return handle_role_create(req, cors)


@app.function_name(name="OrganizationRoleDetail")
@app.route(
    route="organizations/{organizationId}/roles/{roleId}",
    methods=["PUT", "DELETE", "OPTIONS"],
    auth_level=func.AuthLevel.ANONYMOUS,
)
def organization_role_detail(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["PUT", "DELETE", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    if req.method == "PUT":
        return handle_role_update(req, cors)
    return handle_role_delete(req, cors)
