from __future__ import annotations

import logging
from typing import Dict

import azure.functions as func

from crm_shared import (
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
from repository.organizations_repo import (
    add_member,
    create_organization,
    get_member_by_id,
    get_organization_by_slug,
    list_available_users,
    list_members,
    list_user_organizations,
    member_to_dict,
    organization_to_dict,
    remove_member,
    update_member_role,
)
from repository.rbac_repo import get_member
from repository.users_repo import get_user
from schemas.crm_schema import validate_member_create, validate_organization_create
from shared.db import AuthSession, SessionLocal
from utils.cors import build_cors_headers

logger = logging.getLogger(__name__)


def _route_org_id(req: func.HttpRequest) -> str:
    return str(req.route_params.get("organizationId") or "").strip()


def _org_not_found(cors: Dict[str, str]) -> func.HttpResponse:
    return error_response(cors=cors, status_code=404, message="Organization not found", code="not_found")


def handle_organizations_list(req: func.HttpRequest, cors: Dict[str, str]) -> func.HttpResponse:
    db = SessionLocal()
    try:
        actor, auth_error = resolve_actor_or_error(db, req, {}, cors, require_member=False)
        if auth_error:
            return auth_error
        assert actor
        return json_response({"organizations": list_user_organizations(db, actor.user_id)}, status_code=200, cors=cors)
    except Exception as exc:  # pylint: disable=broad-except
        db.rollback()
        logger.error("Organizations list failed: %s", exc)
        return server_error_response(cors)
    finally:
        db.close()


def handle_organization_create(req: func.HttpRequest, cors: Dict[str, str]) -> func.HttpResponse:
    body = parse_json_body(req)
    db = SessionLocal()
    try:
        actor, auth_error = resolve_actor_or_error(db, req, body, cors, require_member=False)
        if auth_error:
            return auth_error
        assert actor
        try:
            payload = validate_organization_create(body)
        except ValueError as exc:
            return error_response(cors=cors, status_code=400, message=str(exc), code="validation_error")

        creator = get_user(db, actor.user_id)
        org = create_organization(db, name=payload["name"], slug=payload["slug"], creator=creator, logo=payload["logo"])
        session = db.query(AuthSession).filter_by(id=actor.session_id).one_or_none()
        if session:
            session.active_organization_id = org.id
        db.commit()
        logger.info("Organization %s created by %s", org.slug, actor.email)
        return json_response({"organization": organization_to_dict(org)}, status_code=201, cors=cors)
    except RepositoryError as exc:
        db.rollback()
        return repository_error_response(exc, cors)
    except Exception as exc:  # pylint: disable=broad-except
        db.rollback()
        logger.error("Organization create failed: %s", exc)
        return server_error_response(cors)
    finally:
        db.close()


def handle_organization_by_slug(req: func.HttpRequest, cors: Dict[str, str]) -> func.HttpResponse:
    slug = str(req.route_params.get("slug") or "").strip().lower()
    db = SessionLocal()
    try:
        actor, auth_error = resolve_actor_or_error(db, req, {}, cors, require_member=False)
        if auth_error:
            return auth_error
        assert actor
        org = get_organization_by_slug(db, slug)
        if not org:
            return _org_not_found(cors)
        if not get_member(db, actor.user_id, org.id):
            return error_response(
                cors=cors, status_code=403, message="You are not a member of this organization", code="forbidden"
            )
        data = organization_to_dict(org)
        data["members"] = [member_to_dict(member) for member in list_members(db, org.id)]
        return json_response({"organization": data}, status_code=200, cors=cors)
    except Exception as exc:  # pylint: disable=broad-except
        db.rollback()
        logger.error("Organization by slug failed: %s", exc)
        return server_error_response(cors)
    finally:
        db.close()


def handle_members_list(req: func.HttpRequest, cors: Dict[str, str]) -> func.HttpResponse:
    organization_id = _route_org_id(req)
    db = SessionLocal()
    try:
        actor, auth_error = resolve_actor_or_error(db, req, {}, cors, organization_id=organization_id)
        if auth_error:
            return auth_error
        members = [member_to_dict(member) for member in list_members(db, organization_id)]
        return json_response({"members": members}, status_code=200, cors=cors)
    except Exception as exc:  # pylint: disable=broad-except
        db.rollback()
        logger.error("Members list failed: %s", exc)
        return server_error_response(cors)
    finally:
        db.close()


def handle_member_add(req: func.HttpRequest, cors: Dict[str, str]) -> func.HttpResponse:
    organization_id = _route_org_id(req)
    body = parse_json_body(req)
    db = SessionLocal()
    try:
        actor, auth_error = resolve_actor_or_error(db, req, body, cors, organization_id=organization_id)
        if auth_error:
            return auth_error
        assert actor
        denied = permission_error(actor, "create:user", cors)
        if denied:
            return denied
        try:
            payload = validate_member_create(body)
        except ValueError as exc:
            return error_response(cors=cors, status_code=400, message=str(exc), code="validation_error")
        member = add_member(
            db,
            organization_id,
            payload["userId"],
            payload["roleId"],
            held_permissions=actor.permissions,
            held_stages=actor.stage_grants,
        )
        db.commit()
        return json_response({"member": member_to_dict(member)}, status_code=201, cors=cors)
    except RepositoryError as exc:
        db.rollback()
        return repository_error_response(exc, cors)
    except Exception as exc:  # pylint: disable=broad-except
        db.rollback()
        logger.error("Add member failed: %s", exc)
        return server_error_response(cors)
    finally:
        db.close()


def handle_member_update(req: func.HttpRequest, cors: Dict[str, str]) -> func.HttpResponse:
    organization_id = _route_org_id(req)
    body = parse_json_body(req)
    db = SessionLocal()
    try:
        actor, auth_error = resolve_actor_or_error(db, req, body, cors, organization_id=organization_id)
        if auth_error:
            return auth_error
        assert actor
        denied = permission_error(actor, "update:user", cors)
        if denied:
            return denied
        role_id = str(body.get("roleId") or "").strip()
        if not role_id:
            return error_response(cors=cors, status_code=400, message="roleId is required", code="validation_error")
        member = get_member_by_id(db, organization_id, req.route_params.get("memberId"))
        if not member:
            return error_response(cors=cors, status_code=404, message="Member not found", code="not_found")
        update_member_role(db, member, role_id, held_permissions=actor.permissions, held_stages=actor.stage_grants)
        db.commit()
        return json_response({"member": member_to_dict(member)}, status_code=200, cors=cors)
    except RepositoryError as exc:
        db.rollback()
        return repository_error_response(exc, cors)
    except Exception as exc:  # pylint: disable=broad-except
        db.rollback()
        logger.error("Update member failed: %s", exc)
        return server_error_response(cors)
    finally:
        db.close()


def handle_member_remove(req: func.HttpRequest, cors: Dict[str, str]) -> func.HttpResponse:
    organization_id = _route_org_id(req)
    db = SessionLocal()
    try:
        actor, auth_error = resolve_actor_or_error(db, req, {}, cors, organization_id=organization_id)
        if auth_error:
            return auth_error
        assert actor
        denied = permission_error(actor, "delete:user", cors)
        if denied:
            return denied
        member = get_member_by_id(db, organization_id, req.route_params.get("memberId"))
        if not member:
            return error_response(cors=cors, status_code=404, message="Member not found", code="not_found")
        remove_member(db, member, held_permissions=actor.permissions, held_stages=actor.stage_grants)
        db.commit()
        return json_response({"success": True}, status_code=200, cors=cors)
    except RepositoryError as exc:
        db.rollback()
        return repository_error_response(exc, cors)
    except Exception as exc:  # pylint: disable=broad-except
        db.rollback()
        logger.error("Remove member failed: %s", exc)
        return server_error_response(cors)
    finally:
        db.close()


def handle_available_users(req: func.HttpRequest, cors: Dict[str, str]) -> func.HttpResponse:
    organization_id = _route_org_id(req)
    db = SessionLocal()
    try:
        actor, auth_error = resolve_actor_or_error(db, req, {}, cors, organization_id=organization_id)
        if auth_error:
            return auth_error
        assert actor
        denied = permission_error(actor, "create:user", cors)
        if denied:
            return denied
        return json_response({"users": list_available_users(db, organization_id)}, status_code=200, cors=cors)
    except Exception as exc:  # pylint: disable=broad-except
        db.rollback()
        logger.error("Available users failed: %s", exc)
        return server_error_response(cors)
    finally:
        db.close()


@app.function_name(name="Organizations")
@app.route(route="organizations", methods=["GET", "POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def organizations(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "POST", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    if req.method == "GET":
        return handle_organizations_list(req, cors)
    return handle_organization_create(req, cors)


@app.function_name(name="OrganizationBySlug")
@app.route(route="organizations/by-slug/{slug}", methods=["GET", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def organization_by_slug(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    return handle_organization_by_slug(req, cors)


@app.function_name(name="OrganizationMembers")
@app.route(
    route="organizations/{organizationId}/members",
    methods=["GET", "POST", "OPTIONS"],
    auth_level=func.AuthLevel.ANONYMOUS,
)
def organization_members(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "POST", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    if req.method == "GET":
        return handle_members_list(req, cors)
    return handle_member_add(req, cors)


@app.function_name(name="OrganizationMemberDetail")
@app.route(
    route="organizations/{organizationId}/members/{memberId}",
    methods=["PUT", "DELETE", "OPTIONS"],
    auth_level=func.AuthLevel.ANONYMOUS,
)
def organization_member_detail(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["PUT", "DELETE", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    if req.method == "PUT":
        return handle_member_update(req, cors)
    return handle_member_remove(req, cors)


@app.function_name(name="OrganizationAvailableUsers")
@app.route(
    route="organizations/{organizationId}/available-users",
    methods=["GET", "OPTIONS"],
    auth_level=func.AuthLevel.ANONYMOUS,
)
def organization_available_users(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    return handle_available_users(req, cors)
