from __future__ import annotations

import logging
from typing import Dict

import azure.functions as func

from crm_shared import (
    error_response,
    format_dt,
    hash_password,
    json_response,
    open_auth_session,
    parse_json_body,
    repository_error_response,
    resolve_session,
    server_error_response,
    verify_password,
)
from function_app import app
from repository.errors import RepositoryError
from repository.organizations_repo import get_organization, list_user_organizations, organization_to_dict
from repository.rbac_repo import get_member
from repository.users_repo import (
    create_user_with_password,
    get_credential_account,
    get_user_by_email,
    update_user_profile,
    user_to_dict,
)
from schemas.crm_schema import validate_sign_in, validate_sign_up, validate_user_update
from shared.db import SessionLocal
from utils.cors import build_cors_headers

logger = logging.getLogger(__name__)


def _auth_required(cors: Dict[str, str]) -> func.HttpResponse:
    return error_response(cors=cors, status_code=401, message="Authentication required", code="auth_required")


def _session_payload(token, session) -> dict:
    return {
        "token": token,
        "session": {
            "id": session.id,
            "expiresAt": format_dt(session.expires_at),
            "activeOrganizationId": session.active_organization_id,
        },
    }


def handle_sign_up(req: func.HttpRequest, cors: Dict[str, str]) -> func.HttpResponse:
    try:
        payload = validate_sign_up(parse_json_body(req))
    except ValueError as exc:
        return error_response(cors=cors, status_code=400, message=str(exc), code="validation_error")

    db = SessionLocal()
    try:
        user = create_user_with_password(
            db,
            name=payload["name"],
            email=payload["email"],
            password_hash=hash_password(payload["password"]),
        )
        token, session = open_auth_session(db, user, req)
        if not token:
            db.rollback()
            return server_error_response(cors, "Session signing is not configured")
        db.commit()
        logger.info("User signed up: %s", user.email)
        return json_response({"user": user_to_dict(user), **_session_payload(token, session)}, status_code=201, cors=cors)
    except RepositoryError as exc:
        db.rollback()
        return repository_error_response(exc, cors)
    except Exception as exc:  # pylint: disable=broad-except
        db.rollback()
        logger.error("Sign-up failed: %s", exc)
        return server_error_response(cors)
    finally:
        db.close()


def handle_sign_in(req: func.HttpRequest, cors: Dict[str, str]) -> func.HttpResponse:
    try:
        payload = validate_sign_in(parse_json_body(req))
    except ValueError as exc:
        return error_response(cors=cors, status_code=400, message=str(exc), code="validation_error")

    db = SessionLocal()
    try:
        user = get_user_by_email(db, payload["email"])
        account = get_credential_account(db, user.id) if user else None
        if not user or not account or not verify_password(payload["password"], account.password):
            return error_response(cors=cors, status_code=401, message="Invalid email or password", code="auth_required")
        organizations = list_user_organizations(db, user.id)
        active_org_id = organizations[0]["id"] if organizations else None
        token, session = open_auth_session(db, user, req, active_organization_id=active_org_id)
        if not token:
            db.rollback()
            return server_error_response(cors, "Session signing is not configured")
        db.commit()
        return json_response({"user": user_to_dict(user), **_session_payload(token, session)}, status_code=200, cors=cors)
    except Exception as exc:  # pylint: disable=broad-except
        db.rollback()
        logger.error("Sign-in failed: %s", exc)
        return server_error_response(cors)
    finally:
        db.close()


def handle_sign_out(req: func.HttpRequest, cors: Dict[str, str]) -> func.HttpResponse:
    db = SessionLocal()
    try:
        session = resolve_session(db, req, parse_json_body(req))
        if not session:
            return _auth_required(cors)
        db.delete(session)
        db.commit()
        return json_response({"success": True}, status_code=200, cors=cors)
    except Exception as exc:  # pylint: disable=broad-except
        db.rollback()
        logger.error("Sign-out failed: %s", exc)
        return server_error_response(cors)
    finally:
        db.close()


def handle_get_session(req: func.HttpRequest, cors: Dict[str, str]) -> func.HttpResponse:
    db = SessionLocal()
    try:
        session = resolve_session(db, req)
        if not session:
            return _auth_required(cors)
        active_org = get_organization(db, session.active_organization_id) if session.active_organization_id else None
        return json_response(
            {
                "user": user_to_dict(session.user),
                "session": {
                    "id": session.id,
                    "expiresAt": format_dt(session.expires_at),
                    "activeOrganizationId": session.active_organization_id,
                },
                "activeOrganization": organization_to_dict(active_org) if active_org else None,
            },
            status_code=200,
            cors=cors,
        )
    except Exception as exc:  # pylint: disable=broad-except
        db.rollback()
        logger.error("Get session failed: %s", exc)
        return server_error_response(cors)
    finally:
        db.close()


def handle_set_active_organization(req: func.HttpRequest, cors: Dict[str, str]) -> func.HttpResponse:
    body = parse_json_body(req)
    db = SessionLocal()
    try:
        session = resolve_session(db, req, body)
        if not session:
            return _auth_required(cors)
        organization_id = str(body.get("organizationId") or "").strip()
        if not organization_id:
            return error_response(cors=cors, status_code=400, message="organizationId is required", code="validation_error")
        org = get_organization(db, organization_id)
        if not org:
            return error_response(cors=cors, status_code=404, message="Organization not found", code="not_found")
        if not get_member(db, session.user_id, organization_id):
            return error_response(
                cors=cors, status_code=403, message="You are not a member of this organization", code="forbidden"
            )
        session.active_organization_id = organization_id
        db.commit()
        return json_response({"activeOrganization": organization_to_dict(org)}, status_code=200, cors=cors)
    except Exception as exc:  # pylint: disable=broad-except
        db.rollback()
        logger.error("Set active organization failed: %s", exc)
        return server_error_response(cors)
    finally:
        db.close()


def handle_user_update(req: func.HttpRequest, cors: Dict[str, str]) -> func.HttpResponse:
    body = parse_json_body(req)
    try:
        payload = validate_user_update(body)
    except ValueError as exc:
        return error_response(cors=cors, status_code=400, message=str(exc), code="validation_error")

    db = SessionLocal()
    try:
        session = resolve_session(db, req, body)
        if not session:
            return _auth_required(cors)
        user = update_user_profile(db, session.user, name=payload["name"], image=payload["image"])
        db.commit()
        return json_response({"success": True, "user": user_to_dict(user)}, status_code=200, cors=cors)
    except Exception as exc:  # pylint: disable=broad-except
        db.rollback()
        logger.error("User update failed: %s", exc)
        return server_error_response(cors)
    finally:
        db.close()


@app.function_name(name="AuthSignUp")
@app.route(route="auth/sign-up", methods=["POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def auth_sign_up(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["POST", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    return handle_sign_up(req, cors)


@app.function_name(name="AuthSignIn")
@app.route(route="auth/sign-in", methods=["POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def auth_sign_in(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["POST", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    return handle_sign_in(req, cors)


@app.function_name(name="AuthSignOut")
@app.route(route="auth/sign-out", methods=["POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def auth_sign_out(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["POST", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    return handle_sign_out(req, cors)


@app.function_name(name="AuthSession")
@app.route(route="auth/session", methods=["GET", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def auth_session(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    return handle_get_session(req, cors)


@app.function_name(name="AuthActiveOrganization")
@app.route(route="auth/active-organization", methods=["POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def auth_active_organization(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["POST", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    return handle_set_active_organization(req, cors)


@app.function_name(name="UserUpdate")
@app.route(route="user/update", methods=["PUT", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def user_update(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["PUT", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    return handle_user_update(req, cors)
