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
    resolve_session,
    server_error_response,
)
from function_app import app
from repository.errors import RepositoryError
from repository.invitations_repo import (
    accept_invitation,
    cancel_invitation,
    create_invitation,
    get_invitation,
    get_invitation_by_token,
    invitation_to_dict,
    list_pending_invitations,
    refresh_invitation,
)
from repository.organizations_repo import member_to_dict
from schemas.crm_schema import validate_invitation_create
from services.email_service import send_invitation_email
from shared.db import Invitation, SessionLocal
from utils.cors import build_cors_headers

logger = logging.getLogger(__name__)


def _send_email(invitation: Invitation, inviter_name: str, inviter_email: str) -> bool:
    role = invitation.role
    return send_invitation_email(
        to_email=invitation.email,
        organization_name=invitation.organization.name,
        role_name=role.name,
        role_description=role.description,
        inviter_name=inviter_name,
        inviter_email=inviter_email,
        token=invitation.token,
    )


def handle_invite_send(req: func.HttpRequest, cors: Dict[str, str]) -> func.HttpResponse:
    body = parse_json_body(req)
    try:
        payload = validate_invitation_create(body)
    except ValueError as exc:
        return error_response(cors=cors, status_code=400, message=str(exc), code="validation_error")

    db = SessionLocal()
    try:
        actor, auth_error = resolve_actor_or_error(db, req, body, cors, organization_id=payload["organizationId"])
        if auth_error:
            return auth_error
        assert actor
        denied = permission_error(actor, "create:user", cors)
        if denied:
            return denied
        invitation = create_invitation(
            db,
            email=payload["email"],
            organization_id=payload["organizationId"],
            role_id=payload["roleId"],
            inviter_id=actor.user_id,
            held_permissions=actor.permissions,
            held_stages=actor.stage_grants,
        )
        db.commit()
        email_sent = _send_email(invitation, actor.name, actor.email)
        role_name = invitation.role.name
        suffix = " and email sent" if email_sent else " (email not sent, check the Resend configuration)"
        return json_response(
            {
                "success": True,
                "message": f"Invitation created for {invitation.email} as {role_name}{suffix}",
                "invitationId": invitation.id,
                "invitationToken": invitation.token,
                "emailSent": email_sent,
            },
            status_code=200,
            cors=cors,
        )
    except RepositoryError as exc:
        db.rollback()
        return repository_error_response(exc, cors)
    except Exception as exc:  # pylint: disable=broad-except
        db.rollback()
        logger.error("Invitation send failed: %s", exc)
        return server_error_response(cors)
    finally:
        db.close()


def handle_invite_preview(req: func.HttpRequest, cors: Dict[str, str]) -> func.HttpResponse:
    db = SessionLocal()
    try:
        invitation = get_invitation_by_token(db, req.route_params.get("token"))
        if not invitation:
            return error_response(cors=cors, status_code=404, message="Invitation not found", code="not_found")
        return json_response({"invitation": invitation_to_dict(invitation)}, status_code=200, cors=cors)
    except Exception as exc:  # pylint: disable=broad-except
        db.rollback()
        logger.error("Invite preview failed: %s", exc)
        return server_error_response(cors)
    finally:
        db.close()


def handle_invite_accept(req: func.HttpRequest, cors: Dict[str, str]) -> func.HttpResponse:
    body = parse_json_body(req)
    db = SessionLocal()
    try:
        session = resolve_session(db, req, body)
        if not session:
            return error_response(cors=cors, status_code=401, message="Authentication required", code="auth_required")
        invitation = get_invitation_by_token(db, req.route_params.get("token"))
        if not invitation:
            return error_response(cors=cors, status_code=404, message="Invitation not found", code="not_found")
        try:
            member = accept_invitation(db, invitation, session.user)
        except RepositoryError as exc:
            # Keeps the expired or canceled status set while rejecting the invitation.
            db.commit()
            return repository_error_response(exc, cors)
        session.active_organization_id = invitation.organization_id
        db.commit()
        logger.info("Invitation %s accepted by %s", invitation.id, session.user.email)
        return json_response(
            {
                "success": True,
                "organizationId": invitation.organization_id,
                "member": member_to_dict(member),
            },
            status_code=200,
            cors=cors,
        )
    except Exception as exc:  # pylint: disable=broad-except
        db.rollback()
        logger.error("Invitation accept failed: %s", exc)
        return server_error_response(cors)
    finally:
        db.close()


def handle_invitations_list(req: func.HttpRequest, cors: Dict[str, str]) -> func.HttpResponse:
    organization_id = str(req.route_params.get("organizationId") or "").strip()
    db = SessionLocal()
    try:
        actor, auth_error = resolve_actor_or_error(db, req, {}, cors, organization_id=organization_id)
        if auth_error:
            return auth_error
        assert actor
        denied = permission_error(actor, "read:user", cors)
        if denied:
            return denied
        items = [invitation_to_dict(row) for row in list_pending_invitations(db, organization_id)]
        return json_response({"invitations": items}, status_code=200, cors=cors)
    except Exception as exc:  # pylint: disable=broad-except
        db.rollback()
        logger.error("Invitations list failed: %s", exc)
        return server_error_response(cors)
    finally:
        db.close()


def _load_invitation_for_actor(db, req: func.HttpRequest, cors: Dict[str, str], slug: str):
    invitation = get_invitation(db, req.route_params.get("invitationId"))
    if not invitation:
        return None, None, error_response(cors=cors, status_code=404, message="Invitation not found", code="not_found")
    actor, auth_error = resolve_actor_or_error(db, req, {}, cors, organization_id=invitation.organization_id)
    if auth_error:
        return None, None, auth_error
    denied = permission_error(actor, slug, cors)
    if denied:
        return None, None, denied
    return invitation, actor, None


def handle_invitation_resend(req: func.HttpRequest, cors: Dict[str, str]) -> func.HttpResponse:
    db = SessionLocal()
    try:
        invitation, actor, failure = _load_invitation_for_actor(db, req, cors, "create:user")
        if failure:
            return failure
        refresh_invitation(db, invitation)
        db.commit()
        email_sent = _send_email(invitation, actor.name, actor.email)
        return json_response(
            {"success": True, "invitation": invitation_to_dict(invitation), "emailSent": email_sent},
            status_code=200,
            cors=cors,
        )
    except RepositoryError as exc:
        db.rollback()
        return repository_error_response(exc, cors)
    except Exception as exc:  # pylint: disable=broad-except
        db.rollback()
        logger.error("Invitation resend failed: %s", exc)
        return server_error_response(cors)
    finally:
        db.close()


def handle_invitation_cancel(req: func.HttpRequest, cors: Dict[str, str]) -> func.HttpResponse:
    db = SessionLocal()
    try:
        invitation, _, failure = _load_invitation_for_actor(db, req, cors, "delete:user")
        if failure:
            return failure
        cancel_invitation(db, invitation)
        db.commit()
        return json_response({"success": True, "invitation": invitation_to_dict(invitation)}, status_code=200, cors=cors)
    except RepositoryError as exc:
        db.rollback()
        return repository_error_response(exc, cors)
    except Exception as exc:  # pylint: disable=broad-except
        db.rollback()
        logger.error("Invitation cancel failed: %s", exc)
        return server_error_response(cors)
    finally:
        db.close()


@app.function_name(name="InviteSend")
@app.route(route="invite/send", methods=["POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def invite_send(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["POST", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    return handle_invite_send(req, cors)


@app.function_name(name="InviteByToken")
@app.route(route="invite/{token}", methods=["GET", "POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def invite_by_token(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "POST", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    if req.method == "GET":
        return handle_invite_preview(req, cors)
    return handle_invite_accept(req, cors)


@app.function_name(name="OrganizationInvitations")
@app.route(
    route="organizations/{organizationId}/invitations",
    methods=["GET", "OPTIONS"],
    auth_level=func.AuthLevel.ANONYMOUS,
)
def organization_invitations(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    return handle_invitations_list(req, cors)


@app.function_name(name="InvitationResend")
@app.route(route="invitations/{invitationId}/resend", methods=["POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def invitation_resend(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["POST", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    return handle_invitation_resend(req, cors)


@app.function_name(name="InvitationCancel")
@app.route(route="invitations/{invitationId}", methods=["DELETE", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def invitation_cancel(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["DELETE", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    return handle_invitation_cancel(req, cors)
