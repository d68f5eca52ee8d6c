from __future__ import annotations

import secrets
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

from repository.errors import ConflictError, ForbiddenError, NotFoundError, RepositoryError
from repository.rbac_repo import ensure_role_grantable, get_member, role_available_to_organization
from shared.config import get_invitation_ttl_days
from shared.db import Invitation, Member, Role, User

PENDING = "pending"
ACCEPTED = "accepted"
CANCELED = "canceled"
EXPIRED = "expired"


def _format_dt(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def invitation_to_dict(invitation: Invitation) -> dict:
    org = invitation.organization
    inviter = invitation.inviter
    role = invitation.role
    return {
        "id": invitation.id,
        "email": invitation.email,
        "status": invitation.status,
        "expiresAt": _format_dt(invitation.expires_at),
        "createdAt": _format_dt(invitation.created_at),
        "organizationId": invitation.organization_id,
        "roleId": invitation.role_id,
        "organization": {"id": org.id, "name": org.name, "slug": org.slug, "logo": org.logo} if org else None,
        "role": {"id": role.id, "name": role.name, "description": role.description} if role else None,
        "inviter": {"id": inviter.id, "name": inviter.name, "email": inviter.email} if inviter else None,
    }


def generate_invitation_token() -> str:
    return secrets.token_urlsafe(32)


def get_invitation_by_token(db, token: str) -> Optional[Invitation]:
    if not token:
        return None
    return db.query(Invitation).filter_by(token=str(token)).one_or_none()


def get_invitation(db, invitation_id: str) -> Optional[Invitation]:
    if not invitation_id:
        return None
    return db.query(Invitation).filter_by(id=str(invitation_id)).one_or_none()


def list_pending_invitations(db, organization_id: str) -> List[Invitation]:
    return (
        db.query(Invitation)
        .filter(Invitation.organization_id == organization_id, Invitation.status == PENDING)
        .order_by(Invitation.created_at.desc())
        .all()
    )


def create_invitation(
    db,
    *,
    email: str,
    organization_id: str,
    role_id: str,
    inviter_id: str,
    held_permissions: Optional[Iterable[str]] = None,
    held_stages: Optional[Dict[str, Dict[str, bool]]] = None,
) -> Invitation:
    """
    Create a pending invitation. A previous pending invitation for the same
    email and organization is canceled so only the newest link works.
    """
    role = db.query(Role).filter_by(id=str(role_id)).one_or_none()
    if not role_available_to_organization(role, organization_id):
        raise NotFoundError("Role not found for this organization")
    ensure_role_grantable(role, held_permissions, held_stages)

    existing_user = db.query(User).filter_by(email=email).one_or_none()
    if existing_user and get_member(db, existing_user.id, organization_id):
        raise ConflictError("User is already a member of this organization")

    now = datetime.utcnow()
    previous = (
        db.query(Invitation)
        .filter(
            Invitation.organization_id == organization_id,
            Invitation.email == email,
            Invitation.status == PENDING,
        )
        .all()
    )
    for row in previous:
        row.status = CANCELED
        row.updated_at = now

    invitation = Invitation(
        email=email,
        organization_id=organization_id,
        role_id=role.id,
        inviter_id=inviter_id,
        token=generate_invitation_token(),
        status=PENDING,
        expires_at=now + timedelta(days=get_invitation_ttl_days()),
    )
    db.add(invitation)
    db.flush()
    return invitation


def refresh_invitation(db, invitation: Invitation) -> Invitation:
    if invitation.status != PENDING:
        raise RepositoryError("Only pending invitations can be resent")
    invitation.token = generate_invitation_token()
    invitation.expires_at = datetime.utcnow() + timedelta(days=get_invitation_ttl_days())
    invitation.updated_at = datetime.utcnow()
    db.flush()
    return invitation


def cancel_invitation(db, invitation: Invitation) -> Invitation:
    if invitation.status != PENDING:
        raise RepositoryError("Only pending invitations can be canceled")
    invitation.status = CANCELED
    invitation.updated_at = datetime.utcnow()
    db.flush()
    return invitation


def accept_invitation(db, invitation: Invitation, user: User) -> Member:
    if invitation.status != PENDING:
        raise RepositoryError(f"Invitation is {invitation.status}")
    if invitation.expires_at <= datetime.utcnow():
        invitation.status = EXPIRED
        invitation.updated_at = datetime.utcnow()
        db.flush()
        raise RepositoryError("Invitation has expired")
    if str(user.email or "").lower() != str(invitation.email or "").lower():
        raise ForbiddenError("This invitation was sent to a different email address")
    if get_member(db, user.id, invitation.organization_id):
        raise RepositoryError("You are already a member of this organization")
    if not role_available_to_organization(invitation.role, invitation.organization_id):
        invitation.status = CANCELED
        invitation.updated_at = datetime.utcnow()
        db.flush()
        raise RepositoryError("The role offered by this invitation no longer exists")

    member = Member(
        organization_id=invitation.organization_id,
        user_id=user.id,
        role_id=invitation.role_id,
    )
    db.add(member)
    invitation.status = ACCEPTED
    invitation.updated_at = datetime.utcnow()
    db.flush()
    return member
