from __future__ import annotations

from datetime import datetime
from typing import Dict, Iterable, List, Optional

from repository.errors import ConflictError, ForbiddenError, NotFoundError
from repository.rbac_repo import (
    ensure_role_grantable,
    get_member,
    get_role_by_name,
    role_available_to_organization,
    role_to_dict,
)
from repository.users_repo import user_to_dict
from services.rbac import OWNER_ROLE, role_display
from shared.db import Member, Organization, Role, User


def _format_dt(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def organization_to_dict(org: Organization) -> dict:
    return {
        "id": org.id,
        "name": org.name,
        "slug": org.slug,
        "logo": org.logo,
        "createdAt": _format_dt(org.created_at),
    }


def member_to_dict(member: Member) -> dict:
    role = member.role
    data = {
        "id": member.id,
        "organizationId": member.organization_id,
        "userId": member.user_id,
        "roleId": member.role_id,
        "createdAt": _format_dt(member.created_at),
        "user": user_to_dict(member.user) if member.user else None,
        "role": role_to_dict(role) if role else None,
    }
    data.update(role_display(role.name if role else None))
    return data


def get_organization(db, organization_id: str) -> Optional[Organization]:
    if not organization_id:
        return None
    return db.query(Organization).filter_by(id=str(organization_id)).one_or_none()


def get_organization_by_slug(db, slug: str) -> Optional[Organization]:
    return db.query(Organization).filter_by(slug=str(slug or "").strip().lower()).one_or_none()


def list_user_organizations(db, user_id: str) -> List[dict]:
    rows = (
        db.query(Organization, Member)
        .join(Member, Member.organization_id == Organization.id)
        .filter(Member.user_id == user_id)
        .order_by(Organization.name.asc())
        .all()
    )
    out = []
    for org, member in rows:
        data = organization_to_dict(org)
        data["memberId"] = member.id
        data["role"] = member.role.name if member.role else None
        out.append(data)
    return out


def owner_role(db) -> Role:
    role = get_role_by_name(db, OWNER_ROLE)
    if role is None:
        raise NotFoundError("Owner role is missing; seed RBAC first")
    return role


def create_organization(db, *, name: str, slug: str, creator: User, logo: Optional[str] = None) -> Organization:
    """Create an organization and make the creator its Owner."""
    if get_organization_by_slug(db, slug):
        raise ConflictError("Organization slug is already in use")
    role = owner_role(db)
    org = Organization(name=name, slug=slug, logo=logo)
    db.add(org)
    db.flush()
    db.add(Member(organization_id=org.id, user_id=creator.id, role_id=role.id))
    db.flush()
    return org


def list_members(db, organization_id: str) -> List[Member]:
    return (
        db.query(Member)
        .join(User, User.id == Member.user_id)
        .filter(Member.organization_id == organization_id)
        .order_by(Member.created_at.asc(), User.name.asc())
        .all()
    )


def get_member_by_id(db, organization_id: str, member_id: str) -> Optional[Member]:
    return (
        db.query(Member)
        .filter(Member.id == str(member_id or ""), Member.organization_id == organization_id)
        .one_or_none()
    )


def _resolve_assignable_role(db, organization_id: str, role_id: str) -> Role:
    role = db.query(Role).filter_by(id=str(role_id or "")).one_or_none()
    if not role_available_to_organization(role, organization_id):
        raise NotFoundError("Role not found for this organization")
    return role


def add_member(
    db,
    organization_id: str,
    user_id: str,
    role_id: str,
    *,
    held_permissions: Optional[Iterable[str]] = None,
    held_stages: Optional[Dict[str, Dict[str, bool]]] = None,
) -> Member:
    user = db.query(User).filter_by(id=str(user_id or "")).one_or_none()
    if not user:
        raise NotFoundError("User not found")
    role = _resolve_assignable_role(db, organization_id, role_id)
    ensure_role_grantable(role, held_permissions, held_stages)
    if get_member(db, user.id, organization_id):
        raise ConflictError("User is already a member of this organization")
    member = Member(organization_id=organization_id, user_id=user.id, role_id=role.id)
    db.add(member)
    db.flush()
    return member


def _is_owner(member: Member) -> bool:
    return bool(member.role and member.role.is_system_role and member.role.name == OWNER_ROLE)


def count_owners(db, organization_id: str) -> int:
    return (
        db.query(Member)
        .join(Role, Role.id == Member.role_id)
        .filter(
            Member.organization_id == organization_id,
            Role.name == OWNER_ROLE,
            Role.is_system_role.is_(True),
        )
        .count()
    )


def update_member_role(
    db,
    member: Member,
    role_id: str,
    *,
    held_permissions: Optional[Iterable[str]] = None,
    held_stages: Optional[Dict[str, Dict[str, bool]]] = None,
) -> Member:
    role = _resolve_assignable_role(db, member.organization_id, role_id)
    # Both the current and the new role must be within the caller's own grants.
    if member.role is not None:
        ensure_role_grantable(member.role, held_permissions, held_stages)
    ensure_role_grantable(role, held_permissions, held_stages)
    if _is_owner(member) and role.id != member.role_id and count_owners(db, member.organization_id) <= 1:
        raise ForbiddenError("The last owner of an organization cannot be demoted")
    member.role_id = role.id
    member.role = role
    member.updated_at = datetime.utcnow()
    db.flush()
    return member


def remove_member(
    db,
    member: Member,
    *,
    held_permissions: Optional[Iterable[str]] = None,
    held_stages: Optional[Dict[str, Dict[str, bool]]] = None,
) -> None:
    if member.role is not None:
        ensure_role_grantable(member.role, held_permissions, held_stages)
    if _is_owner(member) and count_owners(db, member.organization_id) <= 1:
        raise ForbiddenError("The last owner of an organization cannot be removed")
    db.delete(member)
    db.flush()


def list_available_users(db, organization_id: str) -> List[dict]:
    member_ids = db.query(Member.user_id).filter(Member.organization_id == organization_id)
    rows = db.query(User).filter(~User.id.in_(member_ids)).order_by(User.name.asc()).all()
    return [user_to_dict(user) for user in rows]
