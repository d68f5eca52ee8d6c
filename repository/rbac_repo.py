from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import func as sa_func, or_

from repository.errors import ConflictError, ForbiddenError
from shared.db import Invitation, Member, Permission, Role, RoleStagePermission
from services.rbac import SALES_STAGES, normalize_stage_grants, role_display


def _format_dt(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def stage_grants_for_role(role: Optional[Role]) -> Dict[str, Dict[str, bool]]:
    if role is None:
        return {}
    grants = {}
    for row in role.stage_permissions:
        if row.can_view or row.can_edit:
            grants[row.stage] = {"canView": bool(row.can_view or row.can_edit), "canEdit": bool(row.can_edit)}
    return {stage: grants[stage] for stage in SALES_STAGES if stage in grants}


def permission_to_dict(permission: Permission) -> dict:
    return {
        "id": permission.id,
        "slug": permission.slug,
        "resource": permission.resource,
        "action": permission.action,
        "description": permission.description,
    }


def role_to_dict(role: Role, *, include_display: bool = False) -> dict:
    data = {
        "id": role.id,
        "name": role.name,
        "description": role.description,
        "organizationId": role.organization_id,
        "isSystemRole": bool(role.is_system_role),
        "permissions": [permission_to_dict(p) for p in role.permissions],
        "stages": stage_grants_for_role(role),
        "createdAt": _format_dt(role.created_at),
        "updatedAt": _format_dt(role.updated_at),
    }
    if include_display:
        data.update(role_display(role.name))
    return data


def get_member(db, user_id: str, organization_id: str) -> Optional[Member]:
    if not user_id or not organization_id:
        return None
    return (
        db.query(Member)
        .filter(Member.user_id == user_id, Member.organization_id == organization_id)
        .one_or_none()
    )


def get_user_permissions(db, user_id: str, organization_id: str) -> Optional[dict]:
    member = get_member(db, user_id, organization_id)
    if not member or not member.role:
        return None
    role = member.role
    return {
        "userId": user_id,
        "organizationId": organization_id,
        "memberId": member.id,
        "role": role_to_dict(role),
        "permissions": sorted(p.slug for p in role.permissions),
        "stages": stage_grants_for_role(role),
    }


def has_permission(db, user_id: str, organization_id: str, slug: str) -> bool:
    return has_any_permission(db, user_id, organization_id, [slug])


def has_any_permission(db, user_id: str, organization_id: str, slugs: Iterable[str]) -> bool:
    wanted = {str(slug) for slug in slugs or [] if slug}
    if not wanted:
        return False
    member = get_member(db, user_id, organization_id)
    if not member or not member.role:
        return False
    return any(p.slug in wanted for p in member.role.permissions)


def role_available_to_organization(role: Optional[Role], organization_id: str) -> bool:
    if role is None:
        return False
    if role.is_system_role and role.organization_id is None:
        return True
    return role.organization_id == organization_id


def get_role_by_id(db, role_id: str) -> Optional[Role]:
    if not role_id:
        return None
    return db.query(Role).filter_by(id=str(role_id)).one_or_none()


def get_role_by_name(db, name: str, organization_id: Optional[str] = None) -> Optional[Role]:
    query = db.query(Role).filter(sa_func.lower(Role.name) == str(name or "").strip().lower())
    if organization_id is None:
        query = query.filter(Role.organization_id.is_(None))
    else:
        query = query.filter(Role.organization_id == organization_id)
    return query.first()


def get_organization_roles(db, organization_id: str) -> List[dict]:
    rows = (
        db.query(Role)
        .filter(or_(Role.organization_id.is_(None), Role.organization_id == organization_id))
        .order_by(Role.is_system_role.desc(), Role.created_at.asc(), Role.name.asc())
        .all()
    )
    return [role_to_dict(role, include_display=True) for role in rows]


def resolve_permissions(db, refs: Iterable[Any]) -> List[Permission]:
    """Map permission ids or slugs to rows. Unknown references raise ValueError."""
    wanted = [str(ref).strip() for ref in refs or [] if str(ref or "").strip()]
    if not wanted:
        return []
    rows = db.query(Permission).filter(or_(Permission.id.in_(wanted), Permission.slug.in_(wanted))).all()
    by_ref = {}
    for row in rows:
        by_ref[row.id] = row
        by_ref[row.slug] = row
    missing = [ref for ref in wanted if ref not in by_ref]
    if missing:
        raise ValueError(f"unknown permissions: {', '.join(missing)}")
    resolved: List[Permission] = []
    for ref in wanted:
        if by_ref[ref] not in resolved:
            resolved.append(by_ref[ref])
    return resolved


def _ensure_name_free(db, organization_id: str, name: str, exclude_role_id: Optional[str] = None) -> None:
    query = db.query(Role).filter(
        sa_func.lower(Role.name) == name.lower(),
        or_(Role.organization_id.is_(None), Role.organization_id == organization_id),
    )
    if exclude_role_id:
        query = query.filter(Role.id != exclude_role_id)
    if query.first() is not None:
        raise ConflictError(f"A role named '{name}' already exists")


def _replace_stage_grants(role: Role, grants: Dict[str, Dict[str, bool]]) -> None:
    current = {row.stage: row for row in role.stage_permissions}
    for stage, row in current.items():
        if stage not in grants:
            role.stage_permissions.remove(row)
    for stage, grant in grants.items():
        row = current.get(stage)
        if row is None:
            row = RoleStagePermission(stage=stage)
            role.stage_permissions.append(row)
        row.can_view = grant["canView"]
        row.can_edit = grant["canEdit"]


def ensure_grantable(
    permissions: Iterable[Permission],
    grants: Dict[str, Dict[str, bool]],
    held_permissions: Optional[Iterable[str]],
    held_stages: Optional[Dict[str, Dict[str, bool]]] = None,
) -> None:
    """
    Refuse to hand out more than the granting member holds. ``None`` for
    ``held_permissions`` skips the check, which is what seeding tools use.
    """
    if held_permissions is None:
        return
    missing = sorted({permission.slug for permission in permissions} - set(held_permissions))
    if missing:
        raise ForbiddenError(f"You cannot grant permissions you do not hold: {', '.join(missing)}")
    if held_stages is None:
        return
    for stage, grant in grants.items():
        held = held_stages.get(stage) or {}
        if (grant.get("canEdit") and not held.get("canEdit")) or (grant.get("canView") and not held.get("canView")):
            raise ForbiddenError(f"You cannot grant access to the '{stage}' stage beyond your own")


def ensure_role_grantable(
    role: Role,
    held_permissions: Optional[Iterable[str]],
    held_stages: Optional[Dict[str, Dict[str, bool]]] = None,
) -> None:
    ensure_grantable(role.permissions, stage_grants_for_role(role), held_permissions, held_stages)


def create_custom_role(
    db,
    organization_id: str,
    name: str,
    description: Optional[str] = None,
    permissions: Optional[Iterable[Any]] = None,
    stages: Any = None,
    *,
    held_permissions: Optional[Iterable[str]] = None,
    held_stages: Optional[Dict[str, Dict[str, bool]]] = None,
) -> Role:
    clean_name = str(name or "").strip()
    if not clean_name:
        raise ValueError("name is required")
    _ensure_name_free(db, organization_id, clean_name)
    resolved = resolve_permissions(db, permissions or [])
    grants = normalize_stage_grants(stages)
    ensure_grantable(resolved, grants, held_permissions, held_stages)

    role = Role(
        name=clean_name,
        description=(str(description).strip() or None) if description is not None else None,
        organization_id=organization_id,
        is_system_role=False,
    )
    role.permissions = resolved
    db.add(role)
    _replace_stage_grants(role, grants)
    db.flush()
    return role


def update_role_stage_permissions(db, role: Role, stages: Any) -> Role:
    if role.is_system_role:
        raise ForbiddenError("System roles cannot be modified")
    _replace_stage_grants(role, normalize_stage_grants(stages))
    role.updated_at = datetime.utcnow()
    db.flush()
    return role


def update_custom_role(
    db,
    role: Role,
    payload: Dict[str, Any],
    *,
    held_permissions: Optional[Iterable[str]] = None,
    held_stages: Optional[Dict[str, Dict[str, bool]]] = None,
) -> Role:
    if role.is_system_role:
        raise ForbiddenError("System roles cannot be modified")
    permissions = list(role.permissions)
    if "permissions" in payload:
        permissions = resolve_permissions(db, payload.get("permissions") or [])
    grants = stage_grants_for_role(role)
    if "stages" in payload:
        grants = normalize_stage_grants(payload.get("stages"))
    ensure_grantable(permissions, grants, held_permissions, held_stages)
    if "name" in payload:
        clean_name = str(payload.get("name") or "").strip()
        if not clean_name:
            raise ValueError("name is required")
        _ensure_name_free(db, role.organization_id, clean_name, exclude_role_id=role.id)
        role.name = clean_name
    if "description" in payload:
        description = payload.get("description")
        role.description = (str(description).strip() or None) if description is not None else None
    if "permissions" in payload:
        role.permissions = permissions
    if "stages" in payload:
        _replace_stage_grants(role, grants)
    role.updated_at = datetime.utcnow()
    db.flush()
    return role


def delete_custom_role(db, role: Role) -> None:
    if role.is_system_role:
        raise ForbiddenError("System roles cannot be deleted")
    in_use = db.query(Member.id).filter(Member.role_id == role.id).first()
    if in_use is not None:
        raise ConflictError("Role is still assigned to members")
    pending = (
        db.query(Invitation.id)
        .filter(Invitation.role_id == role.id, Invitation.status == "pending")
        .first()
    )
    if pending is not None:
        raise ConflictError("Role is still offered by pending invitations")
    db.delete(role)
    db.flush()
