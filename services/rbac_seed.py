from __future__ import annotations

import logging
from typing import Dict

from shared.db import Permission, Role, RoleStagePermission
from services.rbac import ROLE_STAGE_MATRIX, SYSTEM_ROLES, permission_catalog

logger = logging.getLogger(__name__)


def is_rbac_seeded(db) -> bool:
    has_permission = db.query(Permission.id).first() is not None
    has_role = db.query(Role.id).filter(Role.is_system_role.is_(True)).first() is not None
    return has_permission and has_role


def _seed_permissions(db) -> Dict[str, Permission]:
    existing = {row.slug: row for row in db.query(Permission).all()}
    for entry in permission_catalog():
        row = existing.get(entry["slug"])
        if row is None:
            row = Permission(slug=entry["slug"], is_system_permission=True)
            db.add(row)
            existing[entry["slug"]] = row
        row.resource = entry["resource"]
        row.action = entry["action"]
        row.description = entry["description"]
        row.is_system_permission = True
    db.flush()
    return existing


def seed_rbac(db) -> Dict[str, int]:
    """
    Upsert the permission catalog, the system roles, their permission links
    and their stage grants. Links and stage rows a system role no longer
    carries are pruned. Safe to run on every startup; returns how many rows of
    each kind were added, plus how many stale grants were removed.
    """
    before_permissions = db.query(Permission).count()
    permissions = _seed_permissions(db)
    created = {
        "permissions": db.query(Permission).count() - before_permissions,
        "roles": 0,
        "mappings": 0,
        "stages": 0,
        "pruned": 0,
    }

    system_roles = {
        row.name: row
        for row in db.query(Role).filter(Role.organization_id.is_(None), Role.is_system_role.is_(True)).all()
    }
    for definition in SYSTEM_ROLES:
        role = system_roles.get(definition["name"])
        if role is None:
            role = Role(name=definition["name"], organization_id=None, is_system_role=True)
            db.add(role)
            created["roles"] += 1
        role.description = definition["description"]

        wanted = set(definition["permissions"])
        for perm in [p for p in role.permissions if p.slug not in wanted]:
            role.permissions.remove(perm)
            created["pruned"] += 1
        linked = {perm.slug for perm in role.permissions}
        for slug in definition["permissions"]:
            if slug not in linked:
                role.permissions.append(permissions[slug])
                created["mappings"] += 1

        matrix = ROLE_STAGE_MATRIX[definition["name"]]
        for row in [r for r in role.stage_permissions if r.stage not in matrix]:
            role.stage_permissions.remove(row)
            created["pruned"] += 1
        current = {row.stage: row for row in role.stage_permissions}
        for stage, grant in matrix.items():
            row = current.get(stage)
            if row is None:
                row = RoleStagePermission(stage=stage)
                role.stage_permissions.append(row)
                created["stages"] += 1
            row.can_view = grant["canView"]
            row.can_edit = grant["canEdit"]
    db.flush()
    logger.debug("seed_rbac result: %s", created)
    return created
