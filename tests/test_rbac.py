import unittest

from repository.errors import ConflictError, ForbiddenError
from repository.rbac_repo import (
    create_custom_role,
    delete_custom_role,
    get_role_by_name,
    get_user_permissions,
    has_any_permission,
    has_permission,
    update_custom_role,
    update_role_stage_permissions,
)
from services.rbac import (
    ADMIN_ROLE,
    ADMINISTRATIVE_ROLE,
    OWNER_ROLE,
    POST_SALE_ROLE,
    ROLE_STAGE_MATRIX,
    SALES_STAGES,
    SALESPERSON_ROLE,
    SYSTEM_ROLES,
    accessible_stages,
    all_permission_slugs,
    can_act_on_deal,
    can_stage_action,
    navigation_for,
    normalize_stage_grants,
    role_display,
)
from services.rbac_seed import is_rbac_seeded, seed_rbac
from shared.db import Permission, Role, RoleStagePermission, SessionLocal
from tests.support import OrganizationFixture, reset_database


class StageMatrixTests(unittest.TestCase):
    def test_salesperson_edits_early_stages_and_views_late_ones(self):
        grants = ROLE_STAGE_MATRIX[SALESPERSON_ROLE]
        self.assertTrue(can_stage_action(grants, "lead", "update"))
        self.assertTrue(can_stage_action(grants, "analysis_approval", "update"))
        self.assertTrue(can_stage_action(grants, "closing", "read"))
        self.assertFalse(can_stage_action(grants, "closing", "update"))

    def test_post_sale_only_sees_post_sale(self):
        stages = accessible_stages(ROLE_STAGE_MATRIX[POST_SALE_ROLE])
        self.assertEqual(stages, {"editable": ["post_sale"], "viewOnly": []})

    def test_administrative_has_no_access_to_lead(self):
        grants = ROLE_STAGE_MATRIX[ADMINISTRATIVE_ROLE]
        self.assertFalse(can_stage_action(grants, "lead", "read"))
        self.assertTrue(can_stage_action(grants, "quality_control", "delete"))

    def test_owner_and_admin_cover_every_stage(self):
        for role in (OWNER_ROLE, ADMIN_ROLE):
            self.assertEqual(accessible_stages(ROLE_STAGE_MATRIX[role])["editable"], SALES_STAGES)

    def test_unknown_action_is_denied(self):
        self.assertFalse(can_stage_action(ROLE_STAGE_MATRIX[OWNER_ROLE], "lead", "approve"))

    def test_edit_implies_view_when_normalizing(self):
        grants = normalize_stage_grants([{"stage": "Closing", "canEdit": True}, {"stage": "lead"}])
        self.assertEqual(grants, {"closing": {"canView": True, "canEdit": True}})

    def test_normalize_rejects_unknown_stage(self):
        with self.assertRaises(ValueError):
            normalize_stage_grants({"shipping": {"canView": True}})

    def test_deal_action_needs_permission_and_stage(self):
        grants = ROLE_STAGE_MATRIX[SALESPERSON_ROLE]
        perms = ["read:deal", "update:deal"]
        self.assertTrue(can_act_on_deal(perms, grants, "update", "lead"))
        self.assertFalse(can_act_on_deal(perms, grants, "delete", "lead"))
        self.assertFalse(can_act_on_deal(["read:deal"], grants, "update", "lead"))

    def test_moving_a_deal_needs_edit_on_target(self):
        grants = ROLE_STAGE_MATRIX[SALESPERSON_ROLE]
        perms = ["update:deal"]
        self.assertTrue(can_act_on_deal(perms, grants, "update", "lead", "negotiation"))
        self.assertFalse(can_act_on_deal(perms, grants, "update", "analysis_approval", "closing"))

    def test_navigation_lists_readable_stage_pages(self):
        items = navigation_for(["read:client", "read:deal"], ROLE_STAGE_MATRIX[POST_SALE_ROLE])
        titles = [item["title"] for item in items]
        self.assertIn("Clients", titles)
        self.assertIn("Post-Sale", titles)
        self.assertNotIn("Lead", titles)
        self.assertNotIn("Reports", titles)
        self.assertEqual(titles[-1], "Settings")

    def test_admin_cannot_manage_organization(self):
        admin = next(role for role in SYSTEM_ROLES if role["name"] == ADMIN_ROLE)
        self.assertNotIn("delete:organization", admin["permissions"])
        self.assertIn("delete:role", admin["permissions"])

    def test_unknown_role_gets_default_display(self):
        self.assertEqual(role_display("Custom"), {"color": "bg-gray-500", "icon": "Users"})


class SeedTests(unittest.TestCase):
    def setUp(self):
        reset_database()
        self.db = SessionLocal()

    def tearDown(self):
        self.db.close()

    def test_seed_creates_catalog_and_system_roles(self):
        self.assertTrue(is_rbac_seeded(self.db))
        self.assertEqual(self.db.query(Permission).count(), len(all_permission_slugs()))
        owner = get_role_by_name(self.db, OWNER_ROLE)
        self.assertTrue(owner.is_system_role)
        self.assertEqual(len(owner.permissions), len(all_permission_slugs()))

    def test_seed_is_idempotent(self):
        result = seed_rbac(self.db)
        self.assertEqual(result, {"permissions": 0, "roles": 0, "mappings": 0, "stages": 0, "pruned": 0})
        self.assertEqual(self.db.query(Role).filter(Role.is_system_role.is_(True)).count(), len(SYSTEM_ROLES))

    def test_reseed_prunes_stale_system_grants(self):
        post_sale = get_role_by_name(self.db, POST_SALE_ROLE)
        post_sale.permissions.append(self.db.query(Permission).filter_by(slug="delete:organization").one())
        post_sale.stage_permissions.append(RoleStagePermission(stage="lead", can_view=True, can_edit=True))
        self.db.flush()

        result = seed_rbac(self.db)
        self.assertEqual(result["pruned"], 2)
        self.assertNotIn("delete:organization", {p.slug for p in post_sale.permissions})
        self.assertEqual([row.stage for row in post_sale.stage_permissions], ["post_sale"])


class RoleRepositoryTests(unittest.TestCase):
    def setUp(self):
        self.fixture = OrganizationFixture()
        self.db = SessionLocal()

    def tearDown(self):
        self.db.close()

    def test_owner_permissions(self):
        perms = get_user_permissions(self.db, self.fixture.owner["user_id"], self.fixture.org_id)
        self.assertEqual(perms["role"]["name"], OWNER_ROLE)
        self.assertIn("delete:organization", perms["permissions"])
        self.assertTrue(has_permission(self.db, self.fixture.owner["user_id"], self.fixture.org_id, "create:role"))

    def test_non_member_has_no_permissions(self):
        self.assertIsNone(get_user_permissions(self.db, "missing-user", self.fixture.org_id))
        self.assertFalse(has_any_permission(self.db, "missing-user", self.fixture.org_id, ["read:client"]))

    def test_custom_role_name_must_be_unique_including_system_roles(self):
        create_custom_role(self.db, self.fixture.org_id, "Closer", None, ["read:deal"], None)
        with self.assertRaises(ConflictError):
            create_custom_role(self.db, self.fixture.org_id, "closer")
        with self.assertRaises(ConflictError):
            create_custom_role(self.db, self.fixture.org_id, "Admin")

    def test_custom_role_with_unknown_permission_is_rejected(self):
        with self.assertRaises(ValueError):
            create_custom_role(self.db, self.fixture.org_id, "Broken", None, ["fly:plane"], None)

    def test_update_custom_role_replaces_permissions_and_stages(self):
        role = create_custom_role(
            self.db, self.fixture.org_id, "Closer", "Closes deals", ["read:deal"], {"closing": {"canEdit": True}}
        )
        update_custom_role(
            self.db,
            role,
            {"permissions": ["read:deal", "update:deal"], "stages": [{"stage": "lead", "canView": True}]},
        )
        self.assertEqual([p.slug for p in role.permissions], ["read:deal", "update:deal"])
        self.assertEqual([row.stage for row in role.stage_permissions], ["lead"])
        update_role_stage_permissions(self.db, role, {"post_sale": {"canEdit": True}})
        self.assertEqual([row.stage for row in role.stage_permissions], ["post_sale"])

    def test_system_roles_are_immutable(self):
        owner = get_role_by_name(self.db, OWNER_ROLE)
        with self.assertRaises(ForbiddenError):
            update_custom_role(self.db, owner, {"name": "Boss"})
        with self.assertRaises(ForbiddenError):
            update_role_stage_permissions(self.db, owner, {})
        with self.assertRaises(ForbiddenError):
            delete_custom_role(self.db, owner)


if __name__ == "__main__":
    unittest.main()
