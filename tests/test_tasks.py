import unittest
from datetime import datetime

from notifications_endpoints import handle_notifications
from organizations_endpoints import handle_member_add
from repository.rbac_repo import create_custom_role
from repository.tasks_repo import effective_status
from shared.db import SessionLocal, Task
from tasks_endpoints import handle_task_detail, handle_tasks
from tests.support import CORS, OrganizationFixture, make_request, read_json, sign_up


class EffectiveStatusTests(unittest.TestCase):
    def test_pending_task_past_due_is_overdue(self):
        task = Task(status="pending", due_date="2024-01-01", due_time="09:00")
        self.assertEqual(effective_status(task, now=datetime(2024, 1, 1, 9, 1)), "overdue")
        self.assertEqual(effective_status(task, now=datetime(2024, 1, 1, 8, 59)), "pending")

    def test_completed_task_is_never_overdue(self):
        task = Task(status="completed", due_date="2024-01-01", due_time="09:00")
        self.assertEqual(effective_status(task, now=datetime(2030, 1, 1)), "completed")


class TaskEndpointTests(unittest.TestCase):
    def setUp(self):
        self.fixture = OrganizationFixture()
        self.owner = self.fixture.owner
        self.org_id = self.fixture.org_id
        self.post_sale = self.fixture.member("Post-Sale", "pat@example.com", "Pat")

    def _create(self, token=None, **fields):
        body = {"title": "Call back", "dueDate": "2099-01-01", "dueTime": "10:00", "category": "call", **fields}
        return handle_tasks(
            make_request("POST", body=body, token=token or self.owner["token"], organization_id=self.org_id), CORS
        )

    def _list(self, token=None, **params):
        resp = handle_tasks(
            make_request("GET", token=token or self.owner["token"], organization_id=self.org_id, params=params), CORS
        )
        return read_json(resp)["tasks"]

    def _patch(self, task_id, body, token=None):
        return handle_task_detail(
            make_request(
                "PATCH", body=body, token=token or self.owner["token"], organization_id=self.org_id, route_params={"id": task_id}
            ),
            CORS,
        )

    def _member_with_custom_role(self, role_name, permissions, email):
        db = SessionLocal()
        try:
            role_id = create_custom_role(db, self.org_id, role_name, None, permissions, None).id
            db.commit()
        finally:
            db.close()
        user = sign_up("Custom Member", email)
        resp = handle_member_add(
            make_request(
                "POST",
                body={"userId": user["user_id"], "roleId": role_id},
                token=self.owner["token"],
                route_params={"organizationId": self.org_id},
            ),
            CORS,
        )
        self.assertEqual(resp.status_code, 201)
        return user

    def _notifications(self, token):
        resp = handle_notifications(make_request("GET", token=token, organization_id=self.org_id), CORS)
        return read_json(resp)

    def test_create_defaults_to_creator(self):
        resp = self._create()
        self.assertEqual(resp.status_code, 201)
        task = read_json(resp)["task"]
        self.assertEqual(task["status"], "pending")
        self.assertEqual(task["assignedTo"], self.owner["user_id"])
        self.assertEqual(self._notifications(self.owner["token"])["unreadCount"], 0)

    def test_assigning_to_member_notifies_them(self):
        resp = self._create(assignedTo=self.post_sale["user_id"])
        self.assertEqual(resp.status_code, 201)
        data = self._notifications(self.post_sale["token"])
        self.assertEqual(data["unreadCount"], 1)
        self.assertEqual(data["notifications"][0]["entityType"], "task")

    def test_assignee_must_be_member(self):
        outsider = sign_up("Eve", "eve@example.com")
        self.assertEqual(self._create(assignedTo=outsider["user_id"]).status_code, 400)

    def test_invalid_due_time(self):
        self.assertEqual(self._create(dueTime="25:00").status_code, 400)
        self.assertEqual(self._create(dueDate="01/02/2099").status_code, 400)
        self.assertEqual(self._create(dueDate="2099-01-01xyz").status_code, 400)
        self.assertEqual(self._create(dueTime="10:00pm").status_code, 400)

    def test_status_filters_and_overdue(self):
        self._create(title="Old", dueDate="2000-01-01")
        future_id = read_json(self._create(title="Future"))["task"]["id"]
        self._patch(future_id, {"status": "completed"})

        self.assertEqual([t["title"] for t in self._list(status="overdue")], ["Old"])
        self.assertEqual(self._list(status="pending"), [])
        self.assertEqual([t["title"] for t in self._list(status="completed")], ["Future"])
        self.assertEqual(len(self._list(status="all")), 2)

    def test_complete_and_reopen(self):
        task_id = read_json(self._create())["task"]["id"]
        task = read_json(self._patch(task_id, {"status": "completed"}))["task"]
        self.assertIsNotNone(task["completedAt"])
        task = read_json(self._patch(task_id, {"status": "pending"}))["task"]
        self.assertIsNone(task["completedAt"])

    def test_assignee_without_update_permission_can_work_own_task(self):
        viewer = self._member_with_custom_role("Viewer", ["read:task"], "vic@example.com")
        own_id = read_json(self._create(assignedTo=viewer["user_id"]))["task"]["id"]
        other_id = read_json(self._create())["task"]["id"]

        resp = self._patch(own_id, {"status": "completed"}, token=viewer["token"])
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(self._patch(other_id, {"title": "Mine now"}, token=viewer["token"]).status_code, 403)

    def test_reassignment_notifies_new_assignee(self):
        task_id = read_json(self._create())["task"]["id"]
        resp = self._patch(task_id, {"assignedTo": self.post_sale["user_id"]})
        self.assertEqual(read_json(resp)["task"]["assignedTo"], self.post_sale["user_id"])
        self.assertEqual(self._notifications(self.post_sale["token"])["unreadCount"], 1)

    def test_delete_requires_permission(self):
        task_id = read_json(self._create())["task"]["id"]
        route = {"id": task_id}
        req = make_request("DELETE", token=self.post_sale["token"], organization_id=self.org_id, route_params=route)
        self.assertEqual(handle_task_detail(req, CORS).status_code, 403)
        req = make_request("DELETE", token=self.owner["token"], organization_id=self.org_id, route_params=route)
        self.assertEqual(handle_task_detail(req, CORS).status_code, 200)
        self.assertEqual(handle_task_detail(req, CORS).status_code, 404)


if __name__ == "__main__":
    unittest.main()
