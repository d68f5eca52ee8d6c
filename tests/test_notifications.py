import unittest

from notifications_endpoints import handle_notification_update, handle_notifications, handle_notifications_read_all
from tests.support import CORS, OrganizationFixture, make_request, read_json


class NotificationEndpointTests(unittest.TestCase):
    def setUp(self):
        self.fixture = OrganizationFixture()
        self.token = self.fixture.owner["token"]
        self.org_id = self.fixture.org_id

    def _create(self, token=None, **fields):
        body = {"title": "Deal won", **fields}
        return handle_notifications(
            make_request("POST", body=body, token=token or self.token, organization_id=self.org_id), CORS
        )

    def _list(self, token=None, **params):
        resp = handle_notifications(
            make_request("GET", token=token or self.token, organization_id=self.org_id, params=params), CORS
        )
        return read_json(resp)

    def _patch(self, notification_id, body, token=None):
        return handle_notification_update(
            make_request(
                "PATCH", body=body, token=token or self.token, organization_id=self.org_id, route_params={"id": notification_id}
            ),
            CORS,
        )

    def test_create_defaults(self):
        resp = self._create(description="Acme signed")
        self.assertEqual(resp.status_code, 201)
        notification = read_json(resp)["notification"]
        self.assertEqual(notification["time"], "Just now")
        self.assertTrue(notification["unread"])
        self.assertEqual(self._create(title="  ").status_code, 400)

    def test_list_counts_unread(self):
        first_id = read_json(self._create(title="First"))["notification"]["id"]
        self._create(title="Second")
        self._patch(first_id, {"unread": False})

        data = self._list()
        self.assertEqual(len(data["notifications"]), 2)
        self.assertEqual(data["unreadCount"], 1)

        data = self._list(unread="true")
        self.assertEqual([n["title"] for n in data["notifications"]], ["Second"])

    def test_patch_validation_and_ownership(self):
        notification_id = read_json(self._create())["notification"]["id"]
        self.assertEqual(self._patch(notification_id, {"unread": "no"}).status_code, 400)
        self.assertEqual(self._patch("missing", {"unread": False}).status_code, 404)

        member = self.fixture.member("Salesperson", "sam@example.com", "Sam")
        self.assertEqual(self._patch(notification_id, {"unread": False}, token=member["token"]).status_code, 404)

        resp = self._patch(notification_id, {"unread": False})
        self.assertFalse(read_json(resp)["notification"]["unread"])

    def test_read_all(self):
        self._create(title="One")
        self._create(title="Two")
        resp = handle_notifications_read_all(make_request("POST", token=self.token, organization_id=self.org_id), CORS)
        self.assertEqual(read_json(resp), {"success": True, "updated": 2})
        self.assertEqual(self._list()["unreadCount"], 0)

    def test_requires_session(self):
        resp = handle_notifications(make_request("GET", organization_id=self.org_id), CORS)
        self.assertEqual(resp.status_code, 401)


if __name__ == "__main__":
    unittest.main()
