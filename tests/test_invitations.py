import os
import unittest
from datetime import datetime, timedelta
from unittest import mock

import requests

from invitations_endpoints import (
    handle_invitation_cancel,
    handle_invitation_resend,
    handle_invitations_list,
    handle_invite_accept,
    handle_invite_preview,
    handle_invite_send,
)
from permissions_endpoints import handle_role_create, handle_role_delete
from services.email_service import build_invitation_url, send_invitation_email
from shared.db import Invitation, Member, Role, SessionLocal
from tests.support import CORS, OrganizationFixture, make_request, read_json, sign_up, system_role_id


class InvitationFlowTests(unittest.TestCase):
    def setUp(self):
        self.fixture = OrganizationFixture()
        self.owner = self.fixture.owner
        self.org_id = self.fixture.org_id

    def _invite(self, email="new@example.com", role="Salesperson", token=None):
        body = {"email": email, "organizationId": self.org_id, "roleId": system_role_id(role)}
        return handle_invite_send(make_request("POST", body=body, token=token or self.owner["token"]), CORS)

    def _invitation_status(self, invitation_id):
        db = SessionLocal()
        try:
            return db.query(Invitation).filter_by(id=invitation_id).one().status
        finally:
            db.close()

    def test_send_without_email_provider(self):
        resp = self._invite()
        self.assertEqual(resp.status_code, 200)
        data = read_json(resp)
        self.assertTrue(data["success"])
        self.assertFalse(data["emailSent"])
        self.assertTrue(data["invitationToken"])

    def test_resending_to_same_email_cancels_previous(self):
        first = read_json(self._invite())
        second = read_json(self._invite())
        self.assertEqual(self._invitation_status(first["invitationId"]), "canceled")
        self.assertEqual(self._invitation_status(second["invitationId"]), "pending")

    def test_existing_member_cannot_be_invited(self):
        self.fixture.member("Salesperson", "sam@example.com", "Sam")
        self.assertEqual(self._invite("sam@example.com").status_code, 409)

    def test_salesperson_cannot_invite(self):
        member = self.fixture.member("Salesperson", "sam@example.com", "Sam")
        self.assertEqual(self._invite(token=member["token"]).status_code, 403)

    def test_preview_is_public(self):
        token = read_json(self._invite())["invitationToken"]
        resp = handle_invite_preview(make_request("GET", route_params={"token": token}), CORS)
        data = read_json(resp)["invitation"]
        self.assertEqual(data["organization"]["slug"], "acme-sales")
        self.assertEqual(data["role"]["name"], "Salesperson")
        self.assertEqual(data["inviter"]["email"], "owner@example.com")

        resp = handle_invite_preview(make_request("GET", route_params={"token": "missing"}), CORS)
        self.assertEqual(resp.status_code, 404)

    def test_accept_creates_membership(self):
        token = read_json(self._invite("new@example.com", "Administrative"))["invitationToken"]
        invitee = sign_up("New Person", "new@example.com")
        resp = handle_invite_accept(make_request("POST", token=invitee["token"], route_params={"token": token}), CORS)
        self.assertEqual(resp.status_code, 200)
        data = read_json(resp)
        self.assertEqual(data["organizationId"], self.org_id)
        self.assertEqual(data["member"]["role"]["name"], "Administrative")

        # A second attempt fails because the invitation is no longer pending.
        resp = handle_invite_accept(make_request("POST", token=invitee["token"], route_params={"token": token}), CORS)
        self.assertEqual(resp.status_code, 400)

    def test_accept_requires_session_and_matching_email(self):
        token = read_json(self._invite())["invitationToken"]
        resp = handle_invite_accept(make_request("POST", route_params={"token": token}), CORS)
        self.assertEqual(resp.status_code, 401)

        stranger = sign_up("Stranger", "stranger@example.com")
        resp = handle_invite_accept(make_request("POST", token=stranger["token"], route_params={"token": token}), CORS)
        self.assertEqual(resp.status_code, 403)

    def test_expired_invitation_is_marked_expired(self):
        data = read_json(self._invite())
        db = SessionLocal()
        try:
            invitation = db.query(Invitation).filter_by(id=data["invitationId"]).one()
            invitation.expires_at = datetime.utcnow() - timedelta(hours=1)
            db.commit()
        finally:
            db.close()

        invitee = sign_up("New Person", "new@example.com")
        resp = handle_invite_accept(
            make_request("POST", token=invitee["token"], route_params={"token": data["invitationToken"]}), CORS
        )
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(self._invitation_status(data["invitationId"]), "expired")
        db = SessionLocal()
        try:
            self.assertEqual(db.query(Member).filter_by(user_id=invitee["user_id"]).count(), 0)
        finally:
            db.close()

    def _custom_role(self, name="Temp"):
        resp = handle_role_create(
            make_request(
                "POST",
                body={"name": name, "permissions": ["read:deal"]},
                token=self.owner["token"],
                route_params={"organizationId": self.org_id},
            ),
            CORS,
        )
        return read_json(resp)["role"]["id"]

    def test_role_with_pending_invitation_cannot_be_deleted(self):
        role_id = self._custom_role()
        body = {"email": "ivy@example.com", "organizationId": self.org_id, "roleId": role_id}
        self.assertEqual(handle_invite_send(make_request("POST", body=body, token=self.owner["token"]), CORS).status_code, 200)

        route = {"organizationId": self.org_id, "roleId": role_id}
        resp = handle_role_delete(make_request("DELETE", token=self.owner["token"], route_params=route), CORS)
        self.assertEqual(resp.status_code, 409)

    def test_accept_rejects_invitation_whose_role_is_gone(self):
        role_id = self._custom_role()
        body = {"email": "ivy@example.com", "organizationId": self.org_id, "roleId": role_id}
        data = read_json(handle_invite_send(make_request("POST", body=body, token=self.owner["token"]), CORS))
        db = SessionLocal()
        try:
            db.query(Role).filter_by(id=role_id).delete(synchronize_session=False)
            db.commit()
        finally:
            db.close()

        invitee = sign_up("Ivy", "ivy@example.com")
        resp = handle_invite_accept(
            make_request("POST", token=invitee["token"], route_params={"token": data["invitationToken"]}), CORS
        )
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(self._invitation_status(data["invitationId"]), "canceled")
        db = SessionLocal()
        try:
            self.assertEqual(db.query(Member).filter_by(user_id=invitee["user_id"]).count(), 0)
        finally:
            db.close()

    def test_list_resend_and_cancel(self):
        data = read_json(self._invite())
        route = {"organizationId": self.org_id}
        resp = handle_invitations_list(make_request("GET", token=self.owner["token"], route_params=route), CORS)
        self.assertEqual(len(read_json(resp)["invitations"]), 1)

        resp = handle_invitation_resend(
            make_request("POST", token=self.owner["token"], route_params={"invitationId": data["invitationId"]}), CORS
        )
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(read_json(resp)["invitation"]["status"], "pending")

        resp = handle_invitation_cancel(
            make_request("DELETE", token=self.owner["token"], route_params={"invitationId": data["invitationId"]}), CORS
        )
        self.assertEqual(read_json(resp)["invitation"]["status"], "canceled")

        resp = handle_invitation_cancel(
            make_request("DELETE", token=self.owner["token"], route_params={"invitationId": data["invitationId"]}), CORS
        )
        self.assertEqual(resp.status_code, 400)


class InvitationEmailTests(unittest.TestCase):
    def _send(self):
        return send_invitation_email(
            to_email="new@example.com",
            organization_name="Acme <Sales>",
            role_name="Salesperson",
            role_description="Works leads",
            inviter_name="Olivia",
            inviter_email="owner@example.com",
            token="abc123",
        )

    def test_disabled_without_api_key(self):
        with mock.patch.dict(os.environ, {"RESEND_API_KEY": ""}):
            with mock.patch("services.email_service.requests.post") as post:
                self.assertFalse(self._send())
        post.assert_not_called()

    def test_posts_to_resend(self):
        env = {"RESEND_API_KEY": "re_test", "APP_BASE_URL": "https://crm.example.com/"}
        with mock.patch.dict(os.environ, env):
            with mock.patch("services.email_service.requests.post") as post:
                post.return_value.status_code = 200
                self.assertTrue(self._send())
                self.assertEqual(build_invitation_url("abc123"), "https://crm.example.com/invite/abc123")
        kwargs = post.call_args.kwargs
        self.assertEqual(kwargs["headers"]["Authorization"], "Bearer re_test")
        self.assertEqual(kwargs["json"]["to"], ["new@example.com"])
        self.assertIn("Acme &lt;Sales&gt;", kwargs["json"]["html"])
        self.assertIn("https://crm.example.com/invite/abc123", kwargs["json"]["text"])

    def test_provider_failure_returns_false(self):
        with mock.patch.dict(os.environ, {"RESEND_API_KEY": "re_test"}):
            with mock.patch("services.email_service.requests.post", side_effect=requests.ConnectionError("down")):
                self.assertFalse(self._send())


if __name__ == "__main__":
    unittest.main()
