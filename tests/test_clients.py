import unittest

from clients_endpoints import (
    handle_appointment_delete,
    handle_appointments,
    handle_client_detail,
    handle_clients,
    handle_salespeople,
)
from tests.support import CORS, OrganizationFixture, create_organization, make_request, read_json, sign_up


class ClientEndpointTests(unittest.TestCase):
    def setUp(self):
        self.fixture = OrganizationFixture()
        self.token = self.fixture.owner["token"]
        self.org_id = self.fixture.org_id

    def _create_client(self, token=None, **fields):
        body = {"name": "John Buyer", "email": "john@example.com", "phone": "555-0101", **fields}
        return handle_clients(make_request("POST", body=body, token=token or self.token, organization_id=self.org_id), CORS)

    def test_create_assigns_caller_salesperson(self):
        resp = self._create_client()
        self.assertEqual(resp.status_code, 201)
        client = read_json(resp)["client"]
        self.assertEqual(client["status"], "lead")
        self.assertEqual(client["salesperson"]["name"], "Olivia Owner")

        people = read_json(handle_salespeople(make_request("GET", token=self.token), CORS))["salespeople"]
        self.assertEqual(len(people), 1)

    def test_duplicate_email_conflicts_within_organization(self):
        self._create_client()
        self.assertEqual(self._create_client(email="JOHN@example.com").status_code, 409)

    def test_list_filters_by_status_and_search(self):
        self._create_client()
        self._create_client(name="Mary Customer", email="mary@example.com", status="customer")
        resp = handle_clients(make_request("GET", token=self.token, params={"status": "customer"}), CORS)
        self.assertEqual([c["name"] for c in read_json(resp)["clients"]], ["Mary Customer"])
        resp = handle_clients(make_request("GET", token=self.token, params={"search": "john"}), CORS)
        self.assertEqual([c["email"] for c in read_json(resp)["clients"]], ["john@example.com"])
        resp = handle_clients(make_request("GET", token=self.token, params={"status": "vip"}), CORS)
        self.assertEqual(resp.status_code, 400)

    def test_detail_update_and_delete(self):
        client_id = read_json(self._create_client())["client"]["id"]
        route = {"id": client_id}
        resp = handle_client_detail(make_request("PUT", body={"status": "active"}, token=self.token, route_params=route), CORS)
        self.assertEqual(read_json(resp)["client"]["status"], "active")

        resp = handle_client_detail(make_request("GET", token=self.token, route_params=route), CORS)
        self.assertEqual(read_json(resp)["client"]["appointments"], [])

        resp = handle_client_detail(make_request("DELETE", token=self.token, route_params=route), CORS)
        self.assertEqual(resp.status_code, 200)
        resp = handle_client_detail(make_request("GET", token=self.token, route_params=route), CORS)
        self.assertEqual(resp.status_code, 404)

    def test_other_organization_cannot_see_client(self):
        client_id = read_json(self._create_client())["client"]["id"]
        rival = sign_up("Rita Rival", "rita@example.com")
        create_organization(rival["token"], name="Rival", slug="rival")
        resp = handle_client_detail(make_request("GET", token=rival["token"], route_params={"id": client_id}), CORS)
        self.assertEqual(resp.status_code, 404)

    def test_post_sale_cannot_create_clients(self):
        member = self.fixture.member("Post-Sale", "pat@example.com", "Pat")
        self.assertEqual(self._create_client(token=member["token"]).status_code, 403)

    def test_salesperson_creation_requires_permission(self):
        body = {"name": "Sal Seller", "email": "sal@example.com"}
        resp = handle_salespeople(make_request("POST", body=body, token=self.token), CORS)
        self.assertEqual(resp.status_code, 201)
        resp = handle_salespeople(make_request("POST", body=body, token=self.token), CORS)
        self.assertEqual(resp.status_code, 409)

        member = self.fixture.member("Salesperson", "sam@example.com", "Sam")
        resp = handle_salespeople(
            make_request("POST", body={"name": "X", "email": "x@example.com"}, token=member["token"], organization_id=self.org_id),
            CORS,
        )
        self.assertEqual(resp.status_code, 403)

    def test_appointments(self):
        client_id = read_json(self._create_client())["client"]["id"]
        body = {"clientId": client_id, "date": "2030-05-01T14:30:00Z"}
        resp = handle_appointments(make_request("POST", body=body, token=self.token), CORS)
        self.assertEqual(resp.status_code, 201)
        appointment = read_json(resp)["appointment"]
        self.assertEqual(appointment["clientName"], "John Buyer")
        self.assertEqual(appointment["date"], "2030-05-01T14:30:00")

        resp = handle_appointments(make_request("GET", token=self.token, params={"clientId": client_id}), CORS)
        self.assertEqual(len(read_json(resp)["appointments"]), 1)

        resp = handle_appointments(
            make_request("POST", body={"clientId": "missing", "date": "2030-05-01"}, token=self.token), CORS
        )
        self.assertEqual(resp.status_code, 404)

        route = {"id": appointment["id"]}
        self.assertEqual(handle_appointment_delete(make_request("DELETE", token=self.token, route_params=route), CORS).status_code, 200)
        self.assertEqual(handle_appointment_delete(make_request("DELETE", token=self.token, route_params=route), CORS).status_code, 404)


if __name__ == "__main__":
    unittest.main()
