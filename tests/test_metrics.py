import unittest
from datetime import datetime

from dashboard_endpoints import handle_sales_metrics, handle_sales_ranking
from services.metrics_service import sales_metrics, sales_ranking
from shared.db import Appointment, Client, SessionLocal, Salesperson
from tests.support import CORS, OrganizationFixture, make_request, read_json


class SalesReportTests(unittest.TestCase):
    def setUp(self):
        self.fixture = OrganizationFixture()
        self.token = self.fixture.owner["token"]
        self.org_id = self.fixture.org_id
        self._seed()

    def _seed(self):
        db = SessionLocal()
        try:
            ana = Salesperson(organization_id=self.org_id, name="Ana", email="ana@example.com")
            bruno = Salesperson(organization_id=self.org_id, name="Bruno", email="bruno@example.com")
            idle = Salesperson(organization_id=self.org_id, name="Idle", email="idle@example.com")
            db.add_all([ana, bruno, idle])
            db.flush()
            rows = [
                (ana, "a1@example.com", "lead", datetime(2024, 1, 10)),
                (ana, "a2@example.com", "lead", datetime(2024, 1, 12)),
                (ana, "a3@example.com", "customer", datetime(2024, 2, 5)),
                (bruno, "b1@example.com", "lead", datetime(2024, 1, 20)),
            ]
            clients = []
            for salesperson, email, status, created_at in rows:
                client = Client(
                    organization_id=self.org_id,
                    salesperson_id=salesperson.id,
                    name=email.split("@")[0],
                    email=email,
                    status=status,
                    created_at=created_at,
                )
                db.add(client)
                clients.append(client)
            db.flush()
            # Two appointments for the same client still count it once.
            for day in (1, 2):
                db.add(
                    Appointment(
                        organization_id=self.org_id,
                        client_id=clients[0].id,
                        salesperson_id=ana.id,
                        date=datetime(2024, 3, day),
                    )
                )
            db.commit()
            self.ana_id = ana.id
            self.idle_id = idle.id
        finally:
            db.close()

    def test_metrics_over_all_clients(self):
        db = SessionLocal()
        try:
            metrics = sales_metrics(db, self.org_id)
        finally:
            db.close()
        leads = metrics["leadsReceivedBySalesperson"]
        self.assertEqual([(row["salespersonName"], row["count"]) for row in leads], [("Ana", 2), ("Bruno", 1)])
        self.assertEqual(metrics["appointmentConversion"], 25.0)
        self.assertEqual(metrics["clientCount"], 1)
        self.assertEqual(metrics["totalClients"], 4)

    def test_metrics_respect_window(self):
        db = SessionLocal()
        try:
            metrics = sales_metrics(db, self.org_id, datetime(2024, 1, 11), datetime(2024, 1, 31))
        finally:
            db.close()
        self.assertEqual(metrics["totalClients"], 2)
        self.assertEqual(metrics["appointmentConversion"], 0.0)
        self.assertEqual(metrics["clientCount"], 0)

    def test_ranking_includes_idle_salespeople(self):
        db = SessionLocal()
        try:
            ranking = sales_ranking(db, self.org_id)
        finally:
            db.close()
        self.assertEqual([row["salespersonName"] for row in ranking], ["Ana", "Bruno", "Idle"])
        self.assertEqual(ranking[0]["leadsCount"], 2)
        self.assertEqual(ranking[0]["clientsCount"], 1)
        self.assertEqual(ranking[-1]["totalClients"], 0)

    def test_metrics_endpoint(self):
        params = {"startDate": "2024-01-01", "endDate": "2024-01-31"}
        resp = handle_sales_metrics(make_request("GET", token=self.token, params=params), CORS)
        self.assertEqual(resp.status_code, 200)
        data = read_json(resp)
        self.assertEqual(data["organizationId"], self.org_id)
        self.assertEqual(data["metrics"]["totalClients"], 3)
        self.assertEqual(data["metrics"]["appointmentConversion"], 33.33)
        self.assertTrue(data["endDate"].startswith("2024-01-31T23:59:59"))

    def test_endpoint_rejects_bad_window(self):
        params = {"startDate": "2024-02-01", "endDate": "2024-01-01"}
        resp = handle_sales_ranking(make_request("GET", token=self.token, params=params), CORS)
        self.assertEqual(resp.status_code, 400)
        resp = handle_sales_ranking(make_request("GET", token=self.token, params={"startDate": "soon"}), CORS)
        self.assertEqual(resp.status_code, 400)

    def test_reports_permission(self):
        post_sale = self.fixture.member("Post-Sale", "pat@example.com", "Pat")
        resp = handle_sales_ranking(make_request("GET", token=post_sale["token"], organization_id=self.org_id), CORS)
        self.assertEqual(resp.status_code, 403)

        staff = self.fixture.member("Administrative", "ada@example.com", "Ada")
        resp = handle_sales_ranking(make_request("GET", token=staff["token"], organization_id=self.org_id), CORS)
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(len(read_json(resp)["ranking"]), 3)


if __name__ == "__main__":
    unittest.main()
