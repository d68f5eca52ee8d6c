import unittest
from unittest import mock

from deals_endpoints import handle_deal_detail, handle_deal_pipeline, handle_deals
from tests.support import CORS, OrganizationFixture, make_request, read_json


class DealEndpointTests(unittest.TestCase):
    def setUp(self):
        self.fixture = OrganizationFixture()
        self.owner_token = self.fixture.owner["token"]
        self.org_id = self.fixture.org_id
        self.seller = self.fixture.member("Salesperson", "sam@example.com", "Sam")
        self.post_sale = self.fixture.member("Post-Sale", "pat@example.com", "Pat")

    def _create(self, stage, token=None, **fields):
        body = {"title": f"{stage} deal", "client": "Acme", "value": 1000, "stage": stage, **fields}
        return handle_deals(
            make_request("POST", body=body, token=token or self.owner_token, organization_id=self.org_id), CORS
        )

    def _detail(self, method, deal_id, token, body=None):
        return handle_deal_detail(
            make_request(method, body=body, token=token, organization_id=self.org_id, route_params={"id": deal_id}),
            CORS,
        )

    def test_create_respects_stage_grants(self):
        resp = self._create("lead", token=self.seller["token"])
        self.assertEqual(resp.status_code, 201)
        deal = read_json(resp)["deal"]
        self.assertEqual(deal["client"], "Acme")
        self.assertEqual(deal["priority"], "medium")

        self.assertEqual(self._create("closing", token=self.seller["token"]).status_code, 403)
        self.assertEqual(self._create("lead", token=self.post_sale["token"]).status_code, 403)

    def test_create_validates_payload(self):
        self.assertEqual(self._create("shipping").status_code, 400)
        self.assertEqual(self._create("lead", priority="urgent").status_code, 400)
        self.assertEqual(self._create("lead", value=-5).status_code, 400)

    def test_create_rejects_out_of_range_values(self):
        for value in ("1e400", "nan", 10**20):
            resp = self._create("lead", value=value)
            self.assertEqual(resp.status_code, 400)
            self.assertEqual(read_json(resp)["code"], "validation_error")

    def test_list_only_returns_readable_stages(self):
        for stage in ("lead", "closing", "post_sale"):
            self._create(stage)

        resp = handle_deals(make_request("GET", token=self.post_sale["token"], organization_id=self.org_id), CORS)
        self.assertEqual([d["stage"] for d in read_json(resp)["deals"]], ["post_sale"])

        resp = handle_deals(make_request("GET", token=self.seller["token"], organization_id=self.org_id), CORS)
        self.assertEqual(len(read_json(resp)["deals"]), 3)

        resp = handle_deals(
            make_request("GET", token=self.post_sale["token"], organization_id=self.org_id, params={"stage": "lead"}),
            CORS,
        )
        self.assertEqual(resp.status_code, 403)

    def test_detail_hides_unreadable_stage(self):
        deal_id = read_json(self._create("lead"))["deal"]["id"]
        self.assertEqual(self._detail("GET", deal_id, self.post_sale["token"]).status_code, 403)
        self.assertEqual(self._detail("GET", deal_id, self.seller["token"]).status_code, 200)
        self.assertEqual(self._detail("GET", "missing", self.seller["token"]).status_code, 404)

    def test_moving_a_deal_needs_edit_on_both_stages(self):
        deal_id = read_json(self._create("negotiation"))["deal"]["id"]
        resp = self._detail("PUT", deal_id, self.seller["token"], {"stage": "analysis_approval", "value": 2500})
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(read_json(resp)["deal"]["value"], 2500)

        resp = self._detail("PUT", deal_id, self.seller["token"], {"stage": "closing"})
        self.assertEqual(resp.status_code, 403)

    def test_view_only_stage_cannot_be_updated(self):
        deal_id = read_json(self._create("closing"))["deal"]["id"]
        resp = self._detail("PUT", deal_id, self.seller["token"], {"title": "Renamed"})
        self.assertEqual(resp.status_code, 403)

    def test_delete_requires_permission(self):
        deal_id = read_json(self._create("lead"))["deal"]["id"]
        self.assertEqual(self._detail("DELETE", deal_id, self.seller["token"]).status_code, 403)
        self.assertEqual(self._detail("DELETE", deal_id, self.owner_token).status_code, 200)
        self.assertEqual(self._detail("GET", deal_id, self.owner_token).status_code, 404)

    def test_pipeline_totals_per_readable_stage(self):
        self._create("lead", value=1000)
        self._create("lead", value=500)
        self._create("post_sale", value=300)

        resp = handle_deal_pipeline(make_request("GET", token=self.owner_token), CORS)
        stages = {row["stage"]: row for row in read_json(resp)["stages"]}
        self.assertEqual(len(stages), 8)
        self.assertEqual(stages["lead"]["count"], 2)
        self.assertEqual(stages["lead"]["totalValue"], 1500)
        self.assertEqual(stages["closing"]["count"], 0)

        resp = handle_deal_pipeline(make_request("GET", token=self.post_sale["token"], organization_id=self.org_id), CORS)
        self.assertEqual(read_json(resp)["stages"], [{"stage": "post_sale", "label": "Post-Sale", "count": 1, "totalValue": 300}])


    def test_pipeline_database_failure_returns_error_envelope(self):
        cors = {"Access-Control-Allow-Origin": "*"}
        with mock.patch("deals_endpoints.pipeline_summary", side_effect=RuntimeError("db down")):
            resp = handle_deal_pipeline(make_request("GET", token=self.owner_token, organization_id=self.org_id), cors)
        self.assertEqual(resp.status_code, 500)
        self.assertEqual(read_json(resp)["code"], "server_error")
        self.assertEqual(resp.headers["Access-Control-Allow-Origin"], "*")

if __name__ == "__main__":
    unittest.main()
