"""
HTTP surface: authentication, status codes and response envelopes.
"""

import pytest


@pytest.fixture()
def doc_id(document):
    return document["document"]["id"]


class TestAuth:
    def test_token_required(self, client, org):
        res = client.get("/api/v1/approvals/ongoing")
        assert res.status_code == 401
        assert res.get_json()["code"] == "ERR_UNAUTHORIZED"

    def test_garbage_token_rejected(self, client, org):
        res = client.get("/api/v1/approvals/ongoing", headers={"Authorization": "Bearer not-a-jwt"})
        assert res.status_code == 401
        assert res.get_json()["error"] == "Invalid token"

    def test_health_is_public(self, client):
        assert client.get("/api/v1/health/ready").get_json() == {"status": "ok"}
        live = client.get("/api/v1/health/live")
        assert live.status_code == 200
        assert live.get_json()["status"] == "healthy"


class TestProposedChanges:
    def test_create_uses_caller_as_submitter(self, client, org, payload, auth_headers):
        res = client.post("/api/v1/proposed-changes", json=payload(), headers=auth_headers(org.submitter))
        assert res.status_code == 201
        body = res.get_json()
        assert body["document"]["submitter_id"] == org.submitter.id
        assert [a["status"] for a in body["approvals"]] == ["on_going", "pending", "pending"]

    def test_create_validation_error_envelope(self, client, org, payload, auth_headers):
        res = client.post("/api/v1/proposed-changes", json=payload(reason=""), headers=auth_headers(org.submitter))
        assert res.status_code == 400
        body = res.get_json()
        assert body["code"] == "ERR_VALIDATION"
        assert body["details"] == {"reason": "required"}

    def test_reads(self, client, org, doc_id, auth_headers):
        headers = auth_headers(org.cem)
        assert client.get(f"/api/v1/proposed-changes/{doc_id}", headers=headers).get_json()["history"]
        chain = client.get(f"/api/v1/proposed-changes/{doc_id}/approvals", headers=headers).get_json()
        assert len(chain["approvals"]) == 3
        history = client.get(f"/api/v1/proposed-changes/{doc_id}/history", headers=headers).get_json()
        assert history["total"] == 1

    def test_unknown_document_is_404(self, client, org, auth_headers):
        res = client.get("/api/v1/proposed-changes/9999", headers=auth_headers(org.submitter))
        assert res.status_code == 404
        assert res.get_json()["code"] == "ERR_NOT_FOUND"

    def test_delete(self, client, org, doc_id, auth_headers):
        assert client.delete(f"/api/v1/proposed-changes/{doc_id}", headers=auth_headers(org.cem)).status_code == 403
        res = client.delete(f"/api/v1/proposed-changes/{doc_id}", headers=auth_headers(org.submitter))
        assert res.get_json() == {"message": "Proposed change deleted", "id": doc_id}
        assert client.get(f"/api/v1/proposed-changes/{doc_id}", headers=auth_headers(org.submitter)).status_code == 404


class TestDecisions:
    def _url(self, doc_id, approver_id):
        return f"/api/v1/proposed-changes/{doc_id}/approvals/{approver_id}"

    def test_approve(self, client, org, doc_id, auth_headers):
        res = client.patch(self._url(doc_id, org.ayla.id), json={"status": "approved", "note": "ok"},
                           headers=auth_headers(org.ayla))
        assert res.status_code == 200
        body = res.get_json()
        assert body["document"]["progress"] == 33
        assert body["duplicate"] is False

    def test_cannot_decide_for_someone_else(self, client, org, doc_id, auth_headers):
        res = client.patch(self._url(doc_id, org.ayla.id), json={"status": "approved"},
                           headers=auth_headers(org.burak))
        assert res.status_code == 403

    def test_out_of_order_is_409(self, client, org, doc_id, auth_headers):
        res = client.patch(self._url(doc_id, org.burak.id), json={"status": "approved"},
                           headers=auth_headers(org.burak))
        assert res.status_code == 409
        assert res.get_json()["details"]["current_status"] == "pending"

    def test_idempotency_key_header(self, client, org, doc_id, auth_headers):
        headers = dict(auth_headers(org.ayla), **{"Idempotency-Key": "tab-1"})
        first = client.patch(self._url(doc_id, org.ayla.id), json={"status": "not_approved", "note": "a"},
                             headers=headers)
        replay = client.patch(self._url(doc_id, org.ayla.id), json={"status": "not_approved", "note": "b"},
                              headers=headers)
        assert first.get_json()["duplicate"] is False
        assert replay.get_json()["duplicate"] is True

    def test_invalid_status_is_400(self, client, org, doc_id, auth_headers):
        res = client.patch(self._url(doc_id, org.ayla.id), json={"status": "maybe"}, headers=auth_headers(org.ayla))
        assert res.status_code == 400


class TestBypass:
    def test_super_admin_bypass_and_logs(self, client, org, doc_id, auth_headers):
        res = client.post(
            f"/api/v1/proposed-changes/{doc_id}/bypass",
            json={"target_status": "done", "reason": "Audit deadline"},
            headers=dict(auth_headers(org.super_admin), **{"User-Agent": "ops-console", "X-Forwarded-For": "10.1.2.3"}),
        )
        assert res.status_code == 200
        assert res.get_json()["new_status"] == "done"

        logs = client.get(f"/api/v1/proposed-changes/{doc_id}/bypass-logs", headers=auth_headers(org.admin))
        assert logs.get_json()["total"] == 1
        row = logs.get_json()["data"][0]
        assert row["ip_address"] == "10.1.2.3"
        assert row["user_agent"] == "ops-console"

    def test_admin_is_not_enough(self, client, org, doc_id, auth_headers):
        res = client.post(f"/api/v1/proposed-changes/{doc_id}/bypass",
                          json={"target_status": "approved", "reason": "x"}, headers=auth_headers(org.admin))
        assert res.status_code == 403

    def test_logs_need_admin(self, client, org, doc_id, auth_headers):
        res = client.get(f"/api/v1/proposed-changes/{doc_id}/bypass-logs", headers=auth_headers(org.submitter))
        assert res.status_code == 403


class TestOngoing:
    def test_pagination_envelope(self, client, org, doc_id, auth_headers):
        res = client.get("/api/v1/approvals/ongoing?limit=5&approver_id=%d" % org.ayla.id,
                         headers=auth_headers(org.ayla))
        body = res.get_json()
        assert [d["id"] for d in body["data"]] == [doc_id]
        assert body["pagination"]["totalCount"] == 1
        assert body["pagination"]["hasNextPage"] is False

    def test_bad_filter(self, client, org, auth_headers):
        res = client.get("/api/v1/approvals/ongoing?sort=secret", headers=auth_headers(org.ayla))
        assert res.status_code == 400


class TestTemplates:
    def test_writes_need_admin(self, client, org, auth_headers):
        res = client.post("/api/v1/approval-templates", json={"template_name": "x"}, headers=auth_headers(org.ayla))
        assert res.status_code == 403
        assert res.get_json()["error"] == "Unauthorized: Admin access required"

    def test_admin_lifecycle(self, client, org, auth_headers):
        headers = auth_headers(org.admin)
        created = client.post(
            "/api/v1/approval-templates",
            json={"template_name": "Quality", "actor_name": "Quality Lead", "step_order": 4, "section_mode": "line"},
            headers=headers,
        )
        assert created.status_code == 201
        tid = created.get_json()["id"]
        assert created.get_json()["created_by"] == "Ada Admin"

        assert client.patch(f"/api/v1/approval-templates/{tid}/toggle", headers=headers).get_json()["is_active"] is False
        assert client.put(f"/api/v1/approval-templates/{tid}", json={"priority": 2},
                          headers=headers).get_json()["priority"] == 2
        assert client.delete(f"/api/v1/approval-templates/{tid}", headers=headers).status_code == 200
        assert client.get(f"/api/v1/approval-templates/{tid}", headers=headers).status_code == 404

    def test_bulk_and_preview(self, client, org, auth_headers):
        headers = auth_headers(org.admin)
        bulk = client.post("/api/v1/approval-templates/bulk", json={"templates": [
            {"template_name": "A", "actor_name": "A", "step_order": 4, "section_mode": "line"},
        ]}, headers=headers)
        assert bulk.status_code == 201
        assert bulk.get_json()["total"] == 1

        preview = client.post("/api/v1/approval-templates/preview",
                              json={"line_code": "L01"}, headers=auth_headers(org.submitter))
        assert [a["employee_code"] for a in preview.get_json()["approvers"]] == ["E101"]

    def test_list(self, client, org, auth_headers):
        body = client.get("/api/v1/approval-templates?limit=2", headers=auth_headers(org.submitter)).get_json()
        assert body["total"] == 3
        assert len(body["data"]) == 2


class TestApproverChanges:
    def test_request_list_and_process(self, client, org, document, auth_headers):
        doc_id = document["document"]["id"]
        created = client.post("/api/v1/approver-changes", json={
            "proposed_change_id": doc_id,
            "step_id": document["approvals"][0]["id"],
            "current_approver_id": org.ayla.id,
            "new_approver_id": org.deniz.id,
            "reason": "On leave",
        }, headers=auth_headers(org.ayla))
        assert created.status_code == 201
        rid = created.get_json()["id"]

        admin = auth_headers(org.admin)
        assert client.get("/api/v1/approver-changes", headers=auth_headers(org.ayla)).status_code == 403
        assert client.get("/api/v1/approver-changes", headers=admin).get_json()["total"] == 1

        processed = client.patch(f"/api/v1/approver-changes/{rid}/process",
                                 json={"status": "approved", "admin_decision": "ok"}, headers=admin)
        assert processed.get_json()["status"] == "approved"

        summary = client.get(f"/api/v1/approver-changes/by-document/{doc_id}", headers=admin).get_json()
        assert summary["counts"]["approved"] == 1
        assert client.get("/api/v1/approver-changes?status=all", headers=admin).get_json()["total"] == 1


class TestAppErrors:
    def test_unknown_route(self, client, org, auth_headers):
        res = client.get("/api/v1/nowhere", headers=auth_headers(org.submitter))
        assert res.status_code == 404
        assert res.get_json()["code"] == "ERR_NOT_FOUND"

    def test_wrong_method(self, client, org, auth_headers):
        res = client.put("/api/v1/approvals/ongoing", headers=auth_headers(org.submitter))
        assert res.status_code == 405
