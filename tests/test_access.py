from conftest import ADMIN, ALICE, BOB, as_user, data_of, make_prompt

APPLY = "/api/v1/prompt-applications/prompts/{}/apply"
REVIEW = "/api/v1/prompt-applications/{}/review"


def _apply(client, prompt_id, user_id=BOB):
    r = client.post(APPLY.format(prompt_id), json={"reason": "for my novel"}, headers=as_user(user_id))
    return r


class TestPermissions:
    def test_grant_list_revoke(self, client):
        prompt = make_prompt(client)
        url = f"/api/v1/prompts/{prompt['id']}/permissions"
        r = client.post(url, json={"userId": BOB, "permission": "use"}, headers=as_user(ALICE))
        assert data_of(r)["permission"] == "use"

        rows = data_of(client.get(url, headers=as_user(ALICE)))
        assert [p["user_id"] for p in rows] == [BOB]

        r = client.delete(f"{url}/{BOB}", headers=as_user(ALICE))
        assert r.json()["message"] == "Permission revoked"
        assert data_of(client.get(url, headers=as_user(ALICE))) == []

    def test_duplicate_grant_conflicts(self, client):
        prompt = make_prompt(client)
        url = f"/api/v1/prompts/{prompt['id']}/permissions"
        client.post(url, json={"userId": BOB}, headers=as_user(ALICE))
        r = client.post(url, json={"userId": BOB}, headers=as_user(ALICE))
        assert r.status_code == 409

    def test_only_author_grants(self, client):
        prompt = make_prompt(client)
        r = client.post(f"/api/v1/prompts/{prompt['id']}/permissions",
                        json={"userId": BOB}, headers=as_user(BOB))
        assert r.status_code == 403

    def test_unknown_user(self, client):
        prompt = make_prompt(client)
        r = client.post(f"/api/v1/prompts/{prompt['id']}/permissions",
                        json={"userId": 404}, headers=as_user(ALICE))
        assert r.status_code == 404

    def test_grantee_sees_withheld_content(self, client):
        prompt = make_prompt(client, isContentPublic=False)
        client.post(f"/api/v1/prompts/{prompt['id']}/permissions",
                    json={"userId": BOB, "permission": "view"}, headers=as_user(ALICE))
        view = data_of(client.get(f"/api/v1/prompts/{prompt['id']}", headers=as_user(BOB)))
        assert view["contents"] is not None


class TestApplications:
    def test_gated_config_needs_approval(self, client):
        prompt = make_prompt(client, requireApplication=True)
        config_url = f"/api/v1/prompts/{prompt['id']}/config"
        assert client.get(config_url, headers=as_user(BOB)).status_code == 403

        application = data_of(_apply(client, prompt["id"]))
        assert application["status"] == "pending"

        r = client.post(REVIEW.format(application["id"]), json={"status": "approved", "reviewNote": "ok"},
                        headers=as_user(ALICE))
        assert data_of(r)["status"] == "approved"
        assert client.get(config_url, headers=as_user(BOB)).status_code == 200

    def test_approval_creates_no_permission_row(self, client):
        prompt = make_prompt(client, requireApplication=True)
        application = data_of(_apply(client, prompt["id"]))
        client.post(REVIEW.format(application["id"]), json={"status": "approved"}, headers=as_user(ALICE))
        rows = data_of(client.get(f"/api/v1/prompts/{prompt['id']}/permissions", headers=as_user(ALICE)))
        assert rows == []

    def test_review_is_terminal(self, client):
        prompt = make_prompt(client, requireApplication=True)
        application = data_of(_apply(client, prompt["id"]))
        url = REVIEW.format(application["id"])
        client.post(url, json={"status": "rejected"}, headers=as_user(ALICE))
        r = client.post(url, json={"status": "approved"}, headers=as_user(ALICE))
        assert r.status_code == 400

    def test_rejection_note_reaches_the_applicant(self, client):
        prompt = make_prompt(client, requireApplication=True)
        r = client.post(APPLY.format(prompt["id"]), json={"reason": "test"}, headers=as_user(BOB))
        application = data_of(r)
        client.post(REVIEW.format(application["id"]), json={"status": "rejected", "reviewNote": "not relevant"},
                    headers=as_user(ALICE))

        mine = data_of(client.get("/api/v1/prompt-applications/my", headers=as_user(BOB)))["data"]
        assert [(a["reason"], a["status"], a["review_note"]) for a in mine] == [("test", "rejected", "not relevant")]
        assert client.get(f"/api/v1/prompts/{prompt['id']}/config", headers=as_user(BOB)).status_code == 403

    def test_only_author_or_admin_reviews(self, client):
        prompt = make_prompt(client, requireApplication=True)
        application = data_of(_apply(client, prompt["id"]))
        url = REVIEW.format(application["id"])
        assert client.post(url, json={"status": "approved"}, headers=as_user(BOB)).status_code == 403
        assert client.post(url, json={"status": "approved"}, headers=as_user(ADMIN)).status_code == 200

    def test_review_status_is_validated(self, client):
        prompt = make_prompt(client, requireApplication=True)
        application = data_of(_apply(client, prompt["id"]))
        r = client.post(REVIEW.format(application["id"]), json={"status": "pending"}, headers=as_user(ALICE))
        assert r.status_code == 400

    def test_duplicate_pending_application(self, client):
        prompt = make_prompt(client, requireApplication=True)
        _apply(client, prompt["id"])
        assert _apply(client, prompt["id"]).status_code == 400

    def test_ungated_prompt_rejects_applications(self, client):
        prompt = make_prompt(client)
        assert _apply(client, prompt["id"]).status_code == 400

    def test_author_cannot_apply(self, client):
        prompt = make_prompt(client, requireApplication=True)
        assert _apply(client, prompt["id"], user_id=ALICE).status_code == 400

    def test_listings(self, client):
        prompt = make_prompt(client, requireApplication=True)
        _apply(client, prompt["id"])
        mine = data_of(client.get("/api/v1/prompt-applications/my", headers=as_user(BOB)))
        pending = data_of(client.get("/api/v1/prompt-applications/pending", headers=as_user(ALICE)))
        assert mine["pagination"]["total"] == 1
        assert pending["data"][0]["user_id"] == BOB
        r = client.get(f"/api/v1/prompt-applications/prompts/{prompt['id']}", headers=as_user(BOB))
        assert r.status_code == 403
