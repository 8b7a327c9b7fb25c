import warnings

from conftest import ADMIN, ALICE, BOB, as_user, data_of, make_prompt


class TestCreateAndRead:
    def test_create_derives_parameters(self, client):
        prompt = make_prompt(client)
        assert prompt["author_id"] == ALICE
        blocks = {c["name"]: c for c in prompt["contents"]}
        assert blocks["system"]["parameters"] == []
        assert [p["name"] for p in blocks["task"]["parameters"]] == ["genre", "audience"]

    def test_gated_prompt_never_exposes_content(self, client):
        prompt = make_prompt(client, requireApplication=True, isContentPublic=True)
        assert prompt["require_application"] is True
        assert prompt["is_content_public"] is False

    def test_author_sees_content(self, client):
        prompt = make_prompt(client, isContentPublic=False)
        r = client.get(f"/api/v1/prompts/{prompt['id']}", headers=as_user(ALICE))
        assert data_of(r)["contents"] is not None

    def test_others_get_parameters_instead_of_content(self, client):
        prompt = make_prompt(client, isContentPublic=False)
        view = data_of(client.get(f"/api/v1/prompts/{prompt['id']}", headers=as_user(BOB)))
        assert view["contents"] is None
        assert [p["name"] for p in view["parameters"]] == ["genre", "audience"]

    def test_views_counted_for_non_authors(self, client):
        prompt = make_prompt(client)
        client.get(f"/api/v1/prompts/{prompt['id']}", headers=as_user(ALICE))
        client.get(f"/api/v1/prompts/{prompt['id']}", headers=as_user(BOB))
        stats = data_of(client.get(f"/api/v1/prompts/{prompt['id']}/stats", headers=as_user(BOB)))
        assert stats["view_count"] == 1

    def test_draft_hidden_from_others(self, client):
        prompt = make_prompt(client, status="draft")
        r = client.get(f"/api/v1/prompts/{prompt['id']}", headers=as_user(BOB))
        assert r.status_code == 403

    def test_private_prompt_needs_grant(self, client):
        prompt = make_prompt(client, isPublic=False)
        assert client.get(f"/api/v1/prompts/{prompt['id']}", headers=as_user(BOB)).status_code == 403
        r = client.post(f"/api/v1/prompts/{prompt['id']}/permissions",
                        json={"userId": BOB, "permission": "view"}, headers=as_user(ALICE))
        assert r.status_code == 201
        assert client.get(f"/api/v1/prompts/{prompt['id']}", headers=as_user(BOB)).status_code == 200

    def test_withheld_view_lists_full_parameter_entries(self, client):
        prompt = make_prompt(client, isContentPublic=False)
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            view = data_of(client.get(f"/api/v1/prompts/{prompt['id']}", headers=as_user(BOB)))
        assert view["parameters"][0] == {"name": "genre", "required": True, "description": ""}
        assert not [w for w in caught if "serializ" in str(w.message).lower()]

    def test_publishing_a_draft_reveals_it(self, client):
        prompt = make_prompt(client, status="draft")
        url = f"/api/v1/prompts/{prompt['id']}"
        assert client.get(url, headers=as_user(BOB)).status_code == 403

        r = client.patch(url, json={"status": "published"}, headers=as_user(ALICE))
        assert r.status_code == 200
        view = data_of(client.get(url, headers=as_user(BOB)))
        assert view["status"] == "published"
        assert view["contents"]


class TestUpdate:
    def test_only_author_edits(self, client):
        prompt = make_prompt(client)
        r = client.patch(f"/api/v1/prompts/{prompt['id']}", json={"name": "Mine now"}, headers=as_user(BOB))
        assert r.status_code == 403

    def test_admin_edits(self, client):
        prompt = make_prompt(client)
        r = client.patch(f"/api/v1/prompts/{prompt['id']}", json={"name": "Fixed"}, headers=as_user(ADMIN))
        assert data_of(r)["name"] == "Fixed"

    def test_replacing_contents_keeps_overrides_by_block_name(self, client):
        prompt = make_prompt(client, contents=[{
            "name": "task", "content": "{{genre}}",
            "parameters": [{"name": "genre", "required": False, "description": "Genre"}],
        }])
        r = client.patch(f"/api/v1/prompts/{prompt['id']}", json={
            "contents": [{"name": "task", "content": "{{genre}} and {{tone}}"}],
        }, headers=as_user(ALICE))
        params = data_of(r)["contents"][0]["parameters"]
        assert params == [
            {"name": "genre", "required": False, "description": "Genre"},
            {"name": "tone", "required": True, "description": ""},
        ]

    def test_content_edit_recomputes_parameters(self, client):
        prompt = make_prompt(client)
        block = next(c for c in prompt["contents"] if c["name"] == "task")
        r = client.patch(f"/api/v1/prompts/{prompt['id']}/contents/{block['id']}",
                         json={"content": "Only ${theme}"}, headers=as_user(ALICE))
        assert [p["name"] for p in data_of(r)["parameters"]] == ["theme"]

    def test_null_for_a_required_field_is_rejected(self, client):
        prompt = make_prompt(client)
        url = f"/api/v1/prompts/{prompt['id']}"
        r = client.patch(url, json={"isPublic": None}, headers=as_user(ALICE))
        assert r.status_code == 400
        assert "is_public cannot be null" in r.json()["data"]["details"][0]["message"]
        assert data_of(client.get(url, headers=as_user(ALICE)))["is_public"] is True

    def test_null_clears_an_optional_field(self, client):
        prompt = make_prompt(client)
        r = client.patch(f"/api/v1/prompts/{prompt['id']}", json={"description": None}, headers=as_user(ALICE))
        assert r.status_code == 200
        assert data_of(r)["description"] is None

    def test_null_in_batch_update_is_rejected(self, client):
        prompt = make_prompt(client)
        r = client.post("/api/v1/prompts/batch-update", json={"ids": [prompt["id"]], "status": None},
                        headers=as_user(ALICE))
        assert r.status_code == 400

    def test_null_content_text_is_rejected(self, client):
        prompt = make_prompt(client)
        block = prompt["contents"][0]
        r = client.patch(f"/api/v1/prompts/{prompt['id']}/contents/{block['id']}",
                         json={"content": None}, headers=as_user(ALICE))
        assert r.status_code == 400

    def test_soft_delete(self, client):
        prompt = make_prompt(client)
        r = client.delete(f"/api/v1/prompts/{prompt['id']}", headers=as_user(ALICE))
        body = r.json()
        assert body["message"] == "Prompt deleted"
        assert body["data"] == {"id": prompt["id"]}
        assert client.get(f"/api/v1/prompts/{prompt['id']}", headers=as_user(ALICE)).status_code == 404


class TestListing:
    def test_public_list_excludes_drafts_and_private(self, client):
        make_prompt(client, name="visible")
        make_prompt(client, name="draft", status="draft")
        make_prompt(client, name="hidden", isPublic=False)
        data = data_of(client.get("/api/v1/prompts", headers=as_user(BOB)))
        assert [p["name"] for p in data["data"]] == ["visible"]
        assert data["pagination"] == {"page": 1, "pageSize": 20, "total": 1, "totalPages": 1}

    def test_own_list_includes_everything(self, client):
        make_prompt(client, name="visible")
        make_prompt(client, name="draft", status="draft")
        data = data_of(client.get(f"/api/v1/prompts?authorId={ALICE}", headers=as_user(ALICE)))
        assert data["pagination"]["total"] == 2

    def test_keyword_and_paging(self, client):
        for i in range(3):
            make_prompt(client, name=f"dragon {i}")
        make_prompt(client, name="spaceship")
        data = data_of(client.get("/api/v1/prompts?keyword=dragon&pageSize=2", headers=as_user(BOB)))
        assert len(data["data"]) == 2
        assert data["pagination"]["totalPages"] == 2

    def test_my_prompts_count_pending_applications(self, client):
        prompt = make_prompt(client, requireApplication=True)
        client.post(f"/api/v1/prompt-applications/prompts/{prompt['id']}/apply", json={"reason": "pls"},
                    headers=as_user(BOB))
        data = data_of(client.get("/api/v1/prompts/my", headers=as_user(ALICE)))
        assert data["data"][0]["pending_application_count"] == 1


class TestConfig:
    def test_config_never_carries_text(self, client):
        prompt = make_prompt(client)
        config = data_of(client.get(f"/api/v1/prompts/{prompt['id']}/config", headers=as_user(BOB)))
        assert [p["name"] for p in config["parameters"]] == ["genre", "audience"]
        assert all("content" not in c for c in config["contents"])

    def test_banned_prompt_config_is_403(self, client):
        prompt = make_prompt(client)
        r = client.post(f"/api/v1/prompts/{prompt['id']}/ban", json={"reason": "spam"}, headers=as_user(ADMIN))
        assert data_of(r)["is_banned"] is True
        r = client.get(f"/api/v1/prompts/{prompt['id']}/config", headers=as_user(BOB))
        assert r.status_code == 403
        assert "spam" in r.json()["message"]


class TestStats:
    def test_like_twice_is_rejected(self, client):
        prompt = make_prompt(client)
        url = f"/api/v1/prompts/{prompt['id']}/like"
        assert data_of(client.post(url, headers=as_user(BOB)))["like_count"] == 1
        r = client.post(url, headers=as_user(BOB))
        assert r.status_code == 400
        assert r.json()["message"] == "Already liked"

    def test_unlike(self, client):
        prompt = make_prompt(client)
        url = f"/api/v1/prompts/{prompt['id']}/like"
        client.post(url, headers=as_user(BOB))
        assert data_of(client.delete(url, headers=as_user(BOB)))["like_count"] == 0

    def test_use_updates_hot_value(self, client):
        prompt = make_prompt(client)
        data = data_of(client.post(f"/api/v1/prompts/{prompt['id']}/use", headers=as_user(BOB)))
        assert data["use_count"] == 1
        assert data["hot_value"] > 0

    def test_favorites(self, client):
        prompt = make_prompt(client)
        client.post(f"/api/v1/prompts/{prompt['id']}/favorite", headers=as_user(BOB))
        data = data_of(client.get("/api/v1/prompts/favorites", headers=as_user(BOB)))
        assert [p["id"] for p in data["data"]] == [prompt["id"]]
        stats = data_of(client.get(f"/api/v1/prompts/{prompt['id']}/stats", headers=as_user(BOB)))
        assert stats["favorited"] is True


def _approve_application(client, prompt_id, user_id=BOB):
    application = data_of(client.post(f"/api/v1/prompt-applications/prompts/{prompt_id}/apply",
                                      json={"reason": "for my novel"}, headers=as_user(user_id)))
    r = client.post(f"/api/v1/prompt-applications/{application['id']}/review",
                    json={"status": "approved"}, headers=as_user(ALICE))
    assert r.status_code == 200


class TestUse:
    def test_gated_prompt_use_needs_approval(self, client):
        prompt = make_prompt(client, requireApplication=True)
        url = f"/api/v1/prompts/{prompt['id']}/use"
        assert client.post(url, headers=as_user(BOB)).status_code == 403
        stats = data_of(client.get(f"/api/v1/prompts/{prompt['id']}/stats", headers=as_user(ALICE)))
        assert stats["use_count"] == 0

        _approve_application(client, prompt["id"])
        assert data_of(client.post(url, headers=as_user(BOB)))["use_count"] == 1

    def test_banned_prompt_cannot_be_used(self, client):
        prompt = make_prompt(client)
        client.post(f"/api/v1/prompts/{prompt['id']}/ban", json={"reason": "spam"}, headers=as_user(ADMIN))
        assert client.post(f"/api/v1/prompts/{prompt['id']}/use", headers=as_user(BOB)).status_code == 403

    def test_private_prompt_cannot_be_used(self, client):
        prompt = make_prompt(client, isPublic=False)
        assert client.post(f"/api/v1/prompts/{prompt['id']}/use", headers=as_user(BOB)).status_code == 403


class TestBuild:
    def test_simple_build_substitutes_parameters(self, client):
        prompt = make_prompt(client)
        r = client.post("/api/v1/prompts/build/simple", json={
            "promptId": prompt["id"], "parameters": {"genre": "noir", "audience": "teens"},
        }, headers=as_user(BOB))
        assert r.status_code == 200
        built = data_of(r)
        assert built["messages"] == [
            {"role": "system", "content": "You are a novelist."},
            {"role": "user", "content": "Write about noir for teens."},
        ]
        assert built["characters"] == len("You are a novelist.") + len("Write about noir for teens.")

    def test_build_appends_history_and_user_input(self, client):
        prompt = make_prompt(client)
        built = data_of(client.post("/api/v1/prompts/build", json={
            "promptId": prompt["id"],
            "parameters": {"genre": "noir", "audience": "teens"},
            "history": [{"role": "assistant", "content": "Ready."}],
            "userInput": "Start with a storm.",
        }, headers=as_user(BOB)))
        assert [m["role"] for m in built["messages"]] == ["system", "user", "assistant", "user"]
        assert built["messages"][-1]["content"] == "Start with a storm."

    def test_missing_required_parameter(self, client):
        prompt = make_prompt(client)
        r = client.post("/api/v1/prompts/build/simple", json={
            "promptId": prompt["id"], "parameters": {"genre": "noir"},
        }, headers=as_user(BOB))
        assert r.status_code == 400
        assert "audience" in r.json()["message"]

    def test_gated_prompt_build_needs_approval(self, client):
        prompt = make_prompt(client, requireApplication=True)
        body = {"promptId": prompt["id"], "parameters": {"genre": "noir", "audience": "teens"}}
        assert client.post("/api/v1/prompts/build/simple", json=body, headers=as_user(BOB)).status_code == 403
        _approve_application(client, prompt["id"])
        assert client.post("/api/v1/prompts/build/simple", json=body, headers=as_user(BOB)).status_code == 200

    def test_banned_prompt_cannot_be_built(self, client):
        prompt = make_prompt(client)
        client.post(f"/api/v1/prompts/{prompt['id']}/ban", json={"reason": "spam"}, headers=as_user(ADMIN))
        r = client.post("/api/v1/prompts/build/simple", json={"promptId": prompt["id"]}, headers=as_user(BOB))
        assert r.status_code == 403
