import json
import re
from unittest.mock import AsyncMock, patch

import pytest

from promptworks.errors import StageOutputError
from promptworks.llm_client import LLMError
from promptworks.services.book_creation import OutputShape, parse_output, strip_fences

from conftest import ALICE, BOB, as_user, data_of, make_prompt

TASKS = "/api/v1/book-creation/tasks"
STAGE_RE = re.compile(r"STAGE:(\w+)")

TEMPLATES = {
    "idea": "STAGE:idea Brainstorm a {{genre}} novel.",
    "title": "STAGE:title Suggest titles for: {{brainstorm}}",
    "outline_main": "STAGE:outline_main {{title}} / {{synopsis}}",
    "outline_volume": "STAGE:outline_volume {{main_title}}",
    "outline_chapter": "STAGE:outline_chapter {{volume_title}}",
    "content": "STAGE:content {{chapter_title}}\n{{chapter_summary}}\n{{previous_summaries}}",
    "review": "STAGE:review {{chapter_title}}",
}

REPLIES = {
    "idea": "A lighthouse keeper finds a map that redraws itself.",
    "title": '```json\n{"titles": ["The Living Map", "Keeper"], "synopsis": "A map with a will."}\n```',
    "outline_main": json.dumps([{"title": "Part One", "content": "The map wakes."}]),
    "outline_volume": json.dumps([{"title": "Volume One", "description": "Departure."}]),
    "outline_chapter": json.dumps([
        {"title": "Chapter One", "summary": "s1"},
        {"title": "Chapter Two", "summary": "s2"},
        {"title": "Chapter Three", "summary": "s3"},
    ]),
    "content": lambda text: f"Body of {text.splitlines()[0][len('STAGE:content '):]}",
    "review": json.dumps({"score": 8, "issues": [], "suggestions": []}),
}


def fake_llm(**overrides):
    replies = {**REPLIES, **overrides}

    async def _generate(messages, model=None, temperature=None):
        text = "\n".join(m["content"] for m in messages)
        reply = replies[STAGE_RE.search(text).group(1)]
        if callable(reply):
            reply = reply(text)
        if isinstance(reply, Exception):
            raise reply
        return reply

    return AsyncMock(side_effect=_generate)


def stage_calls(mock, stage):
    return [c for c in mock.call_args_list if f"STAGE:{stage}" in c.args[0][-1]["content"]]


@pytest.fixture
def prompt_config(client):
    config = {}
    for stage, text in TEMPLATES.items():
        prompt = make_prompt(client, name=f"{stage} prompt", contents=[{"name": stage, "role": "user", "content": text}])
        config[stage] = prompt["id"]
    return config


@pytest.fixture
def task(client, prompt_config):
    r = client.post(TASKS, json={"promptConfig": prompt_config, "parameters": {"genre": "mystery"}},
                    headers=as_user(ALICE))
    assert r.status_code == 201, r.text
    return data_of(r)


def execute(client, task_id, stage=None, user_id=ALICE):
    body = {"stage": stage} if stage else None
    return client.post(f"{TASKS}/{task_id}/execute-stage", json=body, headers=as_user(user_id))


def get_task(client, task_id):
    return data_of(client.get(f"{TASKS}/{task_id}", headers=as_user(ALICE)))


def run_through_outline(client, task_id):
    for stage in ("idea", "title"):
        assert execute(client, task_id, stage).status_code == 200
    r = client.patch(f"{TASKS}/{task_id}/title-synopsis", json={"title": "The Living Map"}, headers=as_user(ALICE))
    assert r.status_code == 200
    assert execute(client, task_id, "outline").status_code == 200


class TestParsing:
    def test_strip_fences(self):
        assert strip_fences('```json\n{"a": 1}\n```') == '{"a": 1}'
        assert strip_fences("  plain  ") == "plain"

    def test_shape_mismatch_raises(self):
        with pytest.raises(StageOutputError):
            parse_output("not json at all", OutputShape.json_object)
        with pytest.raises(StageOutputError):
            parse_output("[1, 2]", OutputShape.json_object)
        with pytest.raises(StageOutputError):
            parse_output('{"a": 1}', OutputShape.json_array)
        with pytest.raises(StageOutputError):
            parse_output("   ", OutputShape.text)

    def test_text_passes_through(self):
        assert parse_output("Once upon a time", OutputShape.text) == "Once upon a time"


class TestTasks:
    def test_created_paused_with_defaults(self, task):
        assert task["status"] == "paused"
        assert task["current_stage"] == "idea"
        assert task["processed_data"] == {"user_parameters": {"genre": "mystery"}}
        assert task["task_config"]["concurrency_limit"] == 5

    def test_unknown_stage_key_in_prompt_config(self, client):
        r = client.post(TASKS, json={"promptConfig": {"epilogue": 1}}, headers=as_user(ALICE))
        assert r.status_code == 400

    def test_active_task_limit(self, client, prompt_config):
        for _ in range(3):
            client.post(TASKS, json={"promptConfig": prompt_config}, headers=as_user(ALICE))
        r = client.post(TASKS, json={"promptConfig": prompt_config}, headers=as_user(ALICE))
        assert r.status_code == 400

    def test_other_users_cannot_see_task(self, client, task):
        r = client.get(f"{TASKS}/{task['id']}", headers=as_user(BOB))
        assert r.status_code == 403

    def test_list_own_tasks(self, client, task):
        mine = data_of(client.get(TASKS, headers=as_user(ALICE)))
        theirs = data_of(client.get(TASKS, headers=as_user(BOB)))
        assert [t["id"] for t in mine["data"]] == [task["id"]]
        assert theirs["pagination"]["total"] == 0

    def test_pause_resume_cancel(self, client, task):
        url = f"{TASKS}/{task['id']}"
        assert client.post(f"{url}/resume", headers=as_user(ALICE)).status_code == 200
        assert get_task(client, task["id"])["status"] == "waiting_next_stage"
        assert client.post(f"{url}/pause", headers=as_user(ALICE)).status_code == 200
        assert get_task(client, task["id"])["status"] == "paused"
        r = client.delete(url, headers=as_user(ALICE))
        assert r.json()["message"] == "Task cancelled"
        assert execute(client, task["id"], "idea").status_code == 400


class TestStages:
    def test_idea_then_title(self, client, task):
        llm = fake_llm()
        with patch("promptworks.llm_client.generate_chat", new=llm):
            r = execute(client, task["id"])
            assert data_of(r)["data"]["brainstorm"] == REPLIES["idea"]
            r = execute(client, task["id"])
            assert data_of(r)["data"]["titles"] == ["The Living Map", "Keeper"]

        sent = llm.call_args_list[0].args[0]
        assert sent == [{"role": "user", "content": "STAGE:idea Brainstorm a mystery novel."}]
        detail = get_task(client, task["id"])
        assert detail["status"] == "waiting_next_stage"
        assert detail["processed_data"]["synopsis"] == "A map with a will."
        assert [s["status"] for s in detail["stages"]] == ["completed", "completed"]

    def test_stage_order_enforced(self, client, task):
        with patch("promptworks.llm_client.generate_chat", new=fake_llm()):
            r = execute(client, task["id"], "outline")
        assert r.status_code == 400
        assert "previous stage" in r.json()["message"]

    def test_missing_required_parameter_fails_stage(self, client, prompt_config):
        task = data_of(client.post(TASKS, json={"promptConfig": prompt_config}, headers=as_user(ALICE)))
        with patch("promptworks.llm_client.generate_chat", new=fake_llm()) as llm:
            r = execute(client, task["id"], "idea")
        assert r.status_code == 400
        assert "genre" in r.json()["message"]
        assert llm.call_count == 0

    def test_non_json_title_fails_then_retries(self, client, task):
        with patch("promptworks.llm_client.generate_chat", new=fake_llm(title="Here are some titles!")):
            execute(client, task["id"], "idea")
            r = execute(client, task["id"], "title")
        assert r.status_code == 400
        assert r.json()["data"]["error"] == "StageOutputInvalid"

        detail = get_task(client, task["id"])
        assert detail["status"] == "failed"
        title_stage = detail["stages"][-1]
        assert title_stage["status"] == "failed"
        assert title_stage["error_message"]

        with patch("promptworks.llm_client.generate_chat", new=fake_llm()):
            assert execute(client, task["id"], "title").status_code == 200
        detail = get_task(client, task["id"])
        title_stage = detail["stages"][-1]
        assert (title_stage["status"], title_stage["retry_count"]) == ("completed", 1)
        assert detail["status"] == "waiting_next_stage"
        assert len(detail["stages"]) == 2

    def test_provider_failure_is_502(self, client, task):
        with patch("promptworks.llm_client.generate_chat",
                   new=fake_llm(idea=LLMError("Ollama request failed: connection refused"))):
            r = execute(client, task["id"])
        assert r.status_code == 502
        assert r.json()["message"] == "Ollama request failed: connection refused"

    def test_outline_builds_tree(self, client, task):
        with patch("promptworks.llm_client.generate_chat", new=fake_llm()) as llm:
            run_through_outline(client, task["id"])
        assert "The Living Map" in stage_calls(llm, "outline_main")[0].args[0][-1]["content"]

        tree = data_of(client.get(f"{TASKS}/{task['id']}/outline", headers=as_user(ALICE)))
        assert [n["title"] for n in tree] == ["Part One"]
        volume = tree[0]["children"][0]
        assert [c["title"] for c in volume["children"]] == ["Chapter One", "Chapter Two", "Chapter Three"]
        assert all(c["status"] == "draft" for c in volume["children"])

    def test_malformed_unit_reply_is_isolated(self, client, task):
        volumes = json.dumps([
            {"title": "Volume One", "description": "d1"},
            {"title": "Volume Two", "description": "d2"},
        ])

        def chapters(text):
            return json.dumps(["not an object"]) if "Volume One" in text else REPLIES["outline_chapter"]

        llm = fake_llm(outline_volume=volumes, outline_chapter=chapters)
        with patch("promptworks.llm_client.generate_chat", new=llm):
            for stage in ("idea", "title"):
                execute(client, task["id"], stage)
            client.patch(f"{TASKS}/{task['id']}/title-synopsis", json={"title": "The Living Map"},
                         headers=as_user(ALICE))
            r = execute(client, task["id"], "outline")
        assert r.status_code == 200, r.text
        outline = data_of(r)["data"]["outline"]
        assert (outline["volume_count"], outline["chapter_count"]) == (2, 3)
        assert len(outline["failed_units"]) == 1

        first, second = data_of(client.get(f"{TASKS}/{task['id']}/outline", headers=as_user(ALICE)))[0]["children"]
        assert first["status"] == "failed"
        assert first["children"] == []
        assert first["error_message"] == "Outline entries must be JSON objects"
        assert len(second["children"]) == 3

    def test_chapter_failure_is_isolated(self, client, task):
        def flaky(text):
            return LLMError("timeout") if "Chapter Two" in text else REPLIES["content"](text)

        with patch("promptworks.llm_client.generate_chat", new=fake_llm()):
            run_through_outline(client, task["id"])
        with patch("promptworks.llm_client.generate_chat", new=fake_llm(content=flaky)):
            r = execute(client, task["id"], "content")
        assert r.status_code == 200
        summary = data_of(r)["data"]["content"]
        assert (summary["generated"], summary["failed"]) == (2, 1)

        chapters = data_of(client.get(f"{TASKS}/{task['id']}/outline", headers=as_user(ALICE)))[0]["children"][0]["children"]
        assert [c["status"] for c in chapters] == ["generated", "failed", "generated"]
        assert chapters[0]["body"] == "Body of Chapter One"

        with patch("promptworks.llm_client.generate_chat", new=fake_llm()) as llm:
            r = execute(client, task["id"], "content")
        assert data_of(r)["data"]["content"]["failed"] == 0
        assert len(stage_calls(llm, "content")) == 1

    def test_every_chapter_failing_fails_the_stage(self, client, task):
        with patch("promptworks.llm_client.generate_chat", new=fake_llm()):
            run_through_outline(client, task["id"])
        with patch("promptworks.llm_client.generate_chat", new=fake_llm(content=LLMError("down"))):
            r = execute(client, task["id"], "content")
        assert r.status_code == 400
        assert get_task(client, task["id"])["status"] == "failed"

    def test_full_run_completes(self, client, task):
        with patch("promptworks.llm_client.generate_chat", new=fake_llm()):
            run_through_outline(client, task["id"])
            execute(client, task["id"], "content")
            r = execute(client, task["id"], "review")
        review = data_of(r)["data"]["review"]
        assert (review["reviewed"], review["average_score"]) == (3, 8)

        progress = data_of(client.get(f"{TASKS}/{task['id']}/progress", headers=as_user(ALICE)))
        assert progress["overall_progress"] == 100
        assert progress["status"] == "completed"
        assert progress["total_characters_consumed"] > 0
        assert execute(client, task["id"]).status_code == 400


class TestEditing:
    def test_progress_counts_completed_stages(self, client, task):
        with patch("promptworks.llm_client.generate_chat", new=fake_llm()):
            execute(client, task["id"])
            execute(client, task["id"])
        progress = data_of(client.get(f"{TASKS}/{task['id']}/progress", headers=as_user(ALICE)))
        assert progress["overall_progress"] == 40
        assert progress["completed_stages"] == ["idea", "title"]

    def test_optimize_idea(self, client, task, prompt_config):
        optimize = make_prompt(client, contents=[{
            "name": "o", "role": "user", "content": "STAGE:idea_optimize {{original_idea}} // {{feedback}}",
        }])
        client.patch(f"{TASKS}/{task['id']}/prompt-config", json={"idea_optimize": optimize["id"]},
                     headers=as_user(ALICE))
        with patch("promptworks.llm_client.generate_chat", new=fake_llm(idea_optimize="A darker idea.")) as llm:
            execute(client, task["id"])
            r = client.post(f"{TASKS}/{task['id']}/stages/idea/optimize", json={"feedback": "darker"},
                            headers=as_user(ALICE))
        assert data_of(r)["data"]["brainstorm"] == "A darker idea."
        assert "// darker" in stage_calls(llm, "idea_optimize")[0].args[0][-1]["content"]
        assert get_task(client, task["id"])["processed_data"]["brainstorm"] == "A darker idea."

    def test_only_idea_can_be_optimized(self, client, task):
        r = client.post(f"{TASKS}/{task['id']}/stages/title/optimize", json={"feedback": "x"},
                        headers=as_user(ALICE))
        assert r.status_code == 400

    def test_body_only_on_chapters(self, client, task):
        with patch("promptworks.llm_client.generate_chat", new=fake_llm()):
            run_through_outline(client, task["id"])
        main = data_of(client.get(f"{TASKS}/{task['id']}/outline", headers=as_user(ALICE)))[0]
        url = f"{TASKS}/{task['id']}/outline-nodes"
        assert client.patch(f"{url}/{main['id']}", json={"body": "text"}, headers=as_user(ALICE)).status_code == 400
        chapter = main["children"][0]["children"][0]
        r = client.patch(f"{url}/{chapter['id']}", json={"title": "Prologue", "body": "It began."},
                         headers=as_user(ALICE))
        assert (data_of(r)["title"], data_of(r)["body"]) == ("Prologue", "It began.")


class TestExport:
    @pytest.fixture
    def written(self, client, task):
        with patch("promptworks.llm_client.generate_chat", new=fake_llm()):
            run_through_outline(client, task["id"])
            execute(client, task["id"], "content")
        return task

    def test_json_export_is_not_enveloped(self, client, written):
        r = client.get(f"{TASKS}/{written['id']}/export", headers=as_user(ALICE))
        assert r.status_code == 200
        assert "attachment" in r.headers["content-disposition"]
        book = r.json()
        assert "success" not in book
        assert book["title"] == "The Living Map"
        assert [c["title"] for c in book["chapters"]] == ["Chapter One", "Chapter Two", "Chapter Three"]
        assert book["chapters"][0]["body"] == "Body of Chapter One"

    def test_markdown_export(self, client, written):
        r = client.get(f"{TASKS}/{written['id']}/export", params={"format": "markdown"}, headers=as_user(ALICE))
        assert r.headers["content-type"].startswith("text/markdown")
        assert r.text.startswith("# The Living Map")
        assert "## Chapter Two\n\nBody of Chapter Two" in r.text

    def test_export_errors_keep_the_error_body(self, client, written):
        r = client.get(f"{TASKS}/{written['id']}/export", headers=as_user(BOB))
        assert r.status_code == 403
        assert r.json()["success"] is False
