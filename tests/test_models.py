from sqlalchemy.ext.mutable import MutableDict, MutableList
from sqlalchemy.orm import Session

from promptworks import models

from conftest import ALICE, sync_engine

JSON_COLUMNS = [
    models.Prompt.__table__.c.review_snapshot,
    models.PromptContent.__table__.c.parameters,
    models.BookCreationTask.__table__.c.processed_data,
    models.BookCreationTask.__table__.c.prompt_config,
    models.BookCreationTask.__table__.c.task_config,
    models.BookCreationStage.__table__.c.input_data,
    models.BookCreationStage.__table__.c.output_data,
    models.OutlineNode.__table__.c.review,
]


class TestJsonColumns:
    def test_each_column_owns_its_type(self):
        assert len({id(c.type) for c in JSON_COLUMNS}) == len(JSON_COLUMNS)

    def test_content_parameters_accept_lists(self):
        block = models.PromptContent(name="task", content="{{genre}}", parameters=[])
        assert isinstance(block.parameters, MutableList)

    def test_dict_columns_accept_dicts(self):
        task = models.BookCreationTask(processed_data={"brainstorm": "x"}, prompt_config={}, task_config={})
        assert isinstance(task.processed_data, MutableDict)

    def test_in_place_list_changes_are_persisted(self):
        with Session(sync_engine) as s:
            prompt = models.Prompt(name="p", author_id=ALICE)
            prompt.contents = [
                models.PromptContent(name="task", content="{{genre}}", parameters=[{"name": "genre"}]),
            ]
            s.add(prompt)
            s.commit()
            block_id = prompt.contents[0].id

            prompt.contents[0].parameters.append({"name": "audience"})
            s.commit()

        with Session(sync_engine) as s:
            block = s.get(models.PromptContent, block_id)
            assert [p["name"] for p in block.parameters] == ["genre", "audience"]
