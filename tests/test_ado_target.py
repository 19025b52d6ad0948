"""Tests for the Azure DevOps connector with a mocked ApiSession."""

from __future__ import annotations

from typing import Any
from unittest.mock import Mock

import pytest

from rally_to_ado_migrator.ado_target import (
    ATTACHED_FILE,
    COMMENTS_API_VERSION,
    JSON_PATCH,
    PARENT_LINK,
    TESTED_BY_LINK,
    AdoTarget,
)
from rally_to_ado_migrator.exceptions import WorkflowTransitionError

ORG = "https://dev.azure.com/contoso"
WIT = f"{ORG}/My%20Project/_apis/wit"


def _work_item(target_id: int, relations: list[dict[str, Any]] | None = None, **fields: Any) -> dict:  # noqa: ANN401
    return {
        "id": target_id,
        "fields": {"System.WorkItemType": "User Story", "System.State": "New", **fields},
        "relations": relations or [],
    }


@pytest.mark.unit
class TestAdoTarget:
    def setup_method(self) -> None:
        self.mock_api: Mock = Mock()
        self.target = AdoTarget(self.mock_api, organization_url=ORG + "/", project="My Project")

    def test_create_item_posts_json_patch(self) -> None:
        self.mock_api.request.return_value = _work_item(5, **{"System.Title": "Story"})

        item = self.target.create_item("User Story", {"System.Title": "Story", "System.Tags": "RallyObjectID-11"})

        assert item.target_id == 5
        assert item.state == "New"
        method, url = self.mock_api.request.call_args.args
        kwargs = self.mock_api.request.call_args.kwargs
        assert method == "POST"
        assert url == f"{WIT}/workitems/$User%20Story"
        assert kwargs["headers"] == {"Content-Type": JSON_PATCH}
        assert kwargs["params"] == {"api-version": "7.1"}
        assert {"op": "add", "path": "/fields/System.Title", "value": "Story"} in kwargs["json_body"]

    def test_bypass_rules_param(self) -> None:
        target = AdoTarget(self.mock_api, organization_url=ORG, project="My Project", bypass_rules=True)
        self.mock_api.request.return_value = _work_item(5)

        target.update_item(5, {"System.Title": "x"})

        assert self.mock_api.request.call_args.kwargs["params"]["bypassRules"] == "true"

    def test_find_by_source_tag(self) -> None:
        self.mock_api.request.return_value = {"workItems": [{"id": 8}]}

        assert self.target.find_by_source_tag("11") == 8
        query = self.mock_api.request.call_args.kwargs["json_body"]["query"]
        assert "CONTAINS 'RallyObjectID-11'" in query

    def test_find_by_source_tag_none(self) -> None:
        self.mock_api.request.return_value = {"workItems": []}
        assert self.target.find_by_source_tag("11") is None

    def test_find_by_source_tag_duplicates(self, caplog: pytest.LogCaptureFixture) -> None:
        self.mock_api.request.return_value = {"workItems": [{"id": 8}, {"id": 9}]}

        assert self.target.find_by_source_tag("11") == 8
        assert "Several work items" in caplog.text

    def test_update_state_rejected(self) -> None:
        self.mock_api.request.side_effect = WorkflowTransitionError("rule error")

        with pytest.raises(WorkflowTransitionError) as exc_info:
            self.target.update_item(5, {"System.State": "Closed"})
        assert exc_info.value.to_state == "Closed"

    def test_workflow_states(self) -> None:
        self.mock_api.request.return_value = {
            "value": [{"name": "New", "category": "Proposed"}, {"name": "Closed", "category": "Completed"}]
        }

        assert self.target.get_workflow_states("Bug") == [("New", "Proposed"), ("Closed", "Completed")]
        assert self.mock_api.request.call_args.args[1] == f"{WIT}/workitemtypes/Bug/states"

    def test_set_parent_link_created(self) -> None:
        self.mock_api.request.side_effect = [_work_item(5), _work_item(5)]

        assert self.target.set_parent_link(5, 3) == "created"
        value = self.mock_api.request.call_args.kwargs["json_body"][0]["value"]
        assert value == {"rel": PARENT_LINK, "url": f"{ORG}/_apis/wit/workItems/3"}

    def test_set_parent_link_existing_and_conflict(self) -> None:
        relations = [{"rel": PARENT_LINK, "url": f"{ORG}/_apis/wit/workItems/3"}]
        self.mock_api.request.return_value = _work_item(5, relations)

        assert self.target.set_parent_link(5, 3) == "existing"
        assert self.target.set_parent_link(5, 4) == "conflict"
        assert self.mock_api.request.call_count == 2

    def test_set_test_case_link(self) -> None:
        relations = [{"rel": TESTED_BY_LINK, "url": f"{ORG}/_apis/wit/workItems/7"}]
        self.mock_api.request.return_value = _work_item(5, relations)

        assert self.target.set_test_case_link(5, 7) == "existing"
        assert self.target.set_test_case_link(5, 8) == "created"
        value = self.mock_api.request.call_args.kwargs["json_body"][0]["value"]
        assert value["rel"] == TESTED_BY_LINK

    def test_add_comment_skips_duplicates(self) -> None:
        self.mock_api.request.side_effect = [
            {"comments": [{"text": "a"}], "continuationToken": "t1"},
            {"comments": [{"text": "b"}]},
        ]

        assert self.target.add_comment(5, "b") is False
        assert self.mock_api.request.call_args.kwargs["params"] == {
            "api-version": COMMENTS_API_VERSION,
            "continuationToken": "t1",
        }

    def test_add_comment_posts(self) -> None:
        self.mock_api.request.side_effect = [{"comments": []}, {"id": 1}]

        assert self.target.add_comment(5, "hello") is True
        assert self.mock_api.request.call_args.kwargs["json_body"] == {"text": "hello"}

    def test_add_attachment(self) -> None:
        self.mock_api.request.side_effect = [
            _work_item(5),
            {"id": "guid", "url": f"{WIT}/attachments/guid"},
            _work_item(5),
        ]

        assert self.target.add_attachment(5, "log.txt", b"data", "note") is True
        upload = self.mock_api.request.call_args_list[1]
        assert upload.kwargs["data"] == b"data"
        assert upload.kwargs["params"]["fileName"] == "log.txt"
        relation = self.mock_api.request.call_args.kwargs["json_body"][0]["value"]
        assert relation == {
            "rel": ATTACHED_FILE,
            "url": f"{WIT}/attachments/guid",
            "attributes": {"comment": "note", "name": "log.txt"},
        }

    def test_add_attachment_already_present(self) -> None:
        relations = [{"rel": ATTACHED_FILE, "url": f"{WIT}/attachments/x", "attributes": {"name": "log.txt"}}]
        self.mock_api.request.return_value = _work_item(5, relations)

        assert self.target.add_attachment(5, "log.txt", b"data") is False
        assert self.mock_api.request.call_count == 1

    def test_attachment_url(self) -> None:
        relations = [
            {"rel": PARENT_LINK, "url": f"{WIT}/workItems/1"},
            {"rel": ATTACHED_FILE, "url": f"{WIT}/attachments/x", "attributes": {"name": "shot.png"}},
        ]
        self.mock_api.request.return_value = _work_item(5, relations)

        assert self.target.attachment_url(5, "shot.png") == f"{WIT}/attachments/x"
        assert self.target.attachment_url(5, "other.png") is None


@pytest.mark.unit
class TestAdoTargetDryRun:
    def setup_method(self) -> None:
        self.mock_api: Mock = Mock()
        self.target = AdoTarget(self.mock_api, organization_url=ORG, project="My Project", dry_run=True)

    def test_writes_are_not_sent(self) -> None:
        created = self.target.create_item("Bug", {"System.Title": "Crash"})

        assert created.target_id < 0
        self.target.update_item(created.target_id, {"System.State": "Active"})
        assert self.target.get_item(created.target_id).state == "Active"
        assert self.target.set_parent_link(created.target_id, -99) == "created"
        assert self.target.add_comment(created.target_id, "x") is True
        assert self.target.add_attachment(created.target_id, "f", b"1") is True
        assert self.target.attachment_url(created.target_id, "f") is None
        self.mock_api.request.assert_not_called()

    def test_ids_are_distinct(self) -> None:
        first = self.target.create_item("Bug", {})
        second = self.target.create_item("Bug", {})
        assert first.target_id != second.target_id
