"""Writes to Azure DevOps Boards through the Work Item Tracking REST API 7.1.

Items are created and updated with JSON-Patch documents. Every migrated item
carries the tag ``RallyObjectID-<ObjectID>``; a WIQL query on that tag is how
a re-run finds the item it created before.
"""

from __future__ import annotations

import itertools
import logging
import threading
from typing import TYPE_CHECKING, Any, Final
from urllib.parse import quote

import requests

from .api_session import ApiSession, error_text
from .exceptions import ValidationError, WorkflowTransitionError
from .field_mapping import source_marker
from .models import TargetWorkItem

if TYPE_CHECKING:
    from .config import MigrationSettings
    from .models import LinkOutcome
    from .retry import RequestThrottle, RetryPolicy

logger: logging.Logger = logging.getLogger(__name__)

API_VERSION: Final[str] = "7.1"
COMMENTS_API_VERSION: Final[str] = "7.1-preview.4"
JSON_PATCH: Final[str] = "application/json-patch+json"

PARENT_LINK: Final[str] = "System.LinkTypes.Hierarchy-Reverse"
TESTED_BY_LINK: Final[str] = "Microsoft.VSTS.Common.TestedBy-Forward"
ATTACHED_FILE: Final[str] = "AttachedFile"


def create_session(pat: str) -> requests.Session:
    """Get a requests session authenticated with a personal access token."""
    session = requests.Session()
    session.auth = ("", pat)
    session.headers.update({"Accept": "application/json"})
    return session


def _related_id(relation: dict[str, Any]) -> int | None:
    try:
        return int(str(relation.get("url", "")).rstrip("/").rsplit("/", 1)[1])
    except (IndexError, ValueError):
        return None


class AdoApiSession(ApiSession):
    """ApiSession that recognizes Azure DevOps rule violations."""

    def raise_client_error(self, response: requests.Response, method: str, url: str) -> None:
        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}
        text = error_text(response)
        rule_errors = (payload.get("customProperties") or {}).get("RuleValidationErrors") or []
        fields = [e.get("fieldReferenceName") for e in rule_errors if e.get("fieldReferenceName")]
        if "System.State" in fields or (not fields and "field state" in text.lower()):
            msg = f"Azure DevOps rejected the state change on {method} {url}: {text}"
            raise WorkflowTransitionError(msg)
        msg = f"Azure DevOps rejected {method} {url} ({response.status_code}): {text}"
        raise ValidationError(msg, field=fields[0] if fields else None)


class AdoTarget:
    """TargetSystem implementation for Azure DevOps."""

    def __init__(
        self,
        api: ApiSession,
        *,
        organization_url: str,
        project: str,
        bypass_rules: bool = False,
        dry_run: bool = False,
    ) -> None:
        self._api: ApiSession = api
        self.organization_url: str = organization_url.rstrip("/")
        self.project: str = project
        self.bypass_rules: bool = bypass_rules
        self.dry_run: bool = dry_run
        self._dry_items: dict[int, TargetWorkItem] = {}
        self._dry_ids: itertools.count[int] = itertools.count(1)
        self._lock: threading.Lock = threading.Lock()

    @classmethod
    def from_settings(
        cls,
        settings: MigrationSettings,
        *,
        retry_policy: RetryPolicy | None = None,
        throttle: RequestThrottle | None = None,
    ) -> AdoTarget:
        api = AdoApiSession(
            create_session(settings.ado_pat),
            name="Azure DevOps",
            timeout=settings.request_timeout,
            retry_policy=retry_policy or settings.retry_policy(),
            throttle=throttle or settings.throttle(),
        )
        return cls(
            api,
            organization_url=settings.ado_organization_url,
            project=settings.ado_project,
            bypass_rules=settings.bypass_rules,
            dry_run=settings.dry_run,
        )

    def _wit_url(self, path: str) -> str:
        return f"{self.organization_url}/{quote(self.project)}/_apis/wit/{path}"

    def _work_item_url(self, target_id: int) -> str:
        return f"{self.organization_url}/_apis/wit/workItems/{target_id}"

    def _write_params(self) -> dict[str, Any]:
        params: dict[str, Any] = {"api-version": API_VERSION}
        if self.bypass_rules:
            params["bypassRules"] = "true"
        return params

    @staticmethod
    def _to_item(data: dict[str, Any]) -> TargetWorkItem:
        fields = data.get("fields") or {}
        return TargetWorkItem(
            target_id=int(data["id"]),
            item_type=fields.get("System.WorkItemType", ""),
            fields=fields,
            relations=data.get("relations") or [],
        )

    def _patch(self, target_id: int, operations: list[dict[str, Any]]) -> TargetWorkItem:
        data = self._api.request(
            "PATCH",
            self._wit_url(f"workitems/{target_id}"),
            params=self._write_params(),
            json_body=operations,
            headers={"Content-Type": JSON_PATCH},
        )
        return self._to_item(data)

    def _is_dry(self, target_id: int) -> bool:
        return self.dry_run and target_id < 0

    # TargetSystem

    def validate_access(self) -> None:
        data = self._api.request(
            "GET",
            f"{self.organization_url}/_apis/projects/{quote(self.project)}",
            params={"api-version": API_VERSION},
        )
        logger.info(f"Azure DevOps API access validated (project {data.get('name', self.project)})")

    def source_marker(self, source_id: str) -> str:
        return source_marker(source_id)

    def find_by_source_tag(self, source_id: str) -> int | None:
        marker = self.source_marker(source_id)
        query = (
            "SELECT [System.Id] FROM WorkItems "
            "WHERE [System.TeamProject] = @project "
            f"AND [System.Tags] CONTAINS '{marker}' "
            "ORDER BY [System.Id]"
        )
        data = self._api.request(
            "POST", self._wit_url("wiql"), params={"api-version": API_VERSION}, json_body={"query": query}
        )
        ids = [int(row["id"]) for row in (data or {}).get("workItems", [])]
        if len(ids) > 1:
            logger.warning(f"Several work items carry tag {marker}: {ids}; using #{ids[0]}")
        return ids[0] if ids else None

    def get_item(self, target_id: int) -> TargetWorkItem:
        if self._is_dry(target_id):
            return self._dry_items[target_id]
        data = self._api.request(
            "GET",
            self._wit_url(f"workitems/{target_id}"),
            params={"api-version": API_VERSION, "$expand": "relations"},
        )
        return self._to_item(data)

    def create_item(self, item_type: str, fields: dict[str, Any]) -> TargetWorkItem:
        if self.dry_run:
            with self._lock:
                target_id = -next(self._dry_ids)
                item = TargetWorkItem(target_id, item_type, {**fields, "System.WorkItemType": item_type})
                self._dry_items[target_id] = item
            logger.info(f"[dry run] Would create {item_type} '{fields.get('System.Title')}' as #{target_id}")
            return item

        operations = [{"op": "add", "path": f"/fields/{name}", "value": value} for name, value in fields.items()]
        data = self._api.request(
            "POST",
            self._wit_url(f"workitems/${quote(item_type)}"),
            params=self._write_params(),
            json_body=operations,
            headers={"Content-Type": JSON_PATCH},
        )
        item = self._to_item(data)
        logger.debug(f"Created {item_type} #{item.target_id}")
        return item

    def update_item(self, target_id: int, fields: dict[str, Any]) -> TargetWorkItem:
        if self.dry_run:
            logger.info(f"[dry run] Would update #{target_id}: {', '.join(sorted(fields))}")
            if self._is_dry(target_id):
                with self._lock:
                    item = self._dry_items[target_id]
                    item = TargetWorkItem(target_id, item.item_type, {**item.fields, **fields}, item.relations)
                    self._dry_items[target_id] = item
                return item
            return TargetWorkItem(target_id, "", dict(fields))

        operations = [{"op": "add", "path": f"/fields/{name}", "value": value} for name, value in fields.items()]
        try:
            return self._patch(target_id, operations)
        except WorkflowTransitionError as e:
            to_state = fields.get("System.State")
            msg = f"Work item #{target_id}: transition to '{to_state}' rejected"
            raise WorkflowTransitionError(msg, to_state=to_state) from e

    def get_workflow_states(self, item_type: str) -> list[tuple[str, str]]:
        data = self._api.request(
            "GET",
            self._wit_url(f"workitemtypes/{quote(item_type)}/states"),
            params={"api-version": API_VERSION},
        )
        return [(state["name"], state.get("category", "")) for state in (data or {}).get("value", [])]

    def _add_relation(self, target_id: int, rel: str, url: str, attributes: dict[str, Any] | None = None) -> None:
        value: dict[str, Any] = {"rel": rel, "url": url}
        if attributes:
            value["attributes"] = attributes
        self._patch(target_id, [{"op": "add", "path": "/relations/-", "value": value}])

    def set_parent_link(self, child_id: int, parent_id: int) -> LinkOutcome:
        if self.dry_run:
            logger.info(f"[dry run] Would link #{child_id} under #{parent_id}")
            return "created"
        child = self.get_item(child_id)
        for relation in child.relations:
            if relation.get("rel") == PARENT_LINK:
                return "existing" if _related_id(relation) == parent_id else "conflict"
        self._add_relation(child_id, PARENT_LINK, self._work_item_url(parent_id))
        return "created"

    def set_test_case_link(self, tested_id: int, test_case_id: int) -> LinkOutcome:
        if self.dry_run:
            logger.info(f"[dry run] Would link test case #{test_case_id} to #{tested_id}")
            return "created"
        tested = self.get_item(tested_id)
        for relation in tested.relations:
            if relation.get("rel") == TESTED_BY_LINK and _related_id(relation) == test_case_id:
                return "existing"
        self._add_relation(tested_id, TESTED_BY_LINK, self._work_item_url(test_case_id))
        return "created"

    def _comment_texts(self, target_id: int) -> set[str]:
        texts: set[str] = set()
        params: dict[str, Any] = {"api-version": COMMENTS_API_VERSION}
        while True:
            data = self._api.request("GET", self._wit_url(f"workItems/{target_id}/comments"), params=params) or {}
            texts.update(comment.get("text", "") for comment in data.get("comments", []))
            token = data.get("continuationToken")
            if not token:
                return texts
            params = {"api-version": COMMENTS_API_VERSION, "continuationToken": token}

    def add_comment(self, target_id: int, text: str) -> bool:
        if self.dry_run:
            logger.info(f"[dry run] Would add a comment to #{target_id}")
            return True
        if text in self._comment_texts(target_id):
            logger.debug(f"Comment already present on #{target_id}")
            return False
        self._api.request(
            "POST",
            self._wit_url(f"workItems/{target_id}/comments"),
            params={"api-version": COMMENTS_API_VERSION},
            json_body={"text": text},
        )
        return True

    def add_attachment(self, target_id: int, filename: str, content: bytes, comment: str = "") -> bool:
        if self.dry_run:
            logger.info(f"[dry run] Would attach {filename} ({len(content)} bytes) to #{target_id}")
            return True
        if self._attached_file(target_id, filename) is not None:
            return False
        upload = self._api.request(
            "POST",
            self._wit_url("attachments"),
            params={"api-version": API_VERSION, "fileName": filename, "uploadType": "Simple"},
            data=content,
            headers={"Content-Type": "application/octet-stream"},
        )
        self._add_relation(target_id, ATTACHED_FILE, upload["url"], {"comment": comment, "name": filename})
        return True

    def attachment_url(self, target_id: int, filename: str) -> str | None:
        if self.dry_run:
            return None
        relation = self._attached_file(target_id, filename)
        return relation.get("url") if relation else None

    def _attached_file(self, target_id: int, filename: str) -> dict[str, Any] | None:
        for relation in self.get_item(target_id).relations:
            if relation.get("rel") == ATTACHED_FILE and (relation.get("attributes") or {}).get("name") == filename:
                return relation
        return None
