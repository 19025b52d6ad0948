"""Read-only access to Rally through the Web Services API v2.0.

Rally responses come in two envelopes: queries return
``{"QueryResult": {"Results": [...], "TotalResultCount": n, "Errors": [...]}}``
and single-object reads return ``{"<Type>": {...}}``. References to other
objects are ``{"_ref": ".../<type>/<ObjectID>", "_refObjectName": ...}`` and
collections are ``{"_ref": ".../<Collection>", "Count": n}``, fetched on demand
page by page.
"""

from __future__ import annotations

import base64
import binascii
import logging
import re
import threading
from typing import TYPE_CHECKING, Any, Final

import requests

from .api_session import ApiSession
from .exceptions import AuthenticationError, MigrationError, NotFoundError
from .models import Attachment, CaseStep, Comment, WorkItemRecord
from .utils import parse_timestamp

if TYPE_CHECKING:
    from .config import MigrationSettings
    from .retry import RequestThrottle, RetryPolicy

logger: logging.Logger = logging.getLogger(__name__)

API_PATH: Final[str] = "/slm/webservice/v2.0"
PAGE_SIZE: Final[int] = 200

# FormattedID prefix → WSAPI type path
FORMATTED_ID_TYPES: Final[dict[str, str]] = {
    "US": "hierarchicalrequirement",
    "S": "hierarchicalrequirement",
    "DE": "defect",
    "TA": "task",
    "TC": "testcase",
    "F": "portfolioitem/feature",
    "E": "portfolioitem/epic",
    "I": "portfolioitem/initiative",
}

# Types enumerated for AllInProject, parents first
PROJECT_ITEM_TYPES: Final[tuple[str, ...]] = ("portfolioitem", "hierarchicalrequirement", "defect", "task", "testcase")

# Collections holding an item's children, per source type
CHILD_COLLECTIONS: Final[dict[str, tuple[str, ...]]] = {
    "HierarchicalRequirement": ("Children", "Tasks"),
    "Defect": ("Tasks",),
}
_PORTFOLIO_CHILD_COLLECTIONS: Final[tuple[str, ...]] = ("Children", "UserStories")

_FORMATTED_ID_RE = re.compile(r"^([A-Za-z]+)(\d+)$")
_OBJECT_ID_RE = re.compile(r"/(\d+)(?:\.js)?$")


def object_id_from_ref(ref: Any) -> str | None:  # noqa: ANN401 - ref object or URL
    """Extract the ObjectID from a reference object or ``_ref`` URL."""
    if not ref:
        return None
    if isinstance(ref, dict):
        if ref.get("ObjectID"):
            return str(ref["ObjectID"])
        ref = ref.get("_ref")
    if not isinstance(ref, str):
        return None
    match = _OBJECT_ID_RE.search(ref)
    return match.group(1) if match else None


def ref_name(value: Any) -> Any:  # noqa: ANN401
    """Display name of a reference object; other values pass through."""
    if isinstance(value, dict):
        return value.get("EmailAddress") or value.get("_refObjectName") or value.get("Name")
    return value


def create_session(api_key: str) -> requests.Session:
    """Get a requests session authenticated with a Rally API key."""
    session = requests.Session()
    session.headers.update({"ZSESSIONID": api_key, "Accept": "application/json"})
    return session


class RallySource:
    """SourceSystem implementation for Rally."""

    def __init__(
        self,
        api: ApiSession,
        *,
        server: str,
        workspace: str | None = None,
        project: str | None = None,
    ) -> None:
        self._api: ApiSession = api
        self.server: str = server.rstrip("/")
        self.base_url: str = self.server + API_PATH
        self.workspace: str | None = workspace
        self.project: str | None = project
        self._refs: dict[str, tuple[str, str]] = {}
        self._scope_refs: dict[str, str] = {}
        self._lock: threading.Lock = threading.Lock()

    @classmethod
    def from_settings(
        cls,
        settings: MigrationSettings,
        *,
        retry_policy: RetryPolicy | None = None,
        throttle: RequestThrottle | None = None,
    ) -> RallySource:
        api = ApiSession(
            create_session(settings.rally_api_key),
            name="Rally",
            timeout=settings.request_timeout,
            retry_policy=retry_policy or settings.retry_policy(),
            throttle=throttle or settings.throttle(),
        )
        return cls(
            api, server=settings.rally_server, workspace=settings.rally_workspace, project=settings.rally_project
        )

    # Low-level access

    def _get(self, url: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        if not url.startswith("http"):
            url = f"{self.base_url}/{url.lstrip('/')}"
        data = self._api.request("GET", url, params=params)
        if not isinstance(data, dict):
            msg = f"Rally returned an unexpected response for {url}"
            raise MigrationError(msg)
        return data

    @staticmethod
    def _check_errors(envelope: dict[str, Any], context: str) -> None:
        errors = envelope.get("Errors") or []
        if not errors:
            return
        text = "; ".join(str(e) for e in errors)
        if "not authorized" in text.lower():
            msg = f"Rally denied access for {context}: {text}"
            raise AuthenticationError(msg)
        if "could not read" in text.lower() or "cannot find" in text.lower():
            msg = f"Rally object not found for {context}: {text}"
            raise NotFoundError(msg)
        msg = f"Rally error for {context}: {text}"
        raise MigrationError(msg)

    def _query(self, url: str, params: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        """Run a query or read a collection, following pagination."""
        results: list[dict[str, Any]] = []
        start = 1
        while True:
            page_params = {**(params or {}), "start": start, "pagesize": PAGE_SIZE}
            envelope = self._get(url, page_params).get("QueryResult", {})
            self._check_errors(envelope, url)
            page = envelope.get("Results", [])
            results.extend(page)
            total = int(envelope.get("TotalResultCount", len(results)))
            if not page or len(results) >= total:
                return results
            start += len(page)

    def _scope_params(self, *, project_only: bool = False) -> dict[str, Any]:
        params: dict[str, Any] = {}
        if self.workspace:
            params["workspace"] = self._scope_ref("workspace", self.workspace)
        if self.project:
            params["project"] = self._scope_ref("project", self.project)
            if project_only:
                params["projectScopeDown"] = "false"
                params["projectScopeUp"] = "false"
        return params

    def _scope_ref(self, kind: str, value: str) -> str:
        if value.startswith("/"):
            return value
        if value.isdigit():
            return f"/{kind}/{value}"
        key = f"{kind}:{value}"
        with self._lock:
            cached = self._scope_refs.get(key)
        if cached:
            return cached
        results = self._query(kind, {"query": f'(Name = "{value}")', "fetch": "ObjectID"})
        if not results:
            msg = f"Rally {kind} '{value}' not found"
            raise NotFoundError(msg)
        ref = f"/{kind}/{results[0]['ObjectID']}"
        with self._lock:
            self._scope_refs[key] = ref
        return ref

    def _resolve(self, source_id: str) -> tuple[str, str]:
        """Return (ObjectID, _ref URL) of an item given an ObjectID or FormattedID."""
        with self._lock:
            cached = self._refs.get(source_id)
        if cached:
            return cached

        match = _FORMATTED_ID_RE.match(source_id)
        if match and match.group(1).upper() in FORMATTED_ID_TYPES:
            type_path = FORMATTED_ID_TYPES[match.group(1).upper()]
            query = f"(FormattedID = {source_id.upper()})"
            results = self._query(type_path, {"query": query, "fetch": "ObjectID", **self._scope_params()})
        elif source_id.isdigit():
            results = self._query("artifact", {"query": f"(ObjectID = {source_id})", "fetch": "ObjectID"})
        else:
            msg = f"'{source_id}' is neither an ObjectID nor a known FormattedID"
            raise NotFoundError(msg)
        if not results:
            msg = f"Rally item {source_id} not found"
            raise NotFoundError(msg)

        object_id = str(results[0]["ObjectID"])
        resolved = (object_id, results[0]["_ref"])
        with self._lock:
            self._refs[source_id] = resolved
            self._refs[object_id] = resolved
        return resolved

    def _object(self, source_id: str) -> dict[str, Any]:
        _, ref = self._resolve(source_id)
        data = self._get(ref, {"fetch": "true"})
        self._check_errors(data.get("OperationResult", {}), ref)
        for key, value in data.items():
            if key != "OperationResult" and isinstance(value, dict):
                return value
        msg = f"Rally returned no object for {source_id}"
        raise NotFoundError(msg)

    def _collection(self, obj: dict[str, Any], name: str, fetch: str) -> list[dict[str, Any]]:
        collection = obj.get(name)
        if not isinstance(collection, dict) or not collection.get("Count"):
            return []
        return self._query(collection["_ref"], {"fetch": fetch, "order": "CreationDate,ObjectID"})

    # Record building

    @staticmethod
    def _parent_of(obj: dict[str, Any]) -> str | None:
        item_type = obj.get("_type", "")
        if item_type == "Task":
            return object_id_from_ref(obj.get("WorkProduct"))
        if item_type == "HierarchicalRequirement":
            return object_id_from_ref(obj.get("Parent")) or object_id_from_ref(obj.get("PortfolioItem"))
        if item_type == "Defect":
            return object_id_from_ref(obj.get("Requirement"))
        if item_type.startswith("PortfolioItem"):
            return object_id_from_ref(obj.get("Parent"))
        return None

    @staticmethod
    def _state_of(obj: dict[str, Any]) -> str | None:
        if obj.get("_type") in ("HierarchicalRequirement", "Defect"):
            state = obj.get("ScheduleState") or obj.get("State")
        else:
            state = obj.get("State")
        return ref_name(state) if state else None

    @staticmethod
    def _scalar_fields(obj: dict[str, Any]) -> dict[str, Any]:
        fields: dict[str, Any] = {}
        for name, value in obj.items():
            if name.startswith("_"):
                continue
            if isinstance(value, dict):
                if "Count" in value:
                    # Collection; only tags are carried inline
                    if name == "Tags":
                        fields[name] = [t.get("Name") for t in value.get("_tagsNameArray", []) if t.get("Name")]
                    continue
                fields[name] = ref_name(value)
            elif not isinstance(value, list):
                fields[name] = value
        return fields

    def _comments(self, obj: dict[str, Any]) -> tuple[Comment, ...]:
        posts = self._collection(obj, "Discussion", "Text,CreationDate,User,ObjectID")
        return tuple(
            Comment(
                source_id=str(post.get("ObjectID", "")),
                text=post.get("Text") or "",
                created_at=parse_timestamp(post.get("CreationDate")),
                author=ref_name(post.get("User")) or "",
            )
            for post in posts
        )

    def _attachments(self, obj: dict[str, Any]) -> tuple[Attachment, ...]:
        rows = self._collection(obj, "Attachments", "Name,ContentType,Size,CreationDate,User,ObjectID")
        return tuple(
            Attachment(
                source_id=str(row.get("ObjectID", "")),
                name=row.get("Name") or f"attachment-{row.get('ObjectID')}",
                content_type=row.get("ContentType") or "application/octet-stream",
                size=int(row.get("Size") or 0),
                created_at=parse_timestamp(row.get("CreationDate")),
                author=ref_name(row.get("User")) or "",
            )
            for row in rows
        )

    def _test_case_ids(self, obj: dict[str, Any]) -> frozenset[str]:
        rows = self._collection(obj, "TestCases", "ObjectID")
        return frozenset(str(row["ObjectID"]) for row in rows if row.get("ObjectID"))

    def _steps(self, obj: dict[str, Any]) -> tuple[CaseStep, ...]:
        if obj.get("_type") != "TestCase":
            return ()
        rows = self._collection(obj, "Steps", "StepIndex,Input,ExpectedResult,ObjectID")
        steps = [
            CaseStep(
                index=int(row.get("StepIndex") or 0),
                input=row.get("Input") or "",
                expected_result=row.get("ExpectedResult") or "",
            )
            for row in rows
            if row.get("Input") or row.get("ExpectedResult")
        ]
        return tuple(sorted(steps, key=lambda step: step.index))

    def _record(self, obj: dict[str, Any]) -> WorkItemRecord:
        return WorkItemRecord(
            source_id=str(obj["ObjectID"]),
            item_type=obj.get("_type", ""),
            title=obj.get("Name") or "",
            formatted_id=obj.get("FormattedID") or "",
            description=obj.get("Description") or "",
            state=self._state_of(obj),
            owner=ref_name(obj.get("Owner")),
            created_at=parse_timestamp(obj.get("CreationDate")),
            updated_at=parse_timestamp(obj.get("LastUpdateDate")),
            parent_id=self._parent_of(obj),
            test_case_ids=self._test_case_ids(obj),
            comments=self._comments(obj),
            attachments=self._attachments(obj),
            steps=self._steps(obj),
            fields=self._scalar_fields(obj),
        )

    # SourceSystem

    def validate_access(self) -> None:
        data = self._get("subscription", {"fetch": "Name"})
        name = data.get("Subscription", {}).get("Name", "?")
        if self.project:
            self._scope_params()
        logger.info(f"Rally API access validated (subscription {name})")

    def get_item(self, source_id: str) -> WorkItemRecord:
        record = self._record(self._object(source_id))
        logger.debug(
            f"Fetched {record.label} ({record.item_type}): {len(record.comments)} comments, "
            f"{len(record.attachments)} attachments"
        )
        return record

    def get_parent_id(self, source_id: str) -> str | None:
        return self._parent_of(self._object(source_id))

    def get_children(self, source_id: str) -> list[str]:
        obj = self._object(source_id)
        item_type = obj.get("_type", "")
        if item_type.startswith("PortfolioItem"):
            collections = _PORTFOLIO_CHILD_COLLECTIONS
        else:
            collections = CHILD_COLLECTIONS.get(item_type, ())
        children: list[str] = []
        for name in collections:
            children.extend(str(row["ObjectID"]) for row in self._collection(obj, name, "ObjectID"))
        return children

    def get_test_case_ids(self, source_id: str) -> list[str]:
        return sorted(self._test_case_ids(self._object(source_id)))

    def get_comments(self, source_id: str) -> list[Comment]:
        return list(self._comments(self._object(source_id)))

    def get_attachments(self, source_id: str) -> list[Attachment]:
        return list(self._attachments(self._object(source_id)))

    def download_attachment(self, attachment: Attachment) -> bytes:
        data = self._get(f"attachment/{attachment.source_id}", {"fetch": "Content"})
        content_ref = data.get("Attachment", {}).get("Content")
        if not content_ref:
            msg = f"Attachment {attachment.name} has no content"
            raise NotFoundError(msg)
        content = self._get(content_ref["_ref"], {"fetch": "Content"}).get("AttachmentContent", {})
        try:
            return base64.b64decode(content.get("Content") or "")
        except (binascii.Error, ValueError) as e:
            msg = f"Attachment {attachment.name} has invalid content encoding"
            raise MigrationError(msg) from e

    def list_project_item_ids(self) -> list[str]:
        if not self.project:
            msg = "A Rally project is required to migrate a whole project"
            raise MigrationError(msg)
        ids: list[str] = []
        for type_path in PROJECT_ITEM_TYPES:
            params = {"fetch": "ObjectID", "order": "ObjectID", **self._scope_params(project_only=True)}
            rows = self._query(type_path, params)
            ids.extend(str(row["ObjectID"]) for row in rows)
            logger.debug(f"Found {len(rows)} {type_path} items in project {self.project}")
        return ids

    def item_url(self, record: WorkItemRecord) -> str:
        """Link back to the item in the Rally web UI."""
        type_path = record.item_type.lower().replace("hierarchicalrequirement", "userstory")
        return f"{self.server}/#/detail/{type_path}/{record.source_id}"
