"""REST client for an org's data API."""

import asyncio
import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .base import RemoteDataClient, RemoteApiError, QueryResult, SaveResult
from ..models.schema import ObjectDescribe

logger = logging.getLogger(__name__)

COMPOSITE_CHUNK_SIZE = 200


class RestDataClient(RemoteDataClient):
    """
    Client for the org REST data API.

    Supports:
    - Queries with pagination
    - Object describe
    - Single-record create, update, upsert by external id, delete
    - Multi-record writes through the composite collections endpoint
    - Transport-level retry on 429 and 5xx responses

    Blocking HTTP calls run in a worker thread so callers stay on the event loop.
    """

    def __init__(
        self,
        org_id: str,
        instance_url: str,
        access_token: str,
        api_version: str = "59.0",
        max_retries: int = 3,
        backoff_factor: float = 2.0,
        timeout: float = 60.0,
        session: Optional[requests.Session] = None
    ):
        """
        Initialize the client.

        Args:
            org_id: Identifier of the org this client talks to
            instance_url: Base URL of the org instance
            access_token: OAuth bearer token
            api_version: Data API version
            max_retries: Transport retries for 429/5xx responses
            backoff_factor: Backoff factor between transport retries
            timeout: Request timeout in seconds
            session: Custom requests session
        """
        super().__init__(org_id)
        self.instance_url = instance_url.rstrip("/")
        self.access_token = access_token
        self.api_version = api_version
        self.timeout = timeout
        self._max_retries = max_retries
        self._backoff_factor = backoff_factor
        self._session = session or self._create_session()

    def _create_session(self) -> requests.Session:
        """Create a requests session with retry logic and auth headers."""
        session = requests.Session()

        retries = Retry(
            total=self._max_retries,
            backoff_factor=self._backoff_factor,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=None,
        )

        adapter = HTTPAdapter(max_retries=retries)
        session.mount("https://", adapter)
        session.mount("http://", adapter)

        session.headers["Authorization"] = f"Bearer {self.access_token}"
        session.headers["Content-Type"] = "application/json"

        return session

    @property
    def base_path(self) -> str:
        return f"/services/data/v{self.api_version}"

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        """Send a request and raise RemoteApiError on an error response."""
        url = path if path.startswith("http") else f"{self.instance_url}{path}"
        response = self._session.request(method, url, timeout=self.timeout, **kwargs)

        if response.status_code >= 400:
            raise self._error_from_response(response)

        return response

    def _error_from_response(self, response: requests.Response) -> RemoteApiError:
        """Build an error from the API's [{message, errorCode, fields}] error body."""
        try:
            body = response.json()
        except ValueError:
            return RemoteApiError(response.text or f"HTTP {response.status_code}", status_code=response.status_code)

        if isinstance(body, list) and body:
            first = body[0]
            messages = "; ".join(e.get("message", "") for e in body if isinstance(e, dict))
            return RemoteApiError(
                messages or str(body),
                error_code=first.get("errorCode"),
                fields=first.get("fields", []),
                status_code=response.status_code,
            )

        if isinstance(body, dict):
            return RemoteApiError(
                body.get("message") or body.get("error_description") or str(body),
                error_code=body.get("errorCode") or body.get("error"),
                status_code=response.status_code,
            )

        return RemoteApiError(str(body), status_code=response.status_code)

    @staticmethod
    def _strip_attributes(record: Dict[str, Any]) -> Dict[str, Any]:
        """Drop the attributes envelope from a record and its related records."""
        cleaned = {}
        for key, value in record.items():
            if key == "attributes":
                continue
            if isinstance(value, dict):
                value = RestDataClient._strip_attributes(value)
            cleaned[key] = value
        return cleaned

    def _parse_query(self, data: Dict[str, Any]) -> QueryResult:
        return QueryResult(
            records=[self._strip_attributes(r) for r in data.get("records", [])],
            total_size=data.get("totalSize", 0),
            done=data.get("done", True),
            next_records_url=data.get("nextRecordsUrl"),
        )

    @staticmethod
    def _parse_save(data: Dict[str, Any], created_default: bool = True) -> SaveResult:
        return SaveResult(
            success=data.get("success", True),
            id=data.get("id"),
            created=data.get("created", created_default),
            errors=data.get("errors", []) or [],
        )

    # Blocking implementations

    def _query_sync(self, soql: str) -> QueryResult:
        response = self._request("GET", f"{self.base_path}/query", params={"q": soql})
        return self._parse_query(response.json())

    def _query_more_sync(self, next_records_url: str) -> QueryResult:
        response = self._request("GET", next_records_url)
        return self._parse_query(response.json())

    def _describe_sync(self, object_type: str) -> ObjectDescribe:
        response = self._request("GET", f"{self.base_path}/sobjects/{object_type}/describe")
        return ObjectDescribe.from_dict(response.json())

    def _create_sync(self, object_type: str, record: Dict[str, Any]) -> SaveResult:
        response = self._request("POST", f"{self.base_path}/sobjects/{object_type}/", json=record)
        return self._parse_save(response.json())

    def _update_sync(self, object_type: str, record_id: str, record: Dict[str, Any]) -> SaveResult:
        body = {k: v for k, v in record.items() if k != "Id"}
        self._request("PATCH", f"{self.base_path}/sobjects/{object_type}/{record_id}", json=body)
        return SaveResult(success=True, id=record_id, created=False)

    def _upsert_sync(self, object_type: str, external_id_field: str, record: Dict[str, Any]) -> SaveResult:
        key = record.get(external_id_field)
        if key in (None, ""):
            raise RemoteApiError(
                f"Missing value for external ID field {external_id_field}",
                error_code="MISSING_EXTERNAL_ID",
                fields=[external_id_field],
            )

        body = {k: v for k, v in record.items() if k not in ("Id", external_id_field)}
        path = f"{self.base_path}/sobjects/{object_type}/{external_id_field}/{quote(str(key), safe='')}"
        response = self._request("PATCH", path, json=body)

        # 201 means a new record was created, 200/204 an existing one was updated
        created = response.status_code == 201
        data = response.json() if response.content else {}
        return SaveResult(success=True, id=data.get("id"), created=data.get("created", created))

    def _delete_sync(self, object_type: str, record_id: str) -> bool:
        self._request("DELETE", f"{self.base_path}/sobjects/{object_type}/{record_id}")
        return True

    def _bulk_save_sync(
        self,
        object_type: str,
        records: List[Dict[str, Any]],
        operation: str,
        external_id_field: Optional[str]
    ) -> List[SaveResult]:
        results: List[SaveResult] = []

        for i in range(0, len(records), COMPOSITE_CHUNK_SIZE):
            chunk = records[i:i + COMPOSITE_CHUNK_SIZE]
            payload = {
                "allOrNone": False,
                "records": [{"attributes": {"type": object_type}, **r} for r in chunk],
            }

            if operation == "upsert":
                if not external_id_field:
                    raise RemoteApiError("Upsert requires an external ID field", error_code="INVALID_FIELD")
                path = f"{self.base_path}/composite/sobjects/{object_type}/{external_id_field}"
                response = self._request("PATCH", path, json=payload)
            elif operation == "update":
                response = self._request("PATCH", f"{self.base_path}/composite/sobjects", json=payload)
            else:
                response = self._request("POST", f"{self.base_path}/composite/sobjects", json=payload)

            results.extend(self._parse_save(item, operation != "update") for item in response.json())

        return results

    # Coroutine interface

    async def query(self, soql: str) -> QueryResult:
        return await asyncio.to_thread(self._query_sync, soql)

    async def query_more(self, next_records_url: str) -> QueryResult:
        return await asyncio.to_thread(self._query_more_sync, next_records_url)

    async def describe(self, object_type: str) -> ObjectDescribe:
        return await asyncio.to_thread(self._describe_sync, object_type)

    async def create(self, object_type: str, record: Dict[str, Any]) -> SaveResult:
        return await asyncio.to_thread(self._create_sync, object_type, record)

    async def update(self, object_type: str, record_id: str, record: Dict[str, Any]) -> SaveResult:
        return await asyncio.to_thread(self._update_sync, object_type, record_id, record)

    async def upsert(self, object_type: str, external_id_field: str, record: Dict[str, Any]) -> SaveResult:
        return await asyncio.to_thread(self._upsert_sync, object_type, external_id_field, record)

    async def delete(self, object_type: str, record_id: str) -> bool:
        return await asyncio.to_thread(self._delete_sync, object_type, record_id)

    async def bulk_save(
        self,
        object_type: str,
        records: List[Dict[str, Any]],
        operation: str,
        external_id_field: Optional[str] = None
    ) -> List[SaveResult]:
        return await asyncio.to_thread(
            self._bulk_save_sync, object_type, records, operation, external_id_field
        )
