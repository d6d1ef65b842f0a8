"""Remote data API client interface."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..exceptions import MigrationError
from ..models.schema import ObjectDescribe


class RemoteApiError(MigrationError):
    """An error returned by an org's data API."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        fields: Optional[List[str]] = None,
        status_code: Optional[int] = None
    ):
        self.message = message
        self.error_code = error_code
        self.fields = fields or []
        self.status_code = status_code
        super().__init__(f"{error_code}: {message}" if error_code else message)


@dataclass
class QueryResult:
    """One page of query results."""
    records: List[Dict[str, Any]] = field(default_factory=list)
    total_size: int = 0
    done: bool = True
    next_records_url: Optional[str] = None


@dataclass
class SaveResult:
    """Outcome of writing one record."""
    success: bool
    id: Optional[str] = None
    created: bool = True
    errors: List[Dict[str, Any]] = field(default_factory=list)  # {message, statusCode, fields}

    @property
    def error_message(self) -> str:
        return "; ".join(e.get("message", "Unknown error") for e in self.errors)

    @property
    def error_codes(self) -> List[str]:
        return [e.get("statusCode") for e in self.errors if e.get("statusCode")]

    @property
    def error_fields(self) -> List[str]:
        fields: List[str] = []
        for error in self.errors:
            fields.extend(error.get("fields", []) or [])
        return fields


class RemoteDataClient(ABC):
    """
    Base class for clients of an org's data API.

    Implementations expose query, describe and write operations as coroutines.
    """

    def __init__(self, org_id: str):
        self.org_id = org_id

    @abstractmethod
    async def query(self, soql: str) -> QueryResult:
        """Run a query and return the first page."""
        pass

    @abstractmethod
    async def query_more(self, next_records_url: str) -> QueryResult:
        """Fetch the next page of a query."""
        pass

    @abstractmethod
    async def describe(self, object_type: str) -> ObjectDescribe:
        """Describe an object type's fields."""
        pass

    @abstractmethod
    async def create(self, object_type: str, record: Dict[str, Any]) -> SaveResult:
        pass

    @abstractmethod
    async def update(self, object_type: str, record_id: str, record: Dict[str, Any]) -> SaveResult:
        pass

    @abstractmethod
    async def upsert(
        self,
        object_type: str,
        external_id_field: str,
        record: Dict[str, Any]
    ) -> SaveResult:
        """Insert or update a record keyed by the value of external_id_field in it."""
        pass

    @abstractmethod
    async def delete(self, object_type: str, record_id: str) -> bool:
        pass

    @abstractmethod
    async def bulk_save(
        self,
        object_type: str,
        records: List[Dict[str, Any]],
        operation: str,
        external_id_field: Optional[str] = None
    ) -> List[SaveResult]:
        """
        Write many records in one call.

        Args:
            object_type: Target object type
            records: Records to write
            operation: insert, update or upsert
            external_id_field: Key field for upsert

        Returns:
            One SaveResult per record, in input order
        """
        pass
