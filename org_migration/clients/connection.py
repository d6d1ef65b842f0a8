"""Rate-limited connection to one org."""

import logging
from typing import Any, Dict, List, Optional

from .base import RemoteDataClient, QueryResult, SaveResult
from ..models.schema import ObjectDescribe
from .rate_limit import RateLimitGate

logger = logging.getLogger(__name__)


class OrgConnection:
    """
    An org's data client behind that org's rate-limit gate.

    Every remote call made by the engine goes through one of these, so the
    request rate of each org is bounded independently.
    """

    def __init__(self, client: RemoteDataClient, gate: Optional[RateLimitGate] = None):
        self.client = client
        self.gate = gate or RateLimitGate()
        self._describe_cache: Dict[str, ObjectDescribe] = {}

    @property
    def org_id(self) -> str:
        return self.client.org_id

    async def query(self, soql: str) -> QueryResult:
        logger.debug(f"[{self.org_id}] {soql}")
        async with self.gate:
            return await self.client.query(soql)

    async def query_all(self, soql: str) -> List[Dict[str, Any]]:
        """Run a query and follow pagination, one gated call per page."""
        result = await self.query(soql)
        records = list(result.records)
        while not result.done and result.next_records_url:
            async with self.gate:
                result = await self.client.query_more(result.next_records_url)
            records.extend(result.records)
        return records

    async def count(self, object_type: str, where: Optional[str] = None) -> int:
        soql = f"SELECT COUNT() FROM {object_type}"
        if where:
            soql += f" WHERE {where}"
        result = await self.query(soql)
        return result.total_size

    async def describe(self, object_type: str) -> ObjectDescribe:
        """Describe an object type, cached for the life of the connection."""
        if object_type not in self._describe_cache:
            async with self.gate:
                self._describe_cache[object_type] = await self.client.describe(object_type)
        return self._describe_cache[object_type]

    async def create(self, object_type: str, record: Dict[str, Any]) -> SaveResult:
        async with self.gate:
            return await self.client.create(object_type, record)

    async def update(self, object_type: str, record_id: str, record: Dict[str, Any]) -> SaveResult:
        async with self.gate:
            return await self.client.update(object_type, record_id, record)

    async def upsert(self, object_type: str, external_id_field: str, record: Dict[str, Any]) -> SaveResult:
        async with self.gate:
            return await self.client.upsert(object_type, external_id_field, record)

    async def delete(self, object_type: str, record_id: str) -> bool:
        async with self.gate:
            return await self.client.delete(object_type, record_id)

    async def bulk_save(
        self,
        object_type: str,
        records: List[Dict[str, Any]],
        operation: str,
        external_id_field: Optional[str] = None
    ) -> List[SaveResult]:
        async with self.gate:
            return await self.client.bulk_save(object_type, records, operation, external_id_field)
