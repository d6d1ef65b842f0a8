"""Query-based extractor for org records."""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .base import BaseExtractor
from ..clients.connection import OrgConnection
from ..models.migration import DEFAULT_BATCH_SIZE
from ..models.schema import COMPOUND_TYPES
from ..services.soql import add_where, build_select, chunked, format_id_list, where_clause

logger = logging.getLogger(__name__)

# Fields that describe lists but queries reject
NON_QUERYABLE_FIELDS = frozenset(["LastViewedDate", "LastReferencedDate"])


@dataclass
class RelationshipInfo:
    """The parent ids a set of records references through one field."""
    field: str
    referenced_object: str
    record_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "field": self.field,
            "referenced_object": self.referenced_object,
            "record_ids": self.record_ids,
        }


class RecordExtractor(BaseExtractor):
    """
    Extractor for one object type of a source org.

    Supports:
    - Template queries or a query built from the object's describe
    - Offset paging in bounded batches
    - Record counts ahead of extraction
    - Relationship collection and parent record resolution
    """

    def __init__(
        self,
        connection: OrgConnection,
        object_type: str,
        base_query: Optional[str] = None,
        fields: Optional[List[str]] = None,
        where: Optional[str] = None,
        order_by: Optional[str] = None,
        batch_size: int = DEFAULT_BATCH_SIZE
    ):
        """
        Initialize the extractor.

        Args:
            connection: Source org connection
            object_type: Object type to extract
            base_query: Query to page through; built from describe when omitted
            fields: Fields to select when no base query is given
            where: Extra condition ANDed into the query
            order_by: Ordering used for paging (Id when nothing else is given)
            batch_size: Records per batch
        """
        super().__init__(object_type, batch_size)
        self.connection = connection
        self.base_query = base_query
        self.fields = fields
        self.where = where
        self.order_by = order_by
        self._query: Optional[str] = None

    async def get_extractable_fields(self) -> List[str]:
        """Get queryable, non-compound fields of the object type, Id first."""
        describe = await self.connection.describe(self.object_type)
        names = [
            f.name for f in describe.fields.values()
            if f.type not in COMPOUND_TYPES and f.name not in NON_QUERYABLE_FIELDS and f.name != "Id"
        ]
        return ["Id"] + names

    async def build_query(self) -> str:
        """Get the query batches are paged over, without LIMIT / OFFSET."""
        if self._query is not None:
            return self._query

        if self.base_query:
            soql = add_where(self.base_query, self.where) if self.where else " ".join(self.base_query.split())
            if " ORDER BY " not in soql.upper():
                soql += f" ORDER BY {self.order_by or 'Id'}"
        else:
            fields = self.fields or await self.get_extractable_fields()
            if "Id" not in fields:
                fields = ["Id"] + list(fields)
            soql = build_select(self.object_type, fields, where=self.where, order_by=self.order_by or "Id")

        self._query = soql
        return soql

    async def get_record_count(self) -> int:
        soql = await self.build_query()
        count = await self.connection.count(self.object_type, where_clause(soql))
        logger.info(f"{self.object_type}: {count} records to extract")
        return count

    async def extract_batch(self, offset: int = 0, limit: int = DEFAULT_BATCH_SIZE) -> List[Dict[str, Any]]:
        soql = f"{await self.build_query()} LIMIT {limit}"
        if offset:
            soql += f" OFFSET {offset}"
        records = await self.connection.query_all(soql)
        logger.debug(f"{self.object_type}: fetched {len(records)} records at offset {offset}")
        return records

    async def collect_relationships(self, records: List[Dict[str, Any]]) -> List[RelationshipInfo]:
        """Collect the parent ids records reference, one entry per reference field present."""
        describe = await self.connection.describe(self.object_type)
        relationships = []

        for ref_field in describe.reference_fields():
            if not ref_field.reference_to:
                continue
            ids = []
            seen = set()
            for record in records:
                value = record.get(ref_field.name)
                if value and value not in seen:
                    seen.add(value)
                    ids.append(value)
            if ids:
                relationships.append(RelationshipInfo(
                    field=ref_field.name,
                    referenced_object=ref_field.reference_to[0],
                    record_ids=ids,
                ))

        return relationships

    async def extract_with_relationships(self) -> Tuple[List[Dict[str, Any]], List[RelationshipInfo]]:
        """Extract every record along with the relationships they carry."""
        result = await self.extract_all()
        relationships = await self.collect_relationships(result.records)
        logger.info(
            f"{self.object_type}: {len(result.records)} records, "
            f"{len(relationships)} relationship fields"
        )
        return result.records, relationships

    async def extract_parent_records(
        self,
        relationships: List[RelationshipInfo],
        extra_fields: Optional[Dict[str, List[str]]] = None
    ) -> Dict[str, Dict[str, Dict[str, Any]]]:
        """
        Fetch the parent records of each relationship.

        Args:
            relationships: Relationships to resolve
            extra_fields: Referenced object -> fields to select beside Id and Name

        Returns:
            Relationship field -> {parent id -> parent record}
        """
        parents: Dict[str, Dict[str, Dict[str, Any]]] = {}

        for relationship in relationships:
            parent_describe = await self.connection.describe(relationship.referenced_object)
            fields = ["Id", "Name"] if parent_describe.has_field("Name") else ["Id"]
            for extra in (extra_fields or {}).get(relationship.referenced_object, []):
                if extra not in fields:
                    fields.append(extra)

            found: Dict[str, Dict[str, Any]] = {}
            for chunk in chunked(relationship.record_ids):
                soql = (
                    f"SELECT {', '.join(fields)} FROM {relationship.referenced_object} "
                    f"WHERE Id IN ({format_id_list(chunk)})"
                )
                for record in await self.connection.query_all(soql):
                    found[record["Id"]] = record

            missing = len(relationship.record_ids) - len(found)
            if missing:
                self.add_warning(
                    f"{missing} {relationship.referenced_object} records referenced by "
                    f"{self.object_type}.{relationship.field} were not found"
                )
            parents[relationship.field] = found

        return parents

    @staticmethod
    async def lookup_target_ids(
        target: OrgConnection,
        object_type: str,
        identity_field: str,
        identity_values: List[str]
    ) -> Dict[str, str]:
        """
        Find target records by identity value.

        Returns:
            Identity value -> target record id, for the values found
        """
        found: Dict[str, str] = {}
        values = [v for v in dict.fromkeys(identity_values) if v]
        for chunk in chunked(values):
            soql = (
                f"SELECT Id, {identity_field} FROM {object_type} "
                f"WHERE {identity_field} IN ({format_id_list(chunk)})"
            )
            for record in await target.query_all(soql):
                value = record.get(identity_field)
                if value is not None:
                    found[str(value)] = record["Id"]
        return found
