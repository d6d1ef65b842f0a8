"""Tests for batched extraction from a source org."""

import pytest

from org_migration.extractors.base import MAX_BATCH_SIZE
from org_migration.extractors.record_extractor import RecordExtractor, RelationshipInfo

from conftest import connect
from fakes import FakeOrgClient, make_describe, make_field


@pytest.fixture
def widget_client():
    client = FakeOrgClient("source", [make_describe("Widget__c", make_field("Name"), make_field("Color__c"))])
    client.add_records("Widget__c", *[
        {"Id": f"W{i:05d}", "Name": f"Widget {i}", "Color__c": "red" if i % 2 else "blue"}
        for i in range(450)
    ])
    return client


class TestRecordExtractor:
    """Tests for RecordExtractor."""

    async def test_batches_until_short_batch(self, widget_client):
        extractor = RecordExtractor(connect(widget_client), "Widget__c", batch_size=200)

        sizes = [len(batch) async for batch in extractor.stream_batches()]

        assert sizes == [200, 200, 50]
        assert len(widget_client.data_queries("Widget__c")) == 3

    async def test_exact_multiple_ends_on_empty_batch(self, widget_client):
        extractor = RecordExtractor(connect(widget_client), "Widget__c", batch_size=150)

        sizes = [len(batch) async for batch in extractor.stream_batches()]

        assert sizes == [150, 150, 150]
        assert len(widget_client.data_queries("Widget__c")) == 4

    async def test_batches_are_ordered_and_disjoint(self, widget_client):
        extractor = RecordExtractor(connect(widget_client), "Widget__c", batch_size=200)

        ids = [r["Id"] async for batch in extractor.stream_batches() for r in batch]

        assert ids == sorted(ids)
        assert len(set(ids)) == 450

    async def test_record_count_honors_where(self, widget_client):
        extractor = RecordExtractor(connect(widget_client), "Widget__c", where="Color__c = 'red'")

        assert await extractor.get_record_count() == 225
        assert "SELECT COUNT() FROM Widget__c WHERE Color__c = 'red'" in widget_client.queries

    async def test_base_query_gets_where_and_order(self, widget_client):
        extractor = RecordExtractor(
            connect(widget_client),
            "Widget__c",
            base_query="SELECT Id, Name FROM Widget__c WHERE Color__c = 'blue'",
            where="Name != null",
        )

        query = await extractor.build_query()
        result = await extractor.extract_all()

        assert query == "SELECT Id, Name FROM Widget__c WHERE Color__c = 'blue' AND (Name != null) ORDER BY Id"
        assert result.total_extracted == 225
        assert await extractor.get_record_count() == 225

    async def test_describe_fields_exclude_compound_types(self):
        client = FakeOrgClient("source", [make_describe(
            "Account", make_field("Name"), make_field("BillingAddress", "address"), make_field("LastViewedDate", "datetime")
        )])
        extractor = RecordExtractor(connect(client), "Account")

        assert await extractor.get_extractable_fields() == ["Id", "Name"]

    def test_batch_size_is_capped(self, widget_client):
        assert RecordExtractor(connect(widget_client), "Widget__c", batch_size=50000).batch_size == MAX_BATCH_SIZE
        assert RecordExtractor(connect(widget_client), "Widget__c", batch_size=0).batch_size == 200


class TestRelationships:
    """Tests for relationship collection and parent lookups."""

    async def test_collect_relationships(self, source, seeded_source):
        extractor = RecordExtractor(source, "Contact")
        records, relationships = await extractor.extract_with_relationships()

        assert len(records) == 3
        assert len(relationships) == 1
        assert relationships[0].field == "AccountId"
        assert relationships[0].referenced_object == "Account"
        assert len(relationships[0].record_ids) == 2

    async def test_extract_parent_records(self, source, seeded_source):
        acme = seeded_source.records("Account")[0]
        extractor = RecordExtractor(source, "Contact")

        parents = await extractor.extract_parent_records(
            [RelationshipInfo("AccountId", "Account", [acme["Id"], "SMISSING"])],
            {"Account": ["External_Id__c"]},
        )

        assert parents["AccountId"][acme["Id"]]["External_Id__c"] == "ACC-1"
        assert parents["AccountId"][acme["Id"]]["Name"] == "Acme"
        assert extractor.get_extraction_result([]).warnings

    async def test_parent_without_name_field(self, source, seeded_source):
        ada = seeded_source.records("Contact")[0]
        extractor = RecordExtractor(source, "Case")

        parents = await extractor.extract_parent_records([RelationshipInfo("CaseId", "Case", [])])
        assert parents == {"CaseId": {}}

        parents = await extractor.extract_parent_records([RelationshipInfo("ContactId", "Contact", [ada["Id"]])])
        assert ada["Id"] in parents["ContactId"]

    async def test_lookup_target_ids(self, target, target_client):
        target_client.add_records("Account", {"Id": "TACC1", "Name": "Acme", "External_Id__c": "ACC-1"})

        found = await RecordExtractor.lookup_target_ids(target, "Account", "External_Id__c", ["ACC-1", "ACC-9", "ACC-1"])

        assert found == {"ACC-1": "TACC1"}
