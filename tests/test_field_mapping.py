"""Tests for field matching, mapping generation and record transformation."""

from datetime import date

import pytest

from org_migration.models.schema import TransformationKind
from org_migration.models.template import (
    ETLStep,
    ExtractConfig,
    LoadConfig,
    LookupMapping,
    RecordTypeMapping,
    TemplateFieldMapping,
    TransformConfig,
)
from org_migration.services.field_mapping import (
    FieldMappingEngine,
    apply_formula,
    coerce_value,
    default_value_for,
    find_matching_field,
    strip_namespace,
    types_compatible,
)

from conftest import connect
from fakes import FakeOrgClient, make_describe, make_field


class TestFindMatchingField:
    """Tests for name matching levels."""

    def test_exact_match(self):
        assert find_matching_field("Amount__c", ["amount__c", "Amount__c"]) == "Amount__c"

    def test_case_insensitive(self):
        assert find_matching_field("Amount__c", ["AMOUNT__C"]) == "AMOUNT__C"

    def test_underscores_ignored(self):
        assert find_matching_field("Billing_City__c", ["BillingCity__c"]) == "BillingCity__c"

    def test_namespace_stripped_either_way(self):
        assert find_matching_field("ns__Region__c", ["Region__c"]) == "Region__c"
        assert find_matching_field("Region__c", ["ns__Region__c"]) == "ns__Region__c"

    def test_no_match(self):
        assert find_matching_field("Region__c", ["Territory__c"]) is None

    def test_accept_predicate_filters_candidates(self):
        assert find_matching_field("Name", ["Name", "name"], accept=lambda c: c != "Name") == "name"

    def test_strip_namespace(self):
        assert strip_namespace("tc9_edc__External_ID__c") == "External_ID__c"
        assert strip_namespace("Plain__c") == "Plain__c"


class TestTypeHelpers:
    """Tests for type compatibility, defaults and value coercion."""

    def test_types_compatible_is_symmetric(self):
        assert types_compatible("string", "email")
        assert types_compatible("email", "string")
        assert types_compatible("double", "currency")
        assert not types_compatible("boolean", "date")

    def test_default_values(self):
        assert default_value_for(make_field("Name")) == ""
        assert default_value_for(make_field("Active__c", "boolean")) is False
        assert default_value_for(make_field("Amount__c", "currency")) == 0
        assert default_value_for(make_field("Email", "email")) == "noreply@example.com"
        assert default_value_for(make_field("Start__c", "date")) == date.today().isoformat()
        assert default_value_for(make_field("Status__c", "picklist", default_value="New")) == "New"

    def test_date_to_datetime(self):
        assert coerce_value("2024-03-01", "date", "datetime").startswith("2024-03-01T00:00:00")

    def test_datetime_to_date(self):
        assert coerce_value("2024-03-01T10:15:00Z", "datetime", "date") == "2024-03-01"

    def test_formulas(self):
        assert apply_formula("Acme", {"type": "uppercase"}) == "ACME"
        assert apply_formula("  x ", {"type": "trim"}) == "x"
        assert apply_formula("yes", {"type": "boolean"}) is True
        assert apply_formula("3.0", {"type": "number"}) == 3
        assert apply_formula("Hot", {"type": "picklist", "mapping": {"Hot": "High"}}) == "High"
        assert apply_formula(None, {"type": "uppercase"}) is None


class TestGenerateMapping:
    """Tests for automatic mapping between describes."""

    def test_exact_match_is_not_taken_by_looser_match(self):
        source = make_describe("Obj", make_field("region__c"), make_field("Region__c"))
        target = make_describe("Obj", make_field("Region__c"), make_field("REGION__C"))

        mapping = FieldMappingEngine().generate_mapping(source, target)

        assert mapping.field_mappings["Region__c"].target_field == "Region__c"
        assert mapping.field_mappings["region__c"].target_field == "REGION__C"

    def test_system_fields_are_skipped(self):
        source = make_describe("Obj", make_field("CreatedDate", "datetime"), make_field("Name"))
        target = make_describe("Obj", make_field("CreatedDate", "datetime"), make_field("Name"))

        mapping = FieldMappingEngine().generate_mapping(source, target)

        assert set(mapping.field_mappings) == {"Name"}

    def test_managed_prefix_maps_both_ways(self):
        managed = make_describe("Obj", make_field("tc9_pr__Rate__c", "double"))
        unmanaged = make_describe("Obj", make_field("Rate__c", "double"))
        engine = FieldMappingEngine()

        assert engine.generate_mapping(managed, unmanaged).field_mappings["tc9_pr__Rate__c"].target_field == "Rate__c"
        assert engine.generate_mapping(unmanaged, managed).field_mappings["Rate__c"].target_field == "tc9_pr__Rate__c"

    def test_transform_omits_system_fields(self):
        fields = [make_field("CreatedDate", "datetime"), make_field("SystemModstamp", "datetime"), make_field("Score__c", "double")]
        engine = FieldMappingEngine()
        mapping = engine.generate_mapping(make_describe("Obj", *fields), make_describe("Obj", *fields))

        transformed = engine.transform_record(
            {"Id": "S1", "CreatedDate": "2024-01-01T00:00:00Z", "SystemModstamp": "2024-01-02T00:00:00Z", "Score__c": 7},
            mapping,
            {},
        )

        assert transformed == {"Score__c": 7}

    def test_references_become_lookups(self):
        mapping = FieldMappingEngine().generate_mapping(
            make_describe("Contact", make_field("AccountId", "reference", reference_to=["Account"])),
            make_describe("Contact", make_field("AccountId", "reference", reference_to=["Account"])),
        )

        assert mapping.field_mappings["AccountId"].transformation_kind == TransformationKind.LOOKUP
        assert mapping.relationships == {"AccountId": "AccountId"}

    def test_incompatible_and_read_only_targets_are_skipped(self):
        source = make_describe("Obj", make_field("Count__c", "boolean"), make_field("Total__c", "double"))
        target = make_describe("Obj", make_field("Count__c", "date"), make_field("Total__c", "double", createable=False))

        mapping = FieldMappingEngine().generate_mapping(source, target)

        assert mapping.field_mappings == {}

    def test_unfed_required_target_gets_constant(self):
        source = make_describe("Obj", make_field("Name"))
        target = make_describe("Obj", make_field("Name"), make_field("Status__c", "picklist", nillable=False, default_value="New"))

        mapping = FieldMappingEngine().generate_mapping(source, target)

        constant = mapping.constants["Status__c"]
        assert constant.transformation_kind == TransformationKind.CONSTANT
        assert constant.default_value == "New"

    def test_default_for_required_target_does_not_clash_with_source_name(self):
        source = make_describe("Obj", make_field("Code__c", "double"))
        target = make_describe("Obj", make_field("Code__c", nillable=False), make_field("Codec", "double"))
        engine = FieldMappingEngine()

        mapping = engine.generate_mapping(source, target)
        transformed = engine.transform_record({"Id": "S1", "Code__c": 3.0}, mapping, {})

        assert mapping.field_mappings["Code__c"].target_field == "Codec"
        assert transformed == {"Codec": 3.0, "Code__c": ""}

    async def test_get_mapping_is_cached_per_run(self):
        client = FakeOrgClient("org", [make_describe("Account", make_field("Name"))])
        org = connect(client)
        engine = FieldMappingEngine()

        first = await engine.get_mapping("Account", org, org)
        second = await engine.get_mapping("Account", org, org)

        assert first is second
        engine.clear_cache()
        assert await engine.get_mapping("Account", org, org) is not first


class TestTransformRecord:
    """Tests for applying a mapping to a record."""

    @pytest.fixture
    def mapping(self):
        source = make_describe(
            "Contact",
            make_field("LastName", nillable=False),
            make_field("Birthdate", "date"),
            make_field("AccountId", "reference", reference_to=["Account"]),
            make_field("Title"),
        )
        target = make_describe(
            "Contact",
            make_field("LastName", nillable=False),
            make_field("Birthdate", "datetime"),
            make_field("AccountId", "reference", reference_to=["Account"]),
            make_field("Title"),
        )
        return FieldMappingEngine().generate_mapping(source, target)

    def test_references_use_the_remap(self, mapping):
        record = {"Id": "S1", "LastName": "Lovelace", "AccountId": "SRC-ACC"}
        transformed = FieldMappingEngine().transform_record(record, mapping, {"SRC-ACC": "TGT-ACC"})
        assert transformed["AccountId"] == "TGT-ACC"

    def test_unmapped_reference_is_dropped(self, mapping):
        record = {"Id": "S1", "LastName": "Lovelace", "AccountId": "SRC-ACC"}
        transformed = FieldMappingEngine().transform_record(record, mapping, {})
        assert "AccountId" not in transformed

    def test_nulls_are_dropped_and_required_get_defaults(self, mapping):
        transformed = FieldMappingEngine().transform_record({"Id": "S1", "Title": None}, mapping, {})
        assert "Title" not in transformed
        assert transformed["LastName"] == ""

    def test_values_are_coerced(self, mapping):
        record = {"Id": "S1", "LastName": "Lovelace", "Birthdate": "1815-12-10"}
        transformed = FieldMappingEngine().transform_record(record, mapping, {})
        assert transformed["Birthdate"].startswith("1815-12-10T00:00:00")
        assert "Id" not in transformed


class TestTemplateMappings:
    """Tests for template driven mappings, record types and lookups."""

    def test_mapping_from_template_resolves_placeholders(self):
        step = ETLStep(
            step_name="accounts",
            step_order=1,
            extract_config=ExtractConfig(object_api_name="Account"),
            load_config=LoadConfig(target_object="Account"),
            transform_config=TransformConfig(field_mappings=[
                TemplateFieldMapping("Name", "Name", is_required=True),
                TemplateFieldMapping("{externalIdField}", "{externalIdField}"),
                TemplateFieldMapping("Industry", "Industry", transformation_type="uppercase"),
            ]),
        )
        source = make_describe("Account", make_field("Name"), make_field("Industry"), make_field("Legacy__c"))
        target = make_describe("Account", make_field("Name"), make_field("Industry"), make_field("External_Id__c"))

        mapping = FieldMappingEngine().mapping_from_template(step, source, target, "Legacy__c", "External_Id__c")

        assert mapping.field_mappings["Legacy__c"].target_field == "External_Id__c"
        assert mapping.field_mappings["Industry"].transformation_kind == TransformationKind.FORMULA
        assert mapping.field_mappings["Name"].required

    def test_record_type_mapping(self):
        rtm = RecordTypeMapping("RecordTypeId", "RecordTypeId", {"SRC-RT-1": "TGT-RT-1"})

        mapped = FieldMappingEngine.apply_record_type_mapping({"RecordTypeId": "SRC-RT-1"}, {"RecordTypeId": "SRC-RT-1"}, rtm)
        unmapped = FieldMappingEngine.apply_record_type_mapping({"RecordTypeId": "SRC-RT-9"}, {"RecordTypeId": "SRC-RT-9"}, rtm)

        assert mapped["RecordTypeId"] == "TGT-RT-1"
        assert "RecordTypeId" not in unmapped

    async def test_lookup_mappings_query_the_target_once(self):
        client = FakeOrgClient("target", [make_describe("User", make_field("Username"))])
        client.add_records("User", {"Id": "U-1", "Username": "ada@target.test"})
        target = connect(client)
        engine = FieldMappingEngine()
        lookup = LookupMapping(
            source_field="Owner_Username__c",
            target_field="OwnerId",
            lookup_object="User",
            lookup_key_field="Username",
            fallback_value="U-DEFAULT",
        )
        sources = [{"Owner_Username__c": "ada@target.test"}, {"Owner_Username__c": "nobody@target.test"}]
        transformed = [{}, {}]

        await engine.apply_lookup_mappings(sources, transformed, [lookup], target)
        await engine.apply_lookup_mappings(sources, [{}, {}], [lookup], target)

        assert transformed == [{"OwnerId": "U-1"}, {"OwnerId": "U-DEFAULT"}]
        assert len(client.queries) == 1
