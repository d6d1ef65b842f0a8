"""Tests for pre-flight validation of source batches."""

import pytest

from org_migration.models.template import (
    DataIntegrityCheck,
    DependencyCheck,
    ETLStep,
    ExpectedResult,
    ExtractConfig,
    LoadConfig,
    PicklistValidationCheck,
    PreValidationQuery,
    Severity,
    ValidationConfig,
)
from org_migration.services.identity import ExternalIdResolver
from org_migration.services.validation import ValidationEngine, default_cache_key, format_message

from conftest import account_describe


def step_with(**validation):
    return ETLStep(
        step_name="contacts",
        step_order=2,
        extract_config=ExtractConfig(object_api_name="Contact"),
        load_config=LoadConfig(target_object="Contact"),
        validation_config=ValidationConfig(**validation),
    )


def contact(record_id, account_ext, name="Ada"):
    return {"Id": record_id, "Name": name, "Account": {"External_Id__c": account_ext} if account_ext else None}


ACCOUNT_EXISTS = DependencyCheck(
    check_name="account_exists",
    source_field="Account.{externalIdField}",
    target_object="Account",
    target_field="{externalIdField}",
)


@pytest.fixture
def identity():
    return ExternalIdResolver.manual_config("External_Id__c")


@pytest.fixture
def engine(source, target, target_client):
    target_client.add_records("Account", {"Name": "Acme", "External_Id__c": "ACC-1"})
    return ValidationEngine(source, target)


class TestDependencyChecks:
    """Tests for referenced records existing in the target."""

    async def test_dynamic_lookup(self, engine, target_client, identity):
        records = [contact("S1", "ACC-1"), contact("S2", "ACC-9", "Bob")]

        result = await engine.validate_batch(step_with(dependency_checks=[ACCOUNT_EXISTS]), records, identity)

        assert not result.is_valid
        assert len(result.errors) == 1
        assert result.errors[0].record_id == "S2"
        assert result.errors[0].message == "Referenced record ACC-9 not found in target for Bob"
        assert any("WHERE External_Id__c IN" in q for q in target_client.queries)

    async def test_values_are_looked_up_once(self, engine, target_client, identity):
        step = step_with(dependency_checks=[ACCOUNT_EXISTS])

        await engine.validate_batch(step, [contact("S1", "ACC-1")], identity)
        queries = len(target_client.queries)
        await engine.validate_batch(step, [contact("S2", "ACC-1")], identity)

        assert len(target_client.queries) == queries

    async def test_uses_pre_validation_cache(self, engine, target_client, identity):
        step = step_with(
            pre_validation_queries=[PreValidationQuery(
                query_name="target_accounts",
                soql_query="SELECT Id, {externalIdField} FROM Account",
                cache_key=default_cache_key("Account"),
            )],
            dependency_checks=[ACCOUNT_EXISTS],
        )

        result = await engine.validate_batch(step, [contact("S1", "ACC-1"), contact("S2", "ACC-2")], identity)
        await engine.validate_batch(step, [contact("S3", "ACC-1")], identity)

        assert [e.record_id for e in result.errors] == ["S2"]
        assert target_client.queries == ["SELECT Id, External_Id__c FROM Account"]
        assert engine.cached_rows("target_account")[0]["External_Id__c"] == "ACC-1"

    async def test_failed_pre_validation_query_blocks(self, engine, target_client, identity):
        target_client.fail_queries_containing("FROM Account", "Query timed out")
        step = step_with(pre_validation_queries=[PreValidationQuery("target_accounts", "SELECT Id FROM Account", "k")])

        result = await engine.validate_batch(step, [contact("S1", "ACC-1")], identity)

        assert not result.is_valid
        assert "Query timed out" in result.errors[0].message

    async def test_required_missing_value_is_error(self, engine, identity):
        result = await engine.validate_batch(step_with(dependency_checks=[ACCOUNT_EXISTS]), [contact("S1", None)], identity)

        assert result.errors[0].message == "Referenced record null not found in target for Ada"

    async def test_optional_check_warns(self, engine, identity):
        check = DependencyCheck(
            check_name="account_exists",
            source_field="Account.{externalIdField}",
            target_object="Account",
            target_field="{externalIdField}",
            is_required=False,
            warning_message="Account {sourceValue} missing; {recordName} loads without it",
        )

        result = await engine.validate_batch(
            step_with(dependency_checks=[check]), [contact("S1", "ACC-9"), contact("S2", None)], identity
        )

        assert result.is_valid
        assert [w.message for w in result.warnings] == ["Account ACC-9 missing; Ada loads without it"]
        assert result.summary.warning_checks == 1

    async def test_disabled_checks_do_not_run(self, engine, target_client, identity):
        step = step_with(dependency_checks=[ACCOUNT_EXISTS], enable_dependency_checks=False)

        result = await engine.validate_batch(step, [contact("S1", "ACC-9")], identity)

        assert result.is_valid
        assert target_client.queries == []


class TestIntegrityChecks:
    """Tests for query-shaped assertions on the source org."""

    async def test_empty_expectation(self, engine, seeded_source):
        orphan = seeded_source.add_records("Contact", {"LastName": "Orphan"})[0]
        check = DataIntegrityCheck(
            check_name="contacts_have_accounts",
            validation_query="SELECT Id FROM Contact WHERE Id IN ({selectedRecordIds}) AND AccountId = null",
            error_message="Selected contacts without an account",
        )
        ids = [r["Id"] for r in seeded_source.records("Contact")]

        result = await engine.validate_batch(step_with(data_integrity_checks=[check]), [], selected_ids=ids)

        assert not result.is_valid
        assert result.errors[0].message == "Selected contacts without an account"
        assert orphan["Id"] in seeded_source.queries[-1]

    async def test_non_empty_expectation(self, engine, seeded_source):
        check = DataIntegrityCheck(
            check_name="has_contacts",
            validation_query="SELECT Id FROM Contact",
            expected_result=ExpectedResult.NON_EMPTY,
        )

        result = await engine.validate_batch(step_with(data_integrity_checks=[check]), [])

        assert result.is_valid
        assert result.summary.passed_checks == 1

    async def test_warning_severity(self, engine, seeded_source):
        check = DataIntegrityCheck(
            check_name="no_cases",
            validation_query="SELECT Id FROM Case",
            severity=Severity.WARNING,
        )

        result = await engine.validate_batch(step_with(data_integrity_checks=[check]), [])

        assert result.is_valid
        assert result.warnings[0].message == "Integrity check no_cases failed (1 rows)"

    async def test_query_failure_is_error(self, engine, source_client):
        source_client.fail_queries_containing("Broken__c", "No such column")
        check = DataIntegrityCheck(check_name="broken", validation_query="SELECT Broken__c FROM Contact")

        result = await engine.validate_batch(step_with(data_integrity_checks=[check]), [])

        assert not result.is_valid
        assert result.errors[0].message.startswith("Failed to execute integrity check")

    async def test_batch_independent_check_runs_once_per_step(self, engine, source_client):
        check = DataIntegrityCheck(
            check_name="has_contacts",
            validation_query="SELECT Id FROM Contact",
            expected_result=ExpectedResult.NON_EMPTY,
        )
        step = step_with(data_integrity_checks=[check])

        await engine.validate_batch(step, [])
        await engine.validate_batch(step, [])

        assert source_client.queries == ["SELECT Id FROM Contact"]


class TestPicklistChecks:
    """Tests for picklist values against the target."""

    async def test_against_target_describe(self, engine):
        check = PicklistValidationCheck(check_name="industry", field_name="Industry", object_name="Account")
        records = [
            {"Id": "S1", "Name": "Acme", "Industry": "Technology"},
            {"Id": "S2", "Name": "Initech", "Industry": "Software"},
            {"Id": "S3", "Name": "Hooli", "Industry": None},
        ]

        result = await engine.validate_batch(step_with(picklist_validation_checks=[check]), records)

        assert result.is_valid
        assert [w.message for w in result.warnings] == ["Invalid picklist value Software on Initech"]

    async def test_allowed_values_and_multi_select(self, engine):
        check = PicklistValidationCheck(
            check_name="tags",
            field_name="Tags__c",
            object_name="Account",
            validate_against_target=False,
            allowed_values=["A", "B"],
            severity=Severity.ERROR,
        )

        result = await engine.validate_batch(
            step_with(picklist_validation_checks=[check]), [{"Id": "S1", "Name": "Acme", "Tags__c": "A;C"}]
        )

        assert not result.is_valid
        assert len(result.errors) == 1

    async def test_missing_target_field(self, engine):
        check = PicklistValidationCheck(check_name="rating", field_name="Rating", object_name="Account")

        result = await engine.validate_batch(step_with(picklist_validation_checks=[check]), [{"Id": "S1"}])

        assert "not found in target" in result.warnings[0].message


class TestRecordChecks:
    """Tests for record level checks on transformed records."""

    def test_required_length_and_duplicates(self, engine):
        sources = [{"Id": "S1", "Name": "Acme"}, {"Id": "S2", "Name": "Long"}, {"Id": "S3", "Name": "Dup"}]
        transformed = [
            {"Name": "Acme", "External_Id__c": "ACC-1"},
            {"Name": "x" * 81, "External_Id__c": "ACC-2"},
            {"External_Id__c": "ACC-1"},
        ]

        issues = engine.check_records(sources, transformed, account_describe(), "External_Id__c")

        assert [(i.check_name, i.record_id) for i in issues] == [
            ("max_length", "S2"),
            ("required_fields", "S3"),
            ("duplicate_identity", "S3"),
        ]
        assert "also on S1" in issues[-1].message

    def test_type_default_counts_as_populated(self, engine):
        issues = engine.check_records([{"Id": "S1"}], [{"Name": ""}], account_describe(), "External_Id__c")
        assert issues == []

    def test_clean_records(self, engine):
        issues = engine.check_records([{"Id": "S1"}], [{"Name": "Acme"}], account_describe(), "External_Id__c")
        assert issues == []


class TestSummary:
    """Tests for check counting."""

    async def test_summary_counts_checks(self, engine, seeded_source, identity):
        step = step_with(
            dependency_checks=[ACCOUNT_EXISTS],
            data_integrity_checks=[DataIntegrityCheck(
                check_name="has_contacts",
                validation_query="SELECT Id FROM Contact",
                expected_result=ExpectedResult.NON_EMPTY,
            )],
            picklist_validation_checks=[PicklistValidationCheck("industry", "Industry", "Account")],
        )
        records = [contact("S1", "ACC-8"), contact("S2", "ACC-9")]
        records[0]["Industry"] = "Mining"

        result = await engine.validate_batch(step, records, identity)

        assert result.summary.to_dict() == {
            "total_checks": 3,
            "passed_checks": 1,
            "failed_checks": 1,
            "warning_checks": 1,
        }
        assert len(result.errors) == 2

    def test_format_message(self):
        assert format_message("{sourceValue} on {recordName}", "X", {"Id": "001"}) == "X on 001"
