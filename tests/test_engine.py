"""End-to-end tests for the migration engine against in-memory orgs."""

import json

import pytest

from org_migration.config import EngineSettings
from org_migration.models.migration import MigrationOptions, MigrationProject, MigrationStatus
from org_migration.models.template import MigrationTemplate
from org_migration.orchestrator import MigrationEngine
from org_migration.services.session_tracker import SessionEvent
from org_migration.templates.registry import TemplateRegistry

from conftest import connect
from fakes import FakeOrgClient, make_describe, make_field

CONTACTS_TEMPLATE = {
    "id": "contacts-with-accounts",
    "name": "Contacts with their accounts",
    "hooks": {"post_migration": ["clear_validation_cache"]},
    "etl_steps": [{
        "step_name": "contacts",
        "step_order": 1,
        "extract_config": {
            "object_api_name": "Contact",
            "soql_query": (
                "SELECT Id, FirstName, LastName, Email, AccountId, Account.{externalIdField}, "
                "{externalIdField} FROM Contact"
            ),
        },
        "load_config": {"target_object": "Contact", "retry_config": {"retry_wait_seconds": 0}},
        "validation_config": {
            "dependency_checks": [{
                "check_name": "account_in_target",
                "source_field": "Account.{externalIdField}",
                "target_object": "Account",
                "target_field": "{externalIdField}",
                "error_message": "Account {sourceValue} missing in target for contact {recordName}",
            }],
        },
    }],
}


def project(*object_types, **kwargs):
    return MigrationProject(
        source_org_id="source-org",
        target_org_id="target-org",
        object_types=tuple(object_types),
        **kwargs,
    )


@pytest.fixture
def engine(source, target, tmp_path, tracker):
    registry = TemplateRegistry()
    registry.register(MigrationTemplate.from_dict(CONTACTS_TEMPLATE))
    return MigrationEngine(
        connections={"source-org": source, "target-org": target},
        settings=EngineSettings(output_dir=str(tmp_path)),
        template_registry=registry,
        session_tracker=tracker,
    )


def by_external_id(client, object_type):
    return {r["External_Id__c"]: r for r in client.records(object_type)}


class TestExecuteMigration:
    """Tests for complete runs."""

    async def test_parents_load_first_and_references_are_remapped(self, engine, seeded_source, target_client):
        result = await engine.execute_migration(project("Case", "Contact", "Account"))

        assert result.success
        assert result.object_order == ["Account", "Contact", "Case"]
        assert result.successful_records == 6
        assert result.failed_records == 0

        accounts = by_external_id(target_client, "Account")
        contacts = by_external_id(target_client, "Contact")
        case = target_client.records("Case")[0]
        assert contacts["CON-1"]["AccountId"] == accounts["ACC-1"]["Id"]
        assert contacts["CON-3"]["AccountId"] == accounts["ACC-2"]["Id"]
        assert case["ContactId"] == contacts["CON-1"]["Id"]
        assert case["AccountId"] == accounts["ACC-1"]["Id"]

    async def test_rerun_reports_existing_records(self, engine, seeded_source, target_client, tracker):
        await engine.execute_migration(project("Account", "Contact"))

        result = await engine.execute_migration(project("Account", "Contact"))

        assert result.success
        assert result.existing_records == 5
        assert len(target_client.records("Account")) == 2
        assert len(target_client.records("Contact")) == 3
        assert result.object_results["Contact"]["already_existed"] == 3

    async def test_sessions_per_object_type(self, engine, seeded_source, tracker):
        result = await engine.execute_migration(project("Account", "Contact"))

        sessions = {s.object_type: s for s in await tracker.list_sessions()}
        assert set(result.sessions) == {"Account", "Contact"}
        assert result.session_id == result.sessions["Account"]
        assert all(s.status == MigrationStatus.COMPLETED for s in sessions.values())
        assert sessions["Contact"].total_records == 3
        assert sessions["Contact"].processed_records == 3

    async def test_selected_records_and_filters(self, engine, seeded_source, target_client):
        ada = seeded_source.records("Contact")[0]
        run = project(
            "Account", "Contact",
            filters={"Account": "Industry = 'Technology'"},
            selected_record_ids={"Contact": [ada["Id"]]},
        )

        result = await engine.execute_migration(run)

        assert result.success
        assert list(by_external_id(target_client, "Account")) == ["ACC-1"]
        assert list(by_external_id(target_client, "Contact")) == ["CON-1"]

    async def test_existing_target_parents_are_found_by_identity(self, engine, seeded_source, target_client):
        acme, globex = target_client.add_records(
            "Account",
            {"Name": "Acme", "External_Id__c": "ACC-1"},
            {"Name": "Globex", "External_Id__c": "ACC-2"},
        )

        result = await engine.execute_migration(project("Contact"))

        contacts = by_external_id(target_client, "Contact")
        assert result.success
        assert contacts["CON-2"]["AccountId"] == acme["Id"]
        assert contacts["CON-3"]["AccountId"] == globex["Id"]

    async def test_required_target_field_without_source_gets_default(self, engine, seeded_source, target_client):
        account = target_client.describes["Account"]
        account.fields["Code__c"] = make_field("Code__c", nillable=False)

        result = await engine.execute_migration(project("Account"))

        assert result.success
        assert result.successful_records == 2
        assert [r["Code__c"] for r in target_client.records("Account")] == ["", ""]

    async def test_dry_run_writes_nothing(self, engine, seeded_source, target_client):
        result = await engine.execute_migration(project("Account", "Contact"), MigrationOptions(dry_run=True))

        assert result.success
        assert result.successful_records == 5
        assert target_client.writes == []

    async def test_bulk_path_for_large_objects(self, engine, source_client, target_client):
        source_client.add_records("Account", *[
            {"Name": f"Account {i}", "External_Id__c": f"ACC-{i}"} for i in range(30)
        ])

        result = await engine.execute_migration(
            project("Account"), MigrationOptions(batch_size=10, bulk_api_threshold=25)
        )

        assert result.success
        assert [size for _, _, size in target_client.bulk_calls] == [10, 10, 10]
        assert len(target_client.records("Account")) == 30

    async def test_report_is_written(self, engine, seeded_source, tmp_path):
        run = project("Account")

        result = await engine.execute_migration(run)

        reports = list((tmp_path / "logs").glob(f"migration_report_{run.id}_*.json"))
        assert len(reports) == 1
        report = json.loads(reports[0].read_text())
        assert report["project"]["id"] == run.id
        assert report["result"]["successful_records"] == result.successful_records


class TestFailures:
    """Tests for failures during a run."""

    async def test_circular_dependency_fails_before_writing(self):
        describes = [
            make_describe("A__c", make_field("B__c", "reference", reference_to=["B__c"])),
            make_describe("B__c", make_field("A__c", "reference", reference_to=["A__c"])),
        ]
        source_client, target_client = FakeOrgClient("s", describes), FakeOrgClient("t", describes)
        engine = MigrationEngine({"s": connect(source_client), "t": connect(target_client)}, write_reports=False)

        result = await engine.execute_migration(MigrationProject("s", "t", ("A__c", "B__c")))

        assert not result.success
        assert result.errors[0]["error_type"] == "CircularDependencyError"
        assert result.sessions == {}
        assert target_client.writes == []

    async def test_missing_identity_field_fails_before_writing(self, seeded_source):
        target_client = FakeOrgClient("target-org", [make_describe("Account", make_field("Name"))])
        engine = MigrationEngine(
            {"source-org": connect(seeded_source), "target-org": connect(target_client)}, write_reports=False
        )

        result = await engine.execute_migration(project("Account"))

        assert not result.success
        assert result.errors[0]["error_type"] == "NoIdentityFieldError"
        assert target_client.writes == []

    async def test_unknown_object_type(self, engine):
        result = await engine.execute_migration(project("Widget__c"))

        assert not result.success
        assert result.errors[0]["error_type"] == "SchemaResolutionError"

    async def test_unknown_template(self, engine):
        result = await engine.execute_migration(project(template_id="missing"))

        assert result.errors[0]["message"] == "Template missing not found"

    async def test_record_failure_stops_run(self, engine, seeded_source, target_client):
        target_client.fail_writes_for("ACC-2", "FIELD_CUSTOM_VALIDATION_EXCEPTION", "Industry not allowed")

        result = await engine.execute_migration(project("Account", "Contact"))

        assert not result.success
        assert result.failed_records == 1
        assert result.object_results["Account"]["status"] == "failed"
        assert "Contact" not in result.sessions
        assert result.object_results["Account"]["top_errors"] == [{"message": "Industry not allowed", "count": 1}]

    async def test_partial_success_continues(self, engine, seeded_source, target_client):
        target_client.fail_writes_for("ACC-2", "FIELD_CUSTOM_VALIDATION_EXCEPTION", "Industry not allowed")

        result = await engine.execute_migration(
            project("Account", "Contact"), MigrationOptions(allow_partial_success=True)
        )

        assert not result.success
        assert result.successful_records == 4
        assert result.failed_records == 1
        assert "AccountId" not in by_external_id(target_client, "Contact")["CON-3"]

    async def test_pre_flight_failures_fail_single_records(self, engine, seeded_source, target_client):
        seeded_source.add_records("Account", {"Name": "x" * 81, "External_Id__c": "ACC-LONG"})

        result = await engine.execute_migration(project("Account"), MigrationOptions(allow_partial_success=True))

        assert result.successful_records == 2
        assert result.failed_records == 1
        assert "ACC-LONG" not in by_external_id(target_client, "Account")

    async def test_blocking_validation_stops_object(self, engine, seeded_source, target_client, tracker):
        result = await engine.execute_migration(project(template_id="contacts-with-accounts"))

        session = await tracker.get_session(result.sessions["Contact"])
        assert not result.success
        assert session.status == MigrationStatus.FAILED
        assert result.errors[0]["error_type"] == "ValidationBlockedError"
        assert result.errors[0]["issues"][0]["message"].startswith("Account ACC-1 missing in target for contact")
        assert target_client.writes == []

    async def test_validation_passes_once_parents_exist(self, engine, seeded_source, target_client):
        result = await engine.execute_migration(project("Account", "Contact", template_id="contacts-with-accounts"))

        assert result.success
        assert len(target_client.records("Contact")) == 3

    async def test_validation_can_be_disabled(self, engine, seeded_source, target_client):
        result = await engine.execute_migration(
            project(template_id="contacts-with-accounts"), MigrationOptions(enable_validation=False)
        )

        assert result.success
        assert len(target_client.records("Contact")) == 3

    async def test_failing_listener_does_not_fail_the_run(self, engine, seeded_source, tracker):
        def broken(event, session, payload):
            if event == SessionEvent.COMPLETED:
                raise RuntimeError("dashboard unavailable")

        tracker.add_listener(broken)

        result = await engine.execute_migration(project("Account", "Contact"))

        assert result.success
        assert result.errors == []
        assert result.object_results["Contact"]["status"] == "completed"


class TestReports:
    """Tests for report writing."""

    @pytest.fixture
    def unwritable_engine(self, source, target, tracker, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        registry = TemplateRegistry()
        registry.register(MigrationTemplate.from_dict({
            "id": "accounts-with-report",
            "name": "Accounts with a report per object",
            "hooks": {"post_object": ["write_report"]},
            "etl_steps": [{
                "step_name": "accounts",
                "step_order": 1,
                "extract_config": {"object_api_name": "Account"},
                "load_config": {"target_object": "Account"},
            }],
        }))
        return MigrationEngine(
            connections={"source-org": source, "target-org": target},
            settings=EngineSettings(output_dir=str(blocker)),
            template_registry=registry,
            session_tracker=tracker,
        )

    async def test_report_failure_is_recorded_not_raised(self, unwritable_engine, seeded_source):
        result = await unwritable_engine.execute_migration(project("Account"))

        assert result.success
        assert len(result.errors) == 1
        assert result.errors[0]["stage"] == "report"
        assert result.errors[0]["message"].startswith("Failed to save migration report")

    async def test_report_hook_failure_keeps_object_completed(self, unwritable_engine, seeded_source, target_client):
        result = await unwritable_engine.execute_migration(project(template_id="accounts-with-report"))

        assert result.success
        assert result.object_results["Account"]["status"] == "completed"
        assert len(target_client.records("Account")) == 2
        assert {e["stage"] for e in result.errors} == {"report"}


class TestCancellation:
    """Tests for cancelling a run."""

    async def test_cancel_between_batches(self, engine, seeded_source, target_client, tracker):
        def cancel_after_first_batch(event, session, payload):
            if event == SessionEvent.PROGRESS and payload.get("current_batch") == 1:
                engine.cancel_migration()

        tracker.add_listener(cancel_after_first_batch)

        result = await engine.execute_migration(project("Account", "Contact"), MigrationOptions(batch_size=1))

        assert result.cancelled
        assert not result.success
        assert result.object_results["Account"]["status"] == "cancelled"
        assert "Contact" not in result.sessions
        assert len(target_client.records("Account")) == 1

    def test_cancel_without_run(self, engine):
        assert not engine.cancel_migration()

    async def test_second_run_is_rejected(self, engine, seeded_source, tracker):
        nested = []

        async def start_another(event, session, payload):
            if event == SessionEvent.CREATED and not nested:
                nested.append(await engine.execute_migration(project("Account")))

        tracker.add_listener(start_another)

        result = await engine.execute_migration(project("Account"))

        assert result.success
        assert nested[0].errors[0]["error_type"] == "MigrationInProgressError"
        assert not engine.is_running


class TestRollbackAndPlan:
    """Tests for rollback and planning."""

    async def test_rollback_removes_created_records(self, engine, seeded_source, target_client):
        await engine.execute_migration(project("Account", "Contact", "Case"))

        deleted = await engine.rollback()

        assert deleted == {"Case": 1, "Contact": 3, "Account": 2}
        assert target_client.records("Account") == []

    async def test_rollback_without_run(self, engine):
        assert await engine.rollback() == {}

    async def test_plan(self, engine, seeded_source, target_client):
        plan = await engine.plan_migration(project("Contact", "Account"))

        assert plan["object_order"] == ["Account", "Contact"]
        assert plan["dependencies"] == {"Contact": ["Account"], "Account": []}
        assert plan["identity"]["Account"]["has_errors"] is False
        assert target_client.writes == []
