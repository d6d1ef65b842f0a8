"""Tests for engine settings and helpers for query strings."""

import pytest

from org_migration.clients.rest_client import RestDataClient
from org_migration.config import EngineSettings, org_env_key
from org_migration.exceptions import ConfigurationError
from org_migration.services.soql import add_where, build_select, chunked, format_id_list, where_clause


class TestEngineSettings:
    """Tests for EngineSettings."""

    def test_defaults_without_environment(self):
        settings = EngineSettings.from_env({})

        assert settings.batch_size == 200
        assert settings.bulk_api_threshold == 1000
        assert settings.templates_dir is None

    def test_environment_overrides(self):
        settings = EngineSettings.from_env({
            "ORG_MIGRATION_BATCH_SIZE": "50",
            "ORG_MIGRATION_REQUESTS_PER_SECOND": "2.5",
            "ORG_MIGRATION_TEMPLATES_DIR": "/templates",
        })

        assert settings.batch_size == 50
        assert settings.requests_per_second == 2.5
        assert settings.templates_dir == "/templates"
        assert settings.default_options().batch_size == 50

    def test_invalid_number(self):
        with pytest.raises(ConfigurationError):
            EngineSettings.from_env({"ORG_MIGRATION_BATCH_SIZE": "many"})

    def test_config_file_sections(self):
        settings = EngineSettings.from_dict(
            {
                "settings": {"output_dir": "/tmp/out", "bulk_api_threshold": 500},
                "orgs": {"sandbox": {"instance_url": "https://sandbox.example.com", "access_token": "secret"}},
            },
            environ={},
        )

        assert settings.output_dir == "/tmp/out"
        assert settings.bulk_api_threshold == 500
        assert settings.credentials_for("sandbox").instance_url == "https://sandbox.example.com"
        assert settings.to_dict()["orgs"]["sandbox"]["access_token"] == "***"

    def test_credentials_from_environment(self):
        environ = {
            "ORG_MIGRATION_MY_ORG_INSTANCE_URL": "https://my.example.com",
            "ORG_MIGRATION_MY_ORG_ACCESS_TOKEN": "token",
        }

        credentials = EngineSettings().credentials_for("my-org", environ)

        assert org_env_key("my-org") == "ORG_MIGRATION_MY_ORG"
        assert credentials.access_token == "token"

    def test_missing_credentials(self):
        with pytest.raises(ConfigurationError) as exc_info:
            EngineSettings().credentials_for("prod", {})
        assert "ORG_MIGRATION_PROD_INSTANCE_URL" in str(exc_info.value)

    def test_build_connection(self):
        settings = EngineSettings.from_dict(
            {"orgs": {"prod": {"instance_url": "https://prod.example.com", "access_token": "t"}}},
            environ={},
        )

        connection = settings.build_connection("prod")

        assert connection.org_id == "prod"
        assert isinstance(connection.client, RestDataClient)
        assert connection.client.api_version == "59.0"
        assert connection.gate.max_requests_per_second == 10.0


class TestQueryHelpers:
    """Tests for query string helpers."""

    def test_build_select(self):
        assert build_select("Account", ["Id", "Name"], "Name != null", "Id", 10, 20) == (
            "SELECT Id, Name FROM Account WHERE Name != null ORDER BY Id LIMIT 10 OFFSET 20"
        )

    def test_add_where_before_order_by(self):
        assert add_where("SELECT Id FROM Account ORDER BY Name", "Industry = 'Retail'") == (
            "SELECT Id FROM Account WHERE Industry = 'Retail' ORDER BY Name"
        )

    def test_where_clause(self):
        assert where_clause("SELECT Id FROM Account WHERE Name = 'A' ORDER BY Id LIMIT 5") == "Name = 'A'"
        assert where_clause("SELECT Id FROM Account") is None

    def test_format_id_list_escapes_quotes(self):
        assert format_id_list(["a", "O'Brien"]) == "'a', 'O\\'Brien'"

    def test_chunked(self):
        assert list(chunked([1, 2, 3, 4, 5], 2)) == [[1, 2], [3, 4], [5]]
        assert list(chunked([], 2)) == []
