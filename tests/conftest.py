"""Shared fixtures - in-memory source and target orgs."""

import pytest

from org_migration.clients.connection import OrgConnection
from org_migration.clients.rate_limit import RateLimitGate
from org_migration.services.session_tracker import SessionTracker

from fakes import FakeOrgClient, make_describe, make_field


def account_describe(identity_field: str = "External_Id__c"):
    return make_describe(
        "Account",
        make_field("Name", nillable=False, length=80),
        make_field("Industry", "picklist", picklist_values=["Technology", "Finance", "Retail"]),
        make_field("Phone", "phone"),
        make_field(identity_field, external_id=True, unique=True),
    )


def contact_describe(identity_field: str = "External_Id__c"):
    return make_describe(
        "Contact",
        make_field("FirstName"),
        make_field("LastName", nillable=False, length=40),
        make_field("Email", "email"),
        make_field("AccountId", "reference", reference_to=["Account"]),
        make_field(identity_field, external_id=True, unique=True),
    )


def case_describe(identity_field: str = "External_Id__c"):
    return make_describe(
        "Case",
        make_field("Subject"),
        make_field("ContactId", "reference", reference_to=["Contact"]),
        make_field("AccountId", "reference", reference_to=["Account"]),
        make_field(identity_field, external_id=True, unique=True),
    )


def connect(client: FakeOrgClient) -> OrgConnection:
    return OrgConnection(client, RateLimitGate(max_requests_per_second=0, max_concurrent=10))


@pytest.fixture
def source_client():
    return FakeOrgClient(
        "source-org",
        [account_describe(), contact_describe(), case_describe()],
        id_prefix="S",
    )


@pytest.fixture
def target_client():
    return FakeOrgClient(
        "target-org",
        [account_describe(), contact_describe(), case_describe()],
        id_prefix="T",
    )


@pytest.fixture
def source(source_client):
    return connect(source_client)


@pytest.fixture
def target(target_client):
    return connect(target_client)


@pytest.fixture
def tracker():
    return SessionTracker()


@pytest.fixture
def seeded_source(source_client):
    """Two accounts with three contacts and one case."""
    acme, globex = source_client.add_records(
        "Account",
        {"Name": "Acme", "Industry": "Technology", "External_Id__c": "ACC-1"},
        {"Name": "Globex", "Industry": "Finance", "External_Id__c": "ACC-2"},
    )
    ada, bob, cy = source_client.add_records(
        "Contact",
        {"FirstName": "Ada", "LastName": "Lovelace", "Email": "ada@acme.test",
         "AccountId": acme["Id"], "External_Id__c": "CON-1"},
        {"FirstName": "Bob", "LastName": "Builder", "Email": "bob@acme.test",
         "AccountId": acme["Id"], "External_Id__c": "CON-2"},
        {"FirstName": "Cy", "LastName": "Young", "Email": "cy@globex.test",
         "AccountId": globex["Id"], "External_Id__c": "CON-3"},
    )
    source_client.add_records(
        "Case",
        {"Subject": "Login issue", "ContactId": ada["Id"], "AccountId": acme["Id"], "External_Id__c": "CASE-1"},
    )
    return source_client
