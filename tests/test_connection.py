"""Tests for the org connection error handling."""

import pytest
import requests

from orgsync.connection import OrgConnection, flatten_record
from orgsync.errors import ExecutionError, InitializationError, MetadataError
from orgsync.models.script import ScriptOrg


def failing_session(error):
    session = requests.Session()

    def request(method, url, **kwargs):
        raise error

    session.request = request
    return session


@pytest.fixture
def org():
    return ScriptOrg(name="target", instance_url="https://example.my.salesforce.com", access_token="token")


def test_org_without_token_is_rejected():
    with pytest.raises(InitializationError):
        OrgConnection(ScriptOrg(name="target", instance_url="https://example.my.salesforce.com"))


@pytest.mark.parametrize("error", [
    requests.exceptions.ConnectionError("connection refused"),
    requests.exceptions.RetryError("too many 503 error responses"),
    requests.exceptions.Timeout("read timed out"),
])
def test_transport_failures_raise_execution_errors(org, error):
    connection = OrgConnection(org, session=failing_session(error))

    with pytest.raises(ExecutionError, match="Request to target failed"):
        connection.query("SELECT Id FROM Account")
    with pytest.raises(ExecutionError):
        connection.query_records("SELECT Id FROM Account", use_bulk=True)


def test_describe_transport_failure_raises_metadata_error(org):
    session = failing_session(requests.exceptions.ConnectionError("connection refused"))
    connection = OrgConnection(org, session=session)

    with pytest.raises(MetadataError, match="Account"):
        connection.describe("Account")


def test_flatten_record_drops_attributes():
    data = {
        "attributes": {"type": "Contact"},
        "Id": "003A",
        "Account": {"attributes": {"type": "Account"}, "Name": "Acme"},
    }

    assert flatten_record(data) == {"Id": "003A", "Account.Name": "Acme"}
