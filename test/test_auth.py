import pytest
from pydantic import ValidationError
from provisioning_client.auth import create_credential, resolve_credential
from provisioning_client.errors import ConfigurationError
from provisioning_client.models import ProvisionResult, OperationStatus


def test_valid_configuration():
    credential = resolve_credential(
        {"token": "dapi-secret", "base_url": "https://adb-123.azuredatabricks.net/"}
    )
    assert credential.base_url == "https://adb-123.azuredatabricks.net"
    assert credential.token == "dapi-secret"
    assert credential.url_for("/api/2.0/clusters/get") == (
        "https://adb-123.azuredatabricks.net/api/2.0/clusters/get"
    )


@pytest.mark.parametrize(
    "token, base_url",
    [
        ("", "https://example.net"),
        ("   ", "https://example.net"),
        ("dapi-secret", ""),
        ("dapi-secret", "example.net"),
        ("dapi-secret", "ftp://example.net"),
        ("dapi-secret", "https://"),
    ],
)
def test_missing_or_malformed_configuration(token, base_url):
    with pytest.raises(ConfigurationError):
        create_credential(token, base_url)


@pytest.mark.parametrize("token", [" dapi-secret", "dapi-secret ", "dapi-secret\n"])
def test_token_with_surrounding_whitespace_is_rejected(token):
    with pytest.raises(ConfigurationError):
        create_credential(token, "https://example.net")


def test_token_is_passed_through_unchanged():
    credential = create_credential("dapi-se cret", "https://example.net")
    assert credential.token == "dapi-se cret"


def test_missing_keys_in_bundle():
    with pytest.raises(ConfigurationError):
        resolve_credential({"base_url": "https://example.net"})


def test_error_message_never_contains_token():
    with pytest.raises(ConfigurationError) as excinfo:
        create_credential("dapi-secret", "not a url")
    assert "dapi-secret" not in str(excinfo.value)


def test_token_is_hidden_from_repr_and_dumps():
    credential = create_credential("dapi-secret", "https://example.net")
    assert "dapi-secret" not in repr(credential)
    assert "token" not in credential.model_dump()

    result = ProvisionResult(
        resource_kind="cluster", operation="provision", status=OperationStatus.succeeded
    )
    assert "dapi-secret" not in str(result.to_record())


def test_credential_is_immutable():
    credential = create_credential("dapi-secret", "https://example.net")
    with pytest.raises(ValidationError):
        credential.token = "other"
