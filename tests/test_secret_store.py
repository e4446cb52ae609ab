import json
from pathlib import Path

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from payroll.errors import SecretNotFound, SecretStoreUnavailable, StorageError
from payroll.secret_store import (
    AwsSecretsManagerProvider,
    FileSecretProvider,
    StaticSecretProvider,
)


def test_static_provider_returns_copies():
    provider = StaticSecretProvider({"payroll/jwt": {"signing_key": "abc"}, "raw": '{"api_key": "k"}'})

    secret = provider.get("payroll/jwt")
    secret["signing_key"] = "mutated"

    assert provider.get("payroll/jwt") == {"signing_key": "abc"}
    assert provider.get("raw") == {"api_key": "k"}
    with pytest.raises(SecretNotFound):
        provider.get("missing")


def test_file_provider_reads_named_secret(tmp_path: Path):
    path = tmp_path / "secrets.json"
    path.write_text(json.dumps({"payroll/external-api": {"api_key": "key"}}))
    provider = FileSecretProvider(path)

    assert provider.get("payroll/external-api") == {"api_key": "key"}
    with pytest.raises(SecretNotFound):
        provider.get("payroll/jwt")


def test_file_provider_missing_or_corrupt_file(tmp_path: Path):
    missing = FileSecretProvider(tmp_path / "nope.json")
    corrupt_path = tmp_path / "corrupt.json"
    corrupt_path.write_text("{")
    corrupt = FileSecretProvider(corrupt_path)

    with pytest.raises(SecretStoreUnavailable):
        missing.get("anything")
    with pytest.raises(SecretStoreUnavailable):
        corrupt.get("anything")


def test_non_object_secret_is_rejected():
    provider = StaticSecretProvider({"weird": "[1, 2]"})

    with pytest.raises(SecretStoreUnavailable):
        provider.get("weird")


class FakeSecretsManager:
    def __init__(self, secrets=None, error=None):
        self.secrets = secrets or {}
        self.error = error
        self.calls = 0

    def get_secret_value(self, SecretId):
        self.calls += 1
        if self.error:
            raise self.error
        if SecretId not in self.secrets:
            raise ClientError(
                {"Error": {"Code": "ResourceNotFoundException", "Message": "nope"}},
                "GetSecretValue",
            )
        return {"SecretString": json.dumps(self.secrets[SecretId])}


def test_aws_provider_parses_and_caches():
    client = FakeSecretsManager({"payroll/jwt": {"signing_key": "s3cret"}})
    provider = AwsSecretsManagerProvider(client=client, cache_seconds=60)

    assert provider.get("payroll/jwt") == {"signing_key": "s3cret"}
    assert provider.get("payroll/jwt") == {"signing_key": "s3cret"}
    assert client.calls == 1


def test_aws_provider_without_cache_fetches_every_time():
    client = FakeSecretsManager({"payroll/jwt": {"signing_key": "s3cret"}})
    provider = AwsSecretsManagerProvider(client=client, cache_seconds=0)

    provider.get("payroll/jwt")
    provider.get("payroll/jwt")

    assert client.calls == 2


def test_aws_provider_maps_errors():
    missing = AwsSecretsManagerProvider(client=FakeSecretsManager())
    throttled = AwsSecretsManagerProvider(
        client=FakeSecretsManager(
            error=ClientError({"Error": {"Code": "ThrottlingException", "Message": "slow"}}, "GetSecretValue")
        )
    )
    offline = AwsSecretsManagerProvider(
        client=FakeSecretsManager(error=EndpointConnectionError(endpoint_url="https://secrets.example"))
    )

    with pytest.raises(SecretNotFound):
        missing.get("payroll/jwt")
    with pytest.raises(SecretStoreUnavailable):
        throttled.get("payroll/jwt")
    with pytest.raises(SecretStoreUnavailable) as excinfo:
        offline.get("payroll/jwt")
    assert isinstance(excinfo.value, StorageError)
    assert excinfo.value.status_code == 503
