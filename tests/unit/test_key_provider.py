"""Unit tests for the AWS-backed vault key provider."""
import json
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from payer_broker.key_provider import SecretKeyProvider

SSM_ARN = "arn:aws:ssm:us-east-1:123456789012:parameter/payer-broker/vault-key"
SECRETS_ARN = "arn:aws:secretsmanager:us-east-1:123456789012:secret:payer-broker-key-AbCdEf"
KEY = "0f" * 32


class TestSecretKeyProvider:
    """Test secret retrieval and caching."""

    def test_fetch_from_ssm(self):
        ssm = MagicMock()
        ssm.get_parameter.return_value = {"Parameter": {"Value": KEY}}
        provider = SecretKeyProvider(ssm_client=ssm)

        assert provider.get_secret(SSM_ARN) == KEY
        ssm.get_parameter.assert_called_once_with(Name="/payer-broker/vault-key", WithDecryption=True)

    def test_fetch_json_from_secrets_manager(self):
        secrets = MagicMock()
        secrets.get_secret_value.return_value = {"SecretString": json.dumps({"key": KEY})}
        provider = SecretKeyProvider(secrets_manager_client=secrets)

        assert provider.get_secret(SECRETS_ARN) == KEY

    def test_cache_hit(self):
        ssm = MagicMock()
        ssm.get_parameter.return_value = {"Parameter": {"Value": KEY}}
        provider = SecretKeyProvider(ssm_client=ssm)

        provider.get_secret(SSM_ARN)
        provider.get_secret(SSM_ARN)
        assert ssm.get_parameter.call_count == 1

        provider.clear_cache(SSM_ARN)
        provider.get_secret(SSM_ARN)
        assert ssm.get_parameter.call_count == 2

    def test_invalid_arn(self):
        provider = SecretKeyProvider(ssm_client=MagicMock())
        with pytest.raises(ValueError, match="Invalid secret ARN"):
            provider.get_secret("arn:aws:s3:::bucket/key")

    def test_empty_secret(self):
        secrets = MagicMock()
        secrets.get_secret_value.return_value = {"SecretString": json.dumps({"other": "x"})}
        provider = SecretKeyProvider(secrets_manager_client=secrets)

        with pytest.raises(ValueError, match="does not contain"):
            provider.get_secret(SECRETS_ARN)

    def test_client_error_propagates(self):
        ssm = MagicMock()
        ssm.get_parameter.side_effect = ClientError(
            {"Error": {"Code": "AccessDeniedException", "Message": "denied"}}, "GetParameter"
        )
        provider = SecretKeyProvider(ssm_client=ssm)

        with pytest.raises(ClientError):
            provider.get_secret(SSM_ARN)
