"""Out-of-band retrieval of the credential vault key.

The vault key can be kept in AWS SSM Parameter Store or AWS Secrets Manager
instead of the process environment. Values are either the raw 64 character
hex key or a JSON document with a `key` field.
"""
import base64
import json
import logging
from datetime import datetime, timedelta
from typing import Dict, Optional, Tuple

import boto3
from botocore.exceptions import ClientError

from .validators import sanitize_secret_arn_for_logging, validate_secret_arn

logger = logging.getLogger(__name__)


class SecretKeyProvider:
    """Fetches secret strings from AWS with an in-memory TTL cache.

    Clients are created on first use so that processes which never
    reference an ARN do not need AWS configuration.
    """

    def __init__(
        self,
        cache_ttl_minutes: int = 10,
        ssm_client=None,
        secrets_manager_client=None,
        region_name: Optional[str] = None,
    ):
        """Initialize the key provider.

        Args:
            cache_ttl_minutes: How long to cache fetched secrets in memory
            ssm_client: Optional boto3 SSM client (for testing)
            secrets_manager_client: Optional boto3 Secrets Manager client (for testing)
            region_name: AWS region used when clients are created lazily
        """
        self.cache_ttl = timedelta(minutes=cache_ttl_minutes)
        self.region_name = region_name
        self._cache: Dict[str, Tuple[str, datetime]] = {}
        self._ssm = ssm_client
        self._secrets_manager = secrets_manager_client

    @property
    def ssm(self):
        if self._ssm is None:
            self._ssm = boto3.client('ssm', region_name=self.region_name)
        return self._ssm

    @property
    def secrets_manager(self):
        if self._secrets_manager is None:
            self._secrets_manager = boto3.client('secretsmanager', region_name=self.region_name)
        return self._secrets_manager

    def get_secret(self, secret_arn: str) -> str:
        """Retrieve a secret value, serving from cache while fresh.

        Args:
            secret_arn: AWS SSM Parameter Store or Secrets Manager ARN

        Returns:
            The secret as a string

        Raises:
            ValueError: If ARN format is invalid or the secret has no usable value
            ClientError: If AWS API call fails
        """
        if not validate_secret_arn(secret_arn):
            raise ValueError(f"Invalid secret ARN format: {sanitize_secret_arn_for_logging(secret_arn)}")

        if secret_arn in self._cache:
            cached_value, cached_time = self._cache[secret_arn]
            if datetime.now() - cached_time < self.cache_ttl:
                logger.debug(f"Cache hit for {sanitize_secret_arn_for_logging(secret_arn)}")
                return cached_value

        try:
            if secret_arn.startswith('arn:aws:ssm:'):
                raw = self._fetch_from_ssm(secret_arn)
            else:
                raw = self._fetch_from_secrets_manager(secret_arn)
        except ClientError as e:
            logger.error(
                f"Failed to retrieve secret {sanitize_secret_arn_for_logging(secret_arn)}: {e}"
            )
            raise

        value = self._extract_key(raw)
        self._cache[secret_arn] = (value, datetime.now())
        logger.info(f"Retrieved secret {sanitize_secret_arn_for_logging(secret_arn)}")
        return value

    def _fetch_from_ssm(self, arn: str) -> str:
        # arn:aws:ssm:region:account:parameter/path -> /path
        param_name = arn.split(':parameter')[-1]
        response = self.ssm.get_parameter(Name=param_name, WithDecryption=True)
        return response['Parameter']['Value']

    def _fetch_from_secrets_manager(self, arn: str) -> str:
        response = self.secrets_manager.get_secret_value(SecretId=arn)
        if 'SecretString' in response:
            return response['SecretString']
        return base64.b64decode(response['SecretBinary']).decode('utf-8')

    @staticmethod
    def _extract_key(raw: str) -> str:
        value = raw.strip()
        if value.startswith('{'):
            document = json.loads(value)
            value = str(document.get('key') or document.get('encryption_key') or '').strip()
        if not value:
            raise ValueError("Secret does not contain an encryption key")
        return value

    def clear_cache(self, secret_arn: Optional[str] = None):
        """Clear cached secrets.

        Args:
            secret_arn: Specific ARN to clear, or None to clear all
        """
        if secret_arn:
            self._cache.pop(secret_arn, None)
        else:
            self._cache.clear()
