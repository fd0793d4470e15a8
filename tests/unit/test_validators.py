"""Unit tests for validators."""
import pytest
from unittest.mock import AsyncMock

from payer_broker.utils import generate_token
from payer_broker.validators import (
    normalize_payer_code,
    parse_postgresql_version,
    sanitize_secret_arn_for_logging,
    validate_database_compatibility_async,
    validate_encryption_key,
    validate_extensions_async,
    validate_postgresql_version_async,
    validate_scopes,
    validate_secret_arn,
    validate_token_format,
)


class TestParsePostgreSQLVersion:
    """Test PostgreSQL version parsing."""

    def test_parse_standard_version(self):
        """Test parsing standard PostgreSQL version string."""
        version_string = "PostgreSQL 16.1 on x86_64-pc-linux-gnu, compiled by gcc"
        assert parse_postgresql_version(version_string) == 16.1

    def test_parse_major_version_only(self):
        assert parse_postgresql_version("PostgreSQL 16 on x86_64-pc-linux-gnu") == 16.0

    def test_parse_invalid_format(self):
        assert parse_postgresql_version("Not a PostgreSQL version string") is None


class TestValidatePostgreSQLVersionAsync:
    """Test async PostgreSQL version validation."""

    @pytest.mark.asyncio
    async def test_valid_version(self, mock_asyncpg_connection):
        """Test validation passes with valid version."""
        await validate_postgresql_version_async(mock_asyncpg_connection)
        mock_asyncpg_connection.fetchval.assert_called_with("SELECT version()")

    @pytest.mark.asyncio
    async def test_version_too_old(self, mock_asyncpg_connection):
        """Test validation fails with old version."""
        mock_asyncpg_connection.fetchval = AsyncMock(return_value="PostgreSQL 12.4 on x86_64-pc-linux-gnu")

        with pytest.raises(RuntimeError, match="PostgreSQL 14.0\\+ required"):
            await validate_postgresql_version_async(mock_asyncpg_connection)

    @pytest.mark.asyncio
    async def test_unparseable_version(self, mock_asyncpg_connection):
        mock_asyncpg_connection.fetchval = AsyncMock(return_value="CockroachDB CCL v23.1")

        with pytest.raises(RuntimeError, match="Unable to determine"):
            await validate_postgresql_version_async(mock_asyncpg_connection)


class TestValidateExtensionsAsync:
    """Test async extension validation."""

    @pytest.mark.asyncio
    async def test_all_extensions_present(self, mock_asyncpg_connection):
        await validate_extensions_async(mock_asyncpg_connection)

    @pytest.mark.asyncio
    async def test_missing_extension(self, mock_asyncpg_connection):
        async def mock_fetchval(query, *args):
            if "pg_extension" in query:
                return False
            return "PostgreSQL 16.1"

        mock_asyncpg_connection.fetchval = AsyncMock(side_effect=mock_fetchval)

        with pytest.raises(RuntimeError, match="pgcrypto"):
            await validate_extensions_async(mock_asyncpg_connection)

    @pytest.mark.asyncio
    async def test_full_compatibility(self, mock_asyncpg_connection):
        await validate_database_compatibility_async(mock_asyncpg_connection)


class TestSecretArn:
    """Test ARN validation and log sanitizing."""

    def test_valid_ssm_arn(self):
        assert validate_secret_arn("arn:aws:ssm:us-east-1:123456789012:parameter/payer/key")

    def test_valid_secrets_manager_arn(self):
        assert validate_secret_arn("arn:aws:secretsmanager:us-west-2:123456789012:secret:vault-key-AbC123")

    def test_none_is_valid(self):
        assert validate_secret_arn(None)

    def test_invalid_arn(self):
        assert not validate_secret_arn("arn:aws:ssm:us-east-1:1234:parameter/payer/key")

    def test_sanitize(self):
        arn = "arn:aws:ssm:us-east-1:123456789012:parameter/payer/key"
        assert sanitize_secret_arn_for_logging(arn) == "arn:aws:ssm:us-east-1:****:parameter/payer/key"


class TestInputValidators:
    """Test key, token, scope and delivery validation."""

    def test_encryption_key(self):
        assert validate_encryption_key("ab" * 32)
        assert validate_encryption_key("AB" * 32)
        assert not validate_encryption_key("ab" * 31)
        assert not validate_encryption_key("zz" * 32)
        assert not validate_encryption_key(None)

    def test_token_format(self):
        assert validate_token_format(generate_token())
        assert not validate_token_format("A" * 64)
        assert not validate_token_format("abc")
        assert not validate_token_format("")
        assert not validate_token_format(None)

    def test_scopes_deduplicated_in_order(self):
        assert validate_scopes(["benefits", "eligibility", "benefits"]) == ["benefits", "eligibility"]

    def test_unknown_scope(self):
        with pytest.raises(ValueError, match="Unknown scope"):
            validate_scopes(["eligibility", "dental_records"])

    def test_empty_scopes(self):
        with pytest.raises(ValueError, match="At least one scope"):
            validate_scopes([])

    def test_payer_code_normalized(self):
        assert normalize_payer_code(" blue_shield ") == "BLUE_SHIELD"

    @pytest.mark.parametrize("code", ["", "M", "blue cross", "AETNA-1"])
    def test_invalid_payer_code(self, code):
        with pytest.raises(ValueError, match="Invalid payer code"):
            normalize_payer_code(code)
