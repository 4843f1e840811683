"""
Unit tests for core helpers.

Tests cover:
- Org slug and DID namespace derivation
- Secret masking and tagged credential encryption
- Batch fan-out policies
- Error envelopes and status round-trip
- Read cache degradation without Redis
- Logging configuration
"""

from __future__ import annotations

import json

import pytest
import structlog
from cryptography.fernet import Fernet

from app.core.batch import ALL_OR_ERROR, BEST_EFFORT, BatchPolicy, PartialFailure, run_batch
from app.core.cache import ReadCache
from app.core.crypto import ENCRYPTED_TAG, PLAINTEXT_TAG, CredentialCipher, mask_secret
from app.core.errors import (
    ConflictError,
    IdentityProviderError,
    NotFoundError,
    OrgLimitError,
    PlatformError,
    RoleNotFoundError,
    StorageError,
    from_status,
)
from app.core.logging import configure_logging
from app.services.organizations import create_org_slug, did_namespace


class TestOrgSlug:
    @pytest.mark.parametrize(
        "name,expected",
        [
            ("Acme Labs", "acme-labs"),
            ("  Acme   Labs!! ", "-acme-labs-"),
            ("Über Org", "ber-org"),
            ("a - b", "a-b"),
            ("Org_2024", "org2024"),
        ],
    )
    def test_examples(self, name, expected):
        assert create_org_slug(name) == expected

    @pytest.mark.parametrize("name", ["Acme Labs", "x--y", "Hello, World! 42", "   ", "A\tB\nC"])
    def test_idempotent_and_charset(self, name):
        slug = create_org_slug(name)
        assert create_org_slug(slug) == slug
        assert all(ch.isdigit() or ("a" <= ch <= "z") or ch == "-" for ch in slug)
        assert "--" not in slug


class TestDidNamespace:
    def test_indy(self):
        assert did_namespace("did:indy:bcovrin:testnet:abc123") == "bcovrin:testnet"

    def test_polygon(self):
        assert did_namespace("did:polygon:testnet:0xabc") == "polygon:testnet"

    def test_other_methods(self):
        assert did_namespace("did:key:z6Mk") is None
        assert did_namespace("did:web:example.com") is None


class TestMaskSecret:
    def test_keeps_last_eight(self):
        masked = mask_secret("abcdefghijklmnop")
        assert masked == "********ijklmnop"
        assert len(masked) == 16

    def test_short_values_keep_four(self):
        assert mask_secret("abcdefgh") == "****efgh"
        assert mask_secret("abcde") == "*bcde"

    def test_tiny_values_fully_masked(self):
        assert mask_secret("abcd") == "****"
        assert mask_secret("") == ""


class TestCredentialCipher:
    def test_seal_and_open_with_key(self):
        cipher = CredentialCipher(Fernet.generate_key().decode())
        sealed = cipher.seal("client-secret")
        assert sealed.startswith(ENCRYPTED_TAG)
        assert "client-secret" not in sealed
        assert cipher.open(sealed) == "client-secret"

    def test_plain_tag_without_key(self):
        cipher = CredentialCipher("")
        sealed = cipher.seal("client-secret")
        assert sealed == f"{PLAINTEXT_TAG}client-secret"
        assert cipher.open(sealed) == "client-secret"

    def test_untagged_value_is_rejected(self):
        cipher = CredentialCipher(Fernet.generate_key().decode())
        with pytest.raises(StorageError):
            cipher.open("client-secret")

    def test_ciphertext_without_key_is_rejected(self):
        sealed = CredentialCipher(Fernet.generate_key().decode()).seal("x")
        with pytest.raises(StorageError):
            CredentialCipher("").open(sealed)

    def test_wrong_key_is_rejected(self):
        sealed = CredentialCipher(Fernet.generate_key().decode()).seal("x")
        with pytest.raises(StorageError):
            CredentialCipher(Fernet.generate_key().decode()).open(sealed)

    def test_is_sealed(self):
        assert CredentialCipher.is_sealed("plain:x")
        assert not CredentialCipher.is_sealed("x")
        assert not CredentialCipher.is_sealed(None)


async def _ok(value):
    return value


async def _fail(message):
    raise IdentityProviderError(message)


class TestRunBatch:
    async def test_empty_batch_succeeds(self):
        outcome = await run_batch([], ALL_OR_ERROR, operation="test")
        assert outcome.all_succeeded

    async def test_best_effort_tolerates_partial_failure(self):
        outcome = await run_batch(
            [("a", _ok(1)), ("b", _fail("boom")), ("c", _ok(3))], BEST_EFFORT, operation="test"
        )
        assert outcome.succeeded == {"a": 1, "c": 3}
        assert list(outcome.failed) == ["b"]

    async def test_best_effort_fails_when_all_fail(self):
        with pytest.raises(IdentityProviderError, match="first"):
            await run_batch([("a", _fail("first")), ("b", _fail("second"))], BEST_EFFORT, operation="test")

    async def test_all_or_error_escalates(self):
        with pytest.raises(IdentityProviderError):
            await run_batch([("a", _ok(1)), ("b", _fail("boom"))], ALL_OR_ERROR, operation="test")

    async def test_zero_minimum_never_fails(self):
        policy = BatchPolicy(min_success_count=0, on_partial_failure=PartialFailure.LOG_AND_CONTINUE)
        outcome = await run_batch([("a", _fail("x")), ("b", _fail("y"))], policy, operation="test")
        assert not outcome.succeeded
        assert set(outcome.failed) == {"a", "b"}

    async def test_minimum_capped_at_batch_size(self):
        policy = BatchPolicy(min_success_count=5)
        outcome = await run_batch([("a", _ok(1))], policy, operation="test")
        assert outcome.succeeded == {"a": 1}


class TestErrors:
    def test_envelope(self):
        assert NotFoundError("Organization not found").to_envelope() == {
            "statusCode": 404,
            "message": "Organization not found",
            "error": "Not Found",
        }

    def test_subclasses_keep_parent_status(self):
        assert RoleNotFoundError().status_code == 404
        assert OrgLimitError().status_code == 400

    def test_from_status(self):
        err = from_status(409, "Organization already exists")
        assert isinstance(err, ConflictError)
        assert err.message == "Organization already exists"

    def test_from_unknown_status(self):
        err = from_status(418, "teapot")
        assert type(err) is PlatformError
        assert err.status_code == 418

    def test_idp_conflict(self):
        assert IdentityProviderError(upstream_status=409).is_conflict
        assert not IdentityProviderError(upstream_status=500).is_conflict


class TestReadCache:
    async def test_disabled_without_client(self):
        cache = ReadCache(None, 300)
        assert not cache.enabled
        await cache.set_json("k", [1])
        assert await cache.get_json("k") is None
        await cache.invalidate("k")


class TestConfigureLogging:
    @pytest.fixture(autouse=True)
    def _reset_structlog(self):
        yield
        structlog.reset_defaults()

    def test_level_filters_json_output(self, capsys):
        configure_logging("warning", "json")
        log = structlog.get_logger()

        log.info("org.created", org_id="o1")
        log.warning("role_sync.inconsistent", org_id="o1")

        lines = capsys.readouterr().out.strip().splitlines()
        assert len(lines) == 1
        record = json.loads(lines[0])
        assert record["event"] == "role_sync.inconsistent"
        assert record["level"] == "warning"
        assert "timestamp" in record

    def test_console_format_and_upper_case_level(self, capsys):
        configure_logging("DEBUG", "text")

        structlog.get_logger().debug("keycloak.retry", attempt=1)

        assert "keycloak.retry" in capsys.readouterr().out
