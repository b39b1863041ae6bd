"""Unit tests for the account service.

Tests for:
- Credential checks that never reveal which part was wrong
- Claim projection by scope
- Legacy account id rejection
- Pool password policy
- Custom attribute validation
"""

import asyncio

import pytest

from poolauth.service.errors import (
    ConflictError,
    InvalidCredentials,
    NotFoundError,
    ReauthenticationRequired,
    ValidationError,
)
from poolauth.storage.models import UserStatus

PASSWORD = "pw123!ABC"


@pytest.fixture
def accounts(runtime):
    return runtime.accounts


@pytest.fixture
def alice(accounts, client_c1):
    return asyncio.run(
        accounts.create(client_c1.pool_id, email="alice@example.com", password=PASSWORD)
    )


class TestAuthenticate:
    """Password login within a client's pool."""

    async def test_valid_credentials_return_user(self, accounts, alice):
        user = await accounts.authenticate("alice@example.com", PASSWORD, "c1")
        assert user.user_id == alice.user_id
        assert user.last_login is not None

    async def test_email_lookup_ignores_case(self, accounts, alice):
        user = await accounts.authenticate("ALICE@Example.com", PASSWORD, "c1")
        assert user.user_id == alice.user_id

    async def test_unknown_email_and_wrong_password_look_the_same(self, accounts, alice):
        with pytest.raises(InvalidCredentials) as unknown:
            await accounts.authenticate("nobody@example.com", PASSWORD, "c1")
        with pytest.raises(InvalidCredentials) as wrong:
            await accounts.authenticate("alice@example.com", "Wrong123!", "c1")

        assert unknown.value.message == wrong.value.message == "Invalid email or password"
        assert unknown.value.status_code == wrong.value.status_code == 401
        assert unknown.value.detail == wrong.value.detail == {}

    async def test_archived_user_cannot_log_in(self, accounts, alice):
        await accounts.set_status(alice.pool_id, alice.user_id, UserStatus.ARCHIVED)
        with pytest.raises(InvalidCredentials):
            await accounts.authenticate("alice@example.com", PASSWORD, "c1")

    async def test_unknown_client_is_a_configuration_error(self, accounts, alice):
        with pytest.raises(ValidationError) as exc:
            await accounts.authenticate("alice@example.com", PASSWORD, "nope")
        assert exc.value.message == "Client configuration error"

    async def test_same_email_in_other_pool_is_not_visible(self, runtime, accounts, alice):
        other = await runtime.clients.provision_client(
            client_name="Other", redirect_uris=["https://other.example.test/cb"], client_id="c2"
        )
        await accounts.create(other.pool_id, email="alice@example.com", password="Other123!x")

        with pytest.raises(InvalidCredentials):
            await accounts.authenticate("alice@example.com", "Other123!x", "c1")
        user = await accounts.authenticate("alice@example.com", "Other123!x", "c2")
        assert user.pool_id == "pool-c2"
        assert user.user_id != alice.user_id


class TestFindAccount:
    """Engine callback resolving accounts per client."""

    async def test_resolves_account_and_projects_claims(self, accounts, alice):
        projection = await accounts.find_account(alice.user_id, "c1")
        assert projection is not None
        assert projection.pool_id == "pool-c1"

        claims = projection.claims("id_token", {"openid", "email"})
        assert claims == {
            "sub": alice.user_id,
            "email": "alice@example.com",
            "email_verified": False,
        }

    async def test_profile_scope_adds_profile_claims(self, accounts, client_c1):
        user = await accounts.create(
            client_c1.pool_id,
            email="bob@example.com",
            password=PASSWORD,
            given_name="Bob",
            family_name="Builder",
        )
        projection = await accounts.find_account(user.user_id, "c1")
        claims = projection.claims(scope="openid profile")
        assert claims["name"] == "Bob Builder"
        assert claims["given_name"] == "Bob"
        assert "email" not in claims
        assert isinstance(claims["updated_at"], int)

    async def test_legacy_uuid_account_id_is_rejected(self, accounts, alice):
        legacy = "123e4567-e89b-12d3-a456-426614174000"
        assert await accounts.find_account(legacy, "c1") is None

    async def test_unknown_client_or_account_returns_none(self, accounts, alice):
        assert await accounts.find_account(alice.user_id, None) is None
        assert await accounts.find_account(alice.user_id, "unknown-client") is None
        assert await accounts.find_account("0000000000000000deadbeef", "c1") is None

    async def test_account_from_other_pool_is_not_found(self, runtime, accounts, alice):
        await runtime.clients.provision_client(
            client_name="Other", redirect_uris=["https://other.example.test/cb"], client_id="c2"
        )
        assert await accounts.find_account(alice.user_id, "c2") is None

    def test_require_current_account_id(self, accounts):
        assert accounts.require_current_account_id("0000000000000000deadbeef")
        with pytest.raises(ReauthenticationRequired):
            accounts.require_current_account_id(None)
        with pytest.raises(ReauthenticationRequired):
            accounts.require_current_account_id("123e4567-e89b-12d3-a456-426614174000")


class TestCreate:
    """Account creation rules."""

    async def test_password_policy_lists_missing_parts(self, accounts, client_c1):
        with pytest.raises(ValidationError) as exc:
            await accounts.create(client_c1.pool_id, email="x@example.com", password="short")
        assert "at least 8 characters" in exc.value.message
        assert "an uppercase letter" in exc.value.message
        assert "a number" in exc.value.message

    async def test_password_is_hashed(self, accounts, alice):
        assert alice.password_hash != PASSWORD
        assert alice.password_hash.startswith("$argon2id$")

    async def test_duplicate_email_conflicts(self, accounts, alice):
        with pytest.raises(ConflictError):
            await accounts.create(alice.pool_id, email="Alice@Example.com", password=PASSWORD)

    async def test_invalid_email_rejected(self, accounts, client_c1):
        with pytest.raises(ValidationError):
            await accounts.create(client_c1.pool_id, email="not-an-email", password=PASSWORD)

    async def test_unknown_pool_is_not_found(self, accounts):
        with pytest.raises(NotFoundError):
            await accounts.create("missing", email="a@example.com", password=PASSWORD)

    async def test_undeclared_custom_attribute_rejected(self, accounts, client_c1):
        with pytest.raises(ValidationError):
            await accounts.create(
                client_c1.pool_id,
                email="a@example.com",
                password=PASSWORD,
                custom_attributes={"tier": "gold"},
            )


class TestCustomAttributes:
    """Declared custom attributes flow into claims."""

    async def test_declared_attributes_are_typed_and_projected(self, runtime, accounts):
        pool = await runtime.pools.create_pool(
            client_id="typed-client",
            pool_name="Typed",
            pool_id="typed",
            custom_attributes={"tier": "string", "seats": "number"},
        )
        with pytest.raises(ValidationError):
            await accounts.create(
                pool.pool_id,
                email="a@example.com",
                password=PASSWORD,
                custom_attributes={"seats": "many"},
            )
        user = await accounts.create(
            pool.pool_id,
            email="a@example.com",
            password=PASSWORD,
            custom_attributes={"tier": "gold", "seats": 3},
        )
        claims = await accounts.project_claims(user, "openid")
        assert claims == {"sub": user.user_id, "tier": "gold", "seats": 3}

    async def test_update_merges_and_removes_keys(self, runtime, accounts):
        pool = await runtime.pools.create_pool(
            client_id="typed-client",
            pool_name="Typed",
            pool_id="typed",
            custom_attributes={"tier": "string", "seats": "number"},
        )
        user = await accounts.create(
            pool.pool_id,
            email="a@example.com",
            password=PASSWORD,
            custom_attributes={"tier": "gold", "seats": 3},
        )
        updated = await accounts.update(
            pool.pool_id, user.user_id, custom_attributes={"tier": None, "seats": 5}
        )
        assert updated.custom_attributes == {"seats": 5}


class TestLifecycle:
    """Updates, password changes and deletion."""

    async def test_change_password(self, accounts, alice):
        await accounts.change_password(alice.pool_id, alice.user_id, "Newpass123")
        with pytest.raises(InvalidCredentials):
            await accounts.authenticate("alice@example.com", PASSWORD, "c1")
        user = await accounts.authenticate("alice@example.com", "Newpass123", "c1")
        assert user.user_id == alice.user_id

    async def test_update_name_recomputes_display_name(self, accounts, alice):
        updated = await accounts.update(alice.pool_id, alice.user_id, given_name="Alice")
        assert updated.name == "Alice"
        updated = await accounts.update(alice.pool_id, alice.user_id, family_name="Smith")
        assert updated.name == "Alice Smith"

    async def test_update_none_clears_profile_fields(self, accounts, alice):
        await accounts.update(
            alice.pool_id, alice.user_id, given_name="Alice", family_name="Smith", nickname="al"
        )
        updated = await accounts.update(
            alice.pool_id, alice.user_id, nickname=None, family_name=None
        )
        assert updated.nickname is None
        assert updated.family_name is None
        assert updated.given_name == "Alice"
        assert updated.name == "Alice"

    async def test_update_cannot_clear_email(self, accounts, alice):
        with pytest.raises(ValidationError):
            await accounts.update(alice.pool_id, alice.user_id, email=None)

    async def test_delete_then_lookup(self, accounts, alice):
        await accounts.delete(alice.pool_id, alice.user_id)
        assert await accounts.find_by_pool_and_id(alice.pool_id, alice.user_id) is None
        with pytest.raises(NotFoundError):
            await accounts.delete(alice.pool_id, alice.user_id)

    async def test_list_accounts_rejects_bad_token(self, accounts, alice):
        page = await accounts.list_accounts(alice.pool_id)
        assert [u.user_id for u in page.items] == [alice.user_id]
        with pytest.raises(ValidationError):
            await accounts.list_accounts(alice.pool_id, next_token="%%%")

    async def test_ensure_default_pool_is_idempotent(self, accounts):
        first = await accounts.ensure_default_pool()
        second = await accounts.ensure_default_pool()
        assert first.pool_id == second.pool_id == "default-pool"
        assert first.client_id == "local-test-client"
