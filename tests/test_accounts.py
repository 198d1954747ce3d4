"""Tests for account lifecycle, password hashing and input validation."""

from __future__ import annotations

import pytest

from conftest import PASSWORD, device_hash
from devicebind.core.auth.argon2_auth import Argon2Hasher
from devicebind.core.errors import (
    AuthenticationError,
    ConflictError,
    ErrorCode,
    TokenError,
    ValidationError,
)
from devicebind.utils.validators import (
    validate_credentials,
    validate_email,
    validate_password,
    validate_username,
)


@pytest.fixture
def alice(authority, clock):
    return authority.register("alice", "alice@example.com", PASSWORD, device_hash("laptop"), clock.millis())


# ============================================================
# Validation
# ============================================================

@pytest.mark.parametrize("username", ["ab", "has space", "semi;colon", "", None, "x" * 65])
def test_invalid_usernames(username):
    with pytest.raises(ValidationError) as excinfo:
        validate_username(username)
    assert excinfo.value.code is ErrorCode.INVALID_INPUT
    assert excinfo.value.details == {"field": "username"}


def test_valid_username():
    assert validate_username("alice_01") == "alice_01"


def test_email_is_lowercased():
    assert validate_email(" Alice@Example.COM ") == "alice@example.com"


@pytest.mark.parametrize("email", ["alice", "alice@", "@example.com", "alice@example", 42])
def test_invalid_emails(email):
    with pytest.raises(ValidationError):
        validate_email(email)


@pytest.mark.parametrize("password", ["Ab1", "alllower1", "ALLUPPER1", "NoDigits", "Nul\x00byte1"])
def test_weak_passwords(password):
    with pytest.raises(ValidationError) as excinfo:
        validate_password(password)
    assert excinfo.value.details == {"field": "password"}


def test_credentials_require_both_fields():
    with pytest.raises(ValidationError):
        validate_credentials("", PASSWORD)
    with pytest.raises(ValidationError):
        validate_credentials("alice", None)
    assert validate_credentials(" alice ", PASSWORD) == ("alice", PASSWORD)


# ============================================================
# Password hashing
# ============================================================

def test_hasher_round_trip(hasher):
    encoded = hasher.hash(PASSWORD)

    assert encoded.startswith("$argon2id$")
    assert hasher.verify(PASSWORD, encoded)
    assert not hasher.verify("Wrong1234", encoded)
    assert not hasher.verify(PASSWORD, "not-a-hash")


def test_hasher_rejects_weak_parameters():
    with pytest.raises(ValueError):
        Argon2Hasher(memory_cost=1024)
    with pytest.raises(ValueError):
        Argon2Hasher(time_cost=1)


def test_hasher_rejects_empty_password(hasher):
    with pytest.raises(ValueError):
        hasher.hash("")


def test_needs_rehash_on_parameter_change(hasher):
    encoded = hasher.hash(PASSWORD)
    stronger = Argon2Hasher(memory_cost=131072, time_cost=3, parallelism=1)

    assert hasher.parameters["memory_cost"] == 65536
    assert not hasher.needs_rehash(encoded)
    assert stronger.needs_rehash(encoded)


# ============================================================
# Account lifecycle
# ============================================================

def test_registration_validates_input(authority, clock, store):
    with pytest.raises(ValidationError) as excinfo:
        authority.register("al", "alice@example.com", PASSWORD, device_hash("laptop"), clock.millis())

    assert excinfo.value.details == {"field": "username"}
    assert store.device_stats(clock.now)["total_accounts"] == 0


def test_password_never_stored_plain(alice, store):
    stored = store.get_account(alice.account.id)

    assert stored.password_hash != PASSWORD
    assert "password_hash" not in alice.account.to_public_dict()
    assert stored.password_hash not in repr(stored)


def test_get_unknown_account(accounts):
    with pytest.raises(AuthenticationError) as excinfo:
        accounts.get("missing")
    assert excinfo.value.code is ErrorCode.ACCOUNT_NOT_FOUND


def test_change_password_invalidates_tokens(authority, accounts, alice, clock):
    assert accounts.change_password(alice.account.id, PASSWORD, "Better456") == 1

    with pytest.raises(TokenError):
        authority.verify(alice.token)
    with pytest.raises(AuthenticationError):
        accounts.authenticate("alice", PASSWORD)
    assert accounts.authenticate("alice", "Better456").id == alice.account.id


def test_change_password_requires_current(accounts, alice):
    with pytest.raises(AuthenticationError) as excinfo:
        accounts.change_password(alice.account.id, "Wrong1234", "Better456")
    assert excinfo.value.code is ErrorCode.INVALID_CREDENTIALS


def test_change_password_validates_new(accounts, alice):
    with pytest.raises(ValidationError):
        accounts.change_password(alice.account.id, PASSWORD, "weak")


def test_update_email(accounts, alice):
    updated = accounts.update_email(alice.account.id, "Alice.New@Example.com")

    assert updated.email == "alice.new@example.com"
    # Re-saving the same address is not a conflict with itself
    assert accounts.update_email(alice.account.id, "alice.new@example.com").email == "alice.new@example.com"


def test_update_email_conflict(authority, accounts, alice, clock):
    authority.register("bob", "bob@example.com", PASSWORD, device_hash("desktop"), clock.millis())

    with pytest.raises(ConflictError) as excinfo:
        accounts.update_email(alice.account.id, "bob@example.com")
    assert excinfo.value.code is ErrorCode.EMAIL_TAKEN


def test_deactivate_and_reactivate(authority, accounts, alice, clock):
    assert accounts.deactivate(alice.account.id) == 1

    with pytest.raises(AuthenticationError) as excinfo:
        accounts.authenticate("alice", PASSWORD)
    assert excinfo.value.code is ErrorCode.ACCOUNT_INACTIVE

    # The device is free for another account while alice is inactive
    authority.register("bob", "bob@example.com", PASSWORD, device_hash("laptop"), clock.millis())

    reactivated = accounts.reactivate("alice", PASSWORD)
    assert reactivated.is_active


def test_reactivate_active_account_rejected(accounts, alice):
    with pytest.raises(AuthenticationError) as excinfo:
        accounts.reactivate("alice", PASSWORD)
    assert excinfo.value.code is ErrorCode.ACCOUNT_NOT_FOUND


def test_reactivate_wrong_password(accounts, alice):
    accounts.deactivate(alice.account.id)

    with pytest.raises(AuthenticationError) as excinfo:
        accounts.reactivate("alice", "Wrong1234")
    assert excinfo.value.code is ErrorCode.INVALID_CREDENTIALS


def test_delete_account(authority, accounts, alice, clock, store):
    with pytest.raises(AuthenticationError):
        accounts.delete(alice.account.id, "Wrong1234")

    accounts.delete(alice.account.id, PASSWORD)

    assert store.get_account(alice.account.id) is None
    assert store.device_stats(clock.now)["live_tokens"] == 0
    with pytest.raises(TokenError):
        authority.verify(alice.token)
