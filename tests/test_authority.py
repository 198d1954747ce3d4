"""Tests for the device authority: registration, login and session control."""

from __future__ import annotations

import threading
from datetime import timedelta

import pytest

from conftest import PASSWORD, device_hash
from devicebind.core.auth.tokens import TokenSigner
from devicebind.core.errors import (
    AuthenticationError,
    ConflictError,
    ErrorCode,
    TokenError,
    ValidationError,
)


LAPTOP = device_hash("alice-laptop")
DESKTOP = device_hash("alice-desktop")
SHARED = device_hash("family-pc")


def register(authority, clock, username, device, email=None):
    return authority.register(
        username,
        email or f"{username}@example.com",
        PASSWORD,
        device,
        clock.millis(),
    )


def test_register_grants_first_session(authority, clock):
    result = register(authority, clock, "alice", LAPTOP)

    assert result.account.username == "alice"
    assert result.session.is_live(clock.now)
    assert result.session.expires_at == clock.now + timedelta(hours=24)
    assert authority.verify(result.token).account_id == result.account.id


def test_register_on_claimed_device_rejected(authority, clock, store):
    register(authority, clock, "alice", SHARED)

    with pytest.raises(ConflictError) as excinfo:
        register(authority, clock, "bob", SHARED)

    assert excinfo.value.code is ErrorCode.DEVICE_ALREADY_REGISTERED
    # Nothing of bob was persisted
    assert store.find_account_by_login("bob") is None


def test_register_duplicate_username_rejected(authority, clock):
    register(authority, clock, "alice", LAPTOP)

    with pytest.raises(ConflictError) as excinfo:
        register(authority, clock, "ALICE", DESKTOP, email="other@example.com")

    assert excinfo.value.code is ErrorCode.USERNAME_TAKEN


def test_register_duplicate_email_rejected(authority, clock, store):
    register(authority, clock, "alice", LAPTOP)

    with pytest.raises(ConflictError) as excinfo:
        register(authority, clock, "alicia", DESKTOP, email="alice@example.com")

    assert excinfo.value.code is ErrorCode.EMAIL_TAKEN
    assert store.device_stats(clock.now)["live_tokens"] == 1


@pytest.mark.parametrize(
    "bad_hash,code",
    [
        (None, ErrorCode.DEVICE_HASH_REQUIRED),
        ("", ErrorCode.DEVICE_HASH_REQUIRED),
        ("abc123", ErrorCode.INVALID_DEVICE_HASH),
        ("z" * 64, ErrorCode.INVALID_DEVICE_HASH),
        (12345, ErrorCode.INVALID_DEVICE_HASH),
    ],
)
def test_malformed_device_hash_rejected_without_state(authority, clock, store, bad_hash, code):
    with pytest.raises(ValidationError) as excinfo:
        authority.register("alice", "alice@example.com", PASSWORD, bad_hash, clock.millis())

    assert excinfo.value.code is code
    assert store.device_stats(clock.now)["total_accounts"] == 0


def test_login_on_second_device_rejected(authority, clock):
    register(authority, clock, "alice", LAPTOP)

    with pytest.raises(ConflictError) as excinfo:
        authority.login("alice", PASSWORD, DESKTOP, clock.millis())

    assert excinfo.value.code is ErrorCode.ACCOUNT_ACTIVE_ON_OTHER_DEVICE


def test_login_after_logout_moves_device(authority, clock):
    first = register(authority, clock, "alice", LAPTOP)

    assert authority.logout(first.token)
    second = authority.login("alice", PASSWORD, DESKTOP, clock.millis())

    assert second.session.processed_hash != first.session.processed_hash
    with pytest.raises(TokenError) as excinfo:
        authority.verify(first.token)
    assert excinfo.value.code is ErrorCode.TOKEN_INVALID


def test_login_same_device_rotates_token(authority, clock):
    first = register(authority, clock, "alice", LAPTOP)

    clock.advance(seconds=30)
    second = authority.login("alice", PASSWORD, LAPTOP, clock.millis())

    assert second.rotated == 1
    assert second.account.last_login == clock.now
    with pytest.raises(TokenError):
        authority.verify(first.token)
    assert authority.verify(second.token).session.id == second.session.id


def test_login_by_email(authority, clock):
    register(authority, clock, "alice", LAPTOP)

    result = authority.login("Alice@Example.com", PASSWORD, LAPTOP, clock.millis())

    assert result.account.username == "alice"


def test_other_account_on_claimed_device_rejected(authority, clock):
    register(authority, clock, "alice", SHARED)
    register(authority, clock, "bob", DESKTOP)
    bob_session = authority.login("bob", PASSWORD, DESKTOP, clock.millis())
    authority.logout(bob_session.token)

    with pytest.raises(ConflictError) as excinfo:
        authority.login("bob", PASSWORD, SHARED, clock.millis())

    assert excinfo.value.code is ErrorCode.DEVICE_ALREADY_REGISTERED


def test_wrong_password_rejected(authority, clock):
    register(authority, clock, "alice", LAPTOP)

    with pytest.raises(AuthenticationError) as excinfo:
        authority.login("alice", "Wrong1234", LAPTOP, clock.millis())

    assert excinfo.value.code is ErrorCode.INVALID_CREDENTIALS


def test_unknown_login_rejected(authority, clock):
    with pytest.raises(AuthenticationError) as excinfo:
        authority.login("nobody", PASSWORD, LAPTOP, clock.millis())

    assert excinfo.value.code is ErrorCode.INVALID_CREDENTIALS


def test_stale_timestamp_rejected(authority, clock):
    register(authority, clock, "alice", LAPTOP)
    stale = clock.millis() - 301_000

    with pytest.raises(ValidationError) as excinfo:
        authority.login("alice", PASSWORD, LAPTOP, stale)

    assert excinfo.value.code is ErrorCode.STALE_DEVICE_HASH


def test_missing_timestamp_accepted(authority):
    result = authority.register("alice", "alice@example.com", PASSWORD, LAPTOP)

    assert result.session.is_valid


def test_token_expiry(authority, clock):
    result = register(authority, clock, "alice", LAPTOP)

    clock.advance(hours=24)

    with pytest.raises(TokenError) as excinfo:
        authority.verify(result.token)
    assert excinfo.value.code is ErrorCode.TOKEN_EXPIRED

    # An expired token no longer blocks another device
    authority.login("alice", PASSWORD, DESKTOP, clock.millis())


def test_foreign_signature_rejected(authority, clock):
    result = register(authority, clock, "alice", LAPTOP)
    forged = TokenSigner("another-secret-" + "x" * 32).issue(
        result.account.id, result.session.processed_hash, clock.now
    )

    with pytest.raises(TokenError) as excinfo:
        authority.verify(forged.token)

    assert excinfo.value.code is ErrorCode.TOKEN_INVALID


def test_logout_is_idempotent(authority, clock):
    result = register(authority, clock, "alice", LAPTOP)

    assert authority.logout(result.token)
    assert not authority.logout(result.token)

    with pytest.raises(TokenError):
        authority.logout("")


def test_force_logout_clears_every_device(authority, clock):
    result = register(authority, clock, "alice", LAPTOP)

    assert authority.force_logout(result.account.id) == 1
    assert authority.get_active_sessions(result.account.id) == []

    authority.login("alice", PASSWORD, DESKTOP, clock.millis())


def test_evict_other_devices_recovers_from_conflict(authority, clock):
    first = register(authority, clock, "alice", LAPTOP)

    with pytest.raises(ConflictError):
        authority.login("alice", PASSWORD, DESKTOP, clock.millis())

    assert authority.evict_other_devices("alice", PASSWORD, DESKTOP, clock.millis()) == 1

    with pytest.raises(TokenError):
        authority.verify(first.token)
    authority.login("alice", PASSWORD, DESKTOP, clock.millis())


def test_evict_other_devices_requires_credentials(authority, clock):
    register(authority, clock, "alice", LAPTOP)

    with pytest.raises(AuthenticationError):
        authority.evict_other_devices("alice", "Wrong1234", DESKTOP, clock.millis())


def test_logout_from_other_devices_keeps_current(authority, clock):
    result = register(authority, clock, "alice", LAPTOP)
    session = authority.verify(result.token)

    assert authority.logout_from_other_devices(session.account_id, session.processed_hash) == 0
    assert authority.verify(result.token).account_id == result.account.id


def test_deactivated_account_token_rejected(authority, clock, store):
    result = register(authority, clock, "alice", LAPTOP)

    with store.transaction() as tx:
        tx.update_account(result.account.id, clock.now, is_active=False)

    with pytest.raises(TokenError) as excinfo:
        authority.verify(result.token)
    assert excinfo.value.code is ErrorCode.TOKEN_INVALID

    with pytest.raises(AuthenticationError) as excinfo:
        authority.login("alice", PASSWORD, LAPTOP, clock.millis())
    assert excinfo.value.code is ErrorCode.ACCOUNT_INACTIVE


def test_active_sessions_are_redacted(authority, clock):
    result = register(authority, clock, "alice", LAPTOP)
    processed = result.session.processed_hash

    sessions = authority.get_active_sessions(result.account.id, current_processed_hash=processed)

    assert len(sessions) == 1
    summary = sessions[0].to_dict()
    assert summary["isCurrent"] is True
    assert summary["deviceId"] != processed
    assert summary["deviceId"].startswith(processed[:8])
    assert processed not in str(summary)
    assert LAPTOP not in str(summary)


def test_stored_hash_is_salted(authority, clock):
    result = register(authority, clock, "alice", LAPTOP)

    assert result.session.processed_hash != LAPTOP
    assert result.session.processed_hash == authority.processor.process(LAPTOP)


def test_device_info(authority, clock):
    result = register(authority, clock, "alice", LAPTOP)

    info = authority.device_info(result.account.id)

    assert info["activeDevices"] == 1
    assert info["devices"][0]["deviceId"] == result.session.processed_hash[:8] + "..."


def test_device_stats_and_purge(authority, clock):
    result = register(authority, clock, "alice", LAPTOP)
    authority.logout(result.token)

    stats = authority.device_stats()
    assert stats["live_tokens"] == 0
    assert stats["total_accounts"] == 1
    assert stats["timestamp"] == clock.now.isoformat()

    clock.advance(days=8)
    assert authority.purge_tokens(timedelta(days=7)) == 1


def test_concurrent_logins_single_winner(authority, clock):
    register(authority, clock, "alice", LAPTOP)
    authority.force_logout(authority.accounts.authenticate("alice", PASSWORD).id)

    devices = [device_hash(f"device-{i}") for i in range(5)]
    barrier = threading.Barrier(len(devices))
    outcomes = []
    lock = threading.Lock()

    def attempt(device):
        barrier.wait()
        try:
            authority.login("alice", PASSWORD, device, clock.millis())
            result = "granted"
        except ConflictError as e:
            result = e.code
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=attempt, args=(d,)) for d in devices]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert outcomes.count("granted") == 1
    assert outcomes.count(ErrorCode.ACCOUNT_ACTIVE_ON_OTHER_DEVICE) == len(devices) - 1
    assert authority.device_stats()["live_tokens"] == 1


def test_concurrent_registrations_on_one_device(authority, clock, store):
    names = [f"user{i}" for i in range(5)]
    barrier = threading.Barrier(len(names))
    outcomes = []
    lock = threading.Lock()

    def attempt(name):
        barrier.wait()
        try:
            register(authority, clock, name, SHARED)
            result = "granted"
        except ConflictError as e:
            result = e.code
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=attempt, args=(n,)) for n in names]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert outcomes.count("granted") == 1
    assert outcomes.count(ErrorCode.DEVICE_ALREADY_REGISTERED) == len(names) - 1
    assert store.device_stats(clock.now)["total_accounts"] == 1


def test_alice_moves_from_h1_to_h2(authority, clock):
    h1, h2 = device_hash("H1"), device_hash("H2")
    t1 = authority.register("alice", "alice@example.com", PASSWORD, h1, clock.millis())

    with pytest.raises(ConflictError) as excinfo:
        authority.login("alice", PASSWORD, h2, clock.millis())
    assert excinfo.value.code is ErrorCode.ACCOUNT_ACTIVE_ON_OTHER_DEVICE

    assert authority.force_logout(t1.account.id) == 1
    with pytest.raises(TokenError):
        authority.verify(t1.token)

    t2 = authority.login("alice", PASSWORD, h2, clock.millis())
    assert authority.verify(t2.token).processed_hash == authority.processor.process(h2)
