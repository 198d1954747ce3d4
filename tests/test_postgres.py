"""
PostgreSQL backend tests.

Run against a disposable database:
    DEVICEBIND_TEST_POSTGRES_URL=postgresql://localhost/devicebind_test pytest -m postgres
"""

from __future__ import annotations

import os
import threading
import uuid
from datetime import timedelta

import pytest

from conftest import device_hash
from devicebind.core.errors import ConflictError, ErrorCode
from devicebind.db.models import Account, SessionToken


POSTGRES_URL = os.environ.get("DEVICEBIND_TEST_POSTGRES_URL")

pytestmark = [
    pytest.mark.postgres,
    pytest.mark.skipif(not POSTGRES_URL, reason="DEVICEBIND_TEST_POSTGRES_URL not set"),
]


@pytest.fixture
def pg_store():
    import psycopg2

    from devicebind.db.postgres_store import PostgresDeviceStore

    conn = psycopg2.connect(POSTGRES_URL)
    try:
        with conn.cursor() as cursor:
            cursor.execute("DROP TABLE IF EXISTS session_tokens, accounts")
        conn.commit()
    finally:
        conn.close()

    store = PostgresDeviceStore(POSTGRES_URL, max_connections=20)
    store.initialize()
    yield store
    store.close()


def make_account(store, clock, username):
    account = Account(
        id=str(uuid.uuid4()),
        username=username,
        email=f"{username}@example.com",
        password_hash="$argon2id$placeholder",
        is_active=True,
        created_at=clock.now,
        updated_at=clock.now,
    )
    with store.transaction() as tx:
        tx.insert_account(account)
    return account


def make_token(account, processed_hash, clock):
    return SessionToken(
        id=str(uuid.uuid4()),
        token_hash=uuid.uuid4().hex * 2,
        account_id=account.id,
        processed_hash=processed_hash,
        created_at=clock.now,
        expires_at=clock.now + timedelta(hours=24),
    )


def test_exclusivity_rules(pg_store, clock):
    alice = make_account(pg_store, clock, "alice")
    bob = make_account(pg_store, clock, "bob")
    pg_store.atomic(lambda tx: tx.insert_token_if_none_live(make_token(alice, device_hash("H1"), clock), clock.now))

    with pytest.raises(ConflictError) as excinfo:
        pg_store.atomic(lambda tx: tx.insert_token_if_none_live(make_token(bob, device_hash("H1"), clock), clock.now))
    assert excinfo.value.code is ErrorCode.DEVICE_ALREADY_REGISTERED

    with pytest.raises(ConflictError) as excinfo:
        pg_store.atomic(lambda tx: tx.insert_token_if_none_live(make_token(alice, device_hash("H2"), clock), clock.now))
    assert excinfo.value.code is ErrorCode.ACCOUNT_ACTIVE_ON_OTHER_DEVICE

    assert pg_store.device_stats(clock.now)["live_tokens"] == 1


def test_concurrent_inserts_single_winner(pg_store, clock):
    accounts = [make_account(pg_store, clock, f"user{i}") for i in range(8)]
    barrier = threading.Barrier(len(accounts))
    outcomes = []
    lock = threading.Lock()

    def attempt(account):
        token = make_token(account, device_hash("shared"), clock)
        barrier.wait()
        try:
            pg_store.atomic(lambda tx: tx.insert_token_if_none_live(token, clock.now), attempts=20)
            result = "ok"
        except ConflictError as e:
            result = e.code
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=attempt, args=(a,)) for a in accounts]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert outcomes.count("ok") == 1
    assert outcomes.count(ErrorCode.DEVICE_ALREADY_REGISTERED) == len(accounts) - 1
