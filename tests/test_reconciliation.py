from datetime import datetime, timezone, timedelta
from unittest.mock import MagicMock

import requests

from conftest import make_store
from models import ClaimedInvite, InviteCode, SyncStatusEnum
from models.invite_models import format_timestamp
from utils.allowlist_client import AllowlistClient
from utils.key_lock import KeyedLock
from utils.reconciliation import ReconciliationEngine
from utils.sheet_store import read_records, table_range

INVITER = "0x" + "a" * 40
NOW = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


def wallet(i):
    return "0x" + f"{i:040x}"


def add_claims(store, wallets, status=SyncStatusEnum.unsynced):
    store.append(table_range(ClaimedInvite), [
        ClaimedInvite(w, INVITER, format_timestamp(NOW), f"CODE{i:04d}", status).to_row()
        for i, w in enumerate(wallets)
    ])


def make_engine(store, client, **kwargs):
    kwargs.setdefault("batch_delay", 0)
    kwargs.setdefault("backfill_grace", 60)
    return ReconciliationEngine(store, client, KeyedLock(), clock=lambda: NOW, **kwargs)


def statuses(store):
    return [c.sync_status for c in read_records(store, ClaimedInvite)]


def test_pending_claims_are_synced_and_rerun_is_noop(allowlist_client):
    store = make_store()
    add_claims(store, [wallet(1), wallet(2)])
    engine = make_engine(store, allowlist_client)

    summary = engine.run()
    assert summary["synced"] == 2
    assert summary["failed"] == 0
    assert summary["total"] == 2
    allowlist_client.add_wallets.assert_called_once_with([wallet(1), wallet(2)])
    assert statuses(store) == [SyncStatusEnum.synced] * 2

    again = engine.run()
    assert again["synced"] == 0
    assert again["failed"] == 0
    assert again["message"] == "No new wallets to sync"
    assert allowlist_client.add_wallets.call_count == 1


def test_failed_batch_is_marked_and_retried(allowlist_client):
    store = make_store()
    add_claims(store, [wallet(1)])
    allowlist_client.add_wallets.return_value = (False, "HTTP 500: boom")
    engine = make_engine(store, allowlist_client)

    summary = engine.run()
    assert summary["failed"] == 1
    assert summary["results"] == [{"batch": 1, "status": "failed", "error": "HTTP 500: boom"}]
    assert store.dump("ClaimedInvites")[1][4] == "failed"

    allowlist_client.add_wallets.return_value = (True, None)
    assert engine.run()["synced"] == 1
    assert statuses(store) == [SyncStatusEnum.synced]


def test_batches_of_fifteen_with_delay(allowlist_client):
    store = make_store()
    add_claims(store, [wallet(i) for i in range(1, 32)])
    sleep = MagicMock()
    engine = make_engine(store, allowlist_client, batch_delay=0.5, sleep=sleep)

    summary = engine.run()
    assert summary["synced"] == 31
    sizes = [len(call.args[0]) for call in allowlist_client.add_wallets.call_args_list]
    assert sizes == [15, 15, 1]
    assert sleep.call_count == 2
    sleep.assert_called_with(0.5)


def test_duplicate_rows_for_one_wallet_are_sent_once(allowlist_client):
    store = make_store()
    add_claims(store, [wallet(1), wallet(1).upper().replace("0X", "0x")])
    engine = make_engine(store, allowlist_client)

    summary = engine.run()
    assert summary["synced"] == 1
    allowlist_client.add_wallets.assert_called_once_with([wallet(1)])
    assert statuses(store) == [SyncStatusEnum.synced] * 2


def test_legacy_added_status_counts_as_synced(allowlist_client):
    store = make_store()
    store.append(table_range(ClaimedInvite), [[wallet(1), INVITER, "2024-01-01T00:00:00.000Z", "", "added"]])
    engine = make_engine(store, allowlist_client)

    assert engine.run()["total"] == 0
    allowlist_client.add_wallets.assert_not_called()


def test_used_code_without_claim_row_is_backfilled(allowlist_client):
    store = make_store()
    used_at = format_timestamp(NOW - timedelta(minutes=5))
    store.append(table_range(InviteCode), [
        InviteCode("ABCDEFGH", INVITER, used_at, True, wallet(7), used_at).to_row(),
    ])
    engine = make_engine(store, allowlist_client)

    summary = engine.run()
    assert summary["backfilled"] == 1
    assert summary["synced"] == 1

    claims = read_records(store, ClaimedInvite)
    assert len(claims) == 1
    assert claims[0].invitee_wallet == wallet(7)
    assert claims[0].code == "ABCDEFGH"
    assert claims[0].claimed_at == used_at

    assert engine.run()["backfilled"] == 0


def test_recent_redemption_is_left_alone(allowlist_client):
    store = make_store()
    used_at = format_timestamp(NOW - timedelta(seconds=10))
    store.append(table_range(InviteCode), [
        InviteCode("ABCDEFGH", INVITER, used_at, True, wallet(7), used_at).to_row(),
    ])
    engine = make_engine(store, allowlist_client)

    assert engine.find_unrecorded() == []
    assert engine.run()["backfilled"] == 0


# ----------------- AllowlistClient -----------------
def make_response(status_code, text=""):
    resp = MagicMock()
    resp.status_code = status_code
    resp.text = text
    return resp


def test_client_posts_wallets():
    session = MagicMock()
    session.post.return_value = make_response(200)
    client = AllowlistClient("app-id", "app-secret", session=session)

    assert client.add_wallets([wallet(1)]) == (True, None)
    args, kwargs = session.post.call_args
    assert args[0] == "https://auth.privy.io/api/v1/apps/app-id/allowlist"
    assert kwargs["json"] == [{"type": "wallet", "value": wallet(1)}]
    assert kwargs["auth"] == ("app-id", "app-secret")
    assert kwargs["headers"] == {"privy-app-id": "app-id"}


def test_client_treats_already_present_as_success():
    session = MagicMock()
    client = AllowlistClient("app-id", "app-secret", session=session)

    session.post.return_value = make_response(409)
    assert client.add_wallets([wallet(1)]) == (True, None)

    session.post.return_value = make_response(400, "Wallet already exists in allowlist")
    assert client.add_wallets([wallet(1)]) == (True, None)


def test_client_failures():
    session = MagicMock()
    client = AllowlistClient("app-id", "app-secret", session=session)

    session.post.return_value = make_response(500, "boom")
    assert client.add_wallets([wallet(1)]) == (False, "HTTP 500: boom")

    session.post.side_effect = requests.ConnectionError("refused")
    ok, error = client.add_wallets([wallet(1)])
    assert ok is False
    assert "refused" in error

    assert AllowlistClient(None, None, session=session).add_wallets([wallet(1)])[0] is False
