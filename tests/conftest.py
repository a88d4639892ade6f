"""
测试公共 fixture

所有测试都跑在内存表格（MemorySheetStore）上，外部白名单服务用 MagicMock 代替，
钱包签名用真实的 eth_account 私钥生成。
"""
import os
import sys
import time
from unittest.mock import MagicMock

import pytest
import stripe
from eth_account import Account
from eth_account.messages import encode_defunct

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app import create_app  # noqa: E402
from models import SHEET_MODELS  # noqa: E402
from utils.expiring_store import ExpiringStore  # noqa: E402
from utils.key_lock import KeyedLock  # noqa: E402
from utils.sheet_store import MemorySheetStore  # noqa: E402
from utils.wallet_auth import WalletAuthenticator  # noqa: E402

# 固定私钥，地址在每次运行中保持一致
INVITER_KEY = "0x" + "11" * 32
INVITEE_KEY = "0x" + "22" * 32
OUTSIDER_KEY = "0x" + "33" * 32

WEBHOOK_SECRET = "whsec_test"
ADMIN_PASSWORD = "correct horse battery staple"
SYNC_KEY = "sync-secret"


def address_of(key):
    return Account.from_key(key).address


def sign(key, message):
    signed = Account.sign_message(encode_defunct(text=message), private_key=key)
    return "0x" + bytes(signed.signature).hex()


def stripe_header(payload, secret=WEBHOOK_SECRET, timestamp=None):
    """按 Stripe 的规则给请求体签名，生成 Stripe-Signature 头"""
    timestamp = timestamp or int(time.time())
    if isinstance(payload, bytes):
        payload = payload.decode("utf-8")
    signature = stripe.WebhookSignature._compute_signature(f"{timestamp}.{payload}", secret)
    return f"t={timestamp},v1={signature}"


def empty_tables():
    return {model.__sheet__: [list(model.HEADER)] for model in SHEET_MODELS}


def make_store(allowlist=None, latency=0.0):
    """allowlist: [(wallet, invites_remaining), ...]"""
    tables = empty_tables()
    for wallet, remaining in allowlist or []:
        tables["Allowlist"].append([wallet, str(remaining)])
    return MemorySheetStore(tables=tables, latency=latency)


def make_authenticator(clock=None, require_nonce=True):
    kwargs = {"clock": clock} if clock else {}
    return WalletAuthenticator(
        ExpiringStore(**kwargs),
        ExpiringStore(**kwargs),
        require_nonce=require_nonce,
        **kwargs,
    )


def open_session(authenticator, wallet, session_id="session-1"):
    """跳过签名流程，直接写入一个已验证会话"""
    authenticator.sessions.set(f"session:{session_id}", wallet.lower(), authenticator.session_ttl)
    return session_id


@pytest.fixture
def inviter():
    return address_of(INVITER_KEY)


@pytest.fixture
def invitee():
    return address_of(INVITEE_KEY)


@pytest.fixture
def outsider():
    return address_of(OUTSIDER_KEY)


@pytest.fixture
def locks():
    return KeyedLock(timeout=5)


@pytest.fixture
def allowlist_client():
    client = MagicMock()
    client.add_wallets.return_value = (True, None)
    return client


@pytest.fixture
def store(inviter):
    return make_store([(inviter, 3)])


@pytest.fixture
def test_config():
    return {
        "TESTING": True,
        "SHEET_BACKEND": "memory",
        "WEBHOOK_SIGNATURE_MODE": "enforced",
        "STRIPE_WEBHOOK_SECRET": WEBHOOK_SECRET,
        "SYNC_BATCH_DELAY": 0,
        "BACKFILL_GRACE_SECONDS": 0,
        "ADMIN_PASSWORD": ADMIN_PASSWORD,
        "SYNC_KEY": SYNC_KEY,
        "REDIS_URL": None,
        "RATE_LIMIT_READ": 1000,
        "RATE_LIMIT_WRITE": 1000,
        "RATE_LIMIT_CLAIM": 1000,
        "RATE_LIMIT_VERIFY": 1000,
    }


@pytest.fixture
def app(test_config, store, allowlist_client):
    return create_app(test_config, store=store, allowlist_client=allowlist_client)


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def services(app):
    return app.extensions["invite_services"]
