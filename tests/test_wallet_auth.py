import pytest

from conftest import make_authenticator, sign, address_of, INVITER_KEY, INVITEE_KEY
from utils.errors import Rejected, ValidationError
from utils.expiring_store import ExpiringStore


class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


def test_verify_with_server_nonce():
    auth = make_authenticator()
    wallet = address_of(INVITER_KEY)
    challenge = auth.issue_nonce(wallet)
    assert challenge["expiresIn"] == 300
    assert challenge["nonce"] in challenge["message"]

    session = auth.verify(wallet, challenge["message"], sign(INVITER_KEY, challenge["message"]), "sess-1")
    assert session.wallet == wallet.lower()
    assert auth.session_wallet("sess-1") == wallet.lower()


def test_nonce_is_single_use():
    auth = make_authenticator()
    wallet = address_of(INVITER_KEY)
    challenge = auth.issue_nonce(wallet)
    signature = sign(INVITER_KEY, challenge["message"])

    auth.verify(wallet, challenge["message"], signature, "sess-1")
    with pytest.raises(Rejected) as exc:
        auth.verify(wallet, challenge["message"], signature, "sess-2")
    assert exc.value.reason == "bad_message"
    assert auth.session_wallet("sess-2") is None


def test_signature_from_other_wallet_is_mismatch():
    auth = make_authenticator()
    wallet = address_of(INVITER_KEY)
    challenge = auth.issue_nonce(wallet)

    with pytest.raises(Rejected) as exc:
        auth.verify(wallet, challenge["message"], sign(INVITEE_KEY, challenge["message"]), "sess-1")
    assert exc.value.reason == "mismatch"
    assert exc.value.status_code == 401


def test_unparseable_signature():
    auth = make_authenticator()
    wallet = address_of(INVITER_KEY)
    challenge = auth.issue_nonce(wallet)

    with pytest.raises(Rejected) as exc:
        auth.verify(wallet, challenge["message"], "0xdeadbeef", "sess-1")
    assert exc.value.reason == "bad_signature"
    assert exc.value.status_code == 400


def test_message_must_mention_wallet():
    auth = make_authenticator(require_nonce=False)
    wallet = address_of(INVITER_KEY)
    message = "Sign in to the invite app"

    with pytest.raises(Rejected) as exc:
        auth.verify(wallet, message, sign(INVITER_KEY, message), "sess-1")
    assert exc.value.reason == "bad_message"


def test_nonce_optional_when_disabled():
    clock = FakeClock()
    auth = make_authenticator(clock=clock, require_nonce=False)
    wallet = address_of(INVITER_KEY)
    message = f"Verify wallet {wallet}"

    session = auth.verify(wallet, message, sign(INVITER_KEY, message), "sess-1")
    assert session.expires_at == clock.now + 600
    assert session.wallet == wallet.lower()


def test_missing_fields():
    auth = make_authenticator()
    wallet = address_of(INVITER_KEY)
    with pytest.raises(ValidationError) as exc:
        auth.verify(wallet, "hello", None, "sess-1")
    assert exc.value.reason == "missing_fields"

    with pytest.raises(ValidationError) as exc:
        auth.verify("not-a-wallet", "hello", "0x00", "sess-1")
    assert exc.value.reason == "invalid_wallet"


def test_session_expires():
    clock = FakeClock()
    auth = make_authenticator(clock=clock)
    wallet = address_of(INVITER_KEY)
    challenge = auth.issue_nonce(wallet)
    auth.verify(wallet, challenge["message"], sign(INVITER_KEY, challenge["message"]), "sess-1")

    clock.now += 599
    assert auth.session_wallet("sess-1") == wallet.lower()
    clock.now += 2
    assert auth.session_wallet("sess-1") is None


def test_expired_nonce_is_rejected():
    clock = FakeClock()
    auth = make_authenticator(clock=clock)
    wallet = address_of(INVITER_KEY)
    challenge = auth.issue_nonce(wallet)

    clock.now += 301
    with pytest.raises(Rejected):
        auth.verify(wallet, challenge["message"], sign(INVITER_KEY, challenge["message"]), "sess-1")


def test_expiring_store_pop_and_sweep():
    clock = FakeClock()
    store = ExpiringStore(clock=clock)
    store.set("a", "1", 10)
    store.set("b", "2", 100)
    assert store.get("a") == "1"
    assert store.pop("a") == "1"
    assert store.pop("a") is None

    clock.now += 200
    store.set("c", "3", 10)
    # 写入时顺带清理掉已过期的 b
    assert len(store) == 1
