# utils/wallet_auth.py
# 钱包所有权校验：前端用钱包对消息签名，后端恢复签名地址并比对
import logging
import secrets
import time

from eth_account import Account
from eth_account.messages import encode_defunct

from models import VerifiedSession
from utils.errors import Rejected, ValidationError
from utils.validators import validate_wallet, same_wallet

logger = logging.getLogger("wallet_auth")

SESSION_TTL = 10 * 60   # 会话有效期 10 分钟
NONCE_TTL = 5 * 60

MESSAGE_TEMPLATE = (
    "Sign this message to verify you own wallet {wallet}.\n"
    "\n"
    "Nonce: {nonce}"
)


def recover_signer(message: str, signature) -> str:
    """恢复签名地址（EIP-191 personal_sign）"""
    signable_message = encode_defunct(text=message)
    return Account.recover_message(signable_message, signature=signature)


class WalletAuthenticator:
    def __init__(self, sessions, nonces, session_ttl=SESSION_TTL, nonce_ttl=NONCE_TTL,
                 require_nonce=True, clock=time.time):
        self.sessions = sessions
        self.nonces = nonces
        self.session_ttl = session_ttl
        self.nonce_ttl = nonce_ttl
        self.require_nonce = require_nonce
        self.clock = clock

    @staticmethod
    def _nonce_key(wallet):
        return f"nonce:{wallet.lower()}"

    @staticmethod
    def _session_key(session_id):
        return f"session:{session_id}"

    def issue_nonce(self, wallet):
        """下发一次性 nonce，前端需要把返回的 message 原样签名"""
        validate_wallet(wallet)
        nonce = secrets.token_hex(16)
        self.nonces.set(self._nonce_key(wallet), nonce, self.nonce_ttl)
        return {
            "nonce": nonce,
            "message": MESSAGE_TEMPLATE.format(wallet=wallet, nonce=nonce),
            "expiresIn": self.nonce_ttl,
        }

    def verify(self, wallet, message, signature, session_id) -> VerifiedSession:
        validate_wallet(wallet)
        if not signature or not message or not session_id:
            raise ValidationError('Missing signature, message, or sessionId', 'missing_fields')
        if not isinstance(message, str) or not isinstance(session_id, str):
            raise ValidationError('Invalid message or sessionId', 'missing_fields')

        try:
            recovered = recover_signer(message, signature)
        except Exception as e:
            logger.info(f"[verify] 签名无法解析 wallet={wallet}: {e}")
            raise Rejected("bad_signature")

        if not same_wallet(recovered, wallet):
            logger.info(f"[verify] 签名地址不匹配 wallet={wallet} recovered={recovered}")
            raise Rejected("mismatch")

        # 消息里必须带上钱包地址片段，防止拿别的钱包的签名来重放
        lowered = message.lower()
        if wallet[:6].lower() not in lowered or wallet[-4:].lower() not in lowered:
            raise Rejected("bad_message")

        if self.require_nonce:
            expected = self.nonces.get(self._nonce_key(wallet))
            if not expected or expected not in message:
                raise Rejected("bad_message")
            # pop 是原子的，并发重放同一个 nonce 只有一个能成功
            if self.nonces.pop(self._nonce_key(wallet)) != expected:
                raise Rejected("bad_message")

        now = self.clock()
        session = VerifiedSession(session_id=session_id, wallet=wallet.lower(), expires_at=now + self.session_ttl)
        self.sessions.set(self._session_key(session_id), session.wallet, self.session_ttl)
        logger.info(f"[verify] 钱包 {wallet} 校验通过，会话有效期 {self.session_ttl}s")
        return session

    def session_wallet(self, session_id):
        """返回会话绑定的钱包（小写），会话不存在或已过期返回 None"""
        if not session_id:
            return None
        return self.sessions.get(self._session_key(session_id))
