# errors.py
# 业务异常：路由层统一捕获后转成 jsonify({'error', 'reason'}), status


class InviteError(Exception):
    status_code = 400
    reason = "error"

    def __init__(self, message=None, reason=None):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        if reason:
            self.reason = reason

    def to_dict(self):
        return {"error": self.message, "reason": self.reason}


# ----------------- 输入校验 -----------------
class ValidationError(InviteError):
    status_code = 400
    reason = "invalid_input"


# ----------------- 状态冲突（终态，不要重试） -----------------
class StateConflict(InviteError):
    status_code = 400
    reason = "conflict"


class NotAllowlisted(StateConflict):
    reason = "not_allowlisted"

    def __init__(self, message="Not on allowlist"):
        super().__init__(message)


class QuotaExhausted(StateConflict):
    reason = "no_invites"

    def __init__(self, message="No invites remaining"):
        super().__init__(message)


class InvalidCode(StateConflict):
    reason = "not_found"

    def __init__(self, message="Invalid code"):
        super().__init__(message)


class AlreadyUsed(StateConflict):
    reason = "already_used"

    def __init__(self, message="Code already used"):
        super().__init__(message)


class SelfInvite(StateConflict):
    reason = "self_invite"

    def __init__(self, message="Cannot invite yourself"):
        super().__init__(message)


class AlreadyAllowlisted(StateConflict):
    reason = "already_allowlisted"

    def __init__(self, message="Wallet already allowlisted"):
        super().__init__(message)


class AlreadyClaimed(StateConflict):
    reason = "already_claimed"

    def __init__(self, message="Wallet already used an invite"):
        super().__init__(message)


# ----------------- 鉴权 -----------------
class AuthFailure(InviteError):
    status_code = 401
    reason = "unauthorized"


class Rejected(AuthFailure):
    """钱包签名校验失败，reason 为 bad_signature / mismatch / bad_message"""

    MESSAGES = {
        "bad_signature": "Invalid signature",
        "mismatch": "Signature does not match wallet",
        "bad_message": "Invalid message format",
    }

    def __init__(self, reason):
        super().__init__(self.MESSAGES.get(reason, "Verification failed"), reason)
        # 签名本身无法解析属于输入错误
        self.status_code = 400 if reason == "bad_signature" else 401


# ----------------- 限流 -----------------
class AdmissionDenied(InviteError):
    status_code = 429
    reason = "rate_limited"

    def __init__(self, message="Too many requests"):
        super().__init__(message)


# ----------------- 上游（表格服务 / 外部白名单服务） -----------------
class UpstreamFailure(InviteError):
    status_code = 500
    reason = "upstream_error"
