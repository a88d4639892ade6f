# utils/invite_ledger.py
"""
邀请码账本：额度检查、生成邀请码、查询、兑换。

表格服务没有事务和行锁，所有读-改-写都放在按 key 的锁里执行：
    issue  -> wallet:<inviter>
    redeem -> code:<code> + wallet:<invitee>
写入前按唯一值（钱包 / 邀请码）重新定位行号，不复用早先读到的下标。
"""
import logging
import secrets

from models import AllowlistEntry, InviteCode, ClaimedInvite, TRUE
from models.invite_models import utc_now, format_timestamp
from utils.errors import (
    AuthFailure,
    NotAllowlisted,
    QuotaExhausted,
    InvalidCode,
    AlreadyUsed,
    SelfInvite,
    AlreadyAllowlisted,
    AlreadyClaimed,
    UpstreamFailure,
)
from utils.sheet_store import read_records, table_range
from utils.validators import validate_wallet, validate_code, same_wallet, mask_wallet

logger = logging.getLogger("invite_ledger")

# 去掉了容易混淆的 I / O / l / o / 0 / 1
CODE_ALPHABET = 'ABCDEFGHJKLMNPQRSTUVWXYZabcdefghjkmnpqrstuvwxyz23456789'
CODE_LENGTH = 8
MAX_CODE_ATTEMPTS = 10


def generate_code(length=CODE_LENGTH):
    return ''.join(secrets.choice(CODE_ALPHABET) for _ in range(length))


def wallet_lock_key(wallet):
    return f"wallet:{wallet.lower()}"


def code_lock_key(code):
    return f"code:{code}"


class InviteLedger:
    def __init__(self, store, authenticator, locks, clock=utc_now):
        self.store = store
        self.authenticator = authenticator
        self.locks = locks
        self.clock = clock

    # ----------------- 读取 -----------------
    def find_allowlist_entry(self, wallet):
        for entry in read_records(self.store, AllowlistEntry):
            if same_wallet(entry.wallet, wallet):
                return entry
        return None

    def find_code(self, code):
        # 邀请码区分大小写，精确匹配
        for record in read_records(self.store, InviteCode):
            if record.code == code:
                return record
        return None

    def _new_code(self, codes):
        existing = {c.code for c in codes}
        for _ in range(MAX_CODE_ATTEMPTS):
            code = generate_code()
            if code not in existing:
                return code
        raise UpstreamFailure("Could not generate a unique invite code")

    # ----------------- 生成邀请码 -----------------
    def issue(self, inviter, session_id):
        validate_wallet(inviter)
        if not same_wallet(self.authenticator.session_wallet(session_id), inviter):
            raise AuthFailure('Wallet not verified', 'session_required')

        with self.locks.hold(wallet_lock_key(inviter)):
            entry = self.find_allowlist_entry(inviter)
            if not entry:
                raise NotAllowlisted()
            if entry.invites_remaining <= 0:
                raise QuotaExhausted()

            code = self._new_code(read_records(self.store, InviteCode))
            created_at = format_timestamp(self.clock())
            self.store.append(table_range(InviteCode), [InviteCode(code, inviter, created_at).to_row()])
            logger.info(f"[issue] {inviter} 生成邀请码 {code}")

            remaining = self._decrement_quota(inviter, entry, code)

        return {"code": code, "invitesRemaining": remaining}

    def _decrement_quota(self, inviter, entry, code):
        # 写回前按钱包重新定位行，并以最新值为准
        try:
            fresh = self.find_allowlist_entry(inviter)
            if fresh is None:
                logger.error(f"[issue] 邀请码 {code} 已生成，但 {inviter} 的白名单行已不存在，额度未扣减")
                return 0
            if fresh.invites_remaining != entry.invites_remaining:
                logger.warning(
                    f"[issue] {inviter} 额度在生成期间被外部修改: "
                    f"{entry.invites_remaining} -> {fresh.invites_remaining}"
                )
            remaining = max(fresh.invites_remaining - 1, 0)
            self.store.update(table_range(AllowlistEntry, fresh.row_number, 'B', 'B'), [[remaining]])
            return remaining
        except UpstreamFailure as e:
            # 结果未知的写入不自动重试，留日志人工核对
            logger.error(
                f"[issue] 邀请码 {code} 已追加，但扣减 {inviter} 额度失败"
                f"（读取时剩余 {entry.invites_remaining}）: {e}"
            )
            raise

    # ----------------- 查询邀请码 -----------------
    def check(self, code):
        validate_code(code)
        record = self.find_code(code)
        if not record:
            return {"valid": False, "reason": "not_found"}
        if record.used:
            return {"valid": False, "reason": "already_used"}
        return {"valid": True, "inviter": mask_wallet(record.inviter_wallet)}

    # ----------------- 兑换邀请码 -----------------
    def redeem(self, code, invitee):
        validate_code(code)
        validate_wallet(invitee)

        with self.locks.hold_many(code_lock_key(code), wallet_lock_key(invitee)):
            codes = read_records(self.store, InviteCode)
            record = next((c for c in codes if c.code == code), None)
            if not record:
                raise InvalidCode()
            if record.used:
                raise AlreadyUsed()
            if same_wallet(record.inviter_wallet, invitee):
                raise SelfInvite()
            if self.find_allowlist_entry(invitee):
                raise AlreadyAllowlisted()
            if any(same_wallet(c.invitee_wallet, invitee) for c in codes):
                raise AlreadyClaimed()
            if any(same_wallet(c.invitee_wallet, invitee) for c in read_records(self.store, ClaimedInvite)):
                raise AlreadyClaimed()

            # 兑换前再按邀请码重新定位一次，避免中途插入行导致写错行
            current = self.find_code(code)
            if current is None:
                raise InvalidCode()
            if current.used:
                raise AlreadyUsed()

            used_at = format_timestamp(self.clock())
            self.store.update(
                table_range(InviteCode, current.row_number, 'D', 'F'),
                [[TRUE, invitee, used_at]],
            )
            logger.info(f"[redeem] 邀请码 {code} 已被 {invitee} 兑换（第 {current.row_number} 行）")

            claim = ClaimedInvite(
                invitee_wallet=invitee,
                inviter_wallet=record.inviter_wallet,
                claimed_at=used_at,
                code=code,
            )
            claim_recorded = True
            try:
                self.store.append(table_range(ClaimedInvite), [claim.to_row()])
            except UpstreamFailure as e:
                # 邀请码已标记使用，缺失的领取记录由同步任务的补录步骤修复
                claim_recorded = False
                logger.error(
                    f"[redeem] 邀请码 {code} 已标记使用，但写入领取记录失败 "
                    f"invitee={invitee} inviter={record.inviter_wallet}: {e}"
                )

        return {
            "success": True,
            "inviter": record.inviter_wallet,
            "claimedAt": used_at,
            "claimRecorded": claim_recorded,
        }

    # ----------------- 邀请人视角 -----------------
    def list_codes(self, inviter):
        validate_wallet(inviter)
        codes = [c for c in read_records(self.store, InviteCode) if same_wallet(c.inviter_wallet, inviter)]
        return {
            "codes": [c.code for c in codes if not c.used],
            "totalGenerated": len(codes),
            "used": sum(1 for c in codes if c.used),
        }

    def eligibility(self, inviter):
        validate_wallet(inviter)
        entry = self.find_allowlist_entry(inviter)
        if not entry:
            return {"valid": False, "reason": "not_allowlisted"}
        if entry.invites_remaining <= 0:
            return {"valid": False, "reason": "no_invites"}
        return {
            "valid": True,
            "invitesRemaining": entry.invites_remaining,
            "inviter": mask_wallet(inviter),
        }
