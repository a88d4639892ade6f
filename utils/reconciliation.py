# utils/reconciliation.py
"""
把已兑换的钱包同步到外部白名单服务。

1. 补录：邀请码已标记使用、但 ClaimedInvites 里没有对应记录的，补一行（未同步）
2. 扫描 ClaimedInvites 中未同步的行，按批次（默认 15 个）提交
3. 批次成功 -> 逐行写 synced；批次失败 -> 逐行写 failed，下次任务重试

外部服务对“已存在”的钱包返回成功，所以重复提交是安全的。
"""
import logging
import time

from models import ClaimedInvite, InviteCode, SyncStatusEnum
from models.invite_models import utc_now, parse_timestamp
from utils.errors import UpstreamFailure
from utils.invite_ledger import wallet_lock_key
from utils.sheet_store import read_records, table_range
from utils.validators import same_wallet

logger = logging.getLogger("reconciliation")

BATCH_SIZE = 15
BATCH_DELAY = 0.5       # 批次间隔，避免触发外部服务限流
BACKFILL_GRACE = 60     # 刚兑换的邀请码可能还在写领取记录，留出时间窗口


class ReconciliationEngine:
    def __init__(self, store, client, locks, batch_size=BATCH_SIZE, batch_delay=BATCH_DELAY,
                 backfill_grace=BACKFILL_GRACE, clock=utc_now, sleep=time.sleep):
        self.store = store
        self.client = client
        self.locks = locks
        self.batch_size = batch_size
        self.batch_delay = batch_delay
        self.backfill_grace = backfill_grace
        self.clock = clock
        self.sleep = sleep

    # ----------------- 补录缺失的领取记录 -----------------
    def find_unrecorded(self):
        claimed = {c.invitee_wallet.lower() for c in read_records(self.store, ClaimedInvite)}
        now = self.clock()
        missing = []
        for code in read_records(self.store, InviteCode):
            if not code.used or not code.invitee_wallet:
                continue
            if code.invitee_wallet.lower() in claimed:
                continue
            used_at = parse_timestamp(code.used_at)
            if used_at and (now - used_at).total_seconds() < self.backfill_grace:
                continue
            missing.append(code)
        return missing

    def backfill(self):
        count = 0
        for code in self.find_unrecorded():
            with self.locks.hold(wallet_lock_key(code.invitee_wallet)):
                # 拿到锁后再确认一次，兑换流程可能刚刚写完
                claims = read_records(self.store, ClaimedInvite)
                if any(same_wallet(c.invitee_wallet, code.invitee_wallet) for c in claims):
                    continue
                claim = ClaimedInvite(
                    invitee_wallet=code.invitee_wallet,
                    inviter_wallet=code.inviter_wallet,
                    claimed_at=code.used_at,
                    code=code.code,
                )
                try:
                    self.store.append(table_range(ClaimedInvite), [claim.to_row()])
                except UpstreamFailure as e:
                    logger.error(f"[backfill] 补录 {code.invitee_wallet}（邀请码 {code.code}）失败: {e}")
                    continue
                count += 1
                logger.warning(f"[backfill] 邀请码 {code.code} 缺少领取记录，已补录 {code.invitee_wallet}")
        return count

    # ----------------- 同步 -----------------
    def pending_claims(self):
        """未同步的行按钱包分组（同一钱包多行时一起标记）"""
        grouped = {}
        for claim in read_records(self.store, ClaimedInvite):
            if not claim.invitee_wallet or claim.sync_status == SyncStatusEnum.synced:
                continue
            grouped.setdefault(claim.invitee_wallet.lower(), []).append(claim)
        return grouped

    def _mark(self, claims, status):
        for claim in claims:
            try:
                self.store.update(
                    table_range(ClaimedInvite, claim.row_number, 'E', 'E'),
                    [[status.value]],
                    idempotent=True,
                )
            except UpstreamFailure as e:
                # 状态没写上的行下次会再提交一次，外部服务按已存在处理
                logger.error(f"[sync] 第 {claim.row_number} 行 ({claim.invitee_wallet}) 状态写入 {status.value} 失败: {e}")

    def run(self):
        with self.locks.hold("reconcile") as lease:
            backfilled = self.backfill()
            pending = self.pending_claims()

            if not pending:
                return {
                    "success": True,
                    "message": "No new wallets to sync",
                    "synced": 0,
                    "failed": 0,
                    "total": 0,
                    "backfilled": backfilled,
                    "results": [],
                }

            wallets = list(pending.keys())
            total = len(wallets)
            synced = 0
            failed = 0
            results = []
            logger.info(f"[sync] 待同步钱包 {total} 个，补录 {backfilled} 个")

            for i in range(0, total, self.batch_size):
                batch_no = i // self.batch_size + 1
                batch_keys = wallets[i:i + self.batch_size]
                batch_claims = [c for key in batch_keys for c in pending[key]]
                batch_wallets = [pending[key][0].invitee_wallet for key in batch_keys]

                success, error = self.client.add_wallets(batch_wallets)
                if success:
                    self._mark(batch_claims, SyncStatusEnum.synced)
                    synced += len(batch_keys)
                    results.append({"batch": batch_no, "status": "success", "count": len(batch_keys)})
                    logger.info(f"[sync] 第 {batch_no} 批同步成功，{len(batch_keys)} 个钱包")
                else:
                    self._mark(batch_claims, SyncStatusEnum.failed)
                    failed += len(batch_keys)
                    results.append({"batch": batch_no, "status": "failed", "error": error})
                    logger.error(f"[sync] 第 {batch_no} 批同步失败，下次重试: {error}")

                # 每批结束续期一次，整轮同步期间一直持有锁
                lease.extend()

                if i + self.batch_size < total and self.batch_delay:
                    self.sleep(self.batch_delay)

        return {
            "success": True,
            "message": f"Synced {synced} wallets to allowlist",
            "synced": synced,
            "failed": failed,
            "total": synced + failed,
            "backfilled": backfilled,
            "results": results,
        }
