# utils/stats.py
# 管理后台统计，只读。各表分别读取一次，不保证跨表一致
from datetime import timedelta

from models import AllowlistEntry, InviteCode, ClaimedInvite, Conversion, PayoutStatusEnum, SyncStatusEnum
from models.invite_models import utc_now
from utils.sheet_store import read_records
from utils.validators import mask_wallet

TOP_INVITERS = 10
RECENT_CLAIMS = 20
DAYS = 7


class StatsAggregator:
    def __init__(self, store, clock=utc_now):
        self.store = store
        self.clock = clock

    def collect(self, now=None):
        now = now or self.clock()
        allowlist = read_records(self.store, AllowlistEntry)
        codes = read_records(self.store, InviteCode)
        claims = read_records(self.store, ClaimedInvite)
        conversions = read_records(self.store, Conversion)

        total_generated = len(codes)
        total_claimed = sum(1 for c in codes if c.used)

        # 1. 邀请码生成数排行（钱包不区分大小写合并）
        inviter_counts = {}
        display = {}
        for c in codes:
            if not c.inviter_wallet:
                continue
            key = c.inviter_wallet.lower()
            inviter_counts[key] = inviter_counts.get(key, 0) + 1
            display.setdefault(key, c.inviter_wallet)
        top_inviters = sorted(inviter_counts.items(), key=lambda kv: kv[1], reverse=True)[:TOP_INVITERS]

        # 2. 最近兑换（按追加顺序倒序）
        recent_claims = [
            {
                "invitee": mask_wallet(c.invitee_wallet),
                "inviter": mask_wallet(c.inviter_wallet),
                "claimedAt": c.claimed_at,
            }
            for c in reversed(claims)
        ][:RECENT_CLAIMS]

        # 3. 最近 7 天每日兑换数（UTC 日期）
        claims_per_day = {}
        for i in range(DAYS):
            claims_per_day[(now - timedelta(days=i)).strftime("%Y-%m-%d")] = 0
        for c in claims:
            day = (c.claimed_at or "").split("T")[0]
            if day in claims_per_day:
                claims_per_day[day] += 1

        # 4. 同步状态分布
        sync_status = {s.name: 0 for s in SyncStatusEnum}
        for c in claims:
            sync_status[c.sync_status.name] += 1

        return {
            "totalAllowlisted": len(allowlist),
            "totalInvitesAvailable": sum(e.invites_remaining for e in allowlist),
            "totalCodesGenerated": total_generated,
            "totalCodesClaimed": total_claimed,
            "totalCodesUnclaimed": total_generated - total_claimed,
            "claimRate": round(total_claimed / total_generated * 100) if total_generated else 0,
            "topInviters": [
                {
                    "wallet": mask_wallet(display[key]),
                    "fullWallet": display[key],
                    "codesGenerated": count,
                }
                for key, count in top_inviters
            ],
            "recentClaims": recent_claims,
            "claimsPerDay": claims_per_day,
            "syncStatus": sync_status,
            "totalConversions": len(conversions),
            "starsPending": sum(
                c.stars_bonus for c in conversions if c.payout_status == PayoutStatusEnum.pending.value
            ),
        }
