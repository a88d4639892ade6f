from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .invite_models import cell, parse_int


class PayoutStatusEnum(Enum):
    pending = "pending"  # 已记录，待发放奖励
    paid = "paid"        # 已发放


class TierEnum(Enum):
    standard = "standard"
    pro = "pro"


# 邀请人按被邀请人订阅档位获得的星星奖励
STAR_BONUSES = {
    TierEnum.standard.value: 40000,
    TierEnum.pro.value: 80000,
}


@dataclass
class Conversion:
    """被邀请人付费订阅后的转化记录，只追加不修改"""

    __sheet__ = "Conversions"
    __columns__ = ("A", "K")
    HEADER = [
        "subscriber_wallet", "username", "email", "tier", "timestamp",
        "source", "inviter_wallet", "inviter_username", "stars_bonus", "payout_status",
        "subscription_id",
    ]

    subscriber_wallet: str
    username: str
    email: str
    tier: str
    timestamp: str
    source: str
    inviter_wallet: str
    inviter_username: str
    stars_bonus: int
    payout_status: str = PayoutStatusEnum.pending.value
    subscription_id: str = ""  # 订阅 id，去重依据
    row_number: Optional[int] = None

    @classmethod
    def from_row(cls, row, row_number=None):
        return cls(
            subscriber_wallet=cell(row, 0),
            username=cell(row, 1),
            email=cell(row, 2),
            tier=cell(row, 3),
            timestamp=cell(row, 4),
            source=cell(row, 5),
            inviter_wallet=cell(row, 6),
            inviter_username=cell(row, 7),
            stars_bonus=parse_int(cell(row, 8)),
            payout_status=cell(row, 9) or PayoutStatusEnum.pending.value,
            subscription_id=cell(row, 10),
            row_number=row_number,
        )

    def to_row(self):
        return [
            self.subscriber_wallet,
            self.username,
            self.email,
            self.tier,
            self.timestamp,
            self.source,
            self.inviter_wallet,
            self.inviter_username,
            self.stars_bonus,
            self.payout_status,
            self.subscription_id,
        ]
