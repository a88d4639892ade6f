# invite_models.py
# 表格行 <-> 数据对象。每张表第 1 行是表头，数据从第 2 行开始
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

TRUE = "TRUE"
FALSE = "FALSE"


def cell(row, index, default=""):
    """表格 API 会截掉行尾空单元格，按下标取值时需要兜底"""
    if index < len(row) and row[index] is not None:
        return str(row[index]).strip()
    return default


def parse_int(value) -> int:
    # 解析失败按 0 处理（即视为额度耗尽，fail-closed）
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        try:
            return int(float(str(value).strip()))
        except (TypeError, ValueError):
            return 0


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(dt: datetime) -> str:
    """与前端 toISOString() 一致：2024-05-01T08:00:00.000Z"""
    dt = dt.astimezone(timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def parse_timestamp(value) -> Optional[datetime]:
    if not value:
        return None
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(text)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


class SyncStatusEnum(Enum):
    unsynced = ""        # 尚未同步到外部白名单
    synced = "synced"    # 同步成功（终态）
    failed = "failed"    # 同步失败，下次任务重试

    @classmethod
    def parse(cls, value):
        value = (value or "").strip().lower()
        # 旧数据里用过 added 表示已同步
        if value in ("synced", "added"):
            return cls.synced
        if value == "failed":
            return cls.failed
        return cls.unsynced


@dataclass
class AllowlistEntry:
    __sheet__ = "Allowlist"
    __columns__ = ("A", "B")
    HEADER = ["wallet", "invites_remaining"]

    wallet: str
    invites_remaining: int
    row_number: Optional[int] = None  # 表格中的行号（1 起）

    @classmethod
    def from_row(cls, row, row_number=None):
        return cls(
            wallet=cell(row, 0),
            invites_remaining=max(parse_int(cell(row, 1)), 0),
            row_number=row_number,
        )

    def to_row(self):
        return [self.wallet, self.invites_remaining]


@dataclass
class InviteCode:
    __sheet__ = "InviteCodes"
    __columns__ = ("A", "F")
    HEADER = ["code", "inviter_wallet", "created_at", "used", "invitee_wallet", "used_at"]

    code: str
    inviter_wallet: str
    created_at: str
    used: bool = False
    invitee_wallet: str = ""
    used_at: str = ""
    row_number: Optional[int] = None

    @classmethod
    def from_row(cls, row, row_number=None):
        return cls(
            code=cell(row, 0),
            inviter_wallet=cell(row, 1),
            created_at=cell(row, 2),
            used=cell(row, 3).upper() == TRUE,
            invitee_wallet=cell(row, 4),
            used_at=cell(row, 5),
            row_number=row_number,
        )

    def to_row(self):
        return [
            self.code,
            self.inviter_wallet,
            self.created_at,
            TRUE if self.used else FALSE,
            self.invitee_wallet,
            self.used_at,
        ]


@dataclass
class ClaimedInvite:
    __sheet__ = "ClaimedInvites"
    __columns__ = ("A", "E")
    HEADER = ["invitee_wallet", "inviter_wallet", "claimed_at", "code", "sync_status"]

    invitee_wallet: str
    inviter_wallet: str
    claimed_at: str
    code: str = ""
    sync_status: SyncStatusEnum = SyncStatusEnum.unsynced
    row_number: Optional[int] = None

    @classmethod
    def from_row(cls, row, row_number=None):
        return cls(
            invitee_wallet=cell(row, 0),
            inviter_wallet=cell(row, 1),
            claimed_at=cell(row, 2),
            code=cell(row, 3),
            sync_status=SyncStatusEnum.parse(cell(row, 4)),
            row_number=row_number,
        )

    def to_row(self):
        return [
            self.invitee_wallet,
            self.inviter_wallet,
            self.claimed_at,
            self.code,
            self.sync_status.value,
        ]
