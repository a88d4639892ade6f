# 1. 显式导入所有表格模型（供__all__和直接引用使用）
from .invite_models import (
    AllowlistEntry,
    InviteCode,
    ClaimedInvite,
    SyncStatusEnum,
    TRUE,
    FALSE,
)
from .conversion_models import Conversion, PayoutStatusEnum, TierEnum, STAR_BONUSES
from .session_models import VerifiedSession

# 2. 定义__all__（控制from models import *的行为）
__all__ = [
    'AllowlistEntry',
    'InviteCode',
    'ClaimedInvite',
    'SyncStatusEnum',
    'TRUE',
    'FALSE',
    'Conversion',
    'PayoutStatusEnum',
    'TierEnum',
    'STAR_BONUSES',
    'VerifiedSession',
    'SHEET_MODELS',
]

# 3. 所有落在表格里的模型（初始化表头时使用）
SHEET_MODELS = [AllowlistEntry, InviteCode, ClaimedInvite, Conversion]
