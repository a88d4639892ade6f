from dataclasses import dataclass


@dataclass
class VerifiedSession:
    """
    钱包签名校验通过后的短期会话，只保存在进程内存或 Redis，不写入表格
    """
    session_id: str
    wallet: str
    expires_at: float  # unix 时间戳（秒）
