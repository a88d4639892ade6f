# utils/conversion.py
# 支付 webhook -> 订阅转化记录。被邀请人付费后给邀请人记一笔待发放的星星奖励
import json
import logging

import stripe

from models import ClaimedInvite, Conversion, PayoutStatusEnum, TierEnum, STAR_BONUSES
from models.invite_models import utc_now, format_timestamp
from utils.sheet_store import read_records, table_range
from utils.validators import same_wallet

logger = logging.getLogger("conversion")

SUBSCRIPTION_CREATED = "customer.subscription.created"
CHECKOUT_COMPLETED = "checkout.session.completed"
QUALIFYING_EVENTS = (SUBSCRIPTION_CREATED, CHECKOUT_COMPLETED)

SIGNATURE_ENFORCED = "enforced"
SIGNATURE_DISABLED = "disabled"
SIGNATURE_MODES = (SIGNATURE_ENFORCED, SIGNATURE_DISABLED)


def _tier_from_name(name, current):
    name = (name or "").lower()
    if "pro" in name:
        return TierEnum.pro.value
    if "standard" in name:
        return TierEnum.standard.value
    return current


def detect_tier(obj):
    """
    档位判定优先级：metadata.tier > 结账会话商品名 > 订阅项商品名 > 默认 standard
    """
    tier = TierEnum.standard.value
    metadata = obj.get("metadata") or {}

    items = (obj.get("items") or {}).get("data") or []
    if items:
        item = items[0] or {}
        product = ((item.get("price") or {}).get("product") or {})
        name = product.get("name") if isinstance(product, dict) else ""
        tier = _tier_from_name(name or (item.get("plan") or {}).get("nickname"), tier)

    display_items = obj.get("display_items") or []
    line_items = (obj.get("line_items") or {}).get("data") or []
    direct_name = ""
    if display_items:
        direct_name = ((display_items[0] or {}).get("custom") or {}).get("name") or ""
    if not direct_name and line_items:
        direct_name = (line_items[0] or {}).get("description") or ""
    tier = _tier_from_name(direct_name, tier)

    if metadata.get("tier"):
        tier = str(metadata["tier"]).strip().lower()
    return tier


def subscription_ref(event):
    """
    一笔订阅的唯一标识。订阅创建事件取订阅 id，结账完成事件取其关联的订阅 id，
    两个事件指向同一笔订阅；一次性付款没有订阅时退回到会话 id / 事件 id
    """
    obj = (event.get("data") or {}).get("object") or {}
    if event.get("type") == SUBSCRIPTION_CREATED:
        ref = obj.get("id")
    else:
        ref = obj.get("subscription") or obj.get("id")
    return str(ref or event.get("id") or "")


class ConversionAttributor:
    def __init__(self, store, locks, secret=None, mode=SIGNATURE_ENFORCED, tolerance=300, clock=utc_now):
        if mode not in SIGNATURE_MODES:
            raise RuntimeError(f"Unknown WEBHOOK_SIGNATURE_MODE: {mode}")
        if mode == SIGNATURE_ENFORCED and not secret:
            raise RuntimeError("WEBHOOK_SIGNATURE_MODE=enforced requires STRIPE_WEBHOOK_SECRET")
        if mode == SIGNATURE_DISABLED:
            logger.warning("[conversion] webhook 签名校验已关闭，仅限测试环境使用")
        self.store = store
        self.locks = locks
        self.secret = secret
        self.mode = mode
        self.tolerance = tolerance
        self.clock = clock

    def find_inviter(self, subscriber_wallet):
        for claim in read_records(self.store, ClaimedInvite):
            if same_wallet(claim.invitee_wallet, subscriber_wallet):
                return claim.inviter_wallet
        return None

    def has_conversion(self, subscription_id):
        return any(c.subscription_id == subscription_id for c in read_records(self.store, Conversion))

    def signature_valid(self, raw_body, signature_header):
        if not signature_header:
            return False
        try:
            stripe.Webhook.construct_event(raw_body, signature_header, self.secret, tolerance=self.tolerance)
        except stripe.SignatureVerificationError as e:
            logger.warning(f"[conversion] webhook 签名校验失败: {e}")
            return False
        return True

    def ingest(self, raw_body, signature_header):
        """
        返回值总是一个 dict，由路由层原样以 200 返回。
        签名错误 -> received=False；不符合条件 -> skipped；成功 -> success=True
        """
        if self.mode == SIGNATURE_ENFORCED and not self.signature_valid(raw_body, signature_header):
            return {"received": False, "error": "bad_signature"}

        # 字段统一从原始 JSON 读取，两种签名模式下处理一致
        event = json.loads(raw_body)
        event_type = event.get("type")
        if event_type not in QUALIFYING_EVENTS:
            return {"received": True, "skipped": True}

        obj = (event.get("data") or {}).get("object") or {}
        metadata = obj.get("metadata") or {}
        subscriber_wallet = (metadata.get("wallet_address") or "").strip()
        if not subscriber_wallet:
            logger.info(f"[conversion] 事件 {event.get('id')} 没有钱包地址，跳过")
            return {"received": True, "skipped": "no_wallet"}

        tier = detect_tier(obj)
        subscription_id = subscription_ref(event)

        with self.locks.hold(f"conversion:{subscription_id}"):
            inviter = self.find_inviter(subscriber_wallet)
            if not inviter:
                return {"received": True, "skipped": "not_invited", "subscriber": subscriber_wallet}

            # 同一笔订阅会同时触发两种事件，且发送方会重投，按订阅 id 去重
            if self.has_conversion(subscription_id):
                logger.info(f"[conversion] 订阅 {subscription_id} 已有转化记录，事件 {event.get('id')} 跳过")
                return {"received": True, "skipped": "duplicate", "subscriber": subscriber_wallet}

            stars_bonus = STAR_BONUSES.get(tier, 0)
            conversion = Conversion(
                subscriber_wallet=subscriber_wallet,
                username=metadata.get("username") or "",
                email=obj.get("customer_email") or metadata.get("email") or "",
                tier=tier,
                timestamp=format_timestamp(self.clock()),
                source="stripe",
                inviter_wallet=inviter,
                inviter_username="",
                stars_bonus=stars_bonus,
                payout_status=PayoutStatusEnum.pending.value,
                subscription_id=subscription_id,
            )
            self.store.append(table_range(Conversion), [conversion.to_row()])

        logger.info(
            f"[conversion] {subscriber_wallet} 订阅 {tier}（{subscription_id}），"
            f"邀请人 {inviter} 获得 {stars_bonus} 星"
        )
        return {
            "success": True,
            "subscriber": subscriber_wallet,
            "tier": tier,
            "inviter": inviter,
            "starsBonus": stars_bonus,
        }
