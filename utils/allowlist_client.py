# utils/allowlist_client.py
# 外部白名单服务（Privy）批量添加钱包
import logging

import requests

logger = logging.getLogger("allowlist_client")

PRIVY_API_URL = "https://auth.privy.io/api/v1"


class AllowlistClient:
    def __init__(self, app_id, app_secret, api_url=PRIVY_API_URL, timeout=15, session=None):
        self.app_id = app_id
        self.app_secret = app_secret
        self.api_url = (api_url or PRIVY_API_URL).rstrip("/")
        self.timeout = timeout
        self.http = session or requests.Session()

    @staticmethod
    def is_already_present(status_code, text):
        """钱包已在白名单里也算成功，保证重复提交无副作用"""
        if status_code == 409:
            return True
        text = (text or "").lower()
        return "already exist" in text or "already in" in text or "duplicate" in text

    def add_wallets(self, wallets):
        """
        返回 (success, error)。网络异常不抛出，交给调用方按批次记失败
        """
        if not self.app_id or not self.app_secret:
            return False, "PRIVY_APP_ID / PRIVY_APP_SECRET not configured"

        payload = [{"type": "wallet", "value": w} for w in wallets]
        url = f"{self.api_url}/apps/{self.app_id}/allowlist"
        try:
            resp = self.http.post(
                url,
                json=payload,
                auth=(self.app_id, self.app_secret),
                headers={"privy-app-id": self.app_id},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.error(f"[add_wallets] 请求异常 ({len(wallets)} 个钱包): {e}")
            return False, str(e)

        if 200 <= resp.status_code < 300:
            return True, None
        if self.is_already_present(resp.status_code, resp.text):
            logger.info(f"[add_wallets] 部分钱包已在白名单中，按成功处理: {resp.text}")
            return True, None

        logger.error(f"[add_wallets] 添加失败: HTTP {resp.status_code}, {resp.text}")
        return False, f"HTTP {resp.status_code}: {resp.text}"
