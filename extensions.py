# extensions.py
# 服务容器：create_app() 时按配置组装，挂到 app.extensions['invite_services']
import json
import logging
import os
from types import SimpleNamespace

from dotenv import load_dotenv
from flask import current_app
from redis import Redis

from models import SHEET_MODELS
from utils.allowlist_client import AllowlistClient
from utils.conversion import ConversionAttributor
from utils.expiring_store import ExpiringStore, RedisExpiringStore
from utils.invite_ledger import InviteLedger
from utils.key_lock import KeyedLock, RedisKeyedLock
from utils.rate_limit import RateLimiter, RedisRateLimiter
from utils.reconciliation import ReconciliationEngine
from utils.sheet_store import GoogleSheetStore, MemorySheetStore
from utils.stats import StatsAggregator
from utils.wallet_auth import WalletAuthenticator

load_dotenv()

LOG_FORMAT = '[%(asctime)s] %(levelname)s: %(message)s'
SERVICE_LOGGERS = (
    "sheet_store", "key_lock", "wallet_auth", "invite_ledger",
    "conversion", "allowlist_client", "reconciliation", "scheduler",
)


def setup_logging(log_file=None, level=logging.INFO):
    """控制台输出 + 可选文件输出，与各服务模块的具名 logger 对应"""
    formatter = logging.Formatter(LOG_FORMAT)
    handlers = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    for handler in handlers:
        handler.setFormatter(formatter)

    for name in SERVICE_LOGGERS:
        logger = logging.getLogger(name)
        logger.setLevel(level)
        if not logger.handlers:
            for handler in handlers:
                logger.addHandler(handler)


def build_sheet_store(config):
    backend = config.get('SHEET_BACKEND', 'google')
    if backend == 'memory':
        store = MemorySheetStore()
        store.ensure_headers(SHEET_MODELS)
        return store
    if backend == 'google':
        return GoogleSheetStore(
            config.get('GOOGLE_SPREADSHEET_ID'),
            json.loads(config.get('GOOGLE_SERVICE_ACCOUNT_KEY') or '{}'),
            timeout=config.get('SHEET_TIMEOUT', 10),
        )
    raise RuntimeError(f"Unknown SHEET_BACKEND: {backend}")


def init_services(app, store=None, redis_conn=None, allowlist_client=None):
    """
    REDIS_URL 配置时限流 / 会话 / 锁走 Redis（多实例共享），否则为进程内实现，
    此时限流和会话只在单个实例内有效
    """
    config = app.config
    if redis_conn is None and config.get('REDIS_URL'):
        redis_conn = Redis.from_url(config['REDIS_URL'])

    limits = {
        'read': config.get('RATE_LIMIT_READ', 30),
        'write': config.get('RATE_LIMIT_WRITE', 10),
        'claim': config.get('RATE_LIMIT_CLAIM', 5),
        'verify': config.get('RATE_LIMIT_VERIFY', 10),
    }
    window = config.get('RATE_LIMIT_WINDOW', 60)

    if redis_conn is not None:
        rate_limiter = RedisRateLimiter(redis_conn, window=window, limits=limits)
        sessions = RedisExpiringStore(redis_conn, prefix='invite:session:')
        nonces = RedisExpiringStore(redis_conn, prefix='invite:nonce:')
        locks = RedisKeyedLock(redis_conn, lease=config.get('REDIS_LOCK_LEASE', 60))
    else:
        app.logger.warning("REDIS_URL 未配置：限流、会话和锁仅在当前进程内生效")
        rate_limiter = RateLimiter(
            window=window,
            limits=limits,
            max_keys=config.get('RATE_LIMIT_MAX_KEYS', 10000),
            sweep_every=config.get('RATE_LIMIT_SWEEP_EVERY', 500),
        )
        sessions = ExpiringStore()
        nonces = ExpiringStore()
        locks = KeyedLock()

    store = store or build_sheet_store(config)
    authenticator = WalletAuthenticator(
        sessions,
        nonces,
        session_ttl=config.get('SESSION_TTL', 600),
        nonce_ttl=config.get('NONCE_TTL', 300),
        require_nonce=config.get('WALLET_REQUIRE_NONCE', True),
    )
    allowlist_client = allowlist_client or AllowlistClient(
        config.get('PRIVY_APP_ID'),
        config.get('PRIVY_APP_SECRET'),
        api_url=config.get('PRIVY_API_URL'),
    )

    services = SimpleNamespace(
        store=store,
        redis=redis_conn,
        rate_limiter=rate_limiter,
        locks=locks,
        authenticator=authenticator,
        ledger=InviteLedger(store, authenticator, locks),
        attributor=ConversionAttributor(
            store,
            locks,
            secret=config.get('STRIPE_WEBHOOK_SECRET'),
            mode=config.get('WEBHOOK_SIGNATURE_MODE', 'enforced'),
            tolerance=config.get('WEBHOOK_TOLERANCE_SECONDS', 300),
        ),
        reconciler=ReconciliationEngine(
            store,
            allowlist_client,
            locks,
            batch_size=config.get('SYNC_BATCH_SIZE', 15),
            batch_delay=config.get('SYNC_BATCH_DELAY', 0.5),
            backfill_grace=config.get('BACKFILL_GRACE_SECONDS', 60),
        ),
        stats=StatsAggregator(store),
    )
    app.extensions['invite_services'] = services
    return services


def get_services():
    return current_app.extensions['invite_services']


def env_bool(name, default=False):
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')
