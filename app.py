from flask import Flask, jsonify
from flask_cors import CORS
from werkzeug.middleware.proxy_fix import ProxyFix
from dotenv import load_dotenv
import os

from extensions import init_services, setup_logging, env_bool, get_services
from models import SHEET_MODELS

# 蓝图导入
from blueprints.auth import wallet_bp
from blueprints.invite import invite_bp
from blueprints.webhook import webhook_bp
from blueprints.sync import sync_bp
from blueprints.admin import admin_bp

load_dotenv()


def create_app(test_config=None, store=None, redis_conn=None, allowlist_client=None):
    app = Flask(__name__)

    # 前端跨域调用
    CORS(app)

    # ===== 配置 =====
    app.config.update(
        SECRET_KEY=os.getenv('SECRET_KEY'),
        # 表格存储
        SHEET_BACKEND=os.getenv('SHEET_BACKEND', 'google'),
        GOOGLE_SPREADSHEET_ID=os.getenv('GOOGLE_SPREADSHEET_ID'),
        GOOGLE_SERVICE_ACCOUNT_KEY=os.getenv('GOOGLE_SERVICE_ACCOUNT_KEY'),
        SHEET_TIMEOUT=int(os.getenv('SHEET_TIMEOUT', '10')),
        # 限流 / 会话
        REDIS_URL=os.getenv('REDIS_URL'),
        RATE_LIMIT_WINDOW=int(os.getenv('RATE_LIMIT_WINDOW', '60')),
        RATE_LIMIT_READ=int(os.getenv('RATE_LIMIT_READ', '30')),
        RATE_LIMIT_WRITE=int(os.getenv('RATE_LIMIT_WRITE', '10')),
        RATE_LIMIT_CLAIM=int(os.getenv('RATE_LIMIT_CLAIM', '5')),
        RATE_LIMIT_VERIFY=int(os.getenv('RATE_LIMIT_VERIFY', '10')),
        RATE_LIMIT_SWEEP_EVERY=int(os.getenv('RATE_LIMIT_SWEEP_EVERY', '500')),
        RATE_LIMIT_MAX_KEYS=int(os.getenv('RATE_LIMIT_MAX_KEYS', '10000')),
        # 反向代理层数，0 表示直接对外
        PROXY_FIX_X_FOR=int(os.getenv('PROXY_FIX_X_FOR', '0')),
        REDIS_LOCK_LEASE=int(os.getenv('REDIS_LOCK_LEASE', '60')),
        SESSION_TTL=int(os.getenv('SESSION_TTL', '600')),
        NONCE_TTL=int(os.getenv('NONCE_TTL', '300')),
        WALLET_REQUIRE_NONCE=env_bool('WALLET_REQUIRE_NONCE', True),
        # 支付 webhook
        WEBHOOK_SIGNATURE_MODE=os.getenv('WEBHOOK_SIGNATURE_MODE', 'enforced'),
        STRIPE_WEBHOOK_SECRET=os.getenv('STRIPE_WEBHOOK_SECRET'),
        WEBHOOK_TOLERANCE_SECONDS=int(os.getenv('WEBHOOK_TOLERANCE_SECONDS', '300')),
        WEBHOOK_DEBUG_LOG=env_bool('WEBHOOK_DEBUG_LOG', False),
        # 外部白名单同步
        PRIVY_APP_ID=os.getenv('PRIVY_APP_ID'),
        PRIVY_APP_SECRET=os.getenv('PRIVY_APP_SECRET'),
        PRIVY_API_URL=os.getenv('PRIVY_API_URL', 'https://auth.privy.io/api/v1'),
        SYNC_KEY=os.getenv('SYNC_KEY', ''),
        SYNC_BATCH_SIZE=int(os.getenv('SYNC_BATCH_SIZE', '15')),
        SYNC_BATCH_DELAY=float(os.getenv('SYNC_BATCH_DELAY', '0.5')),
        SYNC_INTERVAL_MINUTES=int(os.getenv('SYNC_INTERVAL_MINUTES', '10')),
        BACKFILL_GRACE_SECONDS=int(os.getenv('BACKFILL_GRACE_SECONDS', '60')),
        # 管理后台
        ADMIN_PASSWORD=os.getenv('ADMIN_PASSWORD', ''),
        LOG_FILE=os.getenv('LOG_FILE'),
    )
    if test_config:
        app.config.update(test_config)

    # 只信任配置层数内的代理写入的 X-Forwarded-For
    if app.config['PROXY_FIX_X_FOR']:
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=app.config['PROXY_FIX_X_FOR'])

    setup_logging(app.config.get('LOG_FILE'))

    # ===== 初始化服务 =====
    init_services(app, store=store, redis_conn=redis_conn, allowlist_client=allowlist_client)

    # ===== 注册蓝图 =====
    blueprints = [
        wallet_bp,
        invite_bp,
        webhook_bp,
        sync_bp,
        admin_bp,
    ]
    for bp in blueprints:
        app.register_blueprint(bp)

    # 健康检查
    @app.route('/')
    def health_check():
        return jsonify({'status': 'healthy'})

    # 新表格初始化表头：flask --app app init-sheets
    @app.cli.command('init-sheets')
    def init_sheets():
        get_services().store.ensure_headers(SHEET_MODELS)
        print("Sheet headers ensured.")

    @app.cli.command('sync-allowlist')
    def sync_allowlist():
        summary = get_services().reconciler.run()
        print(f"Synced {summary['synced']}, failed {summary['failed']}, backfilled {summary['backfilled']}")

    return app


if __name__ == '__main__':
    from scheduler import start_scheduler  # 延迟导入
    app = create_app()
    start_scheduler(app)
    app.run(host='0.0.0.0', port=5000)
