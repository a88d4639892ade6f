from flask import Blueprint, request, jsonify, current_app
import hmac

from extensions import get_services
from utils.rate_limit import rate_limited

sync_bp = Blueprint('sync', __name__, url_prefix='/api/sync')


# 手动触发白名单同步（定时任务之外的补充入口）
@sync_bp.route('/allowlist', methods=['GET', 'POST'])
@rate_limited('write')
def sync_allowlist():
    expected = current_app.config.get('SYNC_KEY') or ''
    if expected:
        key = request.args.get('key', '')
        if not hmac.compare_digest(key.encode(), expected.encode()):
            return jsonify({'error': 'Unauthorized'}), 401

    try:
        summary = get_services().reconciler.run()
    except Exception as e:
        # 未同步的行保持原状，下次同步会重新处理
        current_app.logger.exception("sync_allowlist failed")
        return jsonify({'success': False, 'error': str(e)}), 200

    return jsonify(summary), 200
