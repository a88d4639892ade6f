from flask import Blueprint, request, jsonify, current_app
import hmac

from extensions import get_services
from utils.rate_limit import rate_limited

admin_bp = Blueprint('admin', __name__, url_prefix='/api/admin')


def check_password(password):
    expected = current_app.config.get('ADMIN_PASSWORD') or ''
    # 未配置密码时后台直接关闭
    if not expected or not isinstance(password, str) or not password:
        return False
    return hmac.compare_digest(password.encode(), expected.encode())


@admin_bp.route('/stats', methods=['POST'])
@rate_limited('verify')
def admin_stats():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return jsonify({'error': 'Invalid JSON'}), 400

    if not check_password(data.get('password')):
        return jsonify({'error': 'Invalid password'}), 401

    try:
        stats = get_services().stats.collect()
    except Exception:
        current_app.logger.exception("admin_stats failed")
        return jsonify({'error': 'Server error'}), 500

    return jsonify({'success': True, 'stats': stats})
