from flask import Blueprint, request, jsonify, current_app

from extensions import get_services
from utils.errors import InviteError
from utils.rate_limit import rate_limited
from utils.validators import strip_text

wallet_bp = Blueprint('wallet', __name__, url_prefix='/api/wallet')


# 获取一次性 nonce（签名消息里必须包含）
@wallet_bp.route('/nonce', methods=['GET'])
@rate_limited('read')
def get_nonce():
    wallet = request.args.get('wallet', '').strip()
    try:
        return jsonify(get_services().authenticator.issue_nonce(wallet))
    except InviteError as e:
        return jsonify(e.to_dict()), e.status_code


# 校验钱包签名，通过后建立 10 分钟的已验证会话
@wallet_bp.route('/verify', methods=['POST'])
@rate_limited('verify')
def verify_wallet():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return jsonify({'error': 'Invalid JSON', 'reason': 'invalid_json'}), 400

    try:
        session = get_services().authenticator.verify(
            strip_text(data.get('wallet')),
            data.get('message'),
            data.get('signature'),
            data.get('sessionId'),
        )
    except InviteError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("verify_wallet failed")
        return jsonify({'error': 'Server error'}), 500

    return jsonify({
        'verified': True,
        'expiresIn': get_services().authenticator.session_ttl,
        'wallet': session.wallet,
    })
