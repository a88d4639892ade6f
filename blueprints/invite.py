from flask import Blueprint, request, jsonify, current_app

from extensions import get_services
from utils.errors import InviteError
from utils.rate_limit import rate_limited
from utils.validators import strip_text

invite_bp = Blueprint('invite', __name__, url_prefix='/api/invites')


def _json_body():
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else None


def _server_error(action):
    current_app.logger.exception(f"{action} failed")
    return jsonify({'error': 'Server error'}), 500


# 生成邀请码（需要先完成钱包签名校验）
@invite_bp.route('/generate', methods=['POST'])
@rate_limited('write')
def generate_code():
    data = _json_body()
    if data is None:
        return jsonify({'error': 'Invalid JSON', 'reason': 'invalid_json'}), 400

    inviter = strip_text(data.get('inviter'))
    session_id = data.get('sessionId') or request.headers.get('X-Session-Id')

    try:
        result = get_services().ledger.issue(inviter, session_id)
    except InviteError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        return _server_error("generate_code")

    return jsonify({
        'success': True,
        'code': result['code'],
        'invitesRemaining': result['invitesRemaining'],
    })


# 查询邀请码是否可用
@invite_bp.route('/check', methods=['GET'])
@rate_limited('read')
def check_code():
    code = request.args.get('code', '')
    try:
        result = get_services().ledger.check(code)
    except InviteError as e:
        return jsonify({'valid': False, 'reason': e.reason}), e.status_code
    except Exception:
        return _server_error("check_code")
    return jsonify(result)


# 兑换邀请码
@invite_bp.route('/claim', methods=['POST'])
@rate_limited('claim')
def claim_code():
    data = _json_body()
    if data is None:
        return jsonify({'error': 'Invalid JSON', 'reason': 'invalid_json'}), 400

    code = data.get('code')
    wallet = strip_text(data.get('wallet'))

    try:
        result = get_services().ledger.redeem(code, wallet)
    except InviteError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        return _server_error("claim_code")

    return jsonify({'success': True, 'claimedAt': result['claimedAt']})


# 邀请人名下未使用的邀请码
@invite_bp.route('/codes', methods=['GET'])
@rate_limited('read')
def get_codes():
    inviter = request.args.get('inviter', '').strip()
    try:
        result = get_services().ledger.list_codes(inviter)
    except InviteError as e:
        return jsonify({'success': False, 'error': 'Invalid wallet address', 'reason': e.reason}), e.status_code
    except Exception:
        return _server_error("get_codes")
    return jsonify({'success': True, **result})


# 邀请人是否在白名单且还有剩余额度
@invite_bp.route('/eligibility', methods=['GET'])
@rate_limited('read')
def check_invite():
    inviter = request.args.get('inviter', '').strip()
    try:
        result = get_services().ledger.eligibility(inviter)
    except InviteError as e:
        return jsonify({'valid': False, 'error': 'Invalid wallet', 'reason': e.reason}), e.status_code
    except Exception:
        return _server_error("check_invite")
    return jsonify(result)
