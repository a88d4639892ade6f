from flask import Blueprint, request, jsonify, current_app
import json

from extensions import get_services
from models.invite_models import utc_now, format_timestamp

webhook_bp = Blueprint('webhook', __name__, url_prefix='/api/webhooks')


# 支付成功回调：发送方只关心是否 2xx，这里一律返回 200，避免无意义的重投
@webhook_bp.route('/stripe', methods=['POST'])
def stripe_webhook():
    raw_body = request.get_data()
    signature = request.headers.get('Stripe-Signature', '')

    try:
        result = get_services().attributor.ingest(raw_body, signature)
    except Exception as e:
        event_id = None
        try:
            event_id = json.loads(raw_body).get('id')
        except (ValueError, AttributeError):
            pass
        current_app.logger.exception(f"stripe_webhook failed, event={event_id}")
        return jsonify({'received': True, 'error': str(e)}), 200

    return jsonify(result), 200


# 调试用：原样记录请求头和请求体
@webhook_bp.route('/log', methods=['POST'])
def log_webhook():
    if not current_app.config.get('WEBHOOK_DEBUG_LOG'):
        return jsonify({'error': 'Not found'}), 404

    timestamp = format_timestamp(utc_now())
    current_app.logger.info("=== WEBHOOK RECEIVED ===")
    current_app.logger.info(f"Timestamp: {timestamp}")
    current_app.logger.info(f"Headers: {json.dumps(dict(request.headers), indent=2)}")
    current_app.logger.info(f"Body: {request.get_data(as_text=True)}")
    current_app.logger.info("=== END WEBHOOK ===")

    return jsonify({
        'received': True,
        'timestamp': timestamp,
        'message': 'Logged - check application logs',
    })
