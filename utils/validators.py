import re

from utils.errors import ValidationError

WALLET_PATTERN = re.compile(r'^0x[a-fA-F0-9]{40}$')

CODE_MIN_LENGTH = 6
CODE_MAX_LENGTH = 12


def is_valid_wallet(address) -> bool:
    return isinstance(address, str) and bool(WALLET_PATTERN.match(address))


def validate_wallet(address, message='Invalid wallet'):
    if not is_valid_wallet(address):
        raise ValidationError(message, 'invalid_wallet')
    return address


def validate_code(code):
    if not isinstance(code, str) or not (CODE_MIN_LENGTH <= len(code) <= CODE_MAX_LENGTH):
        raise ValidationError('Invalid code', 'invalid_code')
    return code


def same_wallet(a, b) -> bool:
    return bool(a) and bool(b) and a.lower() == b.lower()


def mask_wallet(address):
    """0x1234...abcd"""
    if not address:
        return ''
    return address[:6] + '...' + address[-4:]


def strip_text(value):
    """字符串去首尾空白；非字符串原样返回，交给后续校验按格式错误处理"""
    return value.strip() if isinstance(value, str) else value
