"""
VLESS 握手协议包

本包提供了握手头的解码和编码，包括：
- 协议常量和枚举
- 握手头数据类
- 类型化的解析错误

使用示例：
    from vless import decode_header, DecodeError

    try:
        header = decode_header(message, '8cd43dab-a5ae-4634-b9b1-726a262f25f6')
    except DecodeError as e:
        print(f"解析失败: field={e.field}, {e}")
    else:
        payload = header.payload(message)
"""

from .core import (
    # 协议常量
    PROTOCOL_VERSION,
    TOKEN_SIZE,
    MIN_HEADER_SIZE,
    FIXED_PREFIX_SIZE,

    # 枚举
    Command,
    AddressType,

    # 握手头
    HandshakeHeader,
    bytes_to_uuid,
    format_target,
    decode_header,
    encode_header,

    # 解析错误
    DecodeError,
    BufferTooShort,
    UnsupportedVersion,
    AuthenticationFailed,
    TruncatedOptions,
    TruncatedHeader,
    UnsupportedCommand,
    UnsupportedAddressType,
    TruncatedAddress,
)

__all__ = [
    'PROTOCOL_VERSION',
    'TOKEN_SIZE',
    'MIN_HEADER_SIZE',
    'FIXED_PREFIX_SIZE',
    'Command',
    'AddressType',
    'HandshakeHeader',
    'bytes_to_uuid',
    'format_target',
    'decode_header',
    'encode_header',
    'DecodeError',
    'BufferTooShort',
    'UnsupportedVersion',
    'AuthenticationFailed',
    'TruncatedOptions',
    'TruncatedHeader',
    'UnsupportedCommand',
    'UnsupportedAddressType',
    'TruncatedAddress',
]
