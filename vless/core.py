"""
VLESS 隧道 - 握手头解析模块
定义握手协议的常量、枚举、解析错误以及握手头的解码和编码。

功能概述:
客户端通过 WebSocket 发送的第一条二进制消息以握手头开始，
握手头携带协议版本、认证令牌（UUID）、目标地址和端口。
握手头之后的字节是应用层负载，原样转发给目标主机。

握手头格式:
┌──────┬────────┬────────┬──────────┬──────┬────────┬──────────┬──────────┐
│ 版本 │  UUID  │ 选项长 │ 选项数据 │ 命令 │  端口  │ 地址类型 │   地址   │
│ 1 B  │  16 B  │  1 B   │   可变   │ 1 B  │  2 B   │   1 B    │   可变   │
└──────┴────────┴────────┴──────────┴──────┴────────┴──────────┴──────────┘

地址类型:
- 0x01: IPv4（4 字节）
- 0x02: 域名（1 字节长度 + 域名）
- 0x03: IPv6（16 字节）

端口使用大端序（网络字节序）。解码是纯函数，不做任何 I/O。
"""

import hmac
import ipaddress
import logging
import struct
import uuid
from dataclasses import dataclass
from enum import IntEnum
from typing import Optional, Union

logger = logging.getLogger('vless-protocol')


# ============================================================================
# 协议常量
# ============================================================================

PROTOCOL_VERSION = 0
TOKEN_SIZE = 16
MIN_HEADER_SIZE = 23  # 空选项 + 零长度域名
FIXED_PREFIX_SIZE = 22  # 版本 + UUID + 选项长度 + 命令 + 端口 + 地址类型


class Command(IntEnum):
    """握手命令，仅支持 TCP 流"""
    TCP = 0x01
    UDP = 0x02


class AddressType(IntEnum):
    """目标地址类型"""
    IPV4 = 0x01
    DOMAIN = 0x02
    IPV6 = 0x03


# ============================================================================
# 解析错误
# ============================================================================

class DecodeError(ValueError):
    """
    握手头解析失败

    所有解析失败都是该类的子类，field 记录失败的字段名，
    便于诊断配置错误的客户端。消息中不会出现服务端期望的令牌。

    Attributes:
        field: 解析失败的字段名
    """

    def __init__(self, message: str, field: str):
        super().__init__(message)
        self.field = field


class BufferTooShort(DecodeError):
    pass


class UnsupportedVersion(DecodeError):
    pass


class AuthenticationFailed(DecodeError):
    pass


class TruncatedOptions(DecodeError):
    pass


class TruncatedHeader(DecodeError):
    pass


class UnsupportedCommand(DecodeError):
    pass


class UnsupportedAddressType(DecodeError):
    pass


class TruncatedAddress(DecodeError):
    pass


# ============================================================================
# 握手头
# ============================================================================

@dataclass(frozen=True)
class HandshakeHeader:
    """
    解码后的握手头

    Attributes:
        version: 协议版本（始终为 0）
        auth_token: 规范化的 UUID 字符串（8-4-4-4-12，小写）
        options_length: 选项块长度（选项内容被跳过，不做解析）
        command: 命令（始终为 Command.TCP）
        port: 目标端口
        address_type: 地址类型
        address: 目标地址字符串
        payload_offset: 负载在原始缓冲区中的起始位置
    """
    version: int
    auth_token: str
    options_length: int
    command: Command
    port: int
    address_type: AddressType
    address: str
    payload_offset: int

    @property
    def address_field_width(self) -> int:
        """地址字段占用的字节数（域名包含 1 字节长度前缀）"""
        return self.payload_offset - FIXED_PREFIX_SIZE - self.options_length

    @property
    def target(self) -> str:
        """用于日志的目标地址字符串"""
        return format_target(self.address, self.port)

    def payload(self, buffer: bytes) -> bytes:
        """返回握手头之后的负载字节"""
        return bytes(buffer[self.payload_offset:])


def format_target(address: str, port: int) -> str:
    """host:port 形式，IPv6 地址加方括号"""
    if ':' in address:
        return f"[{address}]:{port}"
    return f"{address}:{port}"


def bytes_to_uuid(raw: bytes) -> str:
    """
    将 16 字节的令牌转换为规范的 UUID 字符串

    Args:
        raw: 16 字节原始数据

    Returns:
        str: 形如 "xxxxxxxx-xxxx-xxxx-xxxx-xxxxxxxxxxxx" 的小写字符串
    """
    return str(uuid.UUID(bytes=bytes(raw)))


def _format_ipv6(raw: bytes) -> str:
    # 8 组不补零的小写十六进制，不做 :: 压缩
    groups = struct.unpack('>8H', raw)
    return ':'.join(f'{group:x}' for group in groups)


def decode_header(buffer: Union[bytes, bytearray, memoryview], expected_token: str) -> HandshakeHeader:
    """
    解码握手头

    按顺序读取各字段，每读取一个字段前都检查剩余长度，
    长度不足时抛出对应的 DecodeError 子类，不会越界访问。

    Args:
        buffer: 第一条消息的完整字节
        expected_token: 服务端配置的规范化 UUID 字符串

    Returns:
        HandshakeHeader: 解码后的握手头

    Raises:
        DecodeError: 任一字段非法或长度不足
    """
    data = bytes(buffer)
    size = len(data)

    if size < MIN_HEADER_SIZE:
        raise BufferTooShort(f"握手头过短: {size} 字节", 'header')

    version = data[0]
    if version != PROTOCOL_VERSION:
        raise UnsupportedVersion(f"不支持的协议版本: {version}", 'version')

    token = bytes_to_uuid(data[1:1 + TOKEN_SIZE])
    if not hmac.compare_digest(token.encode('ascii'), expected_token.encode('ascii')):
        raise AuthenticationFailed("UUID 校验失败", 'auth_token')

    options_length = data[17]
    cursor = 18 + options_length
    if cursor > size:
        raise TruncatedOptions(f"选项块不完整: 需要 {options_length} 字节", 'options')

    if cursor + 4 > size:
        raise TruncatedHeader("命令/端口/地址类型字段不完整", 'command')

    command = data[cursor]
    if command != Command.TCP:
        raise UnsupportedCommand(f"不支持的命令: {command}", 'command')
    cursor += 1

    port, = struct.unpack('>H', data[cursor:cursor + 2])
    cursor += 2

    address_type = data[cursor]
    cursor += 1

    if address_type == AddressType.IPV4:
        if cursor + 4 > size:
            raise TruncatedAddress("IPv4 地址不完整", 'address')
        address = '.'.join(str(b) for b in data[cursor:cursor + 4])
        cursor += 4
    elif address_type == AddressType.DOMAIN:
        if cursor + 1 > size:
            raise TruncatedAddress("域名长度字段缺失", 'address')
        length = data[cursor]
        cursor += 1
        if cursor + length > size:
            raise TruncatedAddress(f"域名不完整: 需要 {length} 字节", 'address')
        address = data[cursor:cursor + length].decode('utf-8', errors='replace')
        cursor += length
    elif address_type == AddressType.IPV6:
        if cursor + 16 > size:
            raise TruncatedAddress("IPv6 地址不完整", 'address')
        address = _format_ipv6(data[cursor:cursor + 16])
        cursor += 16
    else:
        raise UnsupportedAddressType(f"未知的地址类型: {address_type}", 'address_type')

    header = HandshakeHeader(
        version=version,
        auth_token=token,
        options_length=options_length,
        command=Command(command),
        port=port,
        address_type=AddressType(address_type),
        address=address,
        payload_offset=cursor,
    )
    logger.debug(f"握手头解码成功: target={header.target}, payload_offset={cursor}")
    return header


# ============================================================================
# 握手头编码（客户端工具和测试使用）
# ============================================================================

def _guess_address_type(address: str) -> AddressType:
    try:
        ip = ipaddress.ip_address(address)
    except ValueError:
        return AddressType.DOMAIN
    return AddressType.IPV4 if ip.version == 4 else AddressType.IPV6


def encode_header(
    token: str,
    address: str,
    port: int,
    address_type: Optional[AddressType] = None,
    options: bytes = b'',
    command: int = Command.TCP,
    payload: bytes = b''
) -> bytes:
    """
    构造握手头

    Args:
        token: UUID 字符串（任何 uuid.UUID 接受的格式）
        address: 目标地址（IPv4、IPv6 或域名）
        port: 目标端口
        address_type: 地址类型，None 表示根据地址自动判断
        options: 选项块（原样写入）
        command: 命令字节
        payload: 追加在握手头之后的负载

    Returns:
        bytes: 握手头 + 负载
    """
    if address_type is None:
        address_type = _guess_address_type(address)

    if address_type == AddressType.IPV4:
        address_bytes = ipaddress.IPv4Address(address).packed
    elif address_type == AddressType.IPV6:
        address_bytes = ipaddress.IPv6Address(address).packed
    else:
        encoded = address.encode('utf-8')
        if len(encoded) > 255:
            raise ValueError(f"域名过长: {len(encoded)} 字节")
        address_bytes = struct.pack('>B', len(encoded)) + encoded

    if len(options) > 255:
        raise ValueError(f"选项块过长: {len(options)} 字节")

    return (
        struct.pack('>B', PROTOCOL_VERSION)
        + uuid.UUID(token).bytes
        + struct.pack('>B', len(options)) + options
        + struct.pack('>BHB', command, port, address_type)
        + address_bytes
        + payload
    )
