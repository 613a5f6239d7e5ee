#!/usr/bin/env python3
"""
为中继服务端生成自签名 TLS 证书

配置 server.cert_file / server.key_file 后，服务端以 wss:// 提供服务。
生产环境通常由前置的反向代理或 CDN 终结 TLS，此工具用于自建部署和测试。
"""

import argparse
import ipaddress
import os
import re
import sys
from datetime import datetime, timedelta, timezone
from typing import List, Tuple

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

HOSTNAME_PATTERN = re.compile(
    r'^[a-zA-Z0-9]([a-zA-Z0-9\-]*[a-zA-Z0-9])?(\.[a-zA-Z0-9]([a-zA-Z0-9\-]*[a-zA-Z0-9])?)*$'
)
MIN_KEY_SIZE = 2048
MAX_KEY_SIZE = 8192


def generate_private_key(key_size: int = 2048) -> rsa.RSAPrivateKey:
    """
    生成 RSA 私钥

    参数:
        key_size: RSA 密钥大小 (位数),默认为 2048 位
    """
    return rsa.generate_private_key(public_exponent=65537, key_size=key_size)


def _subject_alternative_names(hostname: str) -> List[x509.GeneralName]:
    names: List[x509.GeneralName] = []
    try:
        names.append(x509.IPAddress(ipaddress.ip_address(hostname)))
    except ValueError:
        names.append(x509.DNSName(hostname))
    if hostname != 'localhost':
        names.append(x509.DNSName('localhost'))
    return names


def generate_self_signed_certificate(
    private_key: rsa.RSAPrivateKey,
    hostname: str = "localhost",
    days_valid: int = 365
) -> x509.Certificate:
    """
    生成自签名服务器证书

    参数:
        private_key: 服务器私钥
        hostname: 服务器域名或 IP，写入 CN 和 SAN
        days_valid: 证书有效期 (天数)

    返回:
        x509.Certificate: 生成的证书对象
    """
    name = x509.Name([
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, "nginx"),
        x509.NameAttribute(NameOID.COMMON_NAME, hostname),
    ])
    now = datetime.now(timezone.utc)

    return (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(private_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + timedelta(days=days_valid))
        .add_extension(x509.SubjectAlternativeName(_subject_alternative_names(hostname)), critical=False)
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                key_encipherment=True,
                content_commitment=False,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=False,
                crl_sign=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]), critical=False)
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(private_key.public_key()), critical=False)
        .sign(private_key, hashes.SHA256())
    )


def save_private_key(key: rsa.RSAPrivateKey, path: str):
    """保存未加密的 PEM 私钥，权限 0600"""
    pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, 'wb') as f:
        f.write(pem)
    # 覆盖已存在的文件时 O_CREAT 的权限不生效
    os.chmod(path, 0o600)


def save_certificate(cert: x509.Certificate, path: str):
    """保存 PEM 证书"""
    with open(path, 'wb') as f:
        f.write(cert.public_bytes(serialization.Encoding.PEM))


def generate_server_files(output_dir: str, hostname: str, days: int = 365, key_size: int = 2048) -> Tuple[str, str]:
    """
    生成证书和私钥文件

    返回:
        Tuple[str, str]: (证书路径, 私钥路径)
    """
    os.makedirs(output_dir, exist_ok=True)
    key = generate_private_key(key_size)
    cert = generate_self_signed_certificate(key, hostname=hostname, days_valid=days)

    cert_path = os.path.join(output_dir, 'server.crt')
    key_path = os.path.join(output_dir, 'server.key')
    save_private_key(key, key_path)
    save_certificate(cert, cert_path)
    return cert_path, key_path


def main():
    parser = argparse.ArgumentParser(description='为 VLESS WebSocket 中继生成自签名 TLS 证书')
    parser.add_argument('--hostname', default='localhost', help='证书的服务器域名或 IP (默认: localhost)')
    parser.add_argument('--output-dir', default='.', help='证书输出目录 (默认: 当前目录)')
    parser.add_argument('--days', type=int, default=365, help='证书有效期天数 (默认: 365)')
    parser.add_argument('--key-size', type=int, default=2048, help='RSA 密钥大小 (位) (默认: 2048)')
    parser.add_argument('--force', '-f', action='store_true', help='覆盖已存在的证书文件')
    args = parser.parse_args()

    is_ip = True
    try:
        ipaddress.ip_address(args.hostname)
    except ValueError:
        is_ip = False
    if not is_ip and (len(args.hostname) > 253 or not HOSTNAME_PATTERN.match(args.hostname)):
        print(f"错误: 无效的主机名: {args.hostname}")
        return 1

    if not MIN_KEY_SIZE <= args.key_size <= MAX_KEY_SIZE:
        print(f"错误: 密钥大小必须在 {MIN_KEY_SIZE} 到 {MAX_KEY_SIZE} 位之间")
        return 1

    if args.days < 1:
        print("错误: 有效期天数不能小于 1")
        return 1

    existing = [name for name in ('server.crt', 'server.key')
                if os.path.exists(os.path.join(args.output_dir, name))]
    if existing and not args.force:
        print(f"错误: 以下文件已存在: {', '.join(existing)}（使用 --force 覆盖）")
        return 1

    print(f"正在为 {args.hostname} 生成证书（{args.key_size} 位，{args.days} 天）...")
    cert_path, key_path = generate_server_files(args.output_dir, args.hostname, args.days, args.key_size)
    print(f"  服务器证书: {cert_path}")
    print(f"  服务器私钥: {key_path}")
    print()
    print("在 config.yaml 中配置:")
    print("  server:")
    print(f"    cert_file: {cert_path}")
    print(f"    key_file: {key_path}")
    return 0


if __name__ == '__main__':
    sys.exit(main())
