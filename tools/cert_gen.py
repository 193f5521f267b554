"""
自签名证书生成：设备连接云端域名时不校验证书链，只要求证书未过期且主机名匹配。
生成的 cert/key 同时用于抓包监听器和之后的 broker TLS 监听。
"""
from __future__ import annotations

import datetime
import os
from pathlib import Path
from typing import Iterable, Tuple

from cryptography import x509
from cryptography.x509.oid import NameOID
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from commons.base_logger import BaseLogger

_log = BaseLogger(name="cert_gen")


def generate_self_signed_cert(
    hostname: str,
    cert_file: str,
    key_file: str,
    *,
    alt_names: Iterable[str] = (),
    days: int = 3650,
    key_size: int = 2048,
    overwrite: bool = False,
) -> Tuple[str, str]:
    """
    生成 RSA 自签名证书。

    :param hostname: CN，同时作为第一个 SAN DNS 名
    :param alt_names: 额外的 SAN DNS 名
    :param days: 有效期（天）
    :param overwrite: False 时目标文件已存在则抛 FileExistsError
    :return: (cert_file, key_file)
    """
    cert_path, key_path = Path(cert_file), Path(key_file)
    if not overwrite:
        for p in (cert_path, key_path):
            if p.exists():
                raise FileExistsError(f"{p} 已存在（使用 --overwrite 覆盖）")

    private_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)

    subject = issuer = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, hostname)])
    names = [hostname] + [n for n in alt_names if n and n != hostname]
    now = datetime.datetime.now(datetime.timezone.utc)

    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(private_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(minutes=5))
        .not_valid_after(now + datetime.timedelta(days=days))
        .add_extension(
            x509.SubjectAlternativeName([x509.DNSName(n) for n in names]),
            critical=False,
        )
        .sign(private_key, hashes.SHA256())
    )

    cert_path.parent.mkdir(parents=True, exist_ok=True)
    key_path.parent.mkdir(parents=True, exist_ok=True)

    with open(cert_path, "wb") as f:
        f.write(cert.public_bytes(serialization.Encoding.PEM))
    os.chmod(cert_path, 0o644)

    # 私钥从创建那一刻起就只有属主可读；覆盖已有文件时先收紧权限再写
    fd = os.open(key_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    os.fchmod(fd, 0o600)
    with open(fd, "wb") as f:
        f.write(private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        ))

    _log.log_info(f"已生成证书 {cert_path}（SAN: {', '.join(names)}，{days} 天）")
    _log.log_info(f"已生成私钥 {key_path}（请妥善保管）")
    return str(cert_path), str(key_path)
