"""
主机信任模块 - 为SFTP会话准备主机密钥校验

三种策略：
- disabled: 不校验主机密钥（记录警告）
- known_hosts: 使用调用方提供的 known_hosts 文件
- fetched: 每次运行获取一次服务器主机密钥，写入临时 known_hosts，运行结束后删除
"""

import os
import tempfile
import time
from typing import Callable, List, Optional
import logging

import paramiko

from .config import DeliveryTarget
from .errors import DeliveryUnreachable

logger = logging.getLogger(__name__)

FETCH_ATTEMPTS = 3
FETCH_INTERVAL = 2
FETCH_TIMEOUT = 5


def host_entry(host: str, port: int) -> str:
    """known_hosts 中的主机名写法，非22端口使用 [host]:port"""
    return host if port == 22 else f"[{host}]:{port}"


def fetch_host_key(host: str, port: int, timeout: int = FETCH_TIMEOUT) -> paramiko.PKey:
    """
    连接服务器并读取其主机密钥（不进行认证）

    Args:
        host: 服务器地址
        port: SSH端口
        timeout: 握手超时时间（秒）

    Returns:
        服务器主机密钥
    """
    transport = paramiko.Transport((host, port))
    try:
        transport.start_client(timeout=timeout)
        return transport.get_remote_server_key()
    finally:
        transport.close()


class HostTrust:
    """一次运行内的主机信任记录"""

    def __init__(self, target: DeliveryTarget,
                 fetcher: Callable[[str, int], paramiko.PKey] = fetch_host_key,
                 sleep: Callable[[float], None] = time.sleep,
                 attempts: int = FETCH_ATTEMPTS,
                 interval: float = FETCH_INTERVAL):
        self.target = target
        self._fetcher = fetcher
        self._sleep = sleep
        self.attempts = attempts
        self.interval = interval
        self._established = False
        self._known_hosts: Optional[str] = None
        self._temp_file: Optional[str] = None

    @property
    def mode(self) -> str:
        if self.target.disable_host_key_checking:
            return "disabled"
        if self.target.known_hosts:
            return "known_hosts"
        return "fetched"

    def establish(self) -> Optional[str]:
        """
        建立信任记录（只执行一次）

        Returns:
            known_hosts 文件路径；校验关闭时返回 None

        Raises:
            DeliveryUnreachable: 多次尝试后仍无法获取主机密钥
        """
        if self._established:
            return self._known_hosts

        mode = self.mode
        if mode == "disabled":
            logger.warning("Host key verification is DISABLED (StrictHostKeyChecking=no)")
        elif mode == "known_hosts":
            logger.info(f"Using provided known_hosts file: {self.target.known_hosts}")
            self._known_hosts = self.target.known_hosts
        else:
            self._known_hosts = self._fetch()
            logger.info(f"Using generated known_hosts for {self.target.host}:{self.target.port}")

        self._established = True
        return self._known_hosts

    def _fetch(self) -> str:
        host, port = self.target.host, self.target.port
        key = None
        for attempt in range(1, self.attempts + 1):
            try:
                key = self._fetcher(host, port)
                break
            except (OSError, EOFError, paramiko.SSHException) as e:
                logger.warning(f"Failed to retrieve host key from {host}:{port} "
                               f"(attempt {attempt}/{self.attempts}): {e}")
                if attempt < self.attempts:
                    self._sleep(self.interval)
        if key is None:
            raise DeliveryUnreachable(f"Failed to retrieve host key from {host}:{port}")

        fd, path = tempfile.mkstemp(prefix="known_hosts_")
        os.close(fd)
        host_keys = paramiko.HostKeys()
        host_keys.add(host_entry(host, port), key.get_name(), key)
        host_keys.save(path)
        self._temp_file = path
        return path

    def apply(self, client: paramiko.SSHClient):
        """为paramiko客户端设置主机密钥策略"""
        known_hosts = self.establish()
        if known_hosts is None:
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
            return
        client.load_host_keys(known_hosts)
        client.set_missing_host_key_policy(paramiko.RejectPolicy())

    def ssh_options(self) -> List[str]:
        """OpenSSH 命令行的主机密钥参数"""
        known_hosts = self.establish()
        if known_hosts is None:
            return [
                "-o", "StrictHostKeyChecking=no",
                "-o", "UserKnownHostsFile=/dev/null",
                "-o", "GlobalKnownHostsFile=/dev/null",
            ]
        return [
            "-o", "StrictHostKeyChecking=yes",
            "-o", f"UserKnownHostsFile={known_hosts}",
        ]

    def close(self):
        """删除本次运行获取的临时 known_hosts"""
        if self._temp_file:
            try:
                os.unlink(self._temp_file)
            except FileNotFoundError:
                pass
            self._temp_file = None
        self._established = False
        self._known_hosts = None
