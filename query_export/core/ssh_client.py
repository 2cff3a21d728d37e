"""
SSH客户端模块 - 通过paramiko建立SFTP会话
"""

import socket
from pathlib import Path
from typing import Optional, Tuple
import logging

import paramiko

from .host_trust import HostTrust

logger = logging.getLogger(__name__)


def is_unsupported(error: IOError) -> bool:
    """
    判断是否为 SSH_FX_OP_UNSUPPORTED

    paramiko 对该状态码抛出不带 errno 的 IOError，消息为服务器给出的描述
    （通常是 "Operation unsupported"）。
    """
    return error.errno is None and "unsupported" in str(error).lower()


class SSHClient:
    """SSH/SFTP客户端，密码在进程内传递，不出现在任何命令行参数中"""

    def __init__(self, host: str, port: int = 22, username: str = "root",
                 password: Optional[str] = None, key_file: Optional[str] = None,
                 timeout: int = 30, trust: Optional[HostTrust] = None):
        """
        初始化SSH客户端

        Args:
            host: 服务器地址
            port: SSH端口，默认22
            username: 用户名
            password: 密码（使用密钥认证时为None）
            key_file: 私钥文件路径（优先于密码）
            timeout: 连接超时时间（秒）
            trust: 主机信任记录，为None时不校验主机密钥
        """
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.key_file = key_file
        self.timeout = timeout
        self.trust = trust
        self.client: Optional[paramiko.SSHClient] = None
        self.sftp: Optional[paramiko.SFTPClient] = None

    def connect(self) -> Tuple[bool, str]:
        """
        连接到SSH服务器并做一次空操作往返

        Returns:
            (success, error_message) 元组
        """
        credentials = {}
        if self.key_file:
            if not Path(self.key_file).exists():
                logger.error(f"Key file not found: {self.key_file}")
                return False, f"私钥文件不存在: {self.key_file}"
            credentials["key_filename"] = self.key_file
            method = "key file"
        elif self.password:
            credentials["password"] = self.password
            method = "password"
        else:
            logger.error("No password or valid key file provided")
            return False, f"缺少认证信息: {self.username}@{self.host}:{self.port}，请提供密码或密钥文件"

        self.client = paramiko.SSHClient()
        if self.trust is not None:
            self.trust.apply(self.client)
        else:
            self.client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

        try:
            self.client.connect(
                hostname=self.host,
                port=self.port,
                username=self.username,
                timeout=self.timeout,
                look_for_keys=False,  # 只使用配置的认证方式
                allow_agent=False,
                **credentials,
            )
            self.get_sftp().normalize(".")
            logger.info(f"Connected to {self.host} using {method}")
            return True, ""
        except socket.timeout:
            logger.error(f"Connection timeout to {self.host}:{self.port}")
            error_msg = f"连接超时: {self.host}:{self.port}（{self.timeout}秒）"
        except paramiko.BadHostKeyException as e:
            logger.error(f"Host key mismatch for {self.host}:{self.port}: {e}")
            error_msg = f"主机密钥不匹配: {self.host}:{self.port}\n错误详情: {e}"
        except paramiko.AuthenticationException as e:
            logger.error(f"Authentication failed for {self.username}@{self.host}: {e}")
            error_msg = f"认证失败: {self.username}@{self.host}:{self.port}\n错误详情: {e}"
        except paramiko.SSHException as e:
            logger.error(f"SSH error connecting to {self.host}:{self.port}: {e}")
            error_msg = f"SSH连接错误: {self.host}:{self.port}\n错误详情: {e}"
        except socket.gaierror as e:
            logger.error(f"DNS resolution failed for {self.host}: {e}")
            error_msg = f"无法解析主机名: {self.host}\n错误详情: {e}"
        except OSError as e:
            logger.error(f"Network error connecting to {self.host}:{self.port}: {e}")
            error_msg = f"网络错误: {self.host}:{self.port}\n错误详情: {e}"

        self.close()
        return False, error_msg

    def get_sftp(self) -> paramiko.SFTPClient:
        """
        获取SFTP客户端

        Returns:
            SFTP客户端对象
        """
        if not self.client:
            raise RuntimeError("Not connected. Call connect() first.")

        if not self.sftp:
            self.sftp = self.client.open_sftp()

        return self.sftp

    def exists(self, remote_path: str) -> bool:
        try:
            self.get_sftp().stat(remote_path)
            return True
        except FileNotFoundError:
            return False

    def mkdir(self, remote_path: str):
        self.get_sftp().mkdir(remote_path)

    def upload_file(self, local_path: str, remote_path: str):
        """
        上传文件到远程服务器，上传后校验文件大小

        Args:
            local_path: 本地文件路径
            remote_path: 远程保存路径

        Raises:
            OSError: 上传失败或大小不一致
        """
        self.get_sftp().put(str(local_path), remote_path, confirm=True)
        logger.info(f"Uploaded {local_path} to {remote_path}")

    def rename(self, old_path: str, new_path: str):
        """
        原子重命名，目标存在时覆盖

        Args:
            old_path: 原路径
            new_path: 新路径
        """
        sftp = self.get_sftp()
        try:
            sftp.posix_rename(old_path, new_path)
        except IOError as e:
            # 仅在服务器不支持 posix-rename 扩展时改用普通重命名
            if not is_unsupported(e):
                raise
            logger.warning(f"posix-rename unsupported ({e}), falling back to plain rename")
            if self.exists(new_path):
                sftp.remove(new_path)
            sftp.rename(old_path, new_path)

    def remove(self, remote_path: str):
        self.get_sftp().remove(remote_path)

    def close(self):
        """关闭SSH连接"""
        if self.sftp:
            self.sftp.close()
            self.sftp = None

        if self.client:
            self.client.close()
            self.client = None
            logger.info("SSH connection closed")

    def __enter__(self):
        """上下文管理器入口"""
        success, error_msg = self.connect()
        if not success:
            raise RuntimeError(f"SSH connection failed: {error_msg}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """上下文管理器出口"""
        self.close()

    def __repr__(self) -> str:
        return f"SSHClient(host={self.host}, port={self.port}, username={self.username})"
