"""
OpenSSH客户端模块 - 通过系统 sftp 命令的批处理模式执行远程文件操作

命令以参数列表形式传给 subprocess，不经过shell；密码认证通过 sshpass -e
从环境变量读取密码，密码不会出现在进程参数中。
"""

import os
import shutil
import subprocess
from typing import Callable, List, Optional, Tuple
import logging

from .errors import MissingCredentialHelper
from .host_trust import HostTrust

logger = logging.getLogger(__name__)

CREDENTIAL_HELPER = "sshpass"


def quote_batch_arg(value: str) -> str:
    """sftp 批处理命令参数加引号"""
    if "\n" in value or "\r" in value:
        raise ValueError(f"Line breaks are not allowed in remote paths: {value!r}")
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


class OpenSSHClient:
    """基于 OpenSSH sftp 批处理模式的客户端，每个操作启动一次 sftp 进程"""

    def __init__(self, host: str, port: int = 22, username: str = "root",
                 password: Optional[str] = None, key_file: Optional[str] = None,
                 timeout: int = 30, trust: Optional[HostTrust] = None,
                 runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
                 which: Callable[[str], Optional[str]] = shutil.which):
        """
        初始化客户端

        Args:
            host: 服务器地址
            port: SSH端口
            username: 用户名
            password: 密码（未配置密钥时使用，需要 sshpass）
            key_file: 私钥文件路径（优先）
            timeout: 连接超时时间（秒）
            trust: 主机信任记录，为None时不校验主机密钥
            runner: 执行子进程的函数（测试时可替换）
            which: 查找可执行文件的函数（测试时可替换）
        """
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.key_file = key_file
        self.timeout = timeout
        self.trust = trust
        self._runner = runner
        self._which = which

    @property
    def uses_password(self) -> bool:
        return bool(self.password) and not self.key_file

    def build_command(self) -> List[str]:
        """
        构建 sftp 命令参数列表

        Returns:
            参数列表

        Raises:
            MissingCredentialHelper: 密码认证但找不到 sshpass
        """
        command = []
        if self.uses_password:
            if not self._which(CREDENTIAL_HELPER):
                raise MissingCredentialHelper(
                    f"{CREDENTIAL_HELPER} is required for SFTP password authentication but is not installed; "
                    f"install it or configure SFTP_KEY_FILE")
            command += [CREDENTIAL_HELPER, "-e"]

        command.append("sftp")
        if self.trust is not None:
            command += self.trust.ssh_options()
        else:
            command += ["-o", "StrictHostKeyChecking=no", "-o", "UserKnownHostsFile=/dev/null"]
        if self.uses_password:
            command += [
                "-o", "PreferredAuthentications=password",
                "-o", "PubkeyAuthentication=no",
                "-o", "BatchMode=no",
                "-o", "NumberOfPasswordPrompts=1",
            ]
        command += ["-o", f"ConnectTimeout={self.timeout}", "-P", str(self.port), "-b", "-"]
        if self.key_file:
            command += ["-i", self.key_file]
        command.append(f"{self.username}@{self.host}")
        return command

    def _environment(self) -> Optional[dict]:
        if not self.uses_password:
            return None
        env = dict(os.environ)
        env["SSHPASS"] = self.password
        return env

    def run_batch(self, commands: List[str]) -> Tuple[int, str]:
        """
        执行一组 sftp 批处理命令

        Args:
            commands: 批处理命令（不含 bye）

        Returns:
            (exit_status, output) 元组
        """
        argv = self.build_command()
        batch = "\n".join(commands + ["bye"]) + "\n"
        logger.debug(f"sftp batch: {commands}")
        completed = self._runner(argv, input=batch, capture_output=True, text=True,
                                 env=self._environment())
        output = (completed.stdout or "") + (completed.stderr or "")
        for line in output.splitlines():
            logger.debug(f"[sftp] {line}")
        return completed.returncode, output.strip()

    def _run_or_raise(self, commands: List[str], action: str):
        status, output = self.run_batch(commands)
        if status != 0:
            raise OSError(f"sftp {action} failed (exit {status}): {output}")

    def connect(self) -> Tuple[bool, str]:
        """连通性测试（pwd）"""
        try:
            status, output = self.run_batch(["pwd"])
        except OSError as e:
            logger.error(f"Failed to start sftp: {e}")
            return False, f"无法启动sftp: {e}"
        if status != 0:
            logger.error(f"Failed to connect to SFTP server {self.host}:{self.port} as {self.username}")
            return False, f"SFTP连接失败: {self.username}@{self.host}:{self.port}\n{output}"
        logger.info(f"Connected to {self.host} via OpenSSH sftp")
        return True, ""

    def exists(self, remote_path: str) -> bool:
        status, _ = self.run_batch([f"ls {quote_batch_arg(remote_path)}"])
        return status == 0

    def mkdir(self, remote_path: str):
        self._run_or_raise([f"mkdir {quote_batch_arg(remote_path)}"], f"mkdir {remote_path}")

    def upload_file(self, local_path: str, remote_path: str):
        self._run_or_raise([f"put {quote_batch_arg(str(local_path))} {quote_batch_arg(remote_path)}"],
                           f"put {remote_path}")
        logger.info(f"Uploaded {local_path} to {remote_path}")

    def rename(self, old_path: str, new_path: str):
        self._run_or_raise([f"rename {quote_batch_arg(old_path)} {quote_batch_arg(new_path)}"],
                           f"rename {old_path}")

    def remove(self, remote_path: str):
        self._run_or_raise([f"rm {quote_batch_arg(remote_path)}"], f"rm {remote_path}")

    def close(self):
        pass

    def __repr__(self) -> str:
        return f"OpenSSHClient(host={self.host}, port={self.port}, username={self.username})"
