"""
远程投递模块 - 将导出文件以 临时名上传 + 原子重命名 的方式放到SFTP服务器

远程文件在传输过程中只以 <name>.part 出现，重命名成功后才以 <name> 可见。
"""

import posixpath
from contextlib import contextmanager
from dataclasses import dataclass, replace
from typing import Callable, List, Optional
import logging

import paramiko

from .config import DeliveryTarget
from .errors import DeliveryError, DeliveryFailed, DeliveryUnreachable, RemoteDirUnavailable
from .exporter import ExportArtifact
from .host_trust import HostTrust
from .openssh import OpenSSHClient
from .ssh_client import SSHClient

logger = logging.getLogger(__name__)

PART_SUFFIX = ".part"

# SFTP 操作可能抛出的异常
TRANSFER_ERRORS = (OSError, EOFError, paramiko.SSHException)


@dataclass
class RunOutcome:
    """单个文件的投递结果"""

    name: str
    success: bool
    remote_path: Optional[str] = None
    target: Optional[DeliveryTarget] = None
    error: Optional[DeliveryError] = None

    @property
    def tag(self) -> str:
        return "Delivered" if self.success else self.error.tag

    @property
    def reason(self) -> str:
        return "" if self.success else str(self.error)


def home_relative(path: str, user: str) -> str:
    """
    绝对路径改写为家目录相对路径

    Args:
        path: 绝对路径，例如 /home/alice/upload 或 /upload
        user: SFTP用户名

    Returns:
        相对路径，例如 upload
    """
    prefix = f"/home/{user}/"
    if path.startswith(prefix):
        return path[len(prefix):].strip("/")
    return path.strip("/")


def progressive_paths(path: str) -> List[str]:
    """/a/b/c -> ['/a', '/a/b', '/a/b/c']；a/b -> ['a', 'a/b']"""
    current = "/" if path.startswith("/") else ""
    result = []
    for part in path.split("/"):
        if not part:
            continue
        current = posixpath.join(current, part) if current else part
        result.append(current)
    return result


def default_session_factory(target: DeliveryTarget, trust: HostTrust):
    """按配置的传输方式创建未连接的会话"""
    cls = OpenSSHClient if target.transport == "openssh" else SSHClient
    return cls(
        host=target.host,
        port=target.port,
        username=target.user,
        password=None if target.uses_key else target.password,
        key_file=target.key_file,
        timeout=target.timeout,
        trust=trust,
    )


class RemoteDelivery:
    """SFTP投递器"""

    def __init__(self, target: DeliveryTarget,
                 session_factory: Optional[Callable[[DeliveryTarget, HostTrust], object]] = None,
                 trust: Optional[HostTrust] = None):
        """
        初始化投递器

        Args:
            target: 默认投递目标
            session_factory: 创建会话的函数 (target, trust) -> session（测试时可替换）
            trust: 主机信任记录，默认按 target 创建，整个运行期间共用
        """
        self.target = target
        self.trust = trust or HostTrust(target)
        self._session_factory = session_factory or default_session_factory

    @contextmanager
    def session(self, target: Optional[DeliveryTarget] = None):
        """
        打开一个已连接的会话，用完关闭

        Raises:
            DeliveryUnreachable: 无法获取主机密钥或连接失败
            MissingCredentialHelper: 密码认证缺少 sshpass
        """
        target = target or self.target
        self.trust.establish()
        session = self._session_factory(target, self.trust)
        try:
            success, error_msg = session.connect()
            if not success:
                raise DeliveryUnreachable(
                    f"Failed to connect to SFTP server {target.host}:{target.port} as {target.user}: {error_msg}")
            yield session
        finally:
            session.close()

    def preflight(self, target: Optional[DeliveryTarget] = None) -> DeliveryTarget:
        """
        运行前检查：主机信任、连通性、远程目录

        Args:
            target: 投递目标，默认使用构造时的目标

        Returns:
            可能改写了 remote_dir 的投递目标，本次运行后续投递都应使用它

        Raises:
            DeliveryError: 任一步骤失败
        """
        target = target or self.target
        with self.session(target) as session:
            logger.info("SFTP connectivity OK")
            return self.ensure_remote_dir(session, target)

    def ensure_remote_dir(self, session, target: DeliveryTarget) -> DeliveryTarget:
        """
        确保远程目录存在，不存在时逐级创建

        绝对路径创建失败时，改用家目录相对路径重试一次。

        Returns:
            投递目标（改写后的或原样）

        Raises:
            RemoteDirUnavailable: 目录无法创建或确认
        """
        path = target.remote_dir
        if not path:
            return target

        try:
            if session.exists(path):
                logger.info(f"Remote directory exists: {path}")
                return target

            logger.info(f"Remote directory missing; creating: {path}")
            try:
                self._create_progressively(session, path)
            except TRANSFER_ERRORS as e:
                if not path.startswith("/"):
                    raise RemoteDirUnavailable(f"Failed to create remote directory {path}: {e}") from e
                relative = home_relative(path, target.user)
                logger.warning(f"Failed to create {path} ({e}), falling back to home-relative path: {relative}")
                try:
                    self._create_progressively(session, relative)
                except TRANSFER_ERRORS as e2:
                    raise RemoteDirUnavailable(
                        f"Failed to create remote directory (home-relative): {relative}: {e2}") from e2
                target = replace(target, remote_dir=relative)

            if target.remote_dir and not session.exists(target.remote_dir):
                raise RemoteDirUnavailable(f"Remote directory validation failed: {target.remote_dir}")
        except TRANSFER_ERRORS as e:
            raise RemoteDirUnavailable(f"Cannot inspect remote directory {path}: {e}") from e

        logger.info(f"Remote directory ready: {target.remote_dir or '~'}")
        return target

    def _create_progressively(self, session, path: str):
        for current in progressive_paths(path):
            if not session.exists(current):
                session.mkdir(current)
                logger.info(f"Created remote directory: {current}")

    def deliver(self, artifact: ExportArtifact, target: Optional[DeliveryTarget] = None,
                ensure_dir: bool = True) -> RunOutcome:
        """
        投递单个文件

        Args:
            artifact: 本地导出文件
            target: 投递目标，默认使用构造时的目标
            ensure_dir: 是否在上传前确认远程目录（预检已完成时可跳过）

        Returns:
            RunOutcome，失败时带有错误类型，不抛出投递异常
        """
        target = target or self.target
        logger.info(f"Uploading file to SFTP: {artifact.path} -> {target.remote_path(artifact.name)}")
        try:
            with self.session(target) as session:
                if ensure_dir:
                    target = self.ensure_remote_dir(session, target)
                remote_path = self._upload(session, artifact, target)
        except DeliveryError as e:
            logger.error(f"Failed to upload file to SFTP: {artifact.name}: [{e.tag}] {e}")
            return RunOutcome(name=artifact.name, success=False, target=target, error=e)

        logger.info(f"Successfully uploaded: {remote_path}")
        return RunOutcome(name=artifact.name, success=True, remote_path=remote_path, target=target)

    def _upload(self, session, artifact: ExportArtifact, target: DeliveryTarget) -> str:
        final_path = target.remote_path(artifact.name)
        part_path = target.remote_path(artifact.name + PART_SUFFIX)

        try:
            session.upload_file(str(artifact.path), part_path)
        except TRANSFER_ERRORS as e:
            self._discard_partial(session, part_path)
            raise DeliveryFailed(f"Upload of {artifact.name} to {part_path} failed: {e}") from e

        try:
            session.rename(part_path, final_path)
        except TRANSFER_ERRORS as e:
            raise DeliveryFailed(f"Rename {part_path} -> {final_path} failed: {e}") from e
        return final_path

    def _discard_partial(self, session, part_path: str):
        try:
            session.remove(part_path)
            logger.info(f"Removed partial upload: {part_path}")
        except TRANSFER_ERRORS as e:
            logger.warning(f"Could not remove partial upload {part_path}: {e}")

    def close(self):
        self.trust.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
