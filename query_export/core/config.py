"""
配置模块 - 从TOML文件和环境变量加载导出配置

配置在启动时构建一次，之后作为不可变值传递给 Pipeline、Exporter 和
RemoteDelivery，不使用全局可变状态。
"""

import os
import posixpath
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional
import logging

import toml

from .csv_export import CsvFormatSpec
from .errors import ConfigurationInvalid

logger = logging.getLogger(__name__)

EXPORT_MODES = ("client", "server")
TRANSPORTS = ("paramiko", "openssh")

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off", ""}


@dataclass(frozen=True)
class DatabaseConfig:
    """MySQL连接参数"""

    host: str = "localhost"
    port: int = 3306
    user: str = ""
    password: Optional[str] = field(default=None, repr=False)
    database: str = ""
    charset: str = "utf8mb4"
    connect_timeout: int = 30


@dataclass(frozen=True)
class DeliveryTarget:
    """
    SFTP投递目标

    remote_dir 在一次运行内可能被改写为家目录相对路径，
    改写通过 dataclasses.replace 返回新值，不修改原对象。
    """

    host: str = ""
    port: int = 22
    user: str = ""
    password: Optional[str] = field(default=None, repr=False)
    key_file: Optional[str] = None
    remote_dir: str = "/upload"
    disable_host_key_checking: bool = False
    known_hosts: Optional[str] = None
    transport: str = "paramiko"
    timeout: int = 30

    @property
    def uses_key(self) -> bool:
        # 同时配置了密钥和密码时优先使用密钥
        return bool(self.key_file)

    def remote_path(self, name: str) -> str:
        return posixpath.join(self.remote_dir, name) if self.remote_dir else name


@dataclass(frozen=True)
class ExportSettings:
    """导出行为设置"""

    sql_dir: str = "sql/queries"
    local_dir: str = "output"
    server_dir: str = "/var/lib/mysql-files"
    mode: str = "client"
    keep_local: bool = True
    delivery_retries: int = 0
    log_file: str = "/tmp/mysql_to_sftp.log"


@dataclass(frozen=True)
class AppConfig:
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    sftp: DeliveryTarget = field(default_factory=DeliveryTarget)
    export: ExportSettings = field(default_factory=ExportSettings)
    csv: CsvFormatSpec = field(default_factory=CsvFormatSpec)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AppConfig":
        """
        从字典（TOML解析结果）构建配置

        Args:
            data: 包含 database/sftp/export/csv 节的字典

        Returns:
            AppConfig 实例
        """
        return cls(
            database=_build(DatabaseConfig, data.get("database", {}), "database"),
            sftp=_build(DeliveryTarget, data.get("sftp", {}), "sftp"),
            export=_build(ExportSettings, data.get("export", {}), "export"),
            csv=_build(CsvFormatSpec, data.get("csv", {}), "csv"),
        )

    def problems(self) -> List[str]:
        """收集所有配置问题"""
        problems = []
        if not self.database.user:
            problems.append("MYSQL_USER is required")
        if not self.database.database:
            problems.append("MYSQL_DATABASE is required")
        if not self.sftp.host:
            problems.append("SFTP_HOST is required")
        if not self.sftp.user:
            problems.append("SFTP_USER is required")
        if not self.sftp.password and not self.sftp.key_file:
            problems.append("Either SFTP_PASSWORD or SFTP_KEY_FILE is required")
        if self.sftp.key_file and not Path(self.sftp.key_file).is_file():
            problems.append(f"SFTP key file does not exist: {self.sftp.key_file}")
        if self.sftp.known_hosts and not Path(self.sftp.known_hosts).is_file():
            problems.append(f"known_hosts file does not exist: {self.sftp.known_hosts}")
        if self.sftp.transport not in TRANSPORTS:
            problems.append(f"Unknown SFTP transport: {self.sftp.transport!r}")
        if self.export.mode not in EXPORT_MODES:
            problems.append(f"Unknown export mode: {self.export.mode!r}")
        if self.export.delivery_retries < 0:
            problems.append("delivery_retries must not be negative")
        if not Path(self.export.sql_dir).is_dir():
            problems.append(f"SQL directory does not exist: {self.export.sql_dir}")
        return problems

    def validate(self) -> "AppConfig":
        problems = self.problems()
        if problems:
            for problem in problems:
                logger.error(problem)
            raise ConfigurationInvalid(problems)
        return self


# 环境变量名沿用原部署脚本
ENV_OVERRIDES = {
    "MYSQL_HOST": ("database", "host"),
    "MYSQL_PORT": ("database", "port"),
    "MYSQL_USER": ("database", "user"),
    "MYSQL_PASSWORD": ("database", "password"),
    "MYSQL_DATABASE": ("database", "database"),
    "SFTP_HOST": ("sftp", "host"),
    "SFTP_PORT": ("sftp", "port"),
    "SFTP_USER": ("sftp", "user"),
    "SFTP_PASSWORD": ("sftp", "password"),
    "SFTP_KEY_FILE": ("sftp", "key_file"),
    "SFTP_REMOTE_DIR": ("sftp", "remote_dir"),
    "SFTP_DISABLE_HOST_KEY_CHECKING": ("sftp", "disable_host_key_checking"),
    "SFTP_KNOWN_HOSTS": ("sftp", "known_hosts"),
    "SFTP_TRANSPORT": ("sftp", "transport"),
    "SQL_DIR": ("export", "sql_dir"),
    "OUTPUT_DIR": ("export", "local_dir"),
    "SERVER_OUTPUT_DIR": ("export", "server_dir"),
    "EXPORT_MODE": ("export", "mode"),
    "KEEP_LOCAL_FILES": ("export", "keep_local"),
    "DELIVERY_RETRIES": ("export", "delivery_retries"),
    "LOG_FILE": ("export", "log_file"),
    "CSV_INCLUDE_HEADER": ("csv", "header"),
}


def load_config(path: Optional[str] = None,
                environ: Optional[Mapping[str, str]] = None) -> AppConfig:
    """
    加载配置：TOML文件 -> 环境变量覆盖

    Args:
        path: 配置文件路径（可选，不存在时报错）
        environ: 环境变量映射，默认 os.environ

    Returns:
        AppConfig 实例（尚未校验）
    """
    data: Dict[str, Dict[str, Any]] = {}
    if path:
        config_file = Path(path)
        if not config_file.is_file():
            raise ConfigurationInvalid(f"Config file does not exist: {path}")
        try:
            with open(config_file, "r", encoding="utf-8") as f:
                data = toml.load(f)
        except toml.TomlDecodeError as e:
            raise ConfigurationInvalid(f"Failed to parse {path}: {e}") from e
        logger.info(f"Loaded configuration from {path}")

    environ = os.environ if environ is None else environ
    for env_name, (section, key) in ENV_OVERRIDES.items():
        if env_name in environ:
            data.setdefault(section, {})[key] = environ[env_name]

    return AppConfig.from_dict(data)


def override(config: AppConfig, section: str, **values: Any) -> AppConfig:
    """返回替换了某个配置节中若干字段的新配置，值为None的字段忽略"""
    values = {k: v for k, v in values.items() if v is not None}
    if not values:
        return config
    return replace(config, **{section: replace(getattr(config, section), **values)})


def _build(cls, section: Mapping[str, Any], name: str):
    known = {f.name: f for f in fields(cls)}
    unknown = set(section) - set(known)
    if unknown:
        raise ConfigurationInvalid(f"Unknown keys in [{name}]: {', '.join(sorted(unknown))}")

    kwargs = {}
    for key, value in section.items():
        default = known[key].default
        try:
            kwargs[key] = _coerce(value, default)
        except ValueError as e:
            raise ConfigurationInvalid(f"Invalid value for {name}.{key}: {e}") from e
    return cls(**kwargs)


def _coerce(value: Any, default: Any) -> Any:
    """按默认值类型转换环境变量中的字符串"""
    if not isinstance(value, str):
        return value
    if isinstance(default, bool):
        lowered = value.strip().lower()
        if lowered in _TRUE_VALUES:
            return True
        if lowered in _FALSE_VALUES:
            return False
        raise ValueError(f"expected a boolean, got {value!r}")
    if isinstance(default, int):
        return int(value)
    if default is None and value == "":
        return None
    return value
