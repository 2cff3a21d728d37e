"""
流水线模块 - 按顺序对一批查询执行 加载 -> 导出 -> 投递

单个查询失败只记录到 RunSummary，不影响后续查询；配置校验和投递预检失败则
终止整个批次。
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional
import logging

from .config import AppConfig, DeliveryTarget
from .delivery import RemoteDelivery, RunOutcome
from .errors import DeliveryFailed, DeliveryUnreachable, ExportIncomplete, ExportToolError
from .exporter import ExportArtifact, Exporter
from .query_source import QuerySource

logger = logging.getLogger(__name__)

# 值得重新调用 deliver 的失败类型
RETRYABLE_DELIVERY_TAGS = {DeliveryFailed.__name__, DeliveryUnreachable.__name__}


@dataclass
class ItemResult:
    identifier: str
    success: bool
    stage: str
    tag: str = ""
    reason: str = ""
    artifact: Optional[ExportArtifact] = None
    remote_path: Optional[str] = None


@dataclass
class RunSummary:
    """一次运行的统计"""

    items: List[ItemResult] = field(default_factory=list)

    def record(self, result: ItemResult):
        self.items.append(result)

    @property
    def attempted(self) -> int:
        return len(self.items)

    @property
    def succeeded(self) -> int:
        return sum(1 for item in self.items if item.success)

    @property
    def failed(self) -> int:
        return self.attempted - self.succeeded

    @property
    def failures(self) -> Dict[str, str]:
        return {item.identifier: f"[{item.tag}] {item.reason}" for item in self.items if not item.success}

    @property
    def ok(self) -> bool:
        return self.failed == 0

    def log_report(self):
        logger.info(f"Total files: {self.attempted}")
        logger.info(f"Successful: {self.succeeded}")
        logger.info(f"Errors: {self.failed}")
        for identifier, reason in self.failures.items():
            logger.error(f"  {identifier}: {reason}")


class Pipeline:
    """导出流水线"""

    def __init__(self, config: AppConfig,
                 query_source: Optional[QuerySource] = None,
                 exporter: Optional[Exporter] = None,
                 delivery: Optional[RemoteDelivery] = None):
        """
        初始化流水线

        Args:
            config: 应用配置（启动时构建一次）
            query_source: 查询来源，默认读取 config.export.sql_dir
            exporter: 导出器
            delivery: 投递器
        """
        self.config = config
        self.query_source = query_source or QuerySource(config.export.sql_dir)
        self.exporter = exporter or Exporter(config)
        self.delivery = delivery or RemoteDelivery(config.sftp)

    def preflight(self) -> DeliveryTarget:
        """
        一次性准备：校验配置、准备导出目录、检查SFTP连通性和远程目录

        Returns:
            本次运行使用的投递目标

        Raises:
            ExportToolError: 任一前置条件不满足
        """
        self.config.validate()
        local_dir = self.exporter.prepare()
        target = self.delivery.preflight(self.config.sftp)

        logger.info("Configuration validated successfully")
        logger.info(f"SQL directory: {self.query_source.sql_dir}")
        logger.info(f"Output directory: {local_dir}")
        logger.info(f"Export mode: {self.exporter.mode}")
        logger.info(f"MySQL database: {self.config.database.database}")
        logger.info(f"SFTP host: {target.host}, remote directory: {target.remote_dir}")
        return target

    def run(self, identifiers: Optional[Iterable[str]] = None) -> RunSummary:
        """
        处理一批查询

        Args:
            identifiers: 查询标识列表，为空时处理 SQL 目录中的全部查询

        Returns:
            RunSummary

        Raises:
            ExportToolError: 预检失败（此时没有处理任何查询）
        """
        logger.info("=== MySQL to SFTP export started ===")
        summary = RunSummary()
        with self.delivery:
            target = self.preflight()

            identifiers = list(identifiers) if identifiers else self.query_source.discover()
            if not identifiers:
                logger.info(f"No SQL files found in: {self.query_source.sql_dir}")
                return summary

            logger.info(f"Found {len(identifiers)} SQL file(s) to process")
            for identifier in identifiers:
                summary.record(self.process(identifier, target))

        logger.info("=== MySQL to SFTP export completed ===")
        summary.log_report()
        return summary

    def process(self, identifier: str, target: DeliveryTarget) -> ItemResult:
        """
        处理单个查询，所有失败都转为 ItemResult

        Args:
            identifier: 查询标识
            target: 预检后的投递目标

        Returns:
            ItemResult
        """
        logger.info(f"Processing SQL file: {identifier}")
        stage = "load"
        artifact = None
        try:
            query = self.query_source.load(identifier)
            stage = "export"
            artifact = self.exporter.export(query)
            stage = "deliver"
            outcome = self._deliver(artifact, target)
        except ExportToolError as e:
            logger.error(f"Failed to {stage} {identifier}: [{e.tag}] {e}")
            if isinstance(e, ExportIncomplete) and e.context:
                logger.error(f"Diagnostics for {identifier}: {e.context}")
            return ItemResult(identifier, False, stage, e.tag, str(e), artifact)
        except Exception as e:
            logger.exception(f"Unexpected error while processing {identifier} ({stage})")
            return ItemResult(identifier, False, stage, type(e).__name__, str(e), artifact)

        if not outcome.success:
            return ItemResult(identifier, False, stage, outcome.tag, outcome.reason, artifact)

        if not self.config.export.keep_local:
            artifact.discard()
        logger.info(f"Successfully processed: {identifier}")
        return ItemResult(identifier, True, "done", artifact=artifact, remote_path=outcome.remote_path)

    def _deliver(self, artifact: ExportArtifact, target: DeliveryTarget) -> RunOutcome:
        attempts = 1 + self.config.export.delivery_retries
        outcome = None
        for attempt in range(1, attempts + 1):
            outcome = self.delivery.deliver(artifact, target, ensure_dir=False)
            if outcome.success or outcome.tag not in RETRYABLE_DELIVERY_TAGS:
                break
            if attempt < attempts:
                logger.warning(f"Retrying delivery of {artifact.name} ({attempt}/{attempts - 1})")
        return outcome
