"""
查询导出工具 - 执行预定义SQL查询导出为CSV，并通过SFTP原子上传

模块化设计，可以独立使用或集成到其他应用。
"""

__version__ = "0.1.0"

from .core.config import AppConfig, load_config
from .core.csv_export import CSVEncoder, CsvFormatSpec
from .core.delivery import RemoteDelivery
from .core.exporter import Exporter
from .core.pipeline import Pipeline, RunSummary
from .core.query_source import QuerySource

__all__ = [
    "AppConfig",
    "load_config",
    "CSVEncoder",
    "CsvFormatSpec",
    "QuerySource",
    "Exporter",
    "RemoteDelivery",
    "Pipeline",
    "RunSummary",
]
