"""
查询来源模块 - 从SQL文件目录加载预定义查询
"""

import re
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional
import logging

from .errors import InvalidQuery

logger = logging.getLogger(__name__)

QUERY_SUFFIX = ".sql"

# 末尾的空白、单个分号及其前后空白
_TRAILING_TERMINATOR = re.compile(r"\s*;?\s*\Z")
_EXPORT_CLAUSE = re.compile(r"INTO\s+(?:OUT|DUMP)FILE", re.IGNORECASE)


@dataclass(frozen=True)
class QueryDefinition:
    """预定义查询，加载后不可变"""

    identifier: str
    body: str
    source: Optional[Path] = None

    @property
    def artifact_name(self) -> str:
        return f"{self.identifier}.csv"


def clean_sql(text: str) -> str:
    """去掉末尾的空白和单个语句结束符，其余内容原样保留"""
    return _TRAILING_TERMINATOR.sub("", text, count=1)


def has_export_clause(body: str) -> bool:
    return _EXPORT_CLAUSE.search(body) is not None


class QuerySource:
    """SQL文件目录，每个文件的基本名即查询标识"""

    def __init__(self, sql_dir: str):
        self.sql_dir = Path(sql_dir)

    def discover(self) -> List[str]:
        """
        列出目录中所有查询标识（按名称排序）

        Returns:
            查询标识列表
        """
        if not self.sql_dir.is_dir():
            logger.warning(f"SQL directory does not exist: {self.sql_dir}")
            return []
        return sorted(p.stem for p in self.sql_dir.glob(f"*{QUERY_SUFFIX}") if p.is_file())

    def path_for(self, identifier: str) -> Path:
        candidate = Path(identifier)
        if candidate.suffix == QUERY_SUFFIX and candidate.is_file():
            return candidate
        return self.sql_dir / f"{identifier}{QUERY_SUFFIX}"

    def load(self, identifier: str) -> QueryDefinition:
        """
        加载并清理查询

        Args:
            identifier: 查询标识（文件基本名）或 .sql 文件路径

        Returns:
            QueryDefinition

        Raises:
            InvalidQuery: 文件不存在、清理后为空或已包含导出子句
        """
        path = self.path_for(identifier)
        try:
            raw = path.read_text(encoding="utf-8")
        except OSError as e:
            raise InvalidQuery(f"Cannot read query file {path}: {e}") from e

        return self.parse(path.stem, raw, source=path)

    @staticmethod
    def parse(identifier: str, raw: str, source: Optional[Path] = None) -> QueryDefinition:
        body = clean_sql(raw)
        if not body.strip():
            raise InvalidQuery(f"Empty query in file: {source or identifier}")
        if has_export_clause(body):
            raise InvalidQuery(f"Query already contains INTO OUTFILE clause: {source or identifier}")

        logger.debug(f"Loaded query {identifier} ({len(body)} chars)")
        return QueryDefinition(identifier=identifier, body=body, source=source)
