"""
导出模块 - 执行查询并生成本地CSV文件

支持两种方式：
- client: 通过客户端连接拉取全部行，在本地编码CSV（只需要读权限）
- server: 追加 INTO OUTFILE 子句，由MySQL在服务器端写文件（需要FILE权限，
  且导出目录为 secure_file_priv 允许的目录）
"""

import os
import re
import shutil
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional
import logging

import pymysql

from .config import AppConfig
from .csv_export import CSVEncoder, generate_filename
from .db_query import DBQuery, build_outfile_clause
from .errors import ConfigurationInvalid, ExportIncomplete, QueryExecutionFailed
from .query_source import QueryDefinition

logger = logging.getLogger(__name__)

SERVER_ROWS_SUFFIX = ".rows"


@dataclass
class ExportArtifact:
    """本地导出文件及其在远程的目标文件名"""

    path: Path
    name: str
    rows: Optional[int] = None
    header: Optional[List[str]] = None
    strategy: str = "client"

    def discard(self):
        remove_file(self.path)


def remove_file(path: Path):
    try:
        path.unlink()
        logger.info(f"Removed local file: {path}")
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Failed to remove local file {path}: {e}")


def resolve_artifact_path(path: Path) -> Path:
    """
    确保目标路径可用：已有文件先删除，删除失败则改用带时间戳和随机后缀的文件名

    Args:
        path: 期望的文件路径

    Returns:
        可以写入的路径
    """
    if not path.exists():
        return path

    logger.info(f"Ensuring no pre-existing output file: {path}")
    try:
        path.unlink()
        return path
    except OSError as e:
        suffix = path.suffix.lstrip(".")
        alternative = path.with_name(generate_filename(path.stem, suffix))
        logger.warning(f"Cannot remove {path} ({e}), writing to {alternative.name} instead")

    if alternative.exists():
        raise ExportIncomplete(f"Output path is occupied and cannot be cleared: {path}",
                               context={"path": str(path), "alternative": str(alternative)})
    return alternative


def clear_server_path(path: Path) -> Path:
    """
    删除服务器端导出目标上的旧文件

    数据库不会覆盖已有文件，也不能改用其他文件名，删除失败时该查询直接失败。

    Raises:
        ExportIncomplete: 旧文件无法删除
    """
    if not path.exists():
        return path

    logger.info(f"Removing stale server output file: {path}")
    try:
        path.unlink()
    except OSError as e:
        logger.error(f"Cannot remove stale server output file {path}: {e}")
        raise ExportIncomplete(f"Stale server output file cannot be removed: {path}",
                               context={"path": str(path), "error": str(e)}) from e
    return path


# ---------------------------------------------------------------------------
# 从SQL文本推断表头（元数据不可用时的退路，只处理简单的SELECT列表）
# ---------------------------------------------------------------------------

_SELECT_OR_FROM = re.compile(r"\(|\)|\bSELECT\b|\bFROM\b", re.IGNORECASE)
_SELECT_MODIFIER = re.compile(r"^\s*(?:DISTINCT|DISTINCTROW|ALL)\s+", re.IGNORECASE)
_AS_ALIAS = re.compile(r"\bAS\s+(`[^`]+`|\"[^\"]+\"|'[^']+'|\w+)\s*$", re.IGNORECASE)


def _select_list(sql: str) -> Optional[str]:
    """取第一个顶层 SELECT 与其后顶层 FROM 之间的文本"""
    depth = 0
    start = None
    for match in _SELECT_OR_FROM.finditer(sql):
        token = match.group(0)
        if token == "(":
            depth += 1
        elif token == ")":
            depth -= 1
        elif depth == 0:
            keyword = token.upper()
            if keyword == "SELECT" and start is None:
                start = match.end()
            elif keyword == "FROM" and start is not None:
                return sql[start:match.start()]
    return None


def _split_top_level(text: str) -> List[str]:
    parts = []
    current = []
    depth = 0
    for ch in text:
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
        if ch == "," and depth == 0:
            parts.append("".join(current))
            current = []
        else:
            current.append(ch)
    parts.append("".join(current))
    return [p.strip() for p in parts]


def _unquote(name: str) -> str:
    if len(name) >= 2 and name[0] == name[-1] and name[0] in "`\"'":
        return name[1:-1]
    return name


def expression_alias(expression: str) -> Optional[str]:
    """
    取单个SELECT表达式的输出列名

    顺序：AS 后的别名 -> 最后一个空白分隔的片段 -> 最后一个点之后的部分
    """
    expression = expression.strip()
    if not expression:
        return None

    match = _AS_ALIAS.search(expression)
    if match:
        return _unquote(match.group(1))

    token = expression.split()[-1]
    if token.endswith("*"):
        return None
    if "." in token and not token.endswith(")"):
        token = token.rsplit(".", 1)[1]
    return _unquote(token) or None


def parse_select_aliases(sql: str) -> Optional[List[str]]:
    """
    从SQL文本中解析列名

    Args:
        sql: 查询文本

    Returns:
        列名列表；无法解析（没有 SELECT/FROM、包含 * 等）时返回 None
    """
    select_list = _select_list(sql)
    if select_list is None:
        return None

    select_list = _SELECT_MODIFIER.sub("", select_list, count=1)
    names = []
    for expression in _split_top_level(select_list):
        name = expression_alias(expression)
        if not name:
            return None
        names.append(name)
    return names or None


class Exporter:
    """查询导出器"""

    def __init__(self, config: AppConfig,
                 db_factory: Optional[Callable[[], DBQuery]] = None):
        """
        初始化导出器

        Args:
            config: 应用配置
            db_factory: 返回未连接 DBQuery 的工厂函数（测试时可替换）
        """
        self.mode = config.export.mode
        self.fmt = config.csv
        self.encoder = CSVEncoder(self.fmt)
        self.local_dir = Path(config.export.local_dir)
        self.server_dir = Path(config.export.server_dir)
        self._db_factory = db_factory or (lambda: DBQuery(config.database))

    def export(self, query: QueryDefinition) -> ExportArtifact:
        """
        按配置的方式导出查询

        Args:
            query: 已加载的查询

        Returns:
            ExportArtifact

        Raises:
            QueryExecutionFailed: 查询执行失败
            ExportIncomplete: 执行后无法确认文件
        """
        if self.mode == "server":
            return self.export_server_side(query)
        return self.export_client_side(query)

    def prepare(self) -> Path:
        """创建本地工作目录；服务器端模式下同时对齐 secure_file_priv"""
        self.local_dir.mkdir(parents=True, exist_ok=True)
        if self.mode == "server":
            logger.warning("Server export mode writes NULL as \"N (MySQL ESCAPED BY '\"'); "
                           "client mode writes an empty quoted field")
            self.align_server_dir()
        return self.local_dir

    def align_server_dir(self) -> Path:
        """
        读取服务器的 secure_file_priv，使导出目录与之一致

        Returns:
            实际使用的服务器导出目录

        Raises:
            ConfigurationInvalid: 服务器禁止导出文件
            QueryExecutionFailed: 无法读取变量
        """
        with self._database("secure_file_priv") as db:
            found, value = db.get_variable("secure_file_priv")

        if found and value is None:
            raise ConfigurationInvalid("secure_file_priv is NULL: the server does not allow INTO OUTFILE")
        if found and value:
            reported = Path(value.rstrip("/") or "/")
            if reported != self.server_dir:
                logger.warning(f"Server export directory {self.server_dir} does not match "
                               f"secure_file_priv={value}, using {reported}")
                self.server_dir = reported
        else:
            logger.info("secure_file_priv is unrestricted, keeping configured server directory")

        if not self.server_dir.is_dir():
            logger.warning(f"Server export directory is not visible locally: {self.server_dir}")
        return self.server_dir

    # ------------------------------------------------------------------
    # 客户端方式
    # ------------------------------------------------------------------

    def export_client_side(self, query: QueryDefinition) -> ExportArtifact:
        self.local_dir.mkdir(parents=True, exist_ok=True)
        path = resolve_artifact_path(self.local_dir / query.artifact_name)

        logger.info(f"Executing query to generate: {path}")
        with self._database(query.identifier) as db:
            header = self._probe_header(db, query) if self.fmt.header else None
            result = db.execute_query(query.body)

        if self.fmt.header and not header:
            header = result.column_names or self._guess_header(query)

        try:
            with open(path, "wb") as f:
                rows = self.encoder.write(f, result.rows, header)
        except OSError as e:
            raise ExportIncomplete(f"Failed to write {path}: {e}", context={"path": str(path)}) from e

        self._verify(path, query)
        logger.info(f"Successfully generated CSV file: {path} ({rows} rows)")
        return ExportArtifact(path=path, name=query.artifact_name, rows=rows,
                              header=header, strategy="client")

    # ------------------------------------------------------------------
    # 服务器端方式
    # ------------------------------------------------------------------

    def export_server_side(self, query: QueryDefinition) -> ExportArtifact:
        # MySQL写文件时不会输出表头，需要表头时先写中间文件再拼接
        file_name = query.artifact_name
        if self.fmt.header:
            file_name += SERVER_ROWS_SUFFIX
        server_path = clear_server_path(self.server_dir / file_name)
        statement = f"{query.body}\n{build_outfile_clause(str(server_path), self.fmt)}"

        logger.info(f"Executing query to generate on server: {server_path}")
        with self._database(query.identifier) as db:
            header = None
            if self.fmt.header:
                header = self._probe_header(db, query) or self._guess_header(query)
            rows = db.execute(statement)
            if not server_path.exists():
                context = self._diagnostics(db)
                logger.error(f"Output file was not created: {server_path} ({context})")
                raise ExportIncomplete(f"Output file was not created: {server_path}", context=context)

        if not self.fmt.header:
            logger.info(f"Successfully generated CSV file: {server_path} ({rows} rows)")
            return ExportArtifact(path=server_path, name=query.artifact_name, rows=rows,
                                  strategy="server")

        self.local_dir.mkdir(parents=True, exist_ok=True)
        path = resolve_artifact_path(self.local_dir / query.artifact_name)
        try:
            with open(path, "wb") as out:
                if header:
                    out.write(self.encoder.encode_header(header))
                with open(server_path, "rb") as src:
                    shutil.copyfileobj(src, out)
        except OSError as e:
            raise ExportIncomplete(f"Failed to assemble {path} from {server_path}: {e}",
                                   context={"path": str(path), "server_path": str(server_path)}) from e

        remove_file(server_path)
        self._verify(path, query)
        logger.info(f"Successfully generated CSV file: {path} ({rows} rows)")
        return ExportArtifact(path=path, name=query.artifact_name, rows=rows,
                              header=header, strategy="server")

    # ------------------------------------------------------------------

    @contextmanager
    def _database(self, label: str):
        try:
            with self._db_factory() as db:
                yield db
        except pymysql.MySQLError as e:
            logger.error(f"Failed to execute query for {label}: {e}")
            raise QueryExecutionFailed(f"{label}: {e}") from e

    def _probe_header(self, db: DBQuery, query: QueryDefinition) -> Optional[List[str]]:
        try:
            names = db.fetch_columns(query.body)
        except pymysql.MySQLError as e:
            logger.warning(f"Header probe failed for {query.identifier}: {e}")
            return None
        return names or None

    def _guess_header(self, query: QueryDefinition) -> Optional[List[str]]:
        names = parse_select_aliases(query.body)
        if names:
            logger.warning(f"Header for {query.identifier} derived from query text: {names}")
        else:
            logger.warning(f"Could not derive a header for {query.identifier}, exporting without one")
        return names

    def _verify(self, path: Path, query: QueryDefinition):
        if not path.is_file():
            raise ExportIncomplete(f"Export for {query.identifier} not found at {path}",
                                   context={"path": str(path)})

    def _diagnostics(self, db: DBQuery) -> dict:
        context = {"directory": str(self.server_dir)}
        try:
            context["listing"] = sorted(os.listdir(self.server_dir))
        except OSError as e:
            context["listing"] = f"unavailable: {e}"
        try:
            found, value = db.get_variable("secure_file_priv")
            context["secure_file_priv"] = value if found else "<not reported>"
        except pymysql.MySQLError as e:
            context["secure_file_priv"] = f"unavailable: {e}"
        return context
