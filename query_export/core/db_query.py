"""
数据库查询模块 - 通过MySQL协议执行SQL查询
"""

from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, List, Optional, Tuple
import logging

import pymysql

from .config import DatabaseConfig
from .csv_export import CsvFormatSpec

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Column:
    name: str
    position: int


@dataclass
class ResultSet:
    """查询结果：有序列定义加按位置对齐的行"""

    columns: List[Column] = field(default_factory=list)
    rows: List[Tuple[Any, ...]] = field(default_factory=list)

    @property
    def column_names(self) -> List[str]:
        return [c.name for c in sorted(self.columns, key=lambda c: c.position)]

    @classmethod
    def from_cursor(cls, cursor) -> "ResultSet":
        description = cursor.description or ()
        columns = [Column(name=d[0], position=i) for i, d in enumerate(description)]
        rows = [tuple(r) for r in cursor.fetchall()] if description else []
        return cls(columns=columns, rows=rows)


class DBQuery:
    """数据库查询类，每次操作打开连接，用完关闭"""

    def __init__(self, config: DatabaseConfig):
        """
        初始化数据库查询器

        Args:
            config: 数据库连接参数
        """
        self.config = config
        self.connection: Optional[pymysql.connections.Connection] = None

    def connect(self):
        """
        连接到MySQL服务器

        Raises:
            pymysql.MySQLError: 连接失败
        """
        self.connection = pymysql.connect(
            host=self.config.host,
            port=self.config.port,
            user=self.config.user,
            password=self.config.password or "",
            database=self.config.database,
            charset=self.config.charset,
            connect_timeout=self.config.connect_timeout,
            autocommit=True,
        )
        logger.info(f"Connected to MySQL {self.config.host}:{self.config.port}/{self.config.database}")
        return self

    @contextmanager
    def cursor(self):
        if not self.connection:
            raise RuntimeError("Not connected. Call connect() first.")
        cursor = self.connection.cursor()
        try:
            yield cursor
        finally:
            cursor.close()

    def execute_query(self, sql: str) -> ResultSet:
        """
        执行查询并返回全部结果

        Args:
            sql: SQL查询语句（原样执行，不做参数替换）

        Returns:
            ResultSet
        """
        with self.cursor() as cursor:
            cursor.execute(sql)
            result = ResultSet.from_cursor(cursor)
        logger.info(f"Query returned {len(result.rows)} rows")
        return result

    def fetch_columns(self, sql: str) -> List[str]:
        """
        执行查询的零行包装，只读取结果元数据中的列名

        Args:
            sql: 原始查询

        Returns:
            列名列表（元数据不可用时为空列表）
        """
        probe = f"SELECT * FROM (\n{sql}\n) AS header_probe LIMIT 0"
        with self.cursor() as cursor:
            cursor.execute(probe)
            return ResultSet.from_cursor(cursor).column_names

    def execute(self, sql: str) -> int:
        """执行不返回结果的语句，返回影响行数"""
        with self.cursor() as cursor:
            return cursor.execute(sql)

    def get_variable(self, name: str) -> Tuple[bool, Optional[str]]:
        """
        读取服务器变量

        Args:
            name: 变量名，例如 secure_file_priv

        Returns:
            (found, value) 元组；变量为NULL时 value 为 None
        """
        with self.cursor() as cursor:
            cursor.execute("SHOW VARIABLES LIKE %s", (name,))
            row = cursor.fetchone()
        if not row:
            return False, None
        return True, row[1]

    def close(self):
        if self.connection:
            try:
                self.connection.close()
            except pymysql.MySQLError as e:
                logger.warning(f"Error closing MySQL connection: {e}")
            self.connection = None

    def __enter__(self):
        return self.connect()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def __repr__(self) -> str:
        return f"DBQuery(host={self.config.host}, port={self.config.port}, database={self.config.database})"


def sql_literal(value: str) -> str:
    """将文本转为MySQL单引号字符串字面量"""
    escaped = (value.replace("\\", "\\\\")
               .replace("'", "\\'")
               .replace("\n", "\\n")
               .replace("\r", "\\r")
               .replace("\t", "\\t"))
    return f"'{escaped}'"


def build_outfile_clause(path: str, fmt: CsvFormatSpec) -> str:
    """
    构建服务器端导出子句

    Args:
        path: 服务器上的目标文件路径
        fmt: CSV格式

    Returns:
        INTO OUTFILE 子句
    """
    return (
        f"INTO OUTFILE {sql_literal(path)}\n"
        f"CHARACTER SET utf8mb4\n"
        f"FIELDS TERMINATED BY {sql_literal(fmt.delimiter)} "
        f"ENCLOSED BY {sql_literal(fmt.quotechar)} "
        f"ESCAPED BY {sql_literal(fmt.escapechar)}\n"
        f"LINES TERMINATED BY {sql_literal(fmt.lineterminator)}"
    )
