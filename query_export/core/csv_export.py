"""
CSV编码模块 - 将查询结果编码为CSV字节

只负责格式，不接触SQL或数据库连接。
"""

import csv
import io
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Sequence, BinaryIO
import logging

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CsvFormatSpec:
    """
    CSV格式定义

    默认：逗号分隔，双引号包裹所有字段，引号用双写转义，\\n 换行，UTF-8，输出表头。
    """

    delimiter: str = ","
    quotechar: str = '"'
    escapechar: str = '"'
    lineterminator: str = "\n"
    encoding: str = "utf-8"
    header: bool = True

    @property
    def doublequote(self) -> bool:
        return self.escapechar == self.quotechar

    def csv_options(self) -> Dict[str, Any]:
        """
        csv.writer / csv.reader 使用的方言参数

        Returns:
            参数字典
        """
        options = {
            "delimiter": self.delimiter,
            "quotechar": self.quotechar,
            "lineterminator": self.lineterminator,
            "quoting": csv.QUOTE_ALL,
            "doublequote": self.doublequote,
        }
        if not self.doublequote:
            options["escapechar"] = self.escapechar
        return options


class CSVEncoder:
    """CSV编码器"""

    def __init__(self, fmt: Optional[CsvFormatSpec] = None):
        self.fmt = fmt or CsvFormatSpec()

    def encode_header(self, column_names: Sequence[str]) -> bytes:
        """
        编码表头行

        Args:
            column_names: 列名列表（按结果集中的顺序）

        Returns:
            编码后的一行字节
        """
        return self._encode_line([str(name) for name in column_names])

    def encode_row(self, values: Sequence[Any]) -> bytes:
        """
        编码数据行，列顺序保持不变

        Args:
            values: 按列位置排列的值，None 输出为空的带引号字段

        Returns:
            编码后的一行字节
        """
        return self._encode_line([render_value(value) for value in values])

    def write(self, f: BinaryIO, rows: Iterable[Sequence[Any]],
              header: Optional[Sequence[str]] = None) -> int:
        """
        将表头和数据行写入二进制文件对象

        Args:
            f: 以二进制模式打开的文件
            rows: 数据行
            header: 表头（为None或格式关闭表头时不输出）

        Returns:
            写入的数据行数（不含表头）
        """
        if header and self.fmt.header:
            f.write(self.encode_header(header))
        count = 0
        for row in rows:
            f.write(self.encode_row(row))
            count += 1
        return count

    def _encode_line(self, fields: List[str]) -> bytes:
        buffer = io.StringIO()
        writer = csv.writer(buffer, **self.fmt.csv_options())
        writer.writerow(fields)
        return buffer.getvalue().encode(self.fmt.encoding)


def render_value(value: Any) -> str:
    """
    将数据库返回的值转换为文本

    Args:
        value: 单元格值

    Returns:
        文本表示
    """
    if value is None:
        return ""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8", errors="replace")
    if isinstance(value, timedelta):
        # MySQL TIME 列由pymysql返回为timedelta
        total = int(value.total_seconds())
        sign = "-" if total < 0 else ""
        total = abs(total)
        hours, remainder = divmod(total, 3600)
        minutes, seconds = divmod(remainder, 60)
        return f"{sign}{hours}:{minutes:02d}:{seconds:02d}"
    return str(value)


def generate_filename(prefix: str, extension: str = "csv") -> str:
    """
    生成带时间戳和随机后缀的文件名，用于避开无法删除的同名文件

    Args:
        prefix: 文件名前缀
        extension: 文件扩展名

    Returns:
        生成的文件名，例如 orders_20240101_120000_1a2b3c.csv
    """
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    return f"{prefix}_{timestamp}_{secrets.token_hex(3)}.{extension}"
