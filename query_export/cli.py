#!/usr/bin/env python3
"""
命令行接口 - 执行SQL文件导出CSV并上传到SFTP
"""

import argparse
import sys
from pathlib import Path
from typing import List, Optional
import logging

from .core.config import AppConfig, load_config, override
from .core.errors import ExportToolError
from .core.pipeline import Pipeline
from .core.query_source import QuerySource

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
LOG_DATEFMT = '%Y-%m-%d %H:%M:%S'

EXIT_OK = 0
EXIT_ITEM_FAILED = 1
EXIT_FATAL = 2
EXIT_INTERRUPTED = 130

logger = logging.getLogger(__name__)


def setup_logging(log_file: Optional[str], verbose: bool = False):
    """
    配置日志：控制台 + 日志文件

    Args:
        log_file: 日志文件路径（为空时只输出到控制台）
        verbose: 是否输出DEBUG日志
    """
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        try:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
        except OSError as e:
            print(f"Cannot open log file {log_file}: {e}", file=sys.stderr)

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        datefmt=LOG_DATEFMT,
        handlers=handlers,
        force=True,
    )
    # paramiko 的传输日志过于详细
    logging.getLogger("paramiko").setLevel(logging.WARNING)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="query-export",
        description="执行预定义SQL查询，导出为CSV，并以原子方式上传到SFTP服务器",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
示例:
  # 处理 sql/queries 下的所有查询
  %(prog)s -c config.toml

  # 只处理指定查询，使用服务器端导出
  %(prog)s -c config.toml --mode server orders_export

  # 只做预检（配置、SFTP连通性、远程目录）
  %(prog)s -c config.toml --check
        """
    )

    parser.add_argument("queries", nargs="*", help="查询标识（SQL文件基本名），默认处理全部")
    parser.add_argument("-c", "--config", help="TOML配置文件路径")
    parser.add_argument("--mode", choices=["client", "server"], help="导出方式 (默认: client)")
    parser.add_argument("--no-header", dest="header", action="store_false", default=None,
                        help="不输出CSV表头")
    parser.add_argument("--sql-dir", help="SQL文件目录")
    parser.add_argument("--output-dir", help="本地导出目录")
    parser.add_argument("--remote-dir", help="SFTP远程目录")
    parser.add_argument("--log-file", help="日志文件路径")
    parser.add_argument("--list", action="store_true", help="列出可用查询后退出")
    parser.add_argument("--check", action="store_true", help="只执行预检")
    parser.add_argument("-v", "--verbose", action="store_true", help="详细输出")
    return parser


def apply_arguments(config: AppConfig, args: argparse.Namespace) -> AppConfig:
    config = override(config, "export", mode=args.mode, sql_dir=args.sql_dir,
                      local_dir=args.output_dir, log_file=args.log_file)
    config = override(config, "sftp", remote_dir=args.remote_dir)
    return override(config, "csv", header=args.header)


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        config = apply_arguments(load_config(args.config), args)
    except ExportToolError as e:
        setup_logging(None, args.verbose)
        logger.error(f"Configuration error: {e}")
        return EXIT_FATAL

    setup_logging(config.export.log_file, args.verbose)

    if args.list:
        for identifier in QuerySource(config.export.sql_dir).discover():
            print(identifier)
        return EXIT_OK

    pipeline = Pipeline(config)
    try:
        if args.check:
            with pipeline.delivery:
                pipeline.preflight()
            logger.info("Preflight passed")
            return EXIT_OK

        summary = pipeline.run(args.queries)
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return EXIT_INTERRUPTED
    except ExportToolError as e:
        logger.error(f"Preflight failed: [{e.tag}] {e}", exc_info=args.verbose)
        return EXIT_FATAL

    return EXIT_OK if summary.ok else EXIT_ITEM_FAILED


if __name__ == "__main__":
    sys.exit(main())
