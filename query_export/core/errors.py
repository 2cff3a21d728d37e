"""
错误类型模块 - 导出与投递流程中的异常分类
"""

from typing import Any, Dict, Optional


class ExportToolError(RuntimeError):
    """所有导出工具异常的基类"""

    @property
    def tag(self) -> str:
        return type(self).__name__


class ConfigurationInvalid(ExportToolError):
    """缺少必需配置或配置值不合法（整个批次终止）"""

    def __init__(self, problems):
        if isinstance(problems, str):
            problems = [problems]
        self.problems = list(problems)
        super().__init__("; ".join(self.problems))


class InvalidQuery(ExportToolError):
    """查询文件为空或已包含导出子句"""


class QueryExecutionFailed(ExportToolError):
    """数据库拒绝或执行查询出错"""


class ExportIncomplete(ExportToolError):
    """执行后无法确认导出文件存在"""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.context = context or {}


class DeliveryError(ExportToolError):
    """远程投递相关异常的基类"""


class DeliveryUnreachable(DeliveryError):
    """无法连接SFTP服务器（包括主机密钥获取和认证失败）"""


class RemoteDirUnavailable(DeliveryError):
    """远程目录不存在且无法创建"""


class MissingCredentialHelper(DeliveryError):
    """密码认证需要的sshpass不可用"""


class DeliveryFailed(DeliveryError):
    """上传或重命名步骤失败"""
