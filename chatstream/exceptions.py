"""
分段器异常定义。
"""


class InvalidFragment(TypeError):
    """输入片段不是字符串时抛出，缓冲区保持不变。"""

    pass


class EmitFailed(RuntimeError):
    """
    下游 sink 发送失败时抛出。

    说明：
        - segment 属性保存已丢失的分段（缓冲区已清空，不会重新入队）；
        - 原始异常通过 __cause__ 链接。
    """

    def __init__(self, message: str, segment=None):
        super().__init__(message)
        self.segment = segment


class SegmenterClosed(RuntimeError):
    """destroy() 之后继续调用 ingest() 时抛出。"""

    pass
