import functools
import logging
import random
import time
from typing import Callable, Tuple, Type

from chatstream.utils.logger import LOGGER_NAME, log_json


logger = logging.getLogger(LOGGER_NAME)


def retry_with_backoff(
    exceptions: Tuple[Type[BaseException], ...] = (Exception,),
    max_attempts: int = 3,
    base_delay: float = 0.2,
    sleep: Callable[[float], None] = time.sleep,
) -> Callable:
    """
    指数退避重试装饰器工厂，用于上游模型请求的建立阶段。

    输入：
        exceptions: 触发重试的异常类型元组，默认 (Exception,)
        max_attempts: 最大尝试次数（含首次），默认 3
        base_delay: 基础退避时间（秒），默认 0.2
        sleep: 等待函数，测试中可替换

    关键逻辑：
        - 第 n 次失败后等待 base_delay * 2^(n-1) 加随机抖动；
        - 每次重试记录 upstream.retry 日志，最后一次失败原样抛出。
    """

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            attempt = 0
            while True:
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    attempt += 1
                    if attempt >= max_attempts:
                        raise
                    delay = base_delay * (2 ** (attempt - 1)) + random.uniform(0, base_delay)
                    log_json(
                        logger,
                        logging.WARNING,
                        "upstream.retry",
                        func=func.__name__,
                        attempt=attempt,
                        delay=round(delay, 3),
                        error=str(e),
                    )
                    sleep(delay)

        return wrapper

    return decorator
