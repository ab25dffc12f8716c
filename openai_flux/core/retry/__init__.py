"""
重试策略模块

本模块提供传输层重试决策的核心逻辑，实现 429/5xx 的有界退避重试。

类/函数清单:
    RetryAction (Enum):
        枚举值: RETRY (退避后重发), FAIL (放弃)

    RetryDecision (dataclass):
        属性: action (RetryAction), delay (float 秒)

    RetryPolicy:
        - __init__(max_retries, base_delay)
        - decide(status, attempt, retry_after) -> RetryDecision
          根据状态码、尝试序号和 Retry-After 头做出重试决策
        - backoff_delay(attempt) -> float
          指数退避 + 抖动，封顶 8 秒

    parse_retry_after(value) -> float | None
        解析 Retry-After 秒数并 clamp 到 [0, 120]
    is_retryable_status(status) -> bool

使用示例:
    from openai_flux.core.retry import RetryPolicy, RetryAction

    policy = RetryPolicy(max_retries=2, base_delay=0.5)
    decision = policy.decide(503, attempt=0, retry_after=resp.headers.get("Retry-After"))
    if decision.action == RetryAction.RETRY:
        await asyncio.sleep(decision.delay)
        # 重发...
"""

from .strategy import (
    RetryAction,
    RetryDecision,
    RetryPolicy,
    is_retryable_status,
    parse_retry_after,
)

__all__ = [
    "RetryPolicy",
    "RetryAction",
    "RetryDecision",
    "is_retryable_status",
    "parse_retry_after",
]
