"""
重试策略实现

本模块实现传输层的核心重试决策逻辑，根据响应状态码和
当前尝试次数决定下一步行动。

设计理念:
    不同类型的失败有不同的恢复策略:
    - 429 / 5xx: 服务端临时过载，短暂退避后重发同一请求
    - 其他非 2xx: 请求本身有问题，重试无意义，直接失败
    - 连接错误 / 超时: 不在此处决策，传输层直接抛出，避免掩盖网络故障

退避时序:
    ┌─────────────────────────────────────────────────────────────────┐
    │  429/5xx → 有 Retry-After? ── 是 → clamp(值, 0, 120) 秒         │
    │                 │                                                │
    │                 否 → min(base × 2^attempt + U(0, 0.25), 8) 秒     │
    │                                                                  │
    │  attempt 从 0 开始，最后一次尝试 (attempt == max_retries) 不重试 │
    └─────────────────────────────────────────────────────────────────┘

决策流程:
    1. 状态码不可重试 → FAIL
    2. 已是最后一次尝试 → FAIL
    3. 其余 → RETRY，delay 为退避时长

配置说明:
    client:
      max_retries: 2          # 最多重试 2 次 (共 3 次尝试)
      retry_base_delay: 0.5   # 指数退避基数 (秒)
"""

import random
from dataclasses import dataclass
from enum import Enum

# Retry-After 上限 (秒)
RETRY_AFTER_MAX = 120.0
# 指数退避上限 (秒)
BACKOFF_MAX = 8.0
# 随机抖动上限 (秒)
JITTER_MAX = 0.25


class RetryAction(Enum):
    """
    重试决策动作枚举

    定义重试策略可能返回的两种动作类型。
    """
    RETRY = "retry"  # 退避后重发同一请求
    FAIL = "fail"    # 不再重试，把错误交给调用方


@dataclass
class RetryDecision:
    """
    重试决策结果

    Attributes:
        action: 决策动作 (RETRY, FAIL)
        delay: 重试前的等待时长 (秒)，仅 RETRY 有效
    """
    action: RetryAction
    delay: float = 0.0


def is_retryable_status(status: int) -> bool:
    """429 与 5xx 视为临时故障"""
    return status == 429 or status >= 500


def parse_retry_after(value: str | None) -> float | None:
    """
    解析 Retry-After 头 (秒数形式)

    Returns:
        clamp 到 [0, 120] 的秒数；缺失或无法解析时返回 None
    """
    if value is None:
        return None
    try:
        seconds = float(value.strip())
    except ValueError:
        return None
    if seconds != seconds:  # NaN
        return None
    return min(max(seconds, 0.0), RETRY_AFTER_MAX)


class RetryPolicy:
    """
    重试策略管理器

    只负责决策，不做任何 I/O。传输层在每次收到响应后调用 decide()，
    按返回的动作决定是退避重发还是抛出异常。重试严格串行。

    Attributes:
        max_retries: 最大重试次数 (总尝试次数为 max_retries + 1)
        base_delay: 指数退避基数 (秒)
    """

    def __init__(self, max_retries: int = 2, base_delay: float = 0.5):
        self.max_retries = max_retries
        self.base_delay = base_delay

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def backoff_delay(self, attempt: int) -> float:
        """
        无 Retry-After 时的退避时长

        base * 2^attempt 加上抖动，封顶 8 秒。抖动上限为 0.25 秒与
        base * 2^attempt 中的较小者，因此即使 base 很小 (< 0.25)，
        相邻两次的最坏情况也满足单调不减: 下一次的下限 2x 不低于本次的上限 x + x。
        """
        exponential = self.base_delay * (2 ** attempt)
        jitter = random.uniform(0, min(JITTER_MAX, exponential))
        return min(exponential + jitter, BACKOFF_MAX)

    def decide(
        self,
        status: int,
        attempt: int,
        retry_after: str | None = None,
    ) -> RetryDecision:
        """
        根据状态码和尝试序号做出决策

        Args:
            status: 本次响应的 HTTP 状态码 (非 2xx)
            attempt: 本次尝试序号，从 0 开始
            retry_after: 响应的 Retry-After 头原始值

        Returns:
            RetryDecision: 决策结果，包含动作和等待时长
        """
        if not is_retryable_status(status):
            return RetryDecision(action=RetryAction.FAIL)

        if attempt >= self.max_retries:
            return RetryDecision(action=RetryAction.FAIL)

        delay = parse_retry_after(retry_after)
        if delay is None:
            delay = self.backoff_delay(attempt)

        return RetryDecision(action=RetryAction.RETRY, delay=delay)
