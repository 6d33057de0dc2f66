"""
错误类型定义

预期内的拒绝（风控不通过、置信度不足、确认未通过）用结果值表达，不抛异常；
这里只放真正需要向上传播或在组件边界捕获的错误。
"""


class OrderFlowError(Exception):
    """所有订单流错误的基类"""


class InsufficientHistory(OrderFlowError):
    """历史K线不足，无法计算指标"""

    def __init__(self, required: int, available: int):
        self.required = required
        self.available = available
        super().__init__(f"需要至少 {required} 根K线，当前只有 {available} 根")


class InvalidConfiguration(OrderFlowError):
    """配置非法（权重/阈值等），在加载时立即失败"""


class SimulationFailure(OrderFlowError):
    """回测过程中的意外错误，整次回测中止"""

    def __init__(self, backtest_id: str, bar_index: int, cause: Exception):
        self.backtest_id = backtest_id
        self.bar_index = bar_index
        self.cause = cause
        super().__init__(f"回测 {backtest_id} 在第 {bar_index} 根K线失败: {cause}")


class SimulationCancelled(OrderFlowError):
    """回测被外部取消"""

    def __init__(self, backtest_id: str, bar_index: int):
        self.backtest_id = backtest_id
        self.bar_index = bar_index
        super().__init__(f"回测 {backtest_id} 在第 {bar_index} 根K线被取消")
