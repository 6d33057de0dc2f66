import sys

from loguru import logger

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<magenta>{extra[component]}</magenta> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {extra[component]} | {name}:{line} - {message}"


def setup_logging(config: dict, component: str = 'backtest'):
    """
    根据 logging 配置段设置全局 loguru 日志记录器（回测 / 参数优化等批处理入口使用）。

    logging 段可用的键: level, file, rotation, retention, console_format, file_format, component。
    每条日志带上 component 标签，便于区分回测与优化的输出。
    """
    log_config = config.get('logging', {}) or {}
    log_level = str(log_config.get('level', 'INFO')).upper()
    log_file = log_config.get('file', 'orderflow_backtest.log')

    # 移除默认的处理器，以便完全自定义
    logger.remove()
    logger.configure(extra={'component': log_config.get('component') or component})

    logger.add(
        sys.stdout,
        level=log_level,
        format=log_config.get('console_format') or CONSOLE_FORMAT,
    )

    if log_file:
        logger.add(
            log_file,
            level=log_level,
            rotation=log_config.get('rotation', '10 MB'),
            retention=log_config.get('retention', '7 days'),
            enqueue=True,
            backtrace=True,
            diagnose=False,
            format=log_config.get('file_format') or FILE_FORMAT,
        )

    logger.info(f"Logging initialized: level={log_level} file={log_file or '-'}")
