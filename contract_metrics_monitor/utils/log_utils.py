import logging
from logging.handlers import RotatingFileHandler
import os
import sys
from time import strftime, gmtime

PROJECT_NAME = "contract_metrics_monitor"
LOG_DIR = os.environ.get("CONTRACT_MONITOR_LOG_DIR", os.path.join(os.getcwd(), "logs"))
LOG_PATH = os.path.join(LOG_DIR, f"{PROJECT_NAME}.log") if LOG_DIR else ""
LOG_LEVEL = os.environ.get("CONTRACT_MONITOR_LOG_LEVEL", "INFO").upper()


def extended_seconds_to_hms(seconds) -> str:
    days, remainder = divmod(seconds, 86400)
    hours, remainder = divmod(remainder, 3600)
    minutes, seconds = divmod(remainder, 60)

    if days > 0:
        return f"{int(days):d}:{int(hours):02d}:{int(minutes):02d}:{int(seconds):02d}"
    else:
        return f"{int(hours):02d}:{int(minutes):02d}:{int(seconds):02d}"


def epoch_ms_to_iso(epoch_ms: float) -> str:
    """毫秒时间戳转换为 UTC ISO-8601 字符串"""
    seconds, millis = divmod(int(epoch_ms), 1000)
    return strftime('%Y-%m-%dT%H:%M:%S', gmtime(seconds)) + f".{millis:03d}Z"


def get_logger(logger_name: str, log_file: str = LOG_PATH) -> logging.Logger:
    logger = logging.getLogger(logger_name)

    # 检查logger是否已经有处理器，如果有，直接返回
    if logger.handlers:
        return logger

    FMT = logging.Formatter("%(asctime)s %(levelname)s %(filename)s:%(lineno)s %(message)s")
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(FMT)

    if log_file:
        os.makedirs(os.path.dirname(log_file), exist_ok=True)

        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=10 * 1024 * 1024,  # 10 MB
            backupCount=5,
            encoding='utf-8'
        )
        file_handler.setFormatter(FMT)
        logger.addHandler(file_handler)

    logger.addHandler(console_handler)
    logger.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))

    # 防止日志传播到根日志器
    logger.propagate = False

    return logger
