"""
ログ設定

各サービスはプロセス起動時に一度だけ configure_logging を呼ぶ。
モジュール側は logging.getLogger(__name__) を使うだけでよい。
"""

import logging

LOG_FORMAT = "%(asctime)s %(levelname)s [%(service)s] %(name)s: %(message)s"


class _ServiceFilter(logging.Filter):
    def __init__(self, service: str) -> None:
        super().__init__()
        self.service = service

    def filter(self, record: logging.LogRecord) -> bool:
        record.service = self.service
        return True


def configure_logging(service: str, level: str = "INFO") -> None:
    """ルートロガーにサービス名付きのハンドラを設定する。"""
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(_ServiceFilter(service))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level.upper())

    # pika は接続ごとに INFO を大量に出す
    logging.getLogger("pika").setLevel(logging.WARNING)
