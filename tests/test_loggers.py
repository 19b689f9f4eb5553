"""
Tests for logging configuration.
"""

import logging
from logging.handlers import RotatingFileHandler
from unittest.mock import MagicMock, patch

from flexicart.loggers import LokiHandler, get_logger, send_to_loki


class TestGetLogger:
    """Tests for the logger factory."""

    def test_handlers(self, tmp_path):
        log_file = tmp_path / "nested" / "cart.log"
        logger = get_logger("flexicart.test.handlers", log_file=str(log_file), level="INFO")

        kinds = [type(h) for h in logger.handlers]
        assert logger.level == logging.INFO
        assert RotatingFileHandler in kinds
        assert LokiHandler not in kinds
        assert log_file.parent.is_dir()

    def test_no_file(self):
        logger = get_logger("flexicart.test.nofile", log_file=None)
        assert not any(isinstance(h, RotatingFileHandler) for h in logger.handlers)

    def test_loki_handler_level(self):
        logger = get_logger(
            "flexicart.test.loki",
            log_file=None,
            level=logging.DEBUG,
            loki_url="http://loki:3100/loki/api/v1/push",
        )
        loki = [h for h in logger.handlers if isinstance(h, LokiHandler)]
        assert len(loki) == 1
        assert loki[0].level == logging.INFO

    def test_repeated_calls_reuse_handlers(self):
        first = get_logger("flexicart.test.repeat", log_file=None)
        count = len(first.handlers)
        second = get_logger("flexicart.test.repeat", log_file=None)
        assert second is first
        assert len(second.handlers) == count


class TestLoki:
    """Tests for Loki pushes."""

    def test_send_to_loki(self):
        client = MagicMock()
        with patch("flexicart.loggers.httpx.Client") as client_cls:
            client_cls.return_value.__enter__.return_value = client
            send_to_loki("http://loki/push", "INFO", "hello", "flexicart")

        url = client.post.call_args.args[0]
        body = client.post.call_args.kwargs["json"]
        assert url == "http://loki/push"
        assert body["streams"][0]["stream"] == {"level": "INFO", "app": "flexicart"}
        assert body["streams"][0]["values"][0][1] == "hello"

    def test_emit_failure_is_handled(self):
        handler = LokiHandler("http://loki/push", "flexicart")
        record = logging.LogRecord("x", logging.ERROR, __file__, 1, "boom", None, None)
        with patch("flexicart.loggers.send_to_loki", side_effect=OSError("down")), \
                patch.object(handler, "handleError") as handle_error:
            handler.emit(record)
        handle_error.assert_called_once_with(record)
