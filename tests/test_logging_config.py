import logging
from logging.handlers import RotatingFileHandler

from dnsbridge.logging_config import LOG_FORMAT, setup_logging


class TestSetupLogging:
    def teardown_method(self):
        root = logging.getLogger()
        for handler in list(root.handlers):
            handler.close()
            root.removeHandler(handler)

    def test_foreground_only(self):
        setup_logging(None, foreground=True)
        handlers = logging.getLogger().handlers
        assert len(handlers) == 1
        assert isinstance(handlers[0], logging.StreamHandler)
        assert handlers[0].formatter._fmt == LOG_FORMAT

    def test_file_and_console(self, tmp_path):
        log_path = tmp_path / "logs" / "bridge.log"
        setup_logging(log_path, foreground=True)
        handlers = logging.getLogger().handlers
        assert any(isinstance(h, RotatingFileHandler) for h in handlers)
        assert len(handlers) == 2
        assert log_path.parent.is_dir()

    def test_file_only_in_background(self, tmp_path):
        setup_logging(tmp_path / "bridge.log", foreground=False, max_bytes=1024)
        handlers = logging.getLogger().handlers
        assert len(handlers) == 1
        assert isinstance(handlers[0], RotatingFileHandler)
        assert handlers[0].maxBytes == 1024
        assert handlers[0].backupCount == 3

    def test_never_silent(self):
        setup_logging(None, foreground=False)
        assert len(logging.getLogger().handlers) == 1

    def test_level(self):
        setup_logging(None, level="debug")
        assert logging.getLogger().level == logging.DEBUG

    def test_unknown_level_falls_back_to_info(self):
        setup_logging(None, level="chatty")
        assert logging.getLogger().level == logging.INFO

    def test_writes_formatted_lines(self, tmp_path):
        log_path = tmp_path / "bridge.log"
        setup_logging(log_path, foreground=False)
        logging.getLogger("dnsbridge.test").info("hello %s", "world")
        for handler in logging.getLogger().handlers:
            handler.flush()
        content = log_path.read_text()
        assert "[dnsbridge.test] INFO hello world" in content
