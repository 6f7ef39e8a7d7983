"""Tests for log setup."""

import logging

from checkout_service.logging_config import LOG_FORMAT, setup_logging


class TestSetupLogging:
    def _capture(self, monkeypatch):
        calls = []
        monkeypatch.setattr(logging, "basicConfig", lambda **kwargs: calls.append(kwargs))
        return calls

    def test_stdout_only_without_log_file(self, monkeypatch):
        calls = self._capture(monkeypatch)

        setup_logging("debug")

        assert calls[0]["level"] == logging.DEBUG
        assert calls[0]["format"] == LOG_FORMAT
        assert [type(h) for h in calls[0]["handlers"]] == [logging.StreamHandler]

    def test_file_handler_when_configured(self, monkeypatch, tmp_path):
        calls = self._capture(monkeypatch)

        setup_logging("INFO", str(tmp_path / "checkout.log"))

        handlers = calls[0]["handlers"]
        assert any(isinstance(h, logging.FileHandler) for h in handlers)
        for h in handlers:
            h.close()

    def test_unknown_level_falls_back_to_info(self, monkeypatch):
        calls = self._capture(monkeypatch)
        setup_logging("chatty")
        assert calls[0]["level"] == logging.INFO

    def test_client_libraries_are_quietened(self, monkeypatch):
        self._capture(monkeypatch)
        setup_logging()
        assert logging.getLogger("pymongo").level == logging.WARNING
