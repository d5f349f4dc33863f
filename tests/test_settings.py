"""Tests for settings and logging configuration."""

import json
import logging

import structlog

from truesync.config.settings import BASE_DIR, Settings
from truesync.utils.logging_config import get_logger, setup_logging


class TestSettings:
    def test_defaults(self):
        s = Settings()
        assert s.REPEAT_COUNT == 5
        assert s.RETRY_COUNT == 20
        assert s.ROOT_DELAY_MAX_MS == 100.0
        assert s.SERVER_RESPONSE_DELAY_MAX_MS == 750
        assert s.PROBE_PORT == 80
        assert s.PROBE_TIMEOUT_S == 5.0
        assert s.CACHE_BACKEND == "file"
        assert len(s.NTP_POOL_HOSTS) >= 1

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("TRUESYNC_REPEAT_COUNT", "9")
        monkeypatch.setenv("TRUESYNC_PROBE_ENABLED", "false")
        monkeypatch.setenv("TRUESYNC_NTP_POOL_HOSTS", json.dumps(["0.pool.test", "1.pool.test"]))
        s = Settings()
        assert s.REPEAT_COUNT == 9
        assert s.PROBE_ENABLED is False
        assert s.NTP_POOL_HOSTS == ["0.pool.test", "1.pool.test"]

    def test_base_dir_is_repo_root(self):
        assert (BASE_DIR / "pyproject.toml").exists()


class TestLogging:
    def test_setup_logging_binds_component(self, tmp_path):
        root = logging.getLogger()
        saved_handlers, saved_level = root.handlers[:], root.level
        log_file = tmp_path / "logs" / "sync.log"
        try:
            logger = setup_logging("DEBUG", component="tests", log_path=log_file)
            logger.info("hello", answer=42)
            for handler in root.handlers:
                handler.flush()
        finally:
            for handler in root.handlers:
                handler.close()
            root.handlers = saved_handlers
            root.setLevel(saved_level)
            structlog.reset_defaults()

        record = json.loads(log_file.read_text().strip().splitlines()[-1])
        assert record["event"] == "hello"
        assert record["component"] == "tests"
        assert record["answer"] == 42
        assert record["level"] == "info"

    def test_get_logger_binds_context(self):
        logger = get_logger("truesync.tests", host="10.0.0.1")
        assert logger is not None
