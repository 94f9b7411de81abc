"""Tests for logging configuration, redaction and the JSONL handler."""

import json
import logging
import os
import time
from pathlib import Path

from demon.logging import (
    ComponentFormatter,
    JSONLHandler,
    SecretRedactor,
    configure_logging,
    prune_old_logs,
    redact,
)


class TestSecretRedactor:
    def test_redacts_telegram_token(self):
        text = "token 123456789:ABCdefGHIjklMNOpqrSTUvwxYZ0123456789 leaked"
        result = redact(text)
        assert "ABCdefGHIjklMNOpqrSTUvwxYZ" not in result
        assert "1234..." in result

    def test_redacts_api_key(self):
        result = redact("using sk-ant-REDACTED")
        assert "abcdefghijklmnopqrstuvwxyz" not in result

    def test_redacts_env_assignment(self):
        result = redact("TELEGRAM_BOT_TOKEN=supersecretvalue123")
        assert "supersecretvalue123" not in result

    def test_leaves_plain_text(self):
        assert redact("job_finished daily") == "job_finished daily"

    def test_disabled(self):
        redactor = SecretRedactor(enabled=False)
        text = "sk-ant-REDACTED"
        assert redactor.redact(text) == text


class TestJSONLHandler:
    def _record(self, msg: str, **extra) -> logging.LogRecord:
        record = logging.LogRecord(
            "demon.scheduling.loop", logging.INFO, __file__, 1, msg, (), None
        )
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_writes_structured_entry(self, tmp_path: Path):
        handler = JSONLHandler(tmp_path)
        handler.emit(self._record("job_finished", **{"job.id": "daily"}))
        handler.close()

        files = list(tmp_path.glob("*.jsonl"))
        assert len(files) == 1
        entry = json.loads(files[0].read_text().strip())
        assert entry["message"] == "job_finished"
        assert entry["level"] == "INFO"
        assert entry["component"] == "scheduling"
        assert entry["logger"] == "demon.scheduling.loop"
        assert entry["extra"] == {"job.id": "daily"}

    def test_redacts_extra_fields(self, tmp_path: Path):
        handler = JSONLHandler(tmp_path)
        handler.emit(
            self._record(
                "gateway_started",
                detail="123456789:ABCdefGHIjklMNOpqrSTUvwxYZ0123456789",
            )
        )
        handler.close()

        text = next(tmp_path.glob("*.jsonl")).read_text()
        assert "ABCdefGHIjklMNOpqrSTUvwxYZ" not in text


class TestPruning:
    def test_prunes_old_files_only(self, tmp_path: Path):
        old = tmp_path / "2020-01-01.jsonl"
        new = tmp_path / "2099-01-01.jsonl"
        other = tmp_path / "daemon.out"
        for path in (old, new, other):
            path.write_text("{}\n")
        ten_days_ago = time.time() - 10 * 86400
        os.utime(old, (ten_days_ago, ten_days_ago))
        os.utime(other, (ten_days_ago, ten_days_ago))

        assert prune_old_logs(tmp_path, retention_days=7) == 1
        assert not old.exists()
        assert new.exists()
        assert other.exists()


class TestConfigureLogging:
    def test_level_from_env(self, monkeypatch):
        monkeypatch.setenv("DEMON_LOG_LEVEL", "debug")
        configure_logging()
        assert logging.getLogger().level == logging.DEBUG

    def test_noisy_loggers_quieted(self):
        configure_logging("DEBUG")
        assert logging.getLogger("aiogram").level == logging.WARNING

    def test_file_logging(self, tmp_path: Path):
        configure_logging("INFO", log_to_file=True, logs_dir=tmp_path)
        logging.getLogger("demon.test").info("hello_file")
        for handler in logging.getLogger().handlers:
            handler.flush()
        assert "hello_file" in next(tmp_path.glob("*.jsonl")).read_text()
        configure_logging("WARNING")

    def test_component_formatter(self):
        formatter = ComponentFormatter("%(component)s | %(message)s")
        record = logging.LogRecord(
            "demon.gateway.listener", logging.INFO, __file__, 1, "gateway_started", (), None
        )
        assert formatter.format(record).startswith("gateway | gateway_started")
