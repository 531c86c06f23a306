from __future__ import annotations

import json
import logging
import signal
import sys
import threading
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from regcreds.src.__main__ import JSONFormatter, main, redact_sensitive_text
from regcreds.src.config import ConfigError
from regcreds.src.refresh import RefreshOrchestrator


class TestJSONFormatter:
    """Tests for the structured JSON log formatter."""

    def _make_record(
        self,
        msg: str = "test message",
        level: int = logging.INFO,
        exc_info: object = None,
    ) -> logging.LogRecord:
        return logging.LogRecord(
            name="test.logger",
            level=level,
            pathname="test.py",
            lineno=1,
            msg=msg,
            args=(),
            exc_info=exc_info,  # type: ignore[arg-type]
        )

    def test_format_produces_valid_json(self) -> None:
        parsed = json.loads(JSONFormatter().format(self._make_record()))

        assert parsed["msg"] == "test message"
        assert parsed["level"] == "INFO"
        assert parsed["logger"] == "test.logger"
        assert "ts" in parsed
        assert "error" not in parsed

    def test_format_includes_error_on_exception(self) -> None:
        try:
            raise ValueError("boom")
        except ValueError:
            record = self._make_record(exc_info=sys.exc_info())

        parsed = json.loads(JSONFormatter().format(record))

        assert "ValueError" in parsed["error"]
        assert "boom" in parsed["error"]

    def test_format_is_single_line(self) -> None:
        output = JSONFormatter().format(self._make_record(msg="line one\nline two"))

        assert output.count("\n") == 0

    def test_format_redacts_registry_credentials(self) -> None:
        record = self._make_record(
            msg=(
                'token=abc123 Authorization: Bearer abc.def.ghi '
                '{"auths":{"https://r":{"auth":"QVdTOnNlY3JldA==","email":"none"}}} '
                '{"password":"hunter2"}'
            )
        )

        message = json.loads(JSONFormatter().format(record))["msg"]

        assert "[REDACTED]" in message
        assert "abc123" not in message
        assert "abc.def.ghi" not in message
        assert "QVdTOnNlY3JldA==" not in message
        assert "hunter2" not in message
        assert "https://r" in message

    def test_redaction_leaves_plain_text_alone(self) -> None:
        text = "Updated secret awsecr-cred in namespace team-a"

        assert redact_sensitive_text(text) == text


def _patched_main(monkeypatch: pytest.MonkeyPatch, argv: list[str]) -> dict[str, MagicMock]:
    monkeypatch.setenv("LOG_LEVEL", "WARNING")
    for name in ("HEALTH_PORT", "TOKEN_RETRY_TYPE", "TOKEN_RETRIES", "TOKEN_RETRY_DELAY"):
        monkeypatch.delenv(name, raising=False)
    for name in ("awsaccount", "awsregion", "aws_assume_role"):
        monkeypatch.delenv(name, raising=False)

    mock_watcher = MagicMock()
    mock_watcher.ready = threading.Event()

    def fake_run_forever(shutdown_event: threading.Event | None = None) -> None:
        if shutdown_event is not None:
            shutdown_event.set()

    mock_watcher.run_forever.side_effect = fake_run_forever

    with (
        patch("regcreds.src.__main__.load_kube_configuration") as mock_load,
        patch("regcreds.src.__main__.build_core_client", return_value=SimpleNamespace()),
        patch("regcreds.src.__main__.EcrTokenSource") as mock_source,
        patch("regcreds.src.__main__.NamespaceWatcher", return_value=mock_watcher) as mock_cls,
        patch("regcreds.src.__main__.start_health_server") as mock_health,
    ):
        mock_health.return_value = MagicMock()
        main(argv)

    return {
        "load": mock_load,
        "source": mock_source,
        "watcher_cls": mock_cls,
        "watcher": mock_watcher,
        "health": mock_health,
    }


class TestMainEntrypoint:
    """Integration-style tests for the main() function wiring."""

    def test_main_wires_watcher_to_orchestrator(self, monkeypatch: pytest.MonkeyPatch) -> None:
        mocks = _patched_main(
            monkeypatch,
            ["--refresh-mins=15", "--excluded-namespaces=monitoring", "--token-retries=2"],
        )

        mocks["load"].assert_called_once()
        mocks["watcher"].run_forever.assert_called_once()
        ctor_kwargs = mocks["watcher_cls"].call_args.kwargs
        assert ctor_kwargs["resync_seconds"] == 900
        orchestrator = ctor_kwargs["handler"].__self__
        assert isinstance(orchestrator, RefreshOrchestrator)
        assert orchestrator.excluded_namespaces == frozenset({"monitoring"})
        assert orchestrator.retry_config.max_retries == 2
        assert list(orchestrator.providers) == ["awsecr-cred"]
        mocks["health"].return_value.shutdown.assert_called_once()

    def test_main_builds_token_source_from_environment(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("awsaccount", "111,222")
        monkeypatch.setenv("awsregion", "eu-west-1")
        monkeypatch.setenv("aws_assume_role", "arn:aws:iam::111:role/ecr")

        with (
            patch("regcreds.src.__main__.load_kube_configuration"),
            patch("regcreds.src.__main__.build_core_client", return_value=SimpleNamespace()),
            patch("regcreds.src.__main__.EcrTokenSource") as mock_source,
            patch("regcreds.src.__main__.NamespaceWatcher") as mock_cls,
            patch("regcreds.src.__main__.start_health_server") as mock_health,
        ):
            mock_cls.return_value.run_forever.return_value = None
            mock_health.return_value = MagicMock()
            main([])

        assert mock_source.call_args.kwargs == {
            "region": "eu-west-1",
            "account_ids": ("111", "222"),
            "assume_role": "arn:aws:iam::111:role/ecr",
        }

    def test_main_passes_health_port(self, monkeypatch: pytest.MonkeyPatch) -> None:
        mocks = _patched_main(monkeypatch, ["--health-port=9090"])

        assert mocks["health"].call_args.kwargs["port"] == 9090
        assert mocks["health"].call_args.kwargs["ready"] is mocks["watcher"].ready

    def test_main_registers_signal_handlers(self, monkeypatch: pytest.MonkeyPatch) -> None:
        registered_signals: list[int] = []
        original_signal = signal.signal

        def tracking_signal(signum: int, handler: object) -> object:
            registered_signals.append(signum)
            return original_signal(signum, signal.SIG_DFL)

        with patch("regcreds.src.__main__.signal.signal", side_effect=tracking_signal):
            _patched_main(monkeypatch, [])

        assert signal.SIGTERM in registered_signals
        assert signal.SIGINT in registered_signals

    def test_main_rejects_invalid_health_port(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("HEALTH_PORT", "70000")

        with (
            patch("regcreds.src.__main__.load_kube_configuration") as mock_load,
            pytest.raises(ConfigError, match="HEALTH_PORT must be <= 65535, got: 70000"),
        ):
            main([])

        mock_load.assert_not_called()
