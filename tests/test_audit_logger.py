from __future__ import annotations

import json
from pathlib import Path

from open_llm_adapter.gateway.audit import JsonlAuditLogger, redact_secrets


def _records(path: Path) -> list[dict]:
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


def test_audit_logger_writes_records_before_close(tmp_path: Path) -> None:
    log_path = tmp_path / "logs" / "llm_requests.jsonl"
    logger = JsonlAuditLogger(path=str(log_path), enabled=True)
    logger.log({"event": "credential_selected", "request_id": "req-1", "credential": "primary"})
    logger({"event": "chat_completion_terminal", "request_id": "req-1", "outcome": "ok"})
    logger.close()

    records = _records(log_path)

    assert [record["event"] for record in records] == [
        "credential_selected",
        "chat_completion_terminal",
    ]
    assert records[0]["credential"] == "primary"
    assert isinstance(records[0]["ts"], int)


def test_audit_logger_redacts_secret_fields(tmp_path: Path) -> None:
    log_path = tmp_path / "audit.jsonl"
    logger = JsonlAuditLogger(path=str(log_path))
    logger.log(
        {
            "event": "credential_selected",
            "credential": {"name": "primary", "api_key": "sk-live", "Authorization": "Bearer x"},
        }
    )
    logger.close()

    record = _records(log_path)[0]

    assert record["credential"] == {
        "name": "primary",
        "api_key": "[redacted]",
        "Authorization": "[redacted]",
    }
    assert "sk-live" not in log_path.read_text(encoding="utf-8")


def test_redact_secrets_walks_lists_and_keeps_input() -> None:
    event = {"items": [{"secret_access_key": "s"}, {"region": "us-east-1"}]}

    assert redact_secrets(event) == {
        "items": [{"secret_access_key": "[redacted]"}, {"region": "us-east-1"}]
    }
    assert event["items"][0]["secret_access_key"] == "s"


def test_disabled_logger_creates_no_file(tmp_path: Path) -> None:
    log_path = tmp_path / "logs" / "audit.jsonl"
    logger = JsonlAuditLogger(path=str(log_path), enabled=False)

    logger.log({"event": "credential_selected"})
    logger.close()

    assert not log_path.parent.exists()


def test_log_after_close_is_ignored(tmp_path: Path) -> None:
    log_path = tmp_path / "audit.jsonl"
    logger = JsonlAuditLogger(path=str(log_path))
    logger.log({"event": "first"})
    logger.close()
    logger.log({"event": "late"})
    logger.close()

    assert [record["event"] for record in _records(log_path)] == ["first"]
    assert logger.dropped_records == 0
