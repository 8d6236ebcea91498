"""Tests for the structured logging system."""

import asyncio
import json
import logging

import pytest
from unittest.mock import AsyncMock, MagicMock
from inboxsync.agent.schemas import MailAccount
from inboxsync.logging.config import setup_logging, request_id_var, account_var
from inboxsync.logging.audit import audit
from inboxsync.sync.pipeline import BatchResult
from inboxsync.sync.supervisor import AccountSupervisor


def test_json_format(capsys):
    """Log output should be valid JSON with expected fields."""
    setup_logging(level="debug")
    logger = logging.getLogger("test")
    logger.info("test message")

    captured = capsys.readouterr()
    log = json.loads(captured.out.strip())

    assert log["level"] == "info"
    assert log["message"] == "test message"
    assert log["logger"] == "test"
    assert "timestamp" in log
    assert "request_id" in log
    assert "account" in log


def test_context_vars_appear_in_log(capsys):
    """Context variables should be included in every log line."""
    setup_logging(level="debug")
    logger = logging.getLogger("test")

    req_token = request_id_var.set("abc123")
    account_token = account_var.set("account1")

    try:
        logger.info("mailbox action")
        captured = capsys.readouterr()
        log = json.loads(captured.out.strip())

        assert log["request_id"] == "abc123"
        assert log["account"] == "account1"
    finally:
        request_id_var.reset(req_token)
        account_var.reset(account_token)


def test_extra_fields(capsys):
    """Extra kwargs should appear as top-level fields in the JSON."""
    setup_logging(level="debug")
    logger = logging.getLogger("test")
    logger.info("email processed", extra={"record_id": "9f1c", "latency_ms": 450})

    captured = capsys.readouterr()
    log = json.loads(captured.out.strip())

    assert log["record_id"] == "9f1c"
    assert log["latency_ms"] == 450


def test_exception_logging(capsys):
    """Exceptions should include type, message, and traceback."""
    setup_logging(level="debug")
    logger = logging.getLogger("test")

    try:
        raise ValueError("something went wrong")
    except ValueError:
        logger.exception("operation failed")

    captured = capsys.readouterr()
    log = json.loads(captured.out.strip())

    assert log["level"] == "error"
    assert log["exception_type"] == "ValueError"
    assert log["exception_message"] == "something went wrong"
    assert "traceback" in log


def test_audit_info(capsys):
    """Audit logger should produce structured JSON with action field."""
    setup_logging(level="debug")
    audit.info("email.classified", record_id="9f1c", category="Interested")

    captured = capsys.readouterr()
    log = json.loads(captured.out.strip())

    assert log["level"] == "info"
    assert log["action"] == "email.classified"
    assert log["record_id"] == "9f1c"
    assert log["category"] == "Interested"


def test_audit_error(capsys):
    """Audit error should log at error level."""
    setup_logging(level="debug")
    audit.error("notify.dropped", sink="slack", attempts=3)

    captured = capsys.readouterr()
    log = json.loads(captured.out.strip())

    assert log["level"] == "error"
    assert log["action"] == "notify.dropped"
    assert log["attempts"] == 3


def test_default_context_values(capsys):
    """Outside a request or account task, defaults should appear."""
    setup_logging(level="debug")
    logger = logging.getLogger("test")
    logger.info("no context")

    captured = capsys.readouterr()
    log = json.loads(captured.out.strip())

    assert log["request_id"] == "-"
    assert log["account"] == "-"


def test_noisy_libraries_quieted():
    setup_logging(level="debug")
    assert logging.getLogger("imapclient").level == logging.WARNING
    assert logging.getLogger("httpx").level == logging.WARNING


# --- Per-account context in supervisor tasks ---

class OneMessageMailbox:
    """A mailbox holding a single backlog message and nothing new."""

    def __init__(self, account):
        self.account = account

    def connect(self):
        pass

    def select_folder(self, folder=None):
        return 1

    def search_since(self, since):
        return [1]

    def supports_idle(self):
        return False

    def search_unseen(self):
        return []

    def close(self):
        pass


def make_account(account_id: str) -> MailAccount:
    return MailAccount(
        id=account_id,
        email=f"{account_id}@example.com",
        host="imap.example.com",
        username=f"{account_id}@example.com",
        password="secret",
    )


@pytest.mark.asyncio
async def test_each_supervisor_task_logs_under_its_own_account(capsys):
    setup_logging(level="debug")
    logger = logging.getLogger("inboxsync.sync.pipeline")
    seen_accounts: dict[str, str] = {}

    async def process_batch(account, uids, fetch):
        seen_accounts[account.id] = account_var.get()
        logger.info("batch", extra={"action": "batch", "account_id": account.id})
        return BatchResult()

    pipeline = MagicMock()
    pipeline.process_batch = AsyncMock(side_effect=process_batch)
    supervisors = [
        AccountSupervisor(
            account=make_account(account_id),
            pipeline=pipeline,
            connection_factory=OneMessageMailbox,
            poll_interval=0.01,
            reconnect_delay=0.01,
        )
        for account_id in ("account1", "account2")
    ]

    for supervisor in supervisors:
        supervisor.start()
    for _ in range(200):
        if len(seen_accounts) == 2:
            break
        await asyncio.sleep(0.01)
    await asyncio.gather(*(s.stop() for s in supervisors))

    assert seen_accounts == {"account1": "account1", "account2": "account2"}
    # The task-local value never leaks back into the caller's context
    assert account_var.get() == "-"

    lines = [json.loads(line) for line in capsys.readouterr().out.strip().splitlines()]
    task_lines = [entry for entry in lines if entry.get("action") in ("batch", "supervisor.backlog_scan")]
    assert len(task_lines) == 4
    assert all(entry["account"] == entry["account_id"] for entry in task_lines)


@pytest.mark.asyncio
async def test_account_context_does_not_cross_tasks():
    async def tagged(account_id: str) -> str:
        account_var.set(account_id)
        await asyncio.sleep(0.01)
        return account_var.get()

    results = await asyncio.gather(tagged("account1"), tagged("account2"))

    assert results == ["account1", "account2"]
    assert account_var.get() == "-"
