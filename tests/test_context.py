"""Tests for configuration loading and the startup gate."""

import textwrap

import pytest
from unittest.mock import AsyncMock, MagicMock
from inboxsync.agent.schemas import Category
from inboxsync.config import Settings, load_accounts
from inboxsync.context import AppContext
from inboxsync.errors import ConnectivityError, StartupDependencyFailure
from inboxsync.llm.client import LLMError
from inboxsync.logging.config import setup_logging


@pytest.fixture(autouse=True)
def init_logging():
    setup_logging("debug")


# --- Configuration ---

@pytest.fixture
def accounts_file(tmp_path):
    path = tmp_path / "accounts.yaml"
    path.write_text(textwrap.dedent("""\
        accounts:
          - id: account1
            email: me@gmail.com
            host: imap.gmail.com
            password_env: EMAIL1_PASSWORD
          - id: account2
            email: me@corp.com
            host: mail.corp.com
            port: 1993
            tls: false
            folder: Sales
            password_env: EMAIL2_PASSWORD
    """))
    return path


class TestLoadAccounts:
    def test_loads_accounts_with_env_passwords(self, accounts_file, monkeypatch):
        monkeypatch.setenv("EMAIL1_PASSWORD", "pw1")
        monkeypatch.setenv("EMAIL2_PASSWORD", "pw2")

        accounts = load_accounts(str(accounts_file))

        assert [a.id for a in accounts] == ["account1", "account2"]
        assert accounts[0].port == 993
        assert accounts[0].use_tls is True
        assert accounts[0].username == "me@gmail.com"
        assert accounts[1].port == 1993
        assert accounts[1].use_tls is False
        assert accounts[1].folder == "Sales"
        assert accounts[1].password == "pw2"
        assert "pw2" not in repr(accounts[1])

    def test_missing_password_raises(self, accounts_file, monkeypatch):
        monkeypatch.setenv("EMAIL1_PASSWORD", "pw1")
        monkeypatch.delenv("EMAIL2_PASSWORD", raising=False)

        with pytest.raises(ValueError, match="account2"):
            load_accounts(str(accounts_file))

    def test_missing_file_raises(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_accounts(str(tmp_path / "nope.yaml"))


class TestSettings:
    def test_defaults(self, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-test")

        settings = Settings()

        assert settings.poll_interval_seconds == 60
        assert settings.reconnect_delay_seconds == 30
        assert settings.notify_max_attempts == 3
        assert settings.actionable_category == Category.INTERESTED

    def test_actionable_category_from_env(self, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-test")
        monkeypatch.setenv("ACTIONABLE_CATEGORY", "Meeting Booked")

        assert Settings().actionable_category == Category.MEETING_BOOKED


# --- Startup gate ---

@pytest.fixture
def ctx() -> AppContext:
    supervisors = MagicMock()
    supervisors.wait_initial_connections = AsyncMock(return_value=[])
    supervisors.stop_all = AsyncMock()
    store = MagicMock()
    store.ping = AsyncMock()
    store.ensure_index = AsyncMock()
    store.close = AsyncMock()
    llm = MagicMock()
    llm.ping = AsyncMock()
    llm.close = AsyncMock()
    retrieval = MagicMock()
    retrieval.initialize = AsyncMock()
    dispatcher = MagicMock()
    dispatcher.drain = AsyncMock()
    dispatcher.sinks = []
    return AppContext(
        settings=MagicMock(),
        accounts=[MagicMock()],
        llm=llm,
        store=store,
        classifier=MagicMock(),
        retrieval=retrieval,
        dispatcher=dispatcher,
        broadcaster=MagicMock(),
        pipeline=MagicMock(),
        supervisors=supervisors,
    )


class TestStartup:
    @pytest.mark.asyncio
    async def test_all_dependencies_up(self, ctx):
        await ctx.startup(connect_timeout=1)

        ctx.store.ensure_index.assert_awaited_once()
        ctx.supervisors.start_all.assert_called_once()

    @pytest.mark.asyncio
    async def test_store_down_is_fatal(self, ctx):
        ctx.store.ping.side_effect = ConnectivityError("refused")

        with pytest.raises(StartupDependencyFailure, match="Document store"):
            await ctx.startup(connect_timeout=1)

        ctx.supervisors.start_all.assert_not_called()

    @pytest.mark.asyncio
    async def test_llm_down_is_fatal(self, ctx):
        ctx.llm.ping.side_effect = LLMError("401")

        with pytest.raises(StartupDependencyFailure, match="Generative service"):
            await ctx.startup(connect_timeout=1)

    @pytest.mark.asyncio
    async def test_mailbox_login_failure_is_fatal(self, ctx):
        ctx.supervisors.wait_initial_connections.return_value = ["account1"]

        with pytest.raises(StartupDependencyFailure, match="account1"):
            await ctx.startup(connect_timeout=1)

        ctx.supervisors.stop_all.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_retrieval_failure_is_not_fatal(self, ctx):
        ctx.retrieval.initialize.side_effect = RuntimeError("model download failed")

        await ctx.startup(connect_timeout=1)

        ctx.supervisors.start_all.assert_called_once()

    @pytest.mark.asyncio
    async def test_shutdown_closes_everything(self, ctx):
        sink = MagicMock()
        sink.close = AsyncMock()
        ctx.dispatcher.sinks = [sink]

        await ctx.shutdown()

        ctx.supervisors.stop_all.assert_awaited_once()
        ctx.dispatcher.drain.assert_awaited_once()
        sink.close.assert_awaited_once()
        ctx.store.close.assert_awaited_once()
        ctx.llm.close.assert_awaited_once()


class TestBuild:
    @pytest.mark.asyncio
    async def test_wires_services_without_network(self, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-test")
        settings = Settings()

        ctx = AppContext.build(settings, [])

        assert [s.name for s in ctx.dispatcher.sinks] == ["slack", "webhook"]
        assert ctx.supervisors.status()["total_accounts"] == 0
        assert not ctx.retrieval.initialized
        await ctx.shutdown()
