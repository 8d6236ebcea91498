"""
Connection supervisor: one state machine per mailbox account.

Each account runs in its own asyncio task and shares nothing mutable with
the others. Lifecycle:

    DISCONNECTED → CONNECTING → READY → (open folder, backlog scan) → WATCHING
          ↑                                                              │
          └──────────── RECONNECTING (fixed delay) ←── transport error ──┘

    any state → SHUTTING_DOWN (terminal)

WATCHING picks one mode per connection:
- push: the server supports IDLE. An EXISTS/RECENT response is only a
  hint; new mail is confirmed by searching UNSEEN. IDLE is re-armed
  periodically so the server never drops it. If IDLE cannot be armed the
  connection falls back to polling.
- poll: search UNSEEN every ``poll_interval`` seconds.

Reconnects use a constant delay, not exponential backoff. The delay is a
wait on the stop event, so shutdown cancels it, and the running flag is
checked again right before reconnecting.

Blocking IMAP calls run in a worker thread. Only one thread touches a
connection at a time: the watch loop leaves IDLE before fetching, and
fetches are serialized by a lock.
"""

import asyncio
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from inboxsync.agent.schemas import ConnectionState, MailAccount, RawMessage
from inboxsync.logging.audit import audit
from inboxsync.logging.config import account_var
from inboxsync.mail.client import MailboxConnection, has_new_mail_hint
from inboxsync.sync.pipeline import IngestionPipeline

logger = logging.getLogger(__name__)

ConnectionFactory = Callable[[MailAccount], MailboxConnection]


class AccountSupervisor:
    """Owns the connection and the state for exactly one account."""

    def __init__(
        self,
        account: MailAccount,
        pipeline: IngestionPipeline,
        connection_factory: ConnectionFactory = MailboxConnection,
        backlog_days: int = 30,
        backlog_max_messages: int = 50,
        poll_interval: float = 60.0,
        reconnect_delay: float = 30.0,
        idle_renew: float = 25 * 60,
        idle_check: float = 5.0,
    ):
        self.account = account
        self._pipeline = pipeline
        self._connection_factory = connection_factory
        self._backlog_days = backlog_days
        self._backlog_max = backlog_max_messages
        self._poll_interval = poll_interval
        self._reconnect_delay = reconnect_delay
        self._idle_renew = idle_renew
        self._idle_check = idle_check

        self.state = ConnectionState.DISCONNECTED
        self.mode: Optional[str] = None
        self.reconnects_scheduled = 0
        self._running = False
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._connection: Optional[MailboxConnection] = None
        self._fetch_lock = asyncio.Lock()
        self._seen: set[int] = set()
        self._first_attempt: Optional[asyncio.Future] = None

    @property
    def running(self) -> bool:
        return self._running

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    def start(self) -> None:
        """Launch the account task. Starting twice, or after shutdown, raises."""
        if self.state == ConnectionState.SHUTTING_DOWN:
            raise RuntimeError(f"Supervisor for {self.account.id} has been shut down")
        if self._task is not None:
            raise RuntimeError(f"Supervisor for {self.account.id} already started")
        self._running = True
        self._first_attempt = asyncio.get_running_loop().create_future()
        self._task = asyncio.create_task(self._run(), name=f"supervisor-{self.account.id}")

    async def wait_first_attempt(self, timeout: float) -> bool:
        """True once the first connection attempt reached READY, False if it failed or timed out."""
        if self._first_attempt is None:
            return False
        try:
            return await asyncio.wait_for(asyncio.shield(self._first_attempt), timeout)
        except asyncio.TimeoutError:
            return False

    async def stop(self, timeout: float = 15.0) -> None:
        """
        Stop for good. Idempotent.

        Flips the running flag first, so any reconnect that wakes up
        afterwards sees it and does nothing, then waits for the task and
        closes the connection explicitly.
        """
        if self.state == ConnectionState.SHUTTING_DOWN and self._task is None:
            return
        self._running = False
        self.state = ConnectionState.SHUTTING_DOWN
        self._stop.set()

        task, self._task = self._task, None
        if task is not None:
            try:
                await asyncio.wait_for(task, timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    "supervisor.stop_timeout",
                    extra={"action": "supervisor.stop_timeout", "account_id": self.account.id},
                )
            except asyncio.CancelledError:
                pass

        await self._close_connection()
        self._resolve_first_attempt(False)
        audit.info("supervisor.stopped", account_id=self.account.id)

    def handle_connection_error(self, error: BaseException) -> bool:
        """
        React to a transport error or an unexpected end of connection.

        Returns True if a reconnect should follow. Once shutdown has begun
        this is a no-op and returns False.
        """
        if not self._running:
            logger.info(
                "supervisor.error_after_shutdown",
                extra={
                    "action": "supervisor.error_after_shutdown",
                    "account_id": self.account.id,
                    "error": str(error),
                },
            )
            return False

        self.state = ConnectionState.RECONNECTING
        self.reconnects_scheduled += 1
        logger.warning(
            "supervisor.connection_lost",
            extra={
                "action": "supervisor.connection_lost",
                "account_id": self.account.id,
                "error": str(error),
                "reconnect_in_seconds": self._reconnect_delay,
            },
        )
        return True

    # =========================================================================
    # STATE MACHINE
    # =========================================================================

    async def _run(self) -> None:
        account_var.set(self.account.id)
        while self._running:
            try:
                await self._connect_and_watch()
                error: Optional[BaseException] = None
            except asyncio.CancelledError:
                raise
            except Exception as e:
                error = e
            finally:
                await self._close_connection()

            if error is not None:
                self._resolve_first_attempt(False)
                if not self.handle_connection_error(error):
                    break
            elif self._running:
                # The watch loop returned without an error while still
                # running: the server ended the session.
                if not self.handle_connection_error(ConnectionError("connection ended")):
                    break
            else:
                break

            # Constant delay; wakes early on shutdown.
            if await self._wait_stop(self._reconnect_delay):
                break
            if not self._running:
                break

        if self.state != ConnectionState.SHUTTING_DOWN:
            self.state = ConnectionState.DISCONNECTED

    async def _connect_and_watch(self) -> None:
        if self._connection is not None:
            raise RuntimeError(f"A connection for {self.account.id} is already live")

        self.state = ConnectionState.CONNECTING
        connection = self._connection_factory(self.account)
        self._connection = connection
        await asyncio.to_thread(connection.connect)
        if not self._running:
            return

        self.state = ConnectionState.READY
        self._resolve_first_attempt(True)
        audit.info("supervisor.ready", account_id=self.account.id)

        await asyncio.to_thread(connection.select_folder, self.account.folder)
        await self._backlog_scan(connection)
        if not self._running:
            return

        self.state = ConnectionState.WATCHING
        if await asyncio.to_thread(connection.supports_idle):
            await self._watch_push(connection)
        else:
            await self._watch_poll(connection)

    async def _backlog_scan(self, connection: MailboxConnection) -> None:
        since = (datetime.now(timezone.utc) - timedelta(days=self._backlog_days)).date()
        uids = await asyncio.to_thread(connection.search_since, since)
        self._forget_before(uids[0] if uids else None)
        recent = uids[-self._backlog_max:] if self._backlog_max > 0 else []
        logger.info(
            "supervisor.backlog_scan",
            extra={
                "action": "supervisor.backlog_scan",
                "account_id": self.account.id,
                "found": len(uids),
                "processing": len(recent),
            },
        )
        await self._ingest(connection, recent)

    async def _watch_poll(self, connection: MailboxConnection) -> None:
        self.mode = "poll"
        logger.info(
            "supervisor.watching",
            extra={"action": "supervisor.watching", "account_id": self.account.id, "mode": "poll"},
        )
        while self._running:
            if await self._wait_stop(self._poll_interval):
                return
            await self._check_unseen(connection)

    async def _watch_push(self, connection: MailboxConnection) -> None:
        try:
            await asyncio.to_thread(connection.idle_start)
        except Exception as e:
            logger.warning(
                "supervisor.idle_unavailable",
                extra={
                    "action": "supervisor.idle_unavailable",
                    "account_id": self.account.id,
                    "error": str(e),
                },
            )
            await self._watch_poll(connection)
            return

        self.mode = "push"
        logger.info(
            "supervisor.watching",
            extra={"action": "supervisor.watching", "account_id": self.account.id, "mode": "push"},
        )
        renew_at = time.monotonic() + self._idle_renew

        while self._running:
            responses = await asyncio.to_thread(connection.idle_check, self._idle_check)
            if not self._running:
                return

            hint = has_new_mail_hint(responses)
            if hint or time.monotonic() >= renew_at:
                await asyncio.to_thread(connection.idle_done)
                if hint:
                    await self._check_unseen(connection)
                if not self._running:
                    return
                await asyncio.to_thread(connection.idle_start)
                renew_at = time.monotonic() + self._idle_renew

    async def _check_unseen(self, connection: MailboxConnection) -> None:
        uids = await asyncio.to_thread(connection.search_unseen)
        await self._ingest(connection, uids)

    async def _ingest(self, connection: MailboxConnection, uids: list[int]) -> None:
        new = [uid for uid in uids if uid not in self._seen]
        if not new:
            return
        self._seen.update(new)

        async def fetch(uid: int) -> Optional[RawMessage]:
            async with self._fetch_lock:
                return await asyncio.to_thread(connection.fetch_one, uid)

        result = await self._pipeline.process_batch(self.account, new, fetch)
        # Let transport failures be picked up again by the next search
        self._seen.difference_update(result.fetch_failed)

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _forget_before(self, lowest: Optional[int]) -> None:
        """Drop remembered UIDs below the oldest one still inside the backlog window."""
        if lowest is None:
            self._seen.clear()
        else:
            self._seen = {uid for uid in self._seen if uid >= lowest}

    async def _wait_stop(self, timeout: float) -> bool:
        """Sleep up to `timeout` seconds. True if shutdown was requested."""
        try:
            await asyncio.wait_for(self._stop.wait(), timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def _close_connection(self) -> None:
        connection, self._connection = self._connection, None
        if connection is not None:
            await asyncio.to_thread(connection.close)

    def _resolve_first_attempt(self, ok: bool) -> None:
        if self._first_attempt is not None and not self._first_attempt.done():
            self._first_attempt.set_result(ok)

    def status(self) -> dict:
        return {
            "account_id": self.account.id,
            "email": self.account.email,
            "state": self.state.value,
            "mode": self.mode,
            "reconnects_scheduled": self.reconnects_scheduled,
        }


class SupervisorRegistry:
    """All account supervisors, keyed by account id. Each entry has a single writer: its own task."""

    def __init__(self, supervisors: list[AccountSupervisor]):
        self._supervisors = {s.account.id: s for s in supervisors}
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def get(self, account_id: str) -> AccountSupervisor:
        return self._supervisors[account_id]

    def start_all(self) -> None:
        if self._running:
            logger.info("supervisor.already_running", extra={"action": "supervisor.already_running"})
            return
        self._running = True
        for supervisor in self._supervisors.values():
            supervisor.start()

    async def wait_initial_connections(self, timeout: float) -> list[str]:
        """Return the ids of accounts whose first connection attempt did not reach READY."""
        ids = list(self._supervisors)
        results = await asyncio.gather(
            *(self._supervisors[i].wait_first_attempt(timeout) for i in ids)
        )
        return [i for i, ok in zip(ids, results) if not ok]

    async def stop_all(self) -> None:
        """Stop every supervisor. Safe to call more than once."""
        self._running = False
        await asyncio.gather(*(s.stop() for s in self._supervisors.values()))

    def status(self) -> dict:
        states = [s.status() for s in self._supervisors.values()]
        return {
            "is_running": self._running,
            "connected_accounts": [
                s["account_id"] for s in states
                if s["state"] in (ConnectionState.READY.value, ConnectionState.WATCHING.value)
            ],
            "total_accounts": len(states),
            "accounts": states,
        }
