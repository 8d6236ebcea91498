"""
IMAP mailbox connection.

A thin, blocking wrapper around IMAPClient for one account. The supervisor
owns exactly one of these per account at a time and calls it from a worker
thread (asyncio.to_thread), never from two threads at once.

Transport failures (socket errors, IMAP protocol errors, aborted
connections) surface as ConnectivityError so the supervisor can treat them
uniformly as "reconnect".

Usage:
    conn = MailboxConnection(account)
    conn.connect()
    conn.select_folder()
    uids = conn.search_unseen()
    raw = conn.fetch_one(uids[0])
    conn.close()
"""

import logging
import ssl
import threading
from datetime import date
from typing import Optional

from imapclient import IMAPClient
from imapclient.exceptions import IMAPClientError

from inboxsync.agent.schemas import MailAccount, RawMessage
from inboxsync.errors import ConnectivityError

logger = logging.getLogger(__name__)

DEFAULT_SOCKET_TIMEOUT = 30.0

# Untagged responses during IDLE that mean "something arrived".
NEW_MAIL_RESPONSES = (b"EXISTS", b"RECENT")

_TRANSPORT_ERRORS = (IMAPClientError, OSError)


def has_new_mail_hint(responses: list) -> bool:
    """
    True if any IDLE response hints at new mail.

    The count in the response is deliberately ignored; callers confirm by
    searching for UNSEEN messages.
    """
    for response in responses or []:
        if isinstance(response, tuple) and len(response) >= 2 and response[1] in NEW_MAIL_RESPONSES:
            return True
    return False


class MailboxConnection:
    """One live IMAP session for one account."""

    def __init__(self, account: MailAccount, timeout_seconds: float = DEFAULT_SOCKET_TIMEOUT):
        self.account = account
        self._timeout = timeout_seconds
        self._client: Optional[IMAPClient] = None
        self._idling = False
        self._closed = False
        self._state_lock = threading.Lock()

    @property
    def connected(self) -> bool:
        return self._client is not None

    def _require(self) -> IMAPClient:
        if self._client is None:
            raise ConnectivityError(f"Not connected to {self.account.host}")
        return self._client

    # =========================================================================
    # SESSION
    # =========================================================================

    def connect(self) -> None:
        """
        Open the socket and log in.

        close() may run from another thread while this is still logging in.
        In that case the new session is logged out here and never published.
        A closed connection cannot be reopened.
        """
        if self._closed:
            raise ConnectivityError(f"Connection to {self.account.host} already closed")

        ssl_context = None
        if self.account.use_tls:
            ssl_context = ssl.create_default_context()
            if not self.account.verify_certificates:
                ssl_context.check_hostname = False
                ssl_context.verify_mode = ssl.CERT_NONE

        try:
            client = IMAPClient(
                self.account.host,
                port=self.account.port,
                ssl=self.account.use_tls,
                ssl_context=ssl_context,
                timeout=self._timeout,
            )
            client.login(self.account.username, self.account.password)
        except _TRANSPORT_ERRORS as e:
            raise ConnectivityError(
                f"Could not connect to {self.account.host}:{self.account.port}: {e}"
            ) from e

        with self._state_lock:
            closed = self._closed
            if not closed:
                self._client = client

        if closed:
            self._logout(client, idling=False)
            raise ConnectivityError(f"Connection to {self.account.host} closed during login")

        logger.info(
            "imap.connected",
            extra={"action": "imap.connected", "host": self.account.host},
        )

    def supports_idle(self) -> bool:
        try:
            return b"IDLE" in self._require().capabilities()
        except _TRANSPORT_ERRORS as e:
            raise ConnectivityError(f"Capability query failed: {e}") from e

    def select_folder(self, folder: Optional[str] = None) -> int:
        """Open the folder read-write. Returns the message count."""
        folder = folder or self.account.folder
        try:
            info = self._require().select_folder(folder, readonly=False)
        except _TRANSPORT_ERRORS as e:
            raise ConnectivityError(f"Could not open folder {folder}: {e}") from e
        return int(info.get(b"EXISTS", 0))

    def close(self) -> None:
        """Log out. Safe to call more than once, and while connect() is running."""
        with self._state_lock:
            self._closed = True
            client, self._client = self._client, None
            idling, self._idling = self._idling, False
        if client is not None:
            self._logout(client, idling)

    @staticmethod
    def _logout(client: IMAPClient, idling: bool) -> None:
        try:
            if idling:
                client.idle_done()
            client.logout()
        except _TRANSPORT_ERRORS as e:
            logger.warning(
                "imap.logout_failed",
                extra={"action": "imap.logout_failed", "error": str(e)},
            )

    # =========================================================================
    # SEARCH / FETCH
    # =========================================================================

    def search_since(self, since: date) -> list[int]:
        try:
            return sorted(self._require().search(["SINCE", since]))
        except _TRANSPORT_ERRORS as e:
            raise ConnectivityError(f"SINCE search failed: {e}") from e

    def search_unseen(self) -> list[int]:
        try:
            return sorted(self._require().search("UNSEEN"))
        except _TRANSPORT_ERRORS as e:
            raise ConnectivityError(f"UNSEEN search failed: {e}") from e

    def fetch_one(self, uid: int) -> Optional[RawMessage]:
        """
        Fetch the full message. Returns None if the server no longer has it.

        Fetching RFC822 on a read-write folder sets the \\Seen flag.
        """
        try:
            data = self._require().fetch([uid], ["RFC822", "FLAGS"])
        except _TRANSPORT_ERRORS as e:
            raise ConnectivityError(f"Fetch of {uid} failed: {e}") from e

        entry = data.get(uid)
        if not entry or b"RFC822" not in entry:
            return None
        flags = [
            f.decode("utf-8", errors="replace") if isinstance(f, bytes) else str(f)
            for f in entry.get(b"FLAGS", ())
        ]
        return RawMessage(uid=uid, raw=entry[b"RFC822"], flags=flags)

    # =========================================================================
    # IDLE (push mode)
    # =========================================================================

    def idle_start(self) -> None:
        try:
            self._require().idle()
        except _TRANSPORT_ERRORS as e:
            raise ConnectivityError(f"Could not enter IDLE: {e}") from e
        self._idling = True

    def idle_check(self, timeout: float) -> list:
        """Block up to `timeout` seconds for IDLE responses."""
        try:
            return self._require().idle_check(timeout=timeout)
        except _TRANSPORT_ERRORS as e:
            raise ConnectivityError(f"IDLE check failed: {e}") from e

    def idle_done(self) -> None:
        if not self._idling:
            return
        self._idling = False
        try:
            self._require().idle_done()
        except _TRANSPORT_ERRORS as e:
            raise ConnectivityError(f"Could not leave IDLE: {e}") from e
