"""
Application context: every long-lived service, built once at startup.

Nothing in the app reaches for a module-level client. The FastAPI lifespan
builds one AppContext, runs the startup gate, stores it on ``app.state``,
and tears it down on shutdown. Route handlers get it through a dependency.

Startup gate: the process refuses to serve if the document store or the
LLM cannot be reached, or if any configured mailbox fails its first login.
"""

import logging
from dataclasses import dataclass
from pathlib import Path

from inboxsync.agent.classifier import Classifier
from inboxsync.agent.retrieval import RetrievalService
from inboxsync.agent.schemas import MailAccount
from inboxsync.api.live import LiveBroadcaster
from inboxsync.config import Settings
from inboxsync.errors import ConnectivityError, StartupDependencyFailure
from inboxsync.llm.client import LLMClient
from inboxsync.llm.embeddings import SentenceEmbedder
from inboxsync.logging.audit import audit
from inboxsync.notify.dispatcher import NotificationDispatcher
from inboxsync.notify.sinks import SlackSink, WebhookSink
from inboxsync.store.client import DocumentStore
from inboxsync.sync.pipeline import IngestionPipeline
from inboxsync.sync.supervisor import AccountSupervisor, SupervisorRegistry

logger = logging.getLogger(__name__)

# Seconds to wait for every mailbox's first login before giving up.
INITIAL_CONNECT_TIMEOUT = 60.0


@dataclass
class AppContext:
    settings: Settings
    accounts: list[MailAccount]
    llm: LLMClient
    store: DocumentStore
    classifier: Classifier
    retrieval: RetrievalService
    dispatcher: NotificationDispatcher
    broadcaster: LiveBroadcaster
    pipeline: IngestionPipeline
    supervisors: SupervisorRegistry

    @classmethod
    def build(cls, settings: Settings, accounts: list[MailAccount]) -> "AppContext":
        """Construct every service. Makes no network calls."""
        llm = LLMClient(
            api_key=settings.anthropic_api_key,
            model=settings.anthropic_model,
            timeout_seconds=settings.llm_timeout_seconds,
            default_max_tokens=settings.anthropic_max_tokens_reply,
        )
        store = DocumentStore(
            base_url=settings.elasticsearch_url,
            index=settings.elasticsearch_index,
            timeout_seconds=settings.store_timeout_seconds,
        )
        classifier = Classifier(llm_client=llm, max_tokens=settings.anthropic_max_tokens_category)
        retrieval = RetrievalService(
            llm_client=llm,
            embedder=SentenceEmbedder(settings.embedding_model),
            directory=Path(settings.vector_db_path),
            meeting_link=settings.meeting_link,
            product_description=settings.product_description,
            k=settings.retrieval_k,
            max_tokens=settings.anthropic_max_tokens_reply,
        )
        dispatcher = NotificationDispatcher(
            sinks=[
                SlackSink(
                    bot_token=settings.slack_bot_token,
                    channel_id=settings.slack_channel_id,
                    api_url=settings.slack_api_url,
                    timeout_seconds=settings.notify_timeout_seconds,
                ),
                WebhookSink(
                    url=settings.webhook_url,
                    timeout_seconds=settings.notify_timeout_seconds,
                ),
            ],
            max_attempts=settings.notify_max_attempts,
            base_delay_seconds=settings.notify_base_delay_seconds,
        )
        broadcaster = LiveBroadcaster()
        pipeline = IngestionPipeline(
            store=store,
            classifier=classifier,
            dispatcher=dispatcher,
            publisher=broadcaster,
            actionable_category=settings.actionable_category,
            concurrency=settings.ingest_concurrency,
        )
        supervisors = SupervisorRegistry([
            AccountSupervisor(
                account=account,
                pipeline=pipeline,
                backlog_days=settings.backlog_days,
                backlog_max_messages=settings.backlog_max_messages,
                poll_interval=settings.poll_interval_seconds,
                reconnect_delay=settings.reconnect_delay_seconds,
                idle_renew=settings.idle_renew_seconds,
                idle_check=settings.idle_check_seconds,
            )
            for account in accounts
        ])
        return cls(
            settings=settings,
            accounts=accounts,
            llm=llm,
            store=store,
            classifier=classifier,
            retrieval=retrieval,
            dispatcher=dispatcher,
            broadcaster=broadcaster,
            pipeline=pipeline,
            supervisors=supervisors,
        )

    async def startup(self, connect_timeout: float = INITIAL_CONNECT_TIMEOUT) -> None:
        """
        Check required dependencies, then start watching mailboxes.

        Raises:
            StartupDependencyFailure: If the store, the LLM, or any mailbox
                                      is unreachable.
        """
        try:
            await self.store.ping()
            await self.store.ensure_index()
        except ConnectivityError as e:
            raise StartupDependencyFailure(f"Document store: {e}") from e

        try:
            await self.llm.ping()
        except ConnectivityError as e:
            raise StartupDependencyFailure(f"Generative service: {e}") from e

        # Reply suggestions are optional; a failed index load only disables them.
        try:
            await self.retrieval.initialize()
        except Exception:
            logger.exception(
                "startup.retrieval_unavailable",
                extra={"action": "startup.retrieval_unavailable"},
            )

        if not self.accounts:
            logger.warning("startup.no_accounts", extra={"action": "startup.no_accounts"})

        self.supervisors.start_all()
        failed = await self.supervisors.wait_initial_connections(connect_timeout)
        if failed:
            await self.supervisors.stop_all()
            raise StartupDependencyFailure(f"Mailbox login failed for: {', '.join(failed)}")

        audit.info("startup.completed", account_count=len(self.accounts))

    async def shutdown(self) -> None:
        """Stop supervisors first, then flush notifications and close clients."""
        await self.supervisors.stop_all()
        await self.dispatcher.drain()
        for sink in self.dispatcher.sinks:
            await sink.close()
        await self.store.close()
        await self.llm.close()
        audit.info("shutdown.completed")
