"""Application wiring and two-phase startup.

Phase 1 resolves the bot identity (blocking); phase 2 starts the
scheduler, the idle reaper and the webhook server. No delivery is
accepted before the identity is known.
"""

import logging
from pathlib import Path

from prsite.adapters.base import GitPlatformAdapter
from prsite.adapters.github import GitHubAdapter
from prsite.builder import ArchiveSiteBuilder, SiteBuilder
from prsite.commands import CommandParser
from prsite.comments import CommentComposer, TemplateRegistry, register_default_templates
from prsite.config import AppConfig
from prsite.instances import InstanceManager
from prsite.ports import PortAllocator
from prsite.reaper import start_reaper_thread
from prsite.scheduler import DelayedScheduler
from prsite.webhook.handlers import register_default_listeners
from prsite.webhook.router import WebhookRouter
from prsite.webhook.server import run_webhook_server

LOG = logging.getLogger("prsite.app")


class Application:
    """Holds every component; passed to listeners as HandlerContext.app."""

    def __init__(
        self,
        config: AppConfig,
        adapter: GitPlatformAdapter | None = None,
        builder: SiteBuilder | None = None,
        scheduler: DelayedScheduler | None = None,
    ) -> None:
        self.config = config
        self._bot_login: str | None = config.bot.github_username or None

        if adapter is None:
            token = config.github_token_resolved
            if not token:
                raise ValueError("GitHub token is not configured (github.token, GITHUB_TOKEN or GITHUB_TOKEN_FILE)")
            adapter = GitHubAdapter(token=token, api_url=config.github.api_url)
        self.adapter = adapter

        instances_dir = Path(config.instances.directory)
        self.builder = builder or ArchiveSiteBuilder(
            adapter,
            instances_dir,
            command=config.instances.command,
            stop_timeout=config.instances.command_timeout,
        )
        self.scheduler = scheduler or DelayedScheduler(max_workers=config.scheduler.max_workers)
        self.ports = PortAllocator(config.ports.min_port, config.ports.max_port, config.ports.max_consecutive)
        self.templates = register_default_templates(TemplateRegistry())
        self.composer = CommentComposer(self.templates, adapter, config.instances.link_domain, self.bot_login)
        self.instances = InstanceManager(
            self.ports,
            self.builder,
            self.composer,
            scheduler=self.scheduler,
            block_size=config.ports.block_size,
            instances_dir=instances_dir,
        )
        self.instances.prep_site_directory()
        self.commands = CommandParser(self.instances, self.composer, adapter, self.bot_login)
        self.router = register_default_listeners(
            WebhookRouter(self.scheduler, app=self),
            pr_delay_ms=config.instances.pr_delay_ms,
        )

    def bot_login(self) -> str | None:
        return self._bot_login

    def resolve_identity(self) -> str:
        """Phase 1: learn the bot login (config override or GET /user)."""
        if not self._bot_login:
            self._bot_login = self.adapter.get_authenticated_login()
        LOG.info("Bot identity: %s", self._bot_login)
        return self._bot_login

    def serve(self) -> None:
        """Phase 2: start background workers and block serving webhooks."""
        if not self._bot_login:
            raise RuntimeError("resolve_identity() must complete before serve()")
        self.scheduler.start()
        start_reaper_thread(
            self.instances,
            self.composer,
            self.config.instances.open_hours,
            interval_seconds=self.config.instances.reaper_interval_seconds,
        )
        try:
            run_webhook_server(
                self.router,
                self.config.webhook_secret_resolved,
                self.config.webhook.host,
                self.config.webhook.port,
                self.config.github.webhook_path,
            )
        finally:
            self.scheduler.shutdown(wait=False)
