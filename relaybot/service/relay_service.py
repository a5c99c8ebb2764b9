"""
relaybot service: builds the store, catalog, executor and message handler,
starts the models-cache daemon, and runs the Discord transport until stopped.
"""

import logging
import os
from typing import Any, Optional

from relaybot.actions import load_builtin_actions
from relaybot.core.actions import ActionCatalog, ActionExecutor
from relaybot.core.agent_loop import MessageHandler
from relaybot.core.logger import ActionLogger
from relaybot.interfaces.discord_bot import run_bot
from relaybot.memory.database import Database
from relaybot.memory.store import ConversationStore
from relaybot.models.content_translator import ContentTranslator
from relaybot.models.llm_client import LLMClient, create_call_llm
from relaybot.models.models_cache import ModelsCache
from relaybot.utils.config import BotSettings, get_settings, load_env
from relaybot.utils.paths import data_dir, root_db_path

logger = logging.getLogger(__name__)


def build_handler(
    settings: BotSettings,
    llm_client: Any,
    store: ConversationStore,
    models_cache: Any,
    data_root: str,
    action_logger: Optional[ActionLogger] = None,
) -> MessageHandler:
    """Wire one :class:`MessageHandler` from its collaborators."""
    catalog = ActionCatalog(load_builtin_actions())
    executor = ActionExecutor(
        catalog=catalog,
        root_store=store,
        data_root=data_root,
        master_ids=settings.master_ids,
        call_llm=create_call_llm(llm_client, settings.default_model),
        action_logger=action_logger,
        services={"models": models_cache, "settings": settings},
    )
    translator = ContentTranslator(store, llm_client, models_cache, settings.content_model)
    return MessageHandler(store, catalog, executor, llm_client, translator, settings)


class RelayService:
    """Owns process-wide resources for one bot process."""

    def __init__(self) -> None:
        load_env()
        self.settings = get_settings()
        self.db = Database(root_db_path())
        self.store = ConversationStore(self.db)
        self.models_cache = ModelsCache()
        self.action_logger = ActionLogger()
        self.llm = LLMClient(default_model=self.settings.default_model)
        self.handler = build_handler(
            self.settings, self.llm, self.store, self.models_cache,
            data_root=data_dir(), action_logger=self.action_logger,
        )
        if not self.settings.master_ids:
            logger.warning("No MASTER_IDS configured; nobody can !enable a chat")
        logger.info("relaybot service initialized (model=%s)", self.settings.default_model)

    def start(self, token: Optional[str] = None) -> None:
        """Run until the transport exits (blocking)."""
        self.models_cache.start_daemon()
        try:
            run_bot(self.handler, token or os.environ.get("DISCORD_BOT_TOKEN"))
        finally:
            self.stop()

    def stop(self) -> None:
        self.models_cache.stop_daemon()
        self.action_logger.close()
        self.db.close()
        logger.info("relaybot service stopped")
