"""Main entry point - wires the relay components together."""

import argparse
import asyncio
import logging
import os
import re
import signal
import sys
from pathlib import Path
from typing import Optional

import uvicorn
import yaml

from .callbacks import EngineResolver, engines_from_config
from .flow_engine import FlowEngine
from .flow_store import ConversationFlowStore
from .models import ConversationFlow
from .relay import TopicRelay
from .server import create_app
from .session_manager import SessionManager, build_session_command
from .telegram_bot import TelegramBot
from .transcript import TranscriptAnalyzer
from .transport import SshTransport, join_remote_path, quote_remote_path

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config.yaml"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

TASK_SLUG_RE = re.compile(r"[^A-Za-z0-9._-]+")


def load_config(config_path: str = DEFAULT_CONFIG_PATH) -> dict:
    """Load configuration from YAML file."""
    path = Path(config_path)

    if not path.exists():
        logger.warning(f"Config file not found: {config_path}, using defaults")
        return {}

    with open(path) as f:
        return yaml.safe_load(f) or {}


def task_slug(name: str) -> str:
    return TASK_SLUG_RE.sub("-", name.strip()).strip("-") or "task"


class RelayApp:
    """Main application orchestrator."""

    def __init__(self, config: dict):
        self.config = config

        self.host = config.get("server", {}).get("host", "127.0.0.1")
        self.port = config.get("server", {}).get("port", 8430)

        self.transport = SshTransport.from_config(config)
        self.flow_store = ConversationFlowStore.from_config(config)
        self.analyzer = TranscriptAnalyzer.from_config(config)
        self.engines, self.default_engine = engines_from_config(config)
        self.engine_resolver = EngineResolver.from_config(config)

        self.telegram_bot: Optional[TelegramBot] = None
        telegram_config = config.get("telegram", {})
        if telegram_config.get("token"):
            self.telegram_bot = TelegramBot.from_config(config)
        else:
            logger.warning("No Telegram token configured, running API only")

        self.relay = TopicRelay.from_config(self.telegram_bot, config)
        self.session_manager = SessionManager(
            transport=self.transport,
            relay=self.relay,
            analyzer=self.analyzer,
            config=config,
        )
        self.flow_engine = FlowEngine(
            store=self.flow_store,
            transport=self.transport,
            start_session=self._start_session,
            create_task=self._create_task,
            engine_resolver=self.engine_resolver,
            engines=self.engines,
            default_engine=self.default_engine,
        )

        if self.telegram_bot:
            self._setup_telegram_handlers()

        self.app = create_app(
            session_manager=self.session_manager,
            flow_store=self.flow_store,
            config=config,
        )

    def _setup_telegram_handlers(self):
        bot = self.telegram_bot
        bot.set_flow_engine(self.flow_engine)
        bot.set_session_input_handler(self.session_manager.send_input)
        bot.set_list_sessions_handler(self.session_manager.list_sessions)
        bot.set_kill_session_handler(self.session_manager.cancel)
        bot.set_answer_question_handler(self.session_manager.answer_question)
        bot.set_session_topic_check(self.session_manager.is_session_topic)

    async def _session_thread(self, flow: ConversationFlow, name: str) -> str:
        """A fresh forum topic for the session, or the dialog's own thread."""
        chat_id = self.config.get("telegram", {}).get("forum_chat_id") or flow.chat_id
        if self.telegram_bot and chat_id is not None:
            thread_key = await self.relay.create_topic(chat_id, name)
            if thread_key:
                return thread_key
            logger.info(f"Could not create a topic in {chat_id}, using thread {flow.thread_key}")
        return flow.thread_key

    async def _start_session(self, flow: ConversationFlow, command: str, prompt: str) -> str:
        project = flow.project or os.path.basename(flow.repo_path.rstrip("/")) or flow.repo_path
        thread_key = await self._session_thread(flow, f"{flow.machine}: {project}")
        result = await self.session_manager.spawn(
            thread_key, flow.machine, command, project_label=project, prompt=prompt
        )
        if not result.ok:
            return result.reason
        return f"Session started on {flow.machine} in {flow.repo_path}."

    async def _create_task(self, flow: ConversationFlow, description: str) -> str:
        """Run a task as a session on the chosen machine, creating the repo folder when new."""
        if not description:
            return "Task cancelled: empty description."

        repo_path = flow.repo_path
        if flow.repo_mode == "new" or not repo_path:
            repo_path = join_remote_path(flow.base_path or "~", task_slug(flow.task_name or "task"))
        engine = self.engine_resolver.resolve(flow.machine)
        command = build_session_command(repo_path, engine, description)
        if flow.repo_mode == "new":
            command = f"mkdir -p {quote_remote_path(repo_path)} && {command}"

        thread_key = await self._session_thread(flow, f"{flow.machine}: {flow.task_name}")
        result = await self.session_manager.spawn(
            thread_key, flow.machine, command, project_label=flow.task_name or "", prompt=description
        )
        if not result.ok:
            return result.reason
        return f"Task '{flow.task_name}' started on {flow.machine} in {repo_path}."

    async def start(self):
        """Start all components."""
        logger.info("Starting Remote Session Relay...")

        await self.flow_store.start()

        if self.telegram_bot:
            await self.telegram_bot.start()

        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level="info",
        )
        server = uvicorn.Server(config)

        logger.info(f"Starting server on http://{self.host}:{self.port}")
        await server.serve()

    async def stop(self):
        """Stop all components."""
        logger.info("Stopping Remote Session Relay...")

        for session in self.session_manager.list_sessions():
            await self.session_manager.cancel(session.thread_key)

        await self.flow_store.stop()

        if self.telegram_bot:
            await self.telegram_bot.stop()

        logger.info("Shutdown complete")


def setup_signal_handlers(app: RelayApp):
    """Set up signal handlers for graceful shutdown."""
    def signal_handler(sig, frame):
        logger.info(f"Received signal {sig}, shutting down...")
        asyncio.create_task(app.stop())
        sys.exit(0)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Relay remote interactive sessions to Telegram topics")
    parser.add_argument(
        "--config",
        default=os.environ.get("SESSION_RELAY_CONFIG", DEFAULT_CONFIG_PATH),
        help="Path to YAML config (default: $SESSION_RELAY_CONFIG or config.yaml)",
    )
    return parser.parse_args(argv)


async def main(argv: Optional[list[str]] = None):
    """Main entry point."""
    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)

    args = parse_args(argv)
    config = load_config(args.config)
    logging.getLogger().setLevel(config.get("logging", {}).get("level", "INFO"))

    app = RelayApp(config)
    setup_signal_handlers(app)

    try:
        await app.start()
    except KeyboardInterrupt:
        await app.stop()


def run():
    """Entry point for console script."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
