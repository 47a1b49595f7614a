"""
Terminal chat client entry point.

Loads configuration, configures logging, connects to the chat server and
relays lines typed on stdin into the selected channel.

Commands:
- ``/join <channel>`` switch channel (transcript is re-seeded from history)
- ``/channels`` list channels
- ``/quit`` exit
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

import httpx
import structlog

from portal_shared.schemas.chat import ChatMessagePayload, ErrorEnvelope, NewMessageEnvelope

from .api import ApiError, PortalApiClient
from .config import ClientConfig, load_config
from .history import HistorySync
from .session import ChatSession, SessionState

log = structlog.get_logger()


def configure_logging(level: str = "info", fmt: str = "json") -> None:
    """Configure structlog with the specified level and format."""
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if fmt == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
    )


def format_message(message: ChatMessagePayload) -> str:
    author = message.author.display_name if message.author else (message.user_id or "unknown")
    return f"[{message.created_at:%H:%M}] {author}: {message.content}"


class ChatConsole:
    """Wires the session, history sync and REST client to a text console."""

    def __init__(self, config: ClientConfig, out=None):
        self._config = config
        self._out = out or sys.stdout
        self.api = PortalApiClient(
            config.server.url,
            token=config.session.token,
            verify_tls=config.server.verify_tls,
            request_timeout=config.server.request_timeout_seconds,
        )
        self.session = ChatSession(
            config.server.ws_url,
            token=config.session.token,
            reconnect_delay=config.session.reconnect_delay_seconds,
        )
        self.history = HistorySync(self.api, limit=config.session.history_limit)
        self.channels: dict[str, int] = {}
        self._catch_up_task: asyncio.Task | None = None

        self.session.on_message(self._on_envelope)
        self.session.on_state_change(self._on_state)

    def echo(self, text: str) -> None:
        print(text, file=self._out, flush=True)

    def _on_envelope(self, envelope) -> None:
        if isinstance(envelope, NewMessageEnvelope):
            if self.history.handle_envelope(envelope):
                self.echo(format_message(envelope.message))
        elif isinstance(envelope, ErrorEnvelope):
            self.echo(f"! {envelope.code}: {envelope.message}")

    def _on_state(self, state: SessionState) -> None:
        if state is SessionState.DISCONNECTED:
            self.echo("[disconnected, messages will be posted over REST]")
        elif state is SessionState.CONNECTED:
            self.echo("[connected]")
            if self.session.reconnect_count and self.history.channel_id is not None:
                self._catch_up_task = asyncio.create_task(self.catch_up())

    async def catch_up(self) -> None:
        """Print whatever the selected channel received while we were away."""
        try:
            missed = await self.history.catch_up()
        except (ApiError, httpx.HTTPError) as exc:
            log.warning("chat.catch_up_failed", error=str(exc))
            return
        for message in missed:
            self.echo(format_message(message))

    async def refresh_channels(self) -> None:
        self.channels = {c.name: c.id for c in await self.api.list_channels()}

    async def join(self, name: str) -> bool:
        channel_id = self.channels.get(name)
        if channel_id is None:
            self.echo(f"! unknown channel: {name}")
            return False
        self.echo(f"--- #{name} ---")
        for message in await self.history.select_channel(channel_id):
            self.echo(format_message(message))
        return True

    async def submit(self, text: str) -> None:
        channel_id = self.history.channel_id
        if channel_id is None:
            self.echo("! no channel selected")
            return
        if self.session.connected:
            if await self.session.send_chat(channel_id, text, self._config.session.user_id):
                return
        try:
            payload = await self.api.post_message(channel_id, text)
        except ApiError as exc:
            self.echo(f"! {exc.code or exc.status}: {exc.message}")
            return
        if self.history.handle_envelope(NewMessageEnvelope(message=payload)):
            self.echo(format_message(payload))

    async def handle_line(self, line: str) -> bool:
        """Process one input line. Returns False to quit."""
        line = line.strip()
        if not line:
            return True
        if line == "/quit":
            return False
        if line == "/channels":
            await self.refresh_channels()
            self.echo(", ".join(sorted(self.channels)))
            return True
        if line.startswith("/join "):
            await self.join(line[6:].strip())
            return True
        await self.submit(line)
        return True

    async def run(self) -> None:
        async with self.api:
            await self.refresh_channels()
            await self.session.connect()
            try:
                await self.join(self._config.session.channel)
                while True:
                    line = await asyncio.to_thread(sys.stdin.readline)
                    if not line or not await self.handle_line(line):
                        break
            finally:
                await self.session.close()
                if self._catch_up_task is not None:
                    self._catch_up_task.cancel()


def run() -> None:
    """CLI entry point for the chat client."""
    parser = argparse.ArgumentParser(description="Campus Portal terminal chat")
    parser.add_argument(
        "-c", "--config",
        default="portal-chat.yaml",
        help="Path to configuration file (default: portal-chat.yaml, optional)",
    )
    parser.add_argument("--url", help="Override the server base URL")
    parser.add_argument("--channel", help="Channel to join on start")
    args = parser.parse_args()

    try:
        if Path(args.config).exists():
            config = load_config(args.config)
        else:
            config = ClientConfig()
    except Exception as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        sys.exit(1)

    if args.url:
        config.server.url = args.url
    if args.channel:
        config.session.channel = args.channel

    configure_logging(config.logging.level, config.logging.format)
    log.info("chat.config_loaded", config_path=args.config, server=config.server.url)

    console = ChatConsole(config)
    try:
        asyncio.run(console.run())
    except KeyboardInterrupt:
        pass
    except ApiError as exc:
        print(f"Server error: {exc.message}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    run()
