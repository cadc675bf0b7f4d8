"""Relay bot — polls Telegram and hands chat messages to the Dispatcher."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import time

from .config import Config
from .cooldown import CooldownTracker
from .dispatch import Dispatcher, InboundMessage
from .gate import ConcurrencyGate
from .runner import AssistantInvoker, sdk_query
from .telegram import TelegramClient

log = logging.getLogger("relay")

# Message keys that mean the user sent a file of some kind
_ATTACHMENT_KEYS = (
    "photo", "document", "video", "audio", "voice",
    "video_note", "animation", "sticker",
)

BOT_COMMANDS = [
    {"command": "ping", "description": "Check the bot is alive"},
    {"command": "status", "description": "Show load and uptime"},
    {"command": "help", "description": "Usage help"},
]

HELP_TEXT = (
    "Send me a message and I'll pass it to the coding assistant.\n\n"
    "/ping - check the bot is alive\n"
    "/status - requests in flight and uptime\n"
    "/help - this message\n\n"
    "Text only, up to {max_length} characters, one request every {cooldown:g}s."
)


def _format_duration(seconds: float) -> str:
    """Format seconds into a human-readable duration."""
    if seconds < 60:
        return f"{int(seconds)}s"
    m = int(seconds) // 60
    s = int(seconds) % 60
    if m < 60:
        return f"{m}m{s}s" if s else f"{m}min"
    h = m // 60
    m = m % 60
    return f"{h}h{m}m"


class TelegramChannel:
    """Outbound channel bound to one inbound Telegram message."""

    def __init__(self, tg: TelegramClient, chat_id: int, message_id: int):
        self.tg = tg
        self.chat_id = chat_id
        self.message_id = message_id

    async def reply(self, text: str) -> None:
        await asyncio.to_thread(self.tg.send, self.chat_id, text, self.message_id)

    async def send(self, text: str) -> None:
        await asyncio.to_thread(self.tg.send, self.chat_id, text)


class Bot:
    """Main event loop: poll Telegram, answer commands, dispatch the rest.

    Owns the dispatcher's shared state (gate and cooldowns) and the recurring
    cooldown sweep, which starts and stops with the bot.
    """

    def __init__(
        self,
        config: Config,
        tg: TelegramClient | None = None,
        invoker: AssistantInvoker | None = None,
    ):
        self.cfg = config
        self.tg = tg or TelegramClient(config.bot_token)
        self.invoker = invoker or AssistantInvoker(
            command=config.agent_command,
            sdk=sdk_query if config.sdk_enabled else None,
            sdk_timeout=config.sdk_timeout,
            cli_timeout=config.cli_timeout,
        )
        self.gate = ConcurrencyGate(config.max_concurrent)
        self.cooldowns = CooldownTracker(config.cooldown)
        self.dispatcher = Dispatcher(
            self.invoker,
            gate=self.gate,
            cooldowns=self.cooldowns,
            max_length=config.max_message_length,
            chunk_limit=config.chunk_limit,
            error_log=config.error_log,
        )
        self.offset = 0
        self.alive = True
        self._tasks: set[asyncio.Task] = set()
        self._sweeper: asyncio.Task | None = None
        self._start_time = time.time()

    # -- Lifecycle --

    def _acquire_pid(self) -> bool:
        """Write PID file. Returns False if another instance is running."""
        self._pid_file = self.cfg.data_dir / "relay.pid"
        if self._pid_file.exists():
            try:
                old_pid = int(self._pid_file.read_text().strip())
                os.kill(old_pid, 0)
                log.error("Another relay is running (pid %d)", old_pid)
                return False
            except (ProcessLookupError, ValueError):
                pass  # stale PID file
            except PermissionError:
                log.error("Another relay is running (pid check: permission denied)")
                return False
        self._pid_file.parent.mkdir(parents=True, exist_ok=True)
        self._pid_file.write_text(str(os.getpid()))
        return True

    def _release_pid(self):
        if hasattr(self, "_pid_file"):
            self._pid_file.unlink(missing_ok=True)

    def start_sweeper(self):
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self._sweep_loop())

    async def stop_sweeper(self):
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None

    async def _sweep_loop(self):
        while True:
            await asyncio.sleep(self.cfg.sweep_interval)
            removed = self.cooldowns.sweep()
            if removed:
                log.debug("swept %d expired cooldown(s), %d left", removed, len(self.cooldowns))

    async def run(self):
        log.info("Relay starting (sdk: %s)", "on" if self.invoker.sdk_available else "off")

        if not self._acquire_pid():
            log.error("Aborting: another instance is already running")
            return

        loop = asyncio.get_running_loop()
        signals_installed = False
        try:
            me = await asyncio.to_thread(self.tg.get_me)
            if me:
                log.info("Logged in as @%s", me.get("username", "?"))
            await asyncio.to_thread(self.tg.set_my_commands, BOT_COMMANDS)

            loop.set_exception_handler(self._loop_exception)
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.add_signal_handler(sig, self._shutdown)
            signals_installed = True

            self.start_sweeper()
            while self.alive:
                try:
                    updates = await asyncio.to_thread(
                        self.tg.poll, self.offset, self.cfg.poll_timeout
                    )
                    for u in updates:
                        self.offset = u["update_id"] + 1
                        msg = u.get("message")
                        if msg:
                            await self._on_message(msg)
                except Exception:
                    log.exception("poll loop error")
                    await asyncio.sleep(5)

            if self._tasks:
                log.info("Draining %d in-flight requests", len(self._tasks))
                await asyncio.gather(*self._tasks, return_exceptions=True)
        finally:
            if signals_installed:
                for sig in (signal.SIGTERM, signal.SIGINT):
                    loop.remove_signal_handler(sig)
            await self.stop_sweeper()
            self._release_pid()
            log.info("Relay stopped")

    def _shutdown(self):
        log.info("Shutdown signal")
        self.alive = False

    @staticmethod
    def _loop_exception(loop, context):
        exc = context.get("exception")
        log.error("unhandled error: %s", context.get("message"), exc_info=exc)

    # -- Message routing --

    def _parse(self, msg: dict) -> InboundMessage | None:
        """Convert a Telegram message to an InboundMessage, or None to ignore it."""
        sender = msg.get("from") or {}
        if sender.get("is_bot"):
            return None
        chat_id = msg.get("chat", {}).get("id")
        if self.cfg.allowed_chats and chat_id not in self.cfg.allowed_chats:
            return None
        return InboundMessage(
            text=msg.get("text") or msg.get("caption") or "",
            user_id=sender.get("id", chat_id),
            chat_id=chat_id,
            message_id=msg["message_id"],
            has_attachments=any(msg.get(k) for k in _ATTACHMENT_KEYS),
        )

    async def _on_message(self, msg: dict):
        inbound = self._parse(msg)
        if inbound is None:
            return
        channel = TelegramChannel(self.tg, inbound.chat_id, inbound.message_id)

        if await self._handle_command(inbound, channel):
            return

        self._fire_typing(inbound.chat_id)
        self._spawn(self.dispatcher.handle(inbound, channel))

    async def _handle_command(self, msg: InboundMessage, channel: TelegramChannel) -> bool:
        """Answer bot commands directly. They bypass the gate and cooldowns."""
        low = msg.text.strip().lower()
        if not low.startswith("/"):
            return False
        cmd = low.split()[0].lstrip("/").split("@")[0]  # strip /cmd@botname

        if cmd == "ping":
            await channel.reply("Pong!")
        elif cmd in ("help", "start"):
            await channel.reply(HELP_TEXT.format(
                max_length=self.cfg.max_message_length,
                cooldown=self.cfg.cooldown,
            ))
        elif cmd == "status":
            uptime = _format_duration(time.time() - self._start_time)
            await channel.reply(
                f"\U0001f4ca {self.gate.in_flight}/{self.gate.max_concurrent} requests running\n"
                f"⏱ Uptime: {uptime}"
            )
        else:
            return False
        return True

    def _fire_typing(self, chat_id: int):
        """Fire-and-forget typing indicator — never blocks the event loop."""
        async def _do():
            try:
                await asyncio.to_thread(self.tg.typing, chat_id)
            except Exception:
                log.debug("typing indicator failed", exc_info=True)
        self._spawn(_do())

    def _spawn(self, coro):
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task):
        """Handle completed background tasks: cleanup and log exceptions."""
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc:
            log.error("background task failed: %s", exc, exc_info=exc)
