"""Command-line client for realtime chat sessions.

Starts a session, prints transcript updates as they stream in, and sends
typed lines as user messages.
"""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

from dotenv import load_dotenv

from realtime_chat import knowledge
from realtime_chat.avatar import AvatarSpeechClient
from realtime_chat.config import RealtimeChatConfig
from realtime_chat.controller import RealtimeSessionController
from realtime_chat.knowledge import KnowledgeContextClient
from realtime_chat.transcript import ConversationEntry, EntryStatus

logger = logging.getLogger(__name__)

HELP_TEXT = """
Commands:
  /start   - Start a voice session
  /stop    - Stop the voice session
  /status  - Show session status and metrics
  /quit    - Exit client
  /help    - Show this help
"""


def format_entry(entry: ConversationEntry, removed: bool = False) -> str:
    """Render a transcript change as one console line."""
    if removed:
        return f"[{entry.role.value}] (discarded)"
    status = entry.status.value if entry.status is not None else "streaming"
    marker = "" if entry.status is EntryStatus.FINAL else f" ({status})"
    return f"[{entry.role.value}]{marker} {entry.content}"


class ChatCLI:
    """Interactive console front end for the session controller."""

    def __init__(self, config: RealtimeChatConfig, verbose: bool = False) -> None:
        """Initialize CLI client.

        Args:
            config: Realtime chat configuration
            verbose: Print every streaming update, not just final entries
        """
        self.config = config
        self.verbose = verbose
        self.running = True
        self.controller = RealtimeSessionController(config)
        self.knowledge_client: KnowledgeContextClient | None = None
        self.avatar_client: AvatarSpeechClient | None = None

        self.controller.transcript.subscribe(self._print_entry)
        self.controller.on_status(lambda status: print(f"* {status}"))
        self._register_tools()

    def _register_tools(self) -> None:
        if self.config.knowledge.enabled:
            self.knowledge_client = KnowledgeContextClient(
                self.config.knowledge, self.controller.conversation_id
            )
            self.controller.register_function(
                knowledge.TOOL_NAME,
                self.knowledge_client.get_additional_context,
                description=knowledge.TOOL_DESCRIPTION,
                parameters=knowledge.TOOL_PARAMETERS,
            )

        if self.config.avatar.enabled and self.config.avatar.session_id:
            self.avatar_client = AvatarSpeechClient(self.config.avatar)
            self.controller.register_function(
                self.config.speak_capability, self.avatar_client.speak
            )

    def _print_entry(self, entry: ConversationEntry, removed: bool) -> None:
        if self.verbose or removed or entry.is_final:
            print(format_entry(entry, removed))

    async def input_loop(self) -> None:
        """Read commands and messages from stdin until /quit or EOF."""
        print(HELP_TEXT)
        loop = asyncio.get_running_loop()

        while self.running:
            try:
                text = await loop.run_in_executor(None, input, "You: ")
            except EOFError:
                break
            text = text.strip()
            if not text:
                continue

            if text.startswith("/"):
                command = text[1:].lower()
                if command == "quit":
                    break
                elif command == "start":
                    await self.controller.start_session()
                elif command == "stop":
                    await self.controller.stop_session()
                elif command == "status":
                    print(f"* state={self.controller.state.value} status={self.controller.status}")
                    print(f"* metrics={self.controller.get_metrics_summary()}")
                elif command == "help":
                    print(HELP_TEXT)
                else:
                    print(f"Unknown command: {command}")
                continue

            if not self.controller.send_text_message(text):
                print("* Session is not active, use /start first")

        self.running = False

    async def run(self) -> None:
        """Run the client: start a session, then serve the input loop."""
        loop = asyncio.get_running_loop()

        def signal_handler() -> None:
            self.running = False
            loop.create_task(self.controller.stop_session())

        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, signal_handler)

        try:
            await self.controller.start_session()
            await self.input_loop()
        finally:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)
            await self.controller.wait_for_tools()
            await self.controller.close()
            if self.knowledge_client is not None:
                await self.knowledge_client.close()
            if self.avatar_client is not None:
                await self.avatar_client.close()


def main() -> None:
    """Entry point for the realtime chat CLI."""
    parser = argparse.ArgumentParser(description="Realtime voice/text chat client")
    parser.add_argument(
        "--config",
        type=Path,
        default=Path("configs") / "realtime_chat.yaml",
        help="Path to realtime chat config YAML file",
    )
    parser.add_argument(
        "--transport",
        choices=["webrtc", "websocket"],
        default=None,
        help="Override the configured transport",
    )
    parser.add_argument(
        "--no-audio",
        action="store_true",
        help="Do not capture the microphone (text-only session)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging and streaming transcript output",
    )
    args = parser.parse_args()

    load_dotenv()
    config = RealtimeChatConfig.from_yaml_with_defaults(args.config)
    if args.transport is not None:
        config.transport.type = args.transport
    if args.no_audio:
        config.audio.capture = False

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else getattr(logging, config.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        asyncio.run(ChatCLI(config, verbose=args.verbose).run())
    except KeyboardInterrupt:
        print("\nExiting...")
        sys.exit(0)


if __name__ == "__main__":
    main()
