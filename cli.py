#!/usr/bin/env python3
from __future__ import annotations

import argparse
import asyncio
import json
from pathlib import Path
from typing import Awaitable, Sequence, Union

from prompt_toolkit import PromptSession

from chat_core.client import OpenAICompatClient, turn_to_message
from chat_core.config import AppConfig, default_config, load_config
from chat_core.errors import AuthenticationError, ChatCoreError, RateLimitError, TransportError
from chat_core.exchange import ExchangeOutcome, continue_exchange, run_exchange
from chat_core.logging_utils import close_session_logger, create_session_logger
from chat_core.media import image_question
from chat_core.scenarios import menu_lines, pick_scenario
from chat_core.session import ConversationSession
from chat_core.text_utils import clean_markdown_formatting
from chat_core.types import ContentPart, Role, TokenUsage
from chat_tools import build_dispatcher

IMAGE_SYSTEM_PROMPT = "You are a helpful assistant that describes images in details."
TOOLS_SYSTEM_PROMPT = "You are an assistant that helps users find flight information."
DEFAULT_IMAGE_QUESTION = "What's in this image?"


def _print_usage(usage: TokenUsage | None) -> None:
    if usage is None:
        print("(no usage reported)")
        return
    print(f"Prompt tokens: {usage.prompt_tokens}")
    print(f"Completion tokens: {usage.completion_tokens}")
    print(f"Total tokens: {usage.total_tokens}")


class ConsoleDriver:
    def __init__(
        self,
        *,
        session: ConversationSession,
        cfg: AppConfig,
        system_prompt: str | None,
        stream: bool,
        plain: bool,
        pending_image: str | None = None,
    ) -> None:
        self.session = session
        self.cfg = cfg
        self.system_prompt = system_prompt
        self.stream = stream
        self.plain = plain
        self.pending_image = pending_image

    def _render(self, outcome: ExchangeOutcome) -> None:
        if outcome.hit_round_limit:
            print(
                f"[loop warning] reached max_tool_rounds={self.cfg.max_tool_rounds}; "
                "the model kept issuing tool calls without a final answer.",
            )
            return
        if self.stream:
            print()
            _print_usage(outcome.usage)
            return
        text = clean_markdown_formatting(outcome.text) if self.plain else outcome.text
        print(f"Assistant: {text}")

    def _on_text_delta(self, fragment: str) -> None:
        print(fragment, end="", flush=True)

    async def _guarded(self, exchange: Awaitable[ExchangeOutcome]) -> None:
        try:
            outcome = await exchange
        except AuthenticationError:
            raise
        except RateLimitError as err:
            wait_hint = f" Try again in {err.retry_after:.0f}s." if err.retry_after else ""
            print(f"\nRate limited: {err}.{wait_hint} Type /retry to resend.")
            return
        except TransportError as err:
            print(f"\nRequest failed: {err}. Type /retry to resend.")
            return
        except ChatCoreError as err:
            print(f"\nError: {err}")
            return
        self._render(outcome)

    def _exchange_kwargs(self) -> dict:
        return {
            "stream": self.stream,
            "max_tool_rounds": self.cfg.max_tool_rounds,
            "on_text_delta": self._on_text_delta if self.stream else None,
            "on_trace": print,
            "timeout_seconds": self.cfg.timeout_seconds,
            "tool_timeout_seconds": self.cfg.tool_timeout_seconds,
            "logger": self.session.logger,
        }

    async def send(self, content: Union[str, Sequence[ContentPart]]) -> None:
        if self.stream:
            print("Assistant: ", end="", flush=True)
        await self._guarded(run_exchange(self.session, content, **self._exchange_kwargs()))

    async def retry(self) -> None:
        turns = self.session.turns
        if not turns or turns[-1].role not in (Role.USER, Role.TOOL):
            print("Nothing to retry.")
            return
        if self.session.pending_tool_calls:
            await self.session.resolve_tool_calls(timeout_seconds=self.cfg.tool_timeout_seconds)
        if self.stream:
            print("Assistant: ", end="", flush=True)
        await self._guarded(continue_exchange(self.session, **self._exchange_kwargs()))

    async def handle(self, user_input: str) -> bool:
        """Process one console line. Returns False when the session should end."""
        command = user_input.lower()
        if command in {"exit", "/quit"}:
            print("Goodbye!")
            return False
        if command == "clear":
            self.session.reset(self.system_prompt)
            print("Conversation history cleared.")
            return True
        if command == "/state":
            print(json.dumps([turn_to_message(turn) for turn in self.session.turns], ensure_ascii=False, indent=2))
            return True
        if command == "/usage":
            _print_usage(self.session.usage_totals)
            return True
        if command == "/retry":
            await self.retry()
            return True
        if command.startswith("/image "):
            candidate = user_input.split(" ", 1)[1].strip()
            if not Path(candidate).is_file():
                print(f"Could not read '{candidate}'. Set the correct path to the image file.")
            else:
                self.pending_image = candidate
                print(f"Image attached to your next message: {candidate}")
            return True

        content: Union[str, Sequence[ContentPart]] = user_input
        if self.pending_image:
            try:
                content = image_question(user_input, self.pending_image)
            except (OSError, ValueError) as err:
                print(f"Could not attach image: {err}")
                return True
            self.pending_image = None
        await self.send(content)
        return True


async def _read_line(prompt_session: PromptSession, prompt: str) -> str | None:
    try:
        return await prompt_session.prompt_async(prompt)
    except (EOFError, KeyboardInterrupt):
        return None


async def run_chat(driver: ConsoleDriver, prompt_session: PromptSession) -> int:
    print("Commands: exit, clear, /retry, /state, /usage, /image <path>")
    if driver.pending_image:
        print(f"Image attached: {driver.pending_image} (press Enter to ask '{DEFAULT_IMAGE_QUESTION}')")
    while True:
        user_input = await _read_line(prompt_session, "You: ")
        if user_input is None:
            return 0
        user_input = user_input.strip()
        if not user_input:
            if not driver.pending_image:
                continue
            user_input = DEFAULT_IMAGE_QUESTION
        if not await driver.handle(user_input):
            return 0


async def run_reasoning(session: ConversationSession, prompt_session: PromptSession) -> int:
    print("\n".join(menu_lines()))
    answer = await _read_line(prompt_session, "> ")
    scenario = pick_scenario(answer or "")
    if scenario is None:
        print("Invalid choice.")
        return 1
    try:
        outcome = await run_exchange(session, scenario.prompt, max_tool_rounds=1)
    except (RateLimitError, TransportError) as err:
        print(f"Request failed: {err}")
        return 1
    print("\nAI Response:")
    print(clean_markdown_formatting(outcome.text))
    return 0


def _load_app_config(path: str | None) -> AppConfig:
    if path is None:
        return default_config()
    return load_config(path)


async def async_main() -> int:
    parser = argparse.ArgumentParser(description="Console chat over an OpenAI-compatible completion API")
    parser.add_argument("--config", default=None, help="JSON config file (defaults to the GitHub Models endpoint)")
    parser.add_argument("--mode", choices=["chat", "tools", "reasoning"], default="chat")
    parser.add_argument("--stream", action="store_true", default=None, help="Stream assistant text as it arrives")
    parser.add_argument("--image", default=None, help="Attach an image file to the first message")
    parser.add_argument("--plain", action="store_true", help="Strip markdown formatting from answers")
    parser.add_argument("--debug", action="store_true", help="Echo warnings to stderr (payload logs are always written)")
    parser.add_argument("--log-dir", default=None, help="Directory for session log files")
    args = parser.parse_args()

    cfg = _load_app_config(args.config)
    logger, log_path = create_session_logger(
        log_dir=args.log_dir or cfg.log_dir,
        debug=args.debug,
        label="reasoning" if args.mode == "reasoning" else "session",
    )
    logger.info("startup mode=%s model=%s provider=%s", args.mode, cfg.model_name, cfg.provider)

    client = OpenAICompatClient(
        base_url=cfg.base_url,
        api_key_env=cfg.api_key_env,
        api_key=cfg.api_key,
        timeout_seconds=cfg.timeout_seconds,
        logger=logger,
    )
    if args.image and not Path(args.image).is_file():
        print(f"Could not read '{args.image}'.")
        print("Set the correct path to the image file before running.")
        return 1

    if args.mode == "reasoning":
        session = ConversationSession(backend=client, model_name=cfg.reasoning_model_name, logger=logger)
        system_prompt: str | None = None
    else:
        dispatcher = build_dispatcher(logger=logger) if args.mode == "tools" else None
        session = ConversationSession(
            backend=client,
            model_name=cfg.model_name,
            dispatcher=dispatcher,
            sampling=cfg.sampling,
            logger=logger,
        )
        system_prompt = cfg.system_prompt
        if args.mode == "tools":
            system_prompt = TOOLS_SYSTEM_PROMPT
        elif args.image:
            system_prompt = IMAGE_SYSTEM_PROMPT
    session.initialize(system_prompt)

    print(f"chat session started | mode={args.mode} | model={session.model_name}")
    print(f"log file: {log_path}")
    prompt_session: PromptSession = PromptSession()
    try:
        if args.mode == "reasoning":
            return await run_reasoning(session, prompt_session)
        driver = ConsoleDriver(
            session=session,
            cfg=cfg,
            system_prompt=system_prompt,
            stream=cfg.stream if args.stream is None else args.stream,
            plain=args.plain,
            pending_image=args.image,
        )
        return await run_chat(driver, prompt_session)
    except AuthenticationError as err:
        logger.error("authentication failed: %s", err)
        print(f"\nAuthentication failed: {err}")
        print(f"Fix the credential (api_key in the config, or env var {cfg.api_key_env}) and start again.")
        return 2
    finally:
        logger.info("shutdown usage=%s", session.usage_totals)
        close_session_logger(logger)


def main() -> int:
    return asyncio.run(async_main())


if __name__ == "__main__":
    raise SystemExit(main())
