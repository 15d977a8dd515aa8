# relay_sdk/cli.py
# SPDX-License-Identifier: Apache-2.0
"""
Relay SDK CLI

Small front end over ``AIService`` for smoke-testing providers, context
optimization and cost estimates from a shell.
"""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import logging
import sys
from typing import Any, Dict, List, Optional

from relay_sdk.context.compression import STRATEGIES, create_context_config
from relay_sdk.core.errors import AIError
from relay_sdk.core.tokens import DEFAULT_PRICING, estimate_cost, estimate_tokens
from relay_sdk.mock.mock_adapter import MockAdapter
from relay_sdk.router.ai_service import AIService

EXIT_OK = 0
EXIT_AI_ERROR = 1
EXIT_USAGE = 2


# --------------------------------------------------------------------------- #
# Internal helpers
# --------------------------------------------------------------------------- #

def _print_json(obj: Any) -> None:
    print(json.dumps(obj, indent=2, sort_keys=True, default=str))


def _build_service(args: argparse.Namespace) -> AIService:
    if args.mock:
        service = AIService()
        service.create_provider(MockAdapter)
        return service
    return AIService.from_env()


def _generation_options(args: argparse.Namespace) -> Dict[str, Any]:
    opts: Dict[str, Any] = {}
    if args.model:
        opts["model"] = args.model
    if args.max_tokens is not None:
        opts["max_tokens"] = args.max_tokens
    if args.temperature is not None:
        opts["temperature"] = args.temperature
    return opts


# --------------------------------------------------------------------------- #
# Commands
# --------------------------------------------------------------------------- #

async def _cmd_status(service: AIService, args: argparse.Namespace) -> int:
    _print_json(service.get_status())
    return EXIT_OK


async def _cmd_ask(service: AIService, args: argparse.Namespace) -> int:
    opts = _generation_options(args)
    if not args.stream:
        answer = await service.ask(args.question, opts, provider=args.provider, system_message=args.system)
        print(answer)
        return EXIT_OK

    session = service.ask_stream(args.question, opts, provider=args.provider, system_message=args.system)
    async with session:
        async for event in session:
            if event.type == "chunk":
                sys.stdout.write(event.chunk.text)
                sys.stdout.flush()
            elif event.type == "error":
                sys.stdout.write("\n")
                raise event.error
    sys.stdout.write("\n")
    return EXIT_OK


async def _cmd_optimize(service: AIService, args: argparse.Namespace) -> int:
    try:
        with open(args.file, "r", encoding="utf-8") as fh:
            messages = json.load(fh)
    except (OSError, ValueError) as exc:
        print(f"error: cannot read messages from {args.file}: {exc}", file=sys.stderr)
        return EXIT_USAGE

    overrides: Dict[str, Any] = {}
    if args.strategy:
        overrides["compression_strategy"] = args.strategy
    if args.window_size is not None:
        overrides["window_size"] = args.window_size
    context = create_context_config(args.template, **overrides)

    result = await service.optimize_context(messages, args.max_tokens, context)
    _print_json(
        {
            "messages": result.optimized_messages,
            "tokens_used": result.tokens_used,
            "summary": dataclasses.asdict(result.summary),
        }
    )
    return EXIT_OK


def _cmd_estimate(args: argparse.Namespace) -> int:
    tokens = estimate_tokens(args.text)
    if args.output_tokens < 0:
        print("error: --output-tokens must be non-negative", file=sys.stderr)
        return EXIT_USAGE
    cost = estimate_cost(tokens, args.output_tokens, DEFAULT_PRICING[args.model])
    _print_json(
        {
            "model": args.model,
            "input_tokens": tokens,
            "output_tokens": args.output_tokens,
            "estimated_cost_usd": cost,
        }
    )
    return EXIT_OK


async def _run(args: argparse.Namespace) -> int:
    async with _build_service(args) as service:
        if args.command == "status":
            return await _cmd_status(service, args)
        if args.command == "ask":
            return await _cmd_ask(service, args)
        if args.command == "optimize":
            return await _cmd_optimize(service, args)
    raise AssertionError(f"unhandled command {args.command!r}")


# --------------------------------------------------------------------------- #
# Entry point
# --------------------------------------------------------------------------- #

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="relay-sdk",
        description="Relay SDK CLI - provider orchestration from the shell",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  relay-sdk --mock status
  relay-sdk ask "What is a token bucket?" --provider openai
  relay-sdk --mock ask "hello there" --stream
  relay-sdk optimize conversation.json --max-tokens 500 --strategy truncate
  relay-sdk estimate "some prompt text" --model gpt-4 --output-tokens 200

Configuration (environment variables):
  OPENAI_API_KEY / ANTHROPIC_API_KEY   Register the matching provider
  RELAY_DEFAULT_PROVIDER               Provider used when --provider is omitted
  RELAY_ENV                            development | production | default
        """.strip(),
    )
    parser.add_argument("--mock", action="store_true", help="Use the in-process mock provider")
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: WARNING)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True, metavar="COMMAND")

    subparsers.add_parser("status", help="Print orchestrator status as JSON")

    ask = subparsers.add_parser("ask", help="Ask a one-shot question")
    ask.add_argument("question")
    ask.add_argument("--provider")
    ask.add_argument("--model")
    ask.add_argument("--max-tokens", type=int)
    ask.add_argument("--temperature", type=float)
    ask.add_argument("--system", help="System message")
    ask.add_argument("--stream", action="store_true", help="Stream the answer as it is generated")

    opt = subparsers.add_parser("optimize", help="Compress a JSON message list to a token budget")
    opt.add_argument("file", help="Path to a JSON array of {role, content} messages")
    opt.add_argument("--max-tokens", type=int, required=True)
    opt.add_argument("--strategy", choices=STRATEGIES)
    opt.add_argument("--window-size", type=int)
    opt.add_argument("--template", default="balanced", choices=["balanced", "performance", "comprehensive"])

    est = subparsers.add_parser("estimate", help="Estimate tokens and cost for a prompt")
    est.add_argument("text")
    est.add_argument("--model", default="gpt-3.5-turbo", choices=sorted(DEFAULT_PRICING))
    est.add_argument("--output-tokens", type=int, default=0)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    try:
        args = parser.parse_args(argv)
    except SystemExit as e:
        return e.code if isinstance(e.code, int) else EXIT_USAGE

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "estimate":
        return _cmd_estimate(args)

    try:
        return asyncio.run(_run(args))
    except AIError as err:
        print(f"error: {err}", file=sys.stderr)
        return EXIT_AI_ERROR


if __name__ == "__main__":
    sys.exit(main())
