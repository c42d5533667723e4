#!/usr/bin/env python3
"""
Zeroute - Decentralized Inference Router
========================================

Routes chat completions across pay-per-use compute providers registered on
the 0G chain: keeps the prepaid balance funded, discovers providers, signs
each request once and fails over until one provider answers.

Usage:
    python main.py chat "prompt" [--system S] [--provider ADDR] [--json]
    python main.py status
    python main.py providers [--provider ADDR]
    python main.py fund AMOUNT

Exit codes: 0 success, 1 error response, 2 configuration error.
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import List, Optional

from dotenv import load_dotenv

from config import from_units, load_config, to_units
from core.context import build_context
from core.errors import ConfigurationError, LedgerError
from core.logger import configure_logging
from core.monitoring.health import ServiceStatus
from core.protocol import ChatRequest

logger = logging.getLogger("zeroute")

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_CONFIG = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Decentralized inference router for 0G Compute",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py chat "Explain proof of stake in two sentences"
  python main.py chat "Hi" --provider 0xf07240Efa67755B5311bc75784a061eDB47165Dd --json
  python main.py providers
  python main.py fund 0.1
""",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    parser.add_argument("--env-file", type=str, default=None, help="Path to .env file")

    sub = parser.add_subparsers(dest="command", required=True)

    chat = sub.add_parser("chat", help="Send a chat completion")
    chat.add_argument("prompt", type=str, help="User message")
    chat.add_argument("--system", type=str, default=None, help="System message")
    chat.add_argument("--provider", type=str, default=None, help="Preferred provider address")
    chat.add_argument("--temperature", type=float, default=0.7)
    chat.add_argument("--max-tokens", type=int, default=1024)
    chat.add_argument("--json", action="store_true", help="Print the full structured response")

    sub.add_parser("status", help="Show configuration, balance and provider count")

    providers = sub.add_parser("providers", help="List candidate providers in routing order")
    providers.add_argument("--provider", type=str, default=None, help="Preferred provider address")

    fund = sub.add_parser("fund", help="Deposit into the compute ledger")
    fund.add_argument("amount", type=str, help="Amount in OG, e.g. 0.1")

    return parser


async def run_chat(args: argparse.Namespace, ctx) -> int:
    try:
        request = ChatRequest.from_prompt(
            args.prompt,
            system=args.system,
            temperature=args.temperature,
            max_tokens=args.max_tokens,
            preferred_provider=args.provider,
        )
    except ValueError as e:
        print(f"Invalid request: {e}", file=sys.stderr)
        return EXIT_ERROR

    response = await ctx.chat(request)
    if args.json:
        print(json.dumps(response.to_dict(), indent=2))
    elif response.ok:
        print(response.content or "")
        label = "DEGRADED" if not response.is_authentic else ("verified" if response.verified else "unverified")
        print(f"\n-- {response.provider_address} ({response.model}) [{label}] "
              f"{response.usage.total_tokens} tokens", file=sys.stderr)
    else:
        print(f"Error: {response.error}", file=sys.stderr)
    return EXIT_OK if response.ok else EXIT_ERROR


async def run_status(ctx) -> int:
    status = await ctx.status()
    print(json.dumps(status.to_dict(), indent=2))
    return EXIT_OK


async def run_providers(args: argparse.Namespace, ctx) -> int:
    discovered = await ctx.registry.discover()
    ordered = ctx.prioritizer.order(discovered, args.provider or ctx.config.routing.preferred_provider)
    if ctx.registry.degraded:
        print(f"Discovery degraded: {ctx.registry.last_error}", file=sys.stderr)
    for index, provider in enumerate(ordered, start=1):
        rank = "-" if provider.priority_rank is None else provider.priority_rank
        print(f"{index:>2}. {provider.address}  rank={rank}  {provider.model}  "
              f"[{provider.verifiability.value}]  {provider.endpoint}")
    return EXIT_OK if ordered else EXIT_ERROR


async def run_fund(args: argparse.Namespace, ctx) -> int:
    try:
        amount = to_units(args.amount)
    except ConfigurationError as e:
        print(f"Invalid amount: {e}", file=sys.stderr)
        return EXIT_CONFIG
    try:
        result = await ctx.ledger.add_funds(amount)
    except LedgerError as e:
        print(f"Deposit failed: {e}", file=sys.stderr)
        return EXIT_ERROR
    balance = ctx.ledger.account.total_balance
    print(f"Deposited {from_units(amount)} {ctx.config.chain.token_symbol} (tx {result.tx_id})")
    explorer = ctx.config.chain.explorer_tx_url(result.tx_id)
    if explorer:
        print(f"Explorer: {explorer}")
    print(f"Balance: {from_units(balance)} {ctx.config.chain.token_symbol}")
    return EXIT_OK


async def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    load_dotenv(args.env_file)
    configure_logging(args.verbose)

    try:
        config = load_config()
        config.validate()
    except ConfigurationError as e:
        logger.error(f"[MAIN] Configuration error: {e}")
        if args.command == "status":
            has_key = "ZG_PRIVATE_KEY" not in str(e)
            print(json.dumps(ServiceStatus.unconfigured(str(e), has_key).to_dict(), indent=2))
        return EXIT_CONFIG

    logger.info(f"[MAIN] Network {config.chain.name} ({config.chain.chain_id}), RPC {config.chain.rpc_url}")

    try:
        ctx = build_context(config)
    except ConfigurationError as e:
        logger.error(f"[MAIN] Configuration error: {e}")
        return EXIT_CONFIG

    async with ctx:
        if args.command == "chat":
            return await run_chat(args, ctx)
        if args.command == "status":
            return await run_status(ctx)
        if args.command == "providers":
            return await run_providers(args, ctx)
        if args.command == "fund":
            return await run_fund(args, ctx)

    parser.error(f"Unknown command {args.command}")
    return EXIT_ERROR


def cli() -> None:
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    cli()
