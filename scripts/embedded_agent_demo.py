#!/usr/bin/env python3
"""Send one message through an embedded sage_agent Agent and print the reply."""

from __future__ import annotations

import argparse
import asyncio
import sys

from sage_agent.agent.api import Agent
from sage_agent.agent.loop import TurnRequest


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Embedded Sage agent demo.")
    parser.add_argument("text", nargs="?", default="Give me three ideas for a game night")
    parser.add_argument("--mode", choices=("sync", "async"), default="sync")
    parser.add_argument("--user-id", default="demo-user")
    parser.add_argument("--channel-id", default="demo-channel")
    parser.add_argument("--guild-id", default=None, help="Omit for a direct-message turn.")
    parser.add_argument("--verbose", action="store_true", help="Also print route, governor actions and trace id.")
    return parser.parse_args()


async def run_turn(args: argparse.Namespace) -> None:
    async with Agent() as agent:
        result = await agent.turn(
            TurnRequest(
                user_id=args.user_id,
                channel_id=args.channel_id,
                guild_id=args.guild_id,
                user_text=args.text,
            )
        )
    print(result.reply_text)
    if args.verbose:
        route = result.route.kind.value if result.route else "-"
        print(f"\nroute={route} actions={','.join(result.actions) or '-'} trace={result.trace_id}", file=sys.stderr)


def main() -> int:
    args = parse_args()
    try:
        if args.mode == "async" or args.verbose:
            asyncio.run(run_turn(args))
            return 0
        agent = Agent()
        try:
            print(agent.ask_sync(args.text, user_id=args.user_id, channel_id=args.channel_id, guild_id=args.guild_id))
        finally:
            agent.close()
    except Exception as exc:
        print(f"Demo failed: {exc}", file=sys.stderr)
        print("Check ~/.sage/config.json or set SAGE_PROVIDER__API_KEY.", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
