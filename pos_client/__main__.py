"""
Terminal monitor: keeps one POS terminal and its catalog in sync and logs
every state change until interrupted.

    python -m pos_client pos-1 --email cashier@example.com --password ...
"""

import argparse
import asyncio
import os
import sys

from .config import get_settings
from .logging_setup import configure_logging
from .realtime import CoordinatorOptions
from .redis_client import close_redis
from .resource_sync import Phase
from .runtime import PosClient


async def main() -> int:
    parser = argparse.ArgumentParser(description="Monitor a POS terminal and its product catalog")
    parser.add_argument("terminal_id", help="ID of the POS terminal to follow")
    parser.add_argument("--email", default=os.getenv("POS_EMAIL"), help="Sign in with this account")
    parser.add_argument("--password", default=os.getenv("POS_PASSWORD"))
    parser.add_argument("--interval", type=float, default=None, help="Polling interval in seconds")
    parser.add_argument("--no-polling", action="store_true", help="Disable periodic polling")
    args = parser.parse_args()

    configure_logging()
    settings = get_settings()
    client = PosClient.from_settings(settings)
    await client.start()

    try:
        if args.email and args.password and not client.session_store.is_authenticated():
            user, _ = await client.session_store.sign_in(args.email, args.password)
            print(f"Signed in as {user.email} ({user.role})")

        options = CoordinatorOptions(
            enable_polling=settings.enable_polling and not args.no_polling,
            polling_interval=args.interval or settings.polling_interval,
            enable_focus_refresh=False,
        )
        sync = await client.open_terminal(args.terminal_id, options)

        def show(state) -> None:
            if state.phase is Phase.READY:
                products = (state.data or {}).get("products") or []
                terminal = (state.data or {}).get("terminal") or {}
                print(f"[{args.terminal_id}] {terminal.get('terminal_name', '?')}: {len(products)} products")
            else:
                print(f"[{args.terminal_id}] {state.phase.value} {state.status_text()}".rstrip())

        sync.subscribe(show)
        if client.offline_queue is not None:
            queued = await client.offline_queue.size()
            if queued:
                print(f"{queued} queued request(s) will be replayed once the API answers")
        await client.connection.start()
        await asyncio.Event().wait()
    finally:
        await client.close()
        await close_redis()
    return 0


def run() -> None:
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        print("\nMonitor stopped")
        sys.exit(1)


if __name__ == "__main__":
    run()
