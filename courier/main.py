import argparse
import asyncio
import logging
import signal
import sys
from datetime import datetime

from courier import config
from courier.bot.delivery import DeliveryChannel
from courier.bot.dispatcher import ResponseDispatcher
from courier.core.agent import OllamaResponder
from courier.errors import AlreadyClaimed, CourierError, ReadError, StoreUnavailable
from courier.memory.action_log import get_actions
from courier.memory.claims import ClaimCoordinator
from courier.memory.context_builder import ContextBuilder, pending_todos
from courier.memory.database import init_db
from courier.memory.inbox import MailboxStore
from courier.memory.responses import ResponseStore
from courier.scheduler.watch_loop import WatchLoop

log = logging.getLogger(__name__)


class Services:
    """Everything a command needs, wired from config."""

    def __init__(self, pending_dir=None, responses_dir=None, profiles_dir=None,
                 ws_url=None, db_path=None):
        self.store = MailboxStore(pending_dir or config.PENDING_DIR)
        self.claims = ClaimCoordinator(self.store)
        self.responses = ResponseStore(responses_dir or config.RESPONSES_DIR, source=config.RESPONSE_SOURCE)
        self.contexts = ContextBuilder(profiles_dir or config.PROFILES_DIR, config.DEFAULT_PROFILE_ID)
        self.db = init_db(db_path or config.DATABASE_PATH)
        self.channel = DeliveryChannel(
            ws_url or config.WS_URL,
            timeout=config.DELIVERY_TIMEOUT_SECONDS,
            require_ack=config.DELIVERY_REQUIRE_ACK,
        )
        self.dispatcher = ResponseDispatcher(
            self.responses,
            self.channel,
            claims=self.claims,
            db=self.db,
            retries=config.DELIVERY_RETRIES,
            backoff=config.DELIVERY_BACKOFF_SECONDS,
        )


def _fmt_ts(ms):
    return datetime.fromtimestamp(ms / 1000).strftime("%Y-%m-%d %I:%M:%S %p")


def cmd_watch(services, args):
    requests = services.store.pending()
    if not requests:
        print("No pending messages right now.")
        print("   Waiting for users to send messages...\n")
    else:
        print(f"{len(requests)} pending message(s):\n")
        for i, r in enumerate(requests, 1):
            print(f"Message {i}:")
            print(f"  Request ID: {r.id}")
            print(f"  Agent: {r.agent_id}")
            print(f"  Time: {_fmt_ts(r.timestamp)}")
            print(f'  Content: "{r.content}"')
            print("")

    dead = services.claims.list_dead()
    if dead:
        print(f"{len(dead)} dead letter(s): {', '.join(dead)}")
        print("   Use `redeliver <id>` or `requeue <id>`.\n")

    context = services.contexts.fetch()
    if not context.profile_id:
        print("No user profile found.")
        print("   User needs to set up their profile first.\n")
    else:
        print(f"User Context ({context.profile_id}):\n")
        if context.profile:
            print("  - Profile loaded")
        if context.challenges:
            print(f"  - {len(context.challenges)} active challenge(s)")
            for c in context.challenges:
                print(f"    - {c['name']}")
        if context.todos is not None:
            print(f"  - {len(pending_todos(context.todos))} pending task(s) today")
        print("")

    if requests:
        print("How to Respond:\n")
        print("1. Write your response based on the user's message and context")
        print("2. Send it back:")
        print("")
        for r in requests:
            print(f'   courier send {r.id} "your response"')
        print("")
        print("Sending will persist the response, push it to the UI over the relay,")
        print("and clear the pending request.")
    return 0


def _agent_id(services, request_id):
    for get in (services.store.get_claimed, services.store.get_dead):
        try:
            return get(request_id).agent_id
        except ReadError:
            continue
    return None


async def _send(services, request_id, message, force):
    owned = True
    try:
        services.claims.claim(request_id)
    except AlreadyClaimed:
        if not force:
            print(f"Request {request_id} is not pending (already claimed or unknown). Use --force to send anyway.")
            return 1
        log.warning(f"[send] {request_id} not pending, sending anyway")
        owned = False

    metadata = {}
    agent_id = _agent_id(services, request_id)
    if agent_id is not None:
        metadata["agentId"] = agent_id

    if owned:
        delivered = await services.dispatcher.dispatch_and_settle(request_id, message, metadata)
    else:
        # A claim held elsewhere stays with its owner.
        delivered = await services.dispatcher.dispatch(request_id, message, metadata)
        if delivered:
            services.claims.discard(request_id)
    if delivered:
        print(f"Sent response for {request_id}.")
        return 0
    print(f"Response for {request_id} saved but not delivered. Retry with `courier redeliver {request_id}`.")
    return 1


def cmd_send(services, args):
    message = sys.stdin.read() if args.message == "-" else args.message
    message = message.strip()
    if not message:
        print("Refusing to send an empty response.")
        return 1
    return asyncio.run(_send(services, args.request_id, message, args.force))


def cmd_redeliver(services, args):
    delivered = asyncio.run(services.dispatcher.redeliver(args.request_id))
    print(f"{'Redelivered' if delivered else 'Still undelivered'}: {args.request_id}")
    return 0 if delivered else 1


def cmd_requeue(services, args):
    services.claims.requeue(args.request_id)
    print(f"Requeued {args.request_id}.")
    return 0


def cmd_status(services, args):
    history = get_actions(services.db, args.request_id)
    if not history:
        print(f"No history for {args.request_id}.")
        return 1
    for action_type, ts, metadata in history:
        print(f"  {ts} | {action_type}" + (f" {metadata}" if metadata else ""))
    return 0


async def _run(services, args):
    loop = WatchLoop(
        services.store,
        services.claims,
        services.dispatcher,
        OllamaResponder(config.OLLAMA_MODEL, host=config.OLLAMA_HOST),
        context_builder=services.contexts,
        db=services.db,
        mode=args.mode,
        poll_interval=config.POLL_INTERVAL_SECONDS,
        max_in_flight=config.MAX_IN_FLIGHT,
        claim_ttl=config.CLAIM_TTL_SECONDS,
        shutdown_grace=config.SHUTDOWN_GRACE_SECONDS,
    )
    if args.once:
        await loop.run_once()
        return 0

    running = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            running.add_signal_handler(sig, loop.stop)
        except (NotImplementedError, RuntimeError):
            pass
    await loop.run()
    return 0


def cmd_run(services, args):
    print("Starting courier worker...")
    print(f"Model: {config.OLLAMA_MODEL}")
    print(f"Mailbox: {services.store.root}")
    print(f"Relay: {services.channel.url}")
    return asyncio.run(_run(services, args))


def build_parser():
    parser = argparse.ArgumentParser(prog="courier", description="Mailbox worker for the chat UI.")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("watch", help="show pending requests and how to answer them")

    send = sub.add_parser("send", help="send a manually written response")
    send.add_argument("request_id")
    send.add_argument("message", help="response text, or - to read stdin")
    send.add_argument("--force", action="store_true", help="send even if the request is not pending")

    run = sub.add_parser("run", help="answer requests automatically")
    run.add_argument("--mode", choices=["poll", "notify"], default=config.WATCH_MODE)
    run.add_argument("--once", action="store_true", help="run a single cycle and exit")

    for name, help_text in (
        ("redeliver", "replay a stored response to the relay"),
        ("requeue", "move a dead letter back to pending"),
        ("status", "show the history of a request"),
    ):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("request_id")

    return parser


COMMANDS = {
    "watch": cmd_watch,
    "send": cmd_send,
    "run": cmd_run,
    "redeliver": cmd_redeliver,
    "requeue": cmd_requeue,
    "status": cmd_status,
}


def main(argv=None, services=None):
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    try:
        services = services or Services()
        if args.command in ("run", "watch"):
            services.store.check()
        return COMMANDS[args.command](services, args)
    except StoreUnavailable as e:
        print(f"ERROR: {e}")
        return 2
    except CourierError as e:
        print(f"ERROR: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
