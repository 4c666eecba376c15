"""``chat-session`` command line: sign in with a token pair, tail or post to a room."""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import logging
import sys
from pathlib import Path
from typing import TextIO

from .client import ChatClient
from .config import ClientConfig, load_client_config_from_env
from .errors import ChatClientError
from .models import Message
from .token_store import FileTokenStore, TokenPair
from .tokens import decode_claims


def _write_message(output: TextIO, message: Message) -> None:
    output.write(f"{json.dumps(message.to_wire(), sort_keys=True)}\n")
    output.flush()


def _load_config(args: argparse.Namespace) -> ClientConfig:
    config = load_client_config_from_env()
    overrides = {}
    if args.api_url:
        overrides["api_url"] = args.api_url
    if args.token_path:
        overrides["token_path"] = Path(args.token_path).expanduser()
    return dataclasses.replace(config, **overrides) if overrides else config


def handle_login(args: argparse.Namespace, config: ClientConfig, output: TextIO) -> int:
    claims = decode_claims(args.access_token)
    if not claims:
        raise ValueError("access token is not a decodable JWT")
    store = FileTokenStore(config.token_path)
    store.save(TokenPair(access_token=args.access_token, refresh_token=args.refresh_token))
    who = claims.get("sub") or claims.get("userId") or claims.get("_id") or claims.get("id") or "unknown user"
    output.write(f"Signed in as {who}.\n")
    return 0


def handle_logout(args: argparse.Namespace, config: ClientConfig, output: TextIO) -> int:
    FileTokenStore(config.token_path).clear()
    output.write("Signed out.\n")
    return 0


def handle_whoami(args: argparse.Namespace, config: ClientConfig, output: TextIO) -> int:
    pair = FileTokenStore(config.token_path).load()
    if pair is None:
        raise RuntimeError("Not signed in. Run login first.")
    claims = decode_claims(pair.access_token)
    payload = {key: claims.get(key) for key in ("sub", "userId", "role", "exp") if key in claims}
    output.write(f"{json.dumps(payload, sort_keys=True)}\n")
    return 0


async def _connected_client(config: ClientConfig) -> ChatClient:
    client = ChatClient(config)
    if client.tokens.credential is None:
        await client.close()
        raise RuntimeError("Not signed in. Run login first.")
    await client.start()
    return client


async def _tail(args: argparse.Namespace, config: ClientConfig, output: TextIO) -> int:
    client = await _connected_client(config)
    queue: asyncio.Queue = asyncio.Queue()
    try:
        client.rooms.events.on("message", lambda room_id, message, scroll: queue.put_nowait(message))
        client.connection.events.on("signed_out", lambda reason: queue.put_nowait(None))
        result = await asyncio.wait_for(client.rooms.join(args.room), args.connect_timeout_s)
        written = 0
        for message in result.history:
            _write_message(output, message)
            written += 1
        while args.max_messages is None or written < args.max_messages:
            try:
                message = await asyncio.wait_for(queue.get(), args.idle_timeout_s)
            except asyncio.TimeoutError:
                break
            if message is None:
                raise RuntimeError("Session ended: signed out.")
            _write_message(output, message)
            written += 1
    except asyncio.TimeoutError as exc:
        raise RuntimeError(f"Timed out joining {args.room}.") from exc
    finally:
        await client.close()
    return 0


async def _send(args: argparse.Namespace, config: ClientConfig, output: TextIO) -> int:
    client = await _connected_client(config)
    try:
        await asyncio.wait_for(client.rooms.join(args.room), args.connect_timeout_s)
        message = await client.rooms.send(args.room, text=args.text)
    except asyncio.TimeoutError as exc:
        raise RuntimeError(f"Timed out joining {args.room}.") from exc
    finally:
        await client.close()
    if message is not None:
        _write_message(output, message)
    else:
        output.write("Message sent.\n")
    return 0


def handle_tail(args: argparse.Namespace, config: ClientConfig, output: TextIO) -> int:
    return asyncio.run(_tail(args, config, output))


def handle_send(args: argparse.Namespace, config: ClientConfig, output: TextIO) -> int:
    return asyncio.run(_send(args, config, output))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="chat-session", description="Authenticated chat session client")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log connection lifecycle to stderr")
    parser.add_argument("--api-url", help="API base URL (default: CHAT_API_URL)")
    parser.add_argument("--token-path", help="Token file (default: CHAT_TOKEN_PATH)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    login = subparsers.add_parser("login", help="Store an access/refresh token pair")
    login.add_argument("--access-token", required=True, help="JWT access token (required)")
    login.add_argument("--refresh-token", default=None, help="Refresh token")

    subparsers.add_parser("logout", help="Forget the stored token pair")
    subparsers.add_parser("whoami", help="Show the identity claims of the stored access token")

    tail = subparsers.add_parser("tail", help="Join a room and print messages as JSON lines")
    tail.add_argument("--room", required=True, help="Room id (required)")
    tail.add_argument("--max-messages", type=int, default=None, help="Stop after this many messages")
    tail.add_argument(
        "--idle-timeout-s",
        type=float,
        default=None,
        help="Stop after this many seconds without a new message (default: never)",
    )
    tail.add_argument("--connect-timeout-s", type=float, default=30.0, help="Seconds to wait for the join (default: 30)")

    send = subparsers.add_parser("send", help="Join a room and send a text message")
    send.add_argument("--room", required=True, help="Room id (required)")
    send.add_argument("--text", required=True, help="Message text (required)")
    send.add_argument("--connect-timeout-s", type=float, default=30.0, help="Seconds to wait for the join (default: 30)")
    return parser


HANDLERS = {
    "login": handle_login,
    "logout": handle_logout,
    "whoami": handle_whoami,
    "tail": handle_tail,
    "send": handle_send,
}


def main(argv: list[str] | None = None, output: TextIO | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    output = output or sys.stdout

    try:
        config = _load_config(args)
        return HANDLERS[args.command](args, config, output)
    except (RuntimeError, ValueError, ChatClientError) as exc:  # user-facing errors
        sys.stderr.write(f"Error: {exc}\n")
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
