"""CLI entry point for replaying recorded streams.

Usage:
    relay replay capture.sse                   # Replay a recorded SSE capture
    relay replay capture.sse --chunk-size 7    # Re-chunk the input (framing check)
    relay replay capture.sse --log-level DEBUG # Show decoder/dispatcher traces
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from collections.abc import AsyncIterator
from pathlib import Path

from relay_stream.dispatch import ToolDispatcher
from relay_stream.errors import StreamTransportError
from relay_stream.signals import Signal, SignalEmitter
from relay_stream.sse import DEFAULT_SENTINEL, decode_stream


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="relay",
        description="Decode and dispatch recorded model event streams",
    )
    subparsers = parser.add_subparsers(dest="command")

    # --- replay command ---
    replay_parser = subparsers.add_parser("replay", help="Replay a recorded SSE capture")
    replay_parser.add_argument("capture", type=str, help="Path to the raw SSE capture")
    replay_parser.add_argument(
        "--chunk-size",
        type=int,
        default=0,
        help="Split the capture into chunks of this many bytes (0 = one chunk)",
    )
    replay_parser.add_argument(
        "--sentinel",
        type=str,
        default=DEFAULT_SENTINEL,
        help=f"Termination sentinel. Default: {DEFAULT_SENTINEL}",
    )
    replay_parser.add_argument(
        "--log-level",
        type=str,
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level for decoder and dispatcher messages",
    )

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(levelname)s %(name)s: %(message)s",
    )

    if args.command == "replay":
        asyncio.run(_cmd_replay(args))


async def _cmd_replay(args: argparse.Namespace) -> None:
    """Feed a capture through decoder and dispatcher, printing every signal."""
    path = Path(args.capture)
    if not path.exists():
        print(f"Error: File not found: {args.capture}")
        sys.exit(1)

    raw = path.read_bytes()

    def _print(signal: Signal) -> None:
        print(signal.description)

    dispatcher = ToolDispatcher(SignalEmitter(on_signal=_print))
    try:
        summary = await dispatcher.run(
            decode_stream(_chunked(raw, args.chunk_size), sentinel=args.sentinel)
        )
    except StreamTransportError as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    if summary is None:
        print("Warning: stream ended before message_stop")


async def _chunked(raw: bytes, size: int) -> AsyncIterator[bytes]:
    if size <= 0:
        yield raw
        return
    for start in range(0, len(raw), size):
        yield raw[start : start + size]


if __name__ == "__main__":
    main()
