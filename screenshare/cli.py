"""Command line entry points: run the relay, share a screen, or view one."""
from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from .core.config import settings
from .core.errors import ScreenShareError
from .services.control import ControlSettings
from .services.peer import AiortcPeerConnection, PlayerMediaSource, StreamStats
from .services.session import SessionNegotiator
from .services.signaling_client import SignalingClient

logger = logging.getLogger(__name__)


def _print_status(message: str, level: str) -> None:
    print(f"[{level}] {message}")


def _print_stats(stats: StreamStats) -> None:
    bitrate = "-" if stats.bitrate_kbps is None else stats.bitrate_kbps
    print(f"[stats] fps: {stats.fps or 0}  bitrate: {bitrate} kbps  packets lost: {stats.packets_lost}")


def _signaling_client(url: str) -> SignalingClient:
    return SignalingClient(
        url,
        on_status=_print_status,
        reconnect_delay=settings.reconnect_delay_seconds,
        reconnect_delay_max=settings.reconnect_delay_max_seconds,
        reconnect_attempts=settings.reconnect_attempts,
        request_timeout=settings.request_timeout_seconds,
    )


async def host(args: argparse.Namespace) -> int:
    media_factory = None
    if args.media:
        media_factory = lambda: PlayerMediaSource(args.media, format=args.media_format)  # noqa: E731

    async with _signaling_client(args.url) as client:
        negotiator = SessionNegotiator(
            client,
            AiortcPeerConnection.factory(settings.ice_servers),
            media_factory=media_factory,
            control_settings=ControlSettings.from_settings(settings),
            on_status=_print_status,
        )
        client.handler = negotiator.handle_signal
        await client.wait_connected(settings.request_timeout_seconds)
        code = await negotiator.start_hosting()
        print(f"Sharing code: {code}")
        try:
            await asyncio.Event().wait()
        finally:
            await negotiator.disconnect()
    return 0


async def view(args: argparse.Namespace) -> int:
    from aiortc.contrib.media import MediaBlackhole

    sink = MediaBlackhole()

    async def on_track(track) -> None:
        sink.addTrack(track)
        await sink.start()

    async with _signaling_client(args.url) as client:
        negotiator = SessionNegotiator(
            client,
            AiortcPeerConnection.factory(settings.ice_servers),
            control_settings=ControlSettings.from_settings(settings),
            on_status=_print_status,
            on_track=on_track,
            on_stats=_print_stats,
            stats_interval=settings.stats_interval_seconds,
        )
        client.handler = negotiator.handle_signal
        await client.wait_connected(settings.request_timeout_seconds)
        try:
            await negotiator.join(args.code)
        except ScreenShareError as exc:
            logger.error("Could not join %s: %s", args.code, exc)
            return 1
        try:
            await asyncio.Event().wait()
        finally:
            await negotiator.disconnect()
            await sink.stop()
    return 0


def serve(args: argparse.Namespace) -> int:
    import uvicorn

    uvicorn.run("screenshare.main:app", host=args.host, port=args.port, log_level=settings.log_level.lower())
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="screenshare", description=__doc__)
    sub = parser.add_subparsers(dest="command", required=True)

    serve_parser = sub.add_parser("serve", help="run the signaling relay")
    serve_parser.add_argument("--host", default=settings.host)
    serve_parser.add_argument("--port", type=int, default=settings.port)

    host_parser = sub.add_parser("host", help="generate a sharing code and stream media to one viewer")
    host_parser.add_argument("--url", default=settings.signaling_url)
    host_parser.add_argument("--media", help="file or capture device passed to MediaPlayer")
    host_parser.add_argument("--media-format", help="ffmpeg input format, e.g. x11grab or avfoundation")

    view_parser = sub.add_parser("view", help="join a host by sharing code")
    view_parser.add_argument("code")
    view_parser.add_argument("--url", default=settings.signaling_url)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if args.command == "serve":
        return serve(args)
    runner = host if args.command == "host" else view
    try:
        return asyncio.run(runner(args))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
