"""Voice room CLI entry point.

This module is invoked when running `python -m src.voice_room`. It joins the
given team's voice room with the local microphone and stays connected until
interrupted with Ctrl+C or SIGTERM.
"""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

from src.voice_room.config import VoiceRoomConfig
from src.voice_room.coordinator import VoiceSessionCoordinator
from src.voice_room.errors import VoiceRoomError
from src.voice_room.store import create_store
from src.voice_room.utils.logging import log_event, setup_logging


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments.

    Returns:
        Parsed arguments namespace
    """
    parser = argparse.ArgumentParser(
        description="Voice Room - join a team voice room over a peer-to-peer audio mesh"
    )
    parser.add_argument("--team", type=str, required=True, help="Team whose voice room to join")
    parser.add_argument("--user", type=str, required=True, help="Local user identifier")
    parser.add_argument("--name", type=str, default=None, help="Display name shown to others")
    parser.add_argument(
        "--config",
        type=Path,
        default=Path("configs/voice_room.yaml"),
        help="Path to configuration YAML file (default: configs/voice_room.yaml)",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Override log level from config",
    )

    return parser.parse_args(argv)


async def main(argv: list[str] | None = None) -> int:
    """Main entry point.

    Loads configuration, sets up logging, joins the voice room and waits for
    a shutdown signal.

    Returns:
        Process exit code
    """
    args = parse_args(argv)

    # Load configuration
    try:
        config = VoiceRoomConfig.from_yaml_with_defaults(args.config)
    except Exception as e:
        print(f"Error: Failed to load configuration: {e}", file=sys.stderr)
        return 1

    if args.log_level:
        config.log_level = args.log_level

    setup_logging(level=config.log_level, format_type=config.log_format)
    logger = logging.getLogger(__name__)

    # Heavy media dependencies are only needed for a real run
    from src.voice_room.media.aiortc_backend import AiortcMediaBackend

    store = create_store(config.store)
    coordinator = VoiceSessionCoordinator(store, AiortcMediaBackend(), config)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    exit_code = 0
    try:
        await store.connect()
        session_id = await coordinator.join(args.team, args.user, display_name=args.name)
        log_event(
            "voice_room_joined",
            {"session_id": session_id, "team_id": args.team, "user_id": args.user},
        )
        await stop.wait()
    except VoiceRoomError as e:
        logger.error(f"Could not join voice room: {e}")
        exit_code = 1
    except Exception as e:
        logger.exception("Voice room failed with error", extra={"error": str(e)})
        exit_code = 1
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
        await coordinator.leave()
        log_event("voice_room_left", coordinator.get_metrics_summary())
        await store.close()

    return exit_code


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
