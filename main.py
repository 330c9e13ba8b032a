"""
PlayHub - command line entry point
Async front end over the service container
"""

import argparse
import asyncio
import sys

from playhub import PlayHubServices, setup_logger
from playhub.events import EventKind
from playhub.models import IntentMetadata, IntentState, Platform, PresenceSource, PresenceUpdate, SyncType


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="playhub", description="Multi-platform game library sync")
    sub = parser.add_subparsers(dest="command", required=True)

    connect = sub.add_parser("connect", help="Log in to a platform")
    connect.add_argument("platform", choices=[p.value for p in (Platform.STEAM, Platform.EPIC, Platform.GOG)])

    sync = sub.add_parser("sync", help="Sync accounts now")
    sync.add_argument("--account", help="Account id (default: every connected account)")
    sync.add_argument("--platform", choices=[p.value for p in (Platform.STEAM, Platform.EPIC, Platform.GOG)])
    sync.add_argument("--friends-only", action="store_true")

    library = sub.add_parser("library", help="List or search games")
    library.add_argument("query", nargs="?", help="Title to search for")
    library.add_argument("--platform", choices=[p.value for p in Platform])
    library.add_argument("--installed", action="store_true")

    launch = sub.add_parser("launch", help="Launch a game and track the session")
    launch.add_argument("game_id")

    history = sub.add_parser("history", help="Show play sessions of a game")
    history.add_argument("game_id")

    presence = sub.add_parser("presence", help="Show or set presence")
    presence.add_argument("--intent", choices=[s.value for s in IntentState])
    presence.add_argument("--label", help="Label for a custom intent")
    presence.add_argument("--discord", choices=["on", "off"])

    sub.add_parser("scan", help="Scan for installed games")
    sub.add_parser("enrich", help="Fetch store metadata for games missing it")
    return parser


async def run(args, services: PlayHubServices, logger) -> int:
    if args.command == "connect":
        result = await services.connect(Platform(args.platform), sync=False)
        if not result.success:
            logger.error(f"Login failed: {result.error}")
            return 1
        print(f"Connected {result.username} ({result.account_id})")
        sync_result = await services.sync_now(result.account_id)
        return 0 if sync_result.success else 1

    if args.command == "sync":
        sync_type = SyncType.FRIENDS if args.friends_only else SyncType.FULL
        if args.account or args.platform:
            platform = Platform(args.platform) if args.platform else None
            results = [await services.sync_now(args.account, platform, sync_type)]
        else:
            results = await services.sync_all()
        for result in results:
            status = "ok" if result.success else f"failed: {result.error}"
            print(f"{result.items_synced} items synced ({status})")
        return 0 if all(r.success for r in results) else 1

    if args.command == "library":
        platform = Platform(args.platform) if args.platform else None
        if args.query:
            for hit in await services.library.search(args.query, platform=platform):
                print(f"{hit.game.id:<32} {hit.score:5.1f} {hit.game.title}")
        else:
            for game in await services.library.get_games(platform, installed_only=args.installed):
                hours = game.playtime_seconds / 3600
                print(f"{game.id:<32} {hours:7.1f}h {game.title}")
        return 0

    if args.command == "launch":
        result = await services.launch_game(args.game_id)
        if not result.success:
            logger.error(f"Launch failed: {result.error}")
            return 1
        print(f"Session {result.session_id} started; waiting for the game to exit")
        finished = asyncio.Event()

        def on_session(session):
            if session.id == result.session_id and not session.is_open:
                finished.set()

        services.subscribe(EventKind.SESSION_CHANGED, on_session)
        await finished.wait()
        return 0

    if args.command == "history":
        for session in await services.get_session_history(args.game_id):
            print(f"{session.start_time}  {session.duration_seconds // 60} min")
        return 0

    if args.command == "presence":
        if args.discord:
            await services.set_presence_enabled(args.discord == "on")
        if args.intent:
            metadata = IntentMetadata(custom_label=args.label) if args.label else IntentMetadata()
            await services.set_presence(PresenceUpdate(
                source=PresenceSource.MANUAL,
                intent_state=IntentState(args.intent),
                intent_metadata=metadata,
            ))
        status = await services.get_presence()
        print(f"{status.presence_state} / {status.intent_state} ({status.source})")
        return 0

    if args.command == "scan":
        print(f"{await services.scan_installed()} installed games found")
        return 0

    if args.command == "enrich":
        print(f"{await services.enrich_metadata()} games enriched")
        return 0

    return 2


async def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    logger = setup_logger()
    logger.info("PlayHub starting...")

    services = PlayHubServices()
    try:
        await services.start(background=False)
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}", exc_info=True)
        return 1

    try:
        return await run(args, services, logger)
    finally:
        await services.shutdown()


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
