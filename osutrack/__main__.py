"""Command line entry point for running updates and queries"""
import argparse
import logging
import sys
from datetime import datetime
from typing import List, Optional

from osutrack.config import settings
from osutrack.db import db
from osutrack.delta import DeltaEngine
from osutrack.errors import OsuTrackError
from osutrack.services.storage import StorageService
from osutrack.tracker import Tracker
from osutrack.utils.json_encoder import json_dumps

logger = logging.getLogger(__name__)

def _resolve_user_id(user: str) -> int:
    if user.isdigit():
        return int(user)
    with db.session() as session:
        tracked = StorageService(session).find_user_by_name(user)
    if tracked is None:
        raise OsuTrackError(f"User {user} is not tracked")
    return tracked.id

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='osutrack', description='Track osu! stats and query gains')
    parser.add_argument('--database-url', help='SQLAlchemy URL, overrides DATABASE_URL')
    sub = parser.add_subparsers(dest='command', required=True)

    update = sub.add_parser('update', help='Poll the osu! API and record changes')
    update.add_argument('username')
    update.add_argument('mode', nargs='?', default='0')

    delta = sub.add_parser('delta', help='Stat changes between two times')
    delta.add_argument('user', help='User id or tracked username')
    delta.add_argument('mode')
    delta.add_argument('start', type=datetime.fromisoformat)
    delta.add_argument('end', type=datetime.fromisoformat)

    lastpp = sub.add_parser('lastpp', help='Changes since the last pp gain')
    lastpp.add_argument('user')
    lastpp.add_argument('mode', nargs='?', default='0')

    history = sub.add_parser('history', help='Stored snapshots')
    history.add_argument('user')
    history.add_argument('mode', nargs='?', default='0')
    history.add_argument('--start', type=datetime.fromisoformat)
    history.add_argument('--end', type=datetime.fromisoformat)

    online = sub.add_parser('online', help='Recorded online user counts')
    online.add_argument('--start', type=datetime.fromisoformat)
    online.add_argument('--end', type=datetime.fromisoformat)
    return parser

def run(argv: Optional[List[str]] = None) -> int:
    """Parse arguments, run one command and print its result as JSON"""
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=settings.LOG_LEVEL, format='%(asctime)s %(levelname)s %(name)s: %(message)s')

    try:
        db.init(args.database_url)
        engine = DeltaEngine(db)

        if args.command == 'update':
            result = Tracker(settings, db).update(args.username, args.mode)
        elif args.command == 'delta':
            result = engine.compute_delta(_resolve_user_id(args.user), args.mode, args.start, args.end)
        elif args.command == 'lastpp':
            result = engine.last_pp_delta(_resolve_user_id(args.user), args.mode)
        elif args.command == 'history':
            result = engine.snapshot_history(_resolve_user_id(args.user), args.mode, args.start, args.end)
        else:
            with db.session() as session:
                result = StorageService(session).online_activity(args.start, args.end)

        print(json_dumps(result, indent=2))
        return 0

    except (OsuTrackError, ValueError) as e:
        logger.error(f"Error: {e}")
        return 1
    finally:
        db.dispose()

if __name__ == "__main__":
    sys.exit(run())
