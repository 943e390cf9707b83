"""
Command-line interface for upload session maintenance.
"""
import argparse
import json
import logging
import signal
import sys
from datetime import timedelta
from pathlib import Path
from typing import Optional

from .chunk_store import ChunkStore, LocalChunkStore, S3ChunkStore
from .exceptions import UploadError
from .manager import UploadSessionManager
from .scheduler import CleanupScheduler
from .session_store import SessionStore

logger = logging.getLogger(__name__)

DEFAULTS = {
    'storage': 'local',
    'upload_dir': 'uploads',
    'state_dir': None,
    'bucket': None,
    'prefix': 'uploads/',
    'session_ttl_seconds': 3600,
    'cleanup_interval_seconds': 900,
    'retention_hours': 24,
}


def setup_logging(verbose: bool = False) -> None:
    """Configure logging for the application.

    Args:
        verbose: Whether to enable debug logging
    """
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


def load_config(config_file: Optional[Path] = None) -> dict:
    """Load configuration from a JSON file, filling in defaults.

    Args:
        config_file: Path to config file

    Returns:
        Dictionary of configuration values
    """
    config = dict(DEFAULTS)
    if not config_file:
        return config

    try:
        with open(config_file) as f:
            config.update(json.load(f))
    except (OSError, ValueError) as e:
        logger.error(f"Error loading config file: {e}")
    return config


def create_chunk_store(config: dict) -> ChunkStore:
    storage = config['storage']
    if storage == 's3':
        return S3ChunkStore(bucket=config['bucket'], prefix=config['prefix'])
    if storage == 'local':
        return LocalChunkStore(Path(config['upload_dir']))
    raise ValueError(f"Unknown storage backend: {storage}")


def create_manager(config: dict) -> UploadSessionManager:
    """Create the upload session manager described by the config.

    Args:
        config: Configuration values from load_config

    Returns:
        Configured UploadSessionManager instance
    """
    state_dir = config['state_dir'] or Path(config['upload_dir']) / 'state'
    session_store = SessionStore(
        state_dir=Path(state_dir),
        session_ttl=timedelta(seconds=config['session_ttl_seconds'])
    )
    return UploadSessionManager(session_store, create_chunk_store(config))


def create_scheduler(config: dict, manager: UploadSessionManager) -> CleanupScheduler:
    return CleanupScheduler(
        manager,
        interval=timedelta(seconds=config['cleanup_interval_seconds']),
        retention=timedelta(hours=config['retention_hours'])
    )


def handle_cleanup(args: argparse.Namespace) -> None:
    """Handle the cleanup command.

    Args:
        args: Command line arguments
    """
    config = load_config(args.config)
    scheduler = create_scheduler(config, create_manager(config))

    report = scheduler.run_once()
    if report is None:
        logger.error("Cleanup did not complete")
        sys.exit(1)
    print(f"Removed {report.expired} expired and {report.completed} completed sessions")


def handle_watch(args: argparse.Namespace) -> None:
    """Handle the watch command: run cleanup periodically until interrupted.

    Args:
        args: Command line arguments
    """
    config = load_config(args.config)
    scheduler = create_scheduler(config, create_manager(config))

    try:
        scheduler.start()

        # Keep running until interrupted
        signal.signal(signal.SIGINT, lambda s, f: sys.exit(0))
        signal.pause()

    except KeyboardInterrupt:
        logger.info("Cleanup interrupted by user")

    finally:
        scheduler.stop()


def handle_list(args: argparse.Namespace) -> None:
    """Handle the list command.

    Args:
        args: Command line arguments
    """
    manager = create_manager(load_config(args.config))

    sessions = manager.session_store.list_all()
    if not sessions:
        print("No upload sessions found")
        return

    for session in sessions:
        state = "completed" if session.is_completed else "pending"
        print(f"\nSession ID: {session.id}")
        print(f"Kind: {session.kind}")
        print(f"Subject: {session.subject_id}")
        print(f"State: {state}")
        print(f"Chunks: {len(session.received_chunks)}/{session.total_chunks}")
        print(f"Expires: {session.expires_at.isoformat()}")


def handle_status(args: argparse.Namespace) -> None:
    """Handle the status command.

    Args:
        args: Command line arguments
    """
    manager = create_manager(load_config(args.config))
    status = manager.get_status(args.session_id)
    print(json.dumps(status.to_dict(), indent=2))


def main(argv: Optional[list] = None) -> None:
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(description="Chunked upload session maintenance")
    parser.add_argument('-v', '--verbose', action='store_true',
                        help="Enable verbose logging")
    parser.add_argument('-c', '--config', type=Path,
                        help="Path to config file")

    subparsers = parser.add_subparsers(dest='command', required=True)

    subparsers.add_parser('cleanup',
                          help="Remove expired and old completed sessions once")
    subparsers.add_parser('watch',
                          help="Run the cleanup scheduler until interrupted")
    subparsers.add_parser('list',
                          help="List upload sessions")

    status_parser = subparsers.add_parser('status',
                                          help="Show the status of a session")
    status_parser.add_argument('session_id', type=str,
                               help="Session ID to inspect")

    args = parser.parse_args(argv)
    setup_logging(args.verbose)

    handlers = {
        'cleanup': handle_cleanup,
        'watch': handle_watch,
        'list': handle_list,
        'status': handle_status,
    }

    try:
        handlers[args.command](args)

    except UploadError as e:
        logger.error(f"Error: {e}")
        sys.exit(1)


if __name__ == '__main__':
    main()
