#!/usr/bin/env python3
"""
News ingestion service entry point.

Modes:
    serve       run the HTTP API (ingest trigger + read endpoints)
    ingest      run one ingestion pass and print its statistics
    sync-feeds  register the feeds listed in feeds.yaml
    status      show database and configuration status
"""

import argparse
import asyncio
import json
import sys
from datetime import datetime, timezone
from pathlib import Path

from config import config, get_logger
from errors import StorageError
from fetcher import FeedFetcher
from ingest import IngestionOrchestrator, sync_feed_sources
from llm_client import LLMClient
from models import DatabaseQueue
from summarizer import Summarizer
from telemetry import init_telemetry, trace_span

logger = get_logger("main")
init_telemetry("news-ingest")


@trace_span("cli.ingest", tracer_name="main")
async def run_ingest() -> bool:
    """Run one ingestion pass against the configured database."""
    db = DatabaseQueue(config.DATABASE_PATH)
    fetcher = FeedFetcher()
    llm = LLMClient()
    try:
        await db.start()
        await sync_feed_sources(db)
        orchestrator = IngestionOrchestrator(db, fetcher, Summarizer(llm))
        stats = await orchestrator.run()
    except StorageError as e:
        logger.error(f"Ingestion aborted: {e}")
        return False
    finally:
        await fetcher.close()
        await llm.close()
        await db.stop()

    print(json.dumps(stats.to_dict(), indent=2, ensure_ascii=False))
    return True


async def run_sync_feeds() -> bool:
    config.reload_feed_sources()
    db = DatabaseQueue(config.DATABASE_PATH)
    try:
        await db.start()
        added = await sync_feed_sources(db)
        feeds = await db.execute('list_feeds')
    except StorageError as e:
        logger.error(f"Feed sync failed: {e}")
        return False
    finally:
        await db.stop()

    print(f"{added} feeds added, {len(feeds)} registered:")
    for feed in feeds:
        marker = "active" if feed.is_active else "inactive"
        print(f"  [{marker}] {feed.name}: {feed.url}")
    return True


async def check_status() -> dict:
    """Collect database and configuration status."""
    status = {
        'timestamp': datetime.now(timezone.utc).isoformat(),
        'config': config.get_config_summary(),
        'checks': {},
    }

    llm = LLMClient()
    status['checks']['llm'] = {'available': llm.available, 'model': llm.model}
    await llm.close()

    if not Path(config.DATABASE_PATH).exists():
        status['checks']['database'] = {'status': 'missing', 'message': 'Database file not found'}
        status['overall_status'] = 'issues_detected'
        return status

    db = DatabaseQueue(config.DATABASE_PATH)
    try:
        await db.start()
        feeds = await db.execute('list_feeds')
        status['checks']['database'] = {
            'status': 'ok',
            'feeds': len(feeds),
            'active_feeds': sum(1 for feed in feeds if feed.is_active),
            'articles': await db.execute('count_articles'),
            'latest_article': await db.execute('latest_article_time'),
        }
    except StorageError as e:
        status['checks']['database'] = {'status': 'error', 'message': str(e)}
    finally:
        await db.stop()

    status['overall_status'] = 'healthy' if status['checks']['database']['status'] == 'ok' else 'issues_detected'
    return status


def print_status(status: dict) -> None:
    print("\nNews Ingest Status")
    print(f"Time: {status['timestamp']}")
    print(f"Overall: {status['overall_status'].upper()}")

    db = status['checks']['database']
    if db['status'] == 'ok':
        print("\nDatabase:")
        print(f"   Feeds: {db['feeds']} ({db['active_feeds']} active)")
        print(f"   Articles: {db['articles']}")
        print(f"   Latest article: {db['latest_article'] or 'none'}")
    else:
        print(f"\nDatabase: {db['status'].upper()} - {db.get('message', 'Unknown error')}")

    llm = status['checks']['llm']
    print(f"\nLanguage model: {llm['model']} ({'available' if llm['available'] else 'unavailable, using fallback summaries'})")

    print("\nConfiguration:")
    for key, value in status['config'].items():
        print(f"   {key}: {value}")


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description='News ingestion service')
    parser.add_argument('mode', choices=['serve', 'ingest', 'sync-feeds', 'status'],
                        help='Operation mode')
    parser.add_argument('--host', type=str, help='Bind address for serve mode')
    parser.add_argument('--port', type=int, help='Port for serve mode')

    args = parser.parse_args()

    try:
        if args.mode == 'serve':
            from server import run_server
            run_server(host=args.host, port=args.port)

        elif args.mode == 'ingest':
            success = asyncio.run(run_ingest())
            sys.exit(0 if success else 1)

        elif args.mode == 'sync-feeds':
            success = asyncio.run(run_sync_feeds())
            sys.exit(0 if success else 1)

        elif args.mode == 'status':
            status = asyncio.run(check_status())
            print_status(status)

    except KeyboardInterrupt:
        logger.info("Shutting down")
    except Exception as e:
        logger.error(f"Unexpected error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
