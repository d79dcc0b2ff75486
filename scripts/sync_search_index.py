#!/usr/bin/env python3
"""Provision the opportunity search indexes and push every stored opportunity into them."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any

import httpx

from discovery.core.config import get_settings
from discovery.core.telemetry import configure_api_logging
from discovery.services.errors import StoreUnavailableError
from discovery.services.repository import get_repository
from discovery.services.search_index import MeilisearchIndexClient, SearchIndexError
from discovery.services.store import OpportunityStore

logger = logging.getLogger("sync_search_index")


def build_parser(default_batch_size: int = 500) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Sync opportunity records into the Meilisearch indexes.")
    parser.add_argument(
        "--clear-existing",
        action="store_true",
        help="Delete every document from each index before re-ingesting",
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=default_batch_size,
        help="Rows fetched from the database and uploaded per request",
    )
    parser.add_argument(
        "--ensure-only",
        action="store_true",
        help="Create indexes and push settings without ingesting documents",
    )
    return parser


async def run(
    args: argparse.Namespace,
    *,
    index: MeilisearchIndexClient,
    store: OpportunityStore,
) -> list[dict[str, Any]]:
    try:
        if args.ensure_only:
            return await index.ensure_indexes()
        return await index.sync_indexes(
            store,
            clear_existing=args.clear_existing,
            batch_size=args.batch_size,
        )
    finally:
        await store.close()


def main(argv: list[str] | None = None) -> int:
    settings = get_settings()
    args = build_parser(settings.index_batch_size).parse_args(argv)
    configure_api_logging(settings)

    if not settings.search_index_configured:
        print("OD_MEILISEARCH_HOST and OD_MEILISEARCH_API_KEY are required", file=sys.stderr)
        return 2

    assert settings.meilisearch_host is not None and settings.meilisearch_api_key is not None
    index = MeilisearchIndexClient(
        host=settings.meilisearch_host,
        api_key=settings.meilisearch_api_key,
        timeout_seconds=max(settings.index_timeout_seconds, 30.0),
    )
    try:
        results = asyncio.run(run(args, index=index, store=get_repository()))
    except (SearchIndexError, StoreUnavailableError, httpx.HTTPError) as exc:
        logger.error("search index sync failed error=%s", exc)
        return 1

    print(json.dumps(results, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
