"""CLI interface for the Discourse crawler."""

import asyncio
import logging
import sys

import click

from .crawler import DiscourseCrawler
from .errors import CrawlerError
from .models import DEFAULT_RATE_LIMIT_MS, CrawlerOptions
from .state_manager import DEFAULT_DB_PATH

logger = logging.getLogger("discourse_crawler")

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@click.command()
@click.option(
    '--url', '-u',
    required=True,
    help='Base URL of the Discourse forum to crawl'
)
@click.option(
    '--db-path', '-d',
    default=f'./{DEFAULT_DB_PATH}',
    show_default=True,
    help='Path to the crawl database'
)
@click.option(
    '--full', '-f',
    is_flag=True,
    help='Full crawl (ignore previously crawled state)'
)
@click.option(
    '--since', '-s',
    type=click.DateTime(formats=['%Y-%m-%d']),
    default=None,
    help='Only crawl content since this date (YYYY-MM-DD)'
)
@click.option(
    '--rate-limit', '-r',
    type=click.IntRange(min=0),
    default=DEFAULT_RATE_LIMIT_MS,
    show_default=True,
    help='Delay between requests in milliseconds'
)
@click.option(
    '--verbose', '-v',
    is_flag=True,
    help='Enable debug logging'
)
def main(url, db_path, full, since, rate_limit, verbose):
    """Incrementally crawl a Discourse forum into a local database."""
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format=LOG_FORMAT)
    if verbose:
        logger.debug("Verbose logging enabled")

    if since:
        logger.info("Crawling content since %s", since.strftime('%Y-%m-%d'))
    logger.info("Rate limit set to %d ms", rate_limit)
    if full:
        logger.info("Performing full crawl (ignoring previous crawled state)")
    else:
        logger.info("Performing incremental crawl from timestamp last crawled")

    options = CrawlerOptions(full_crawl=full, since_date=since, rate_limit_ms=rate_limit)

    try:
        asyncio.run(_crawl(url, db_path, options))
    except CrawlerError as e:
        logger.error("Crawling failed: %s", e)
        sys.exit(1)


async def _crawl(url: str, db_path: str, options: CrawlerOptions):
    """Async crawling implementation."""
    crawler = DiscourseCrawler.create(url, db_path, options)
    try:
        await crawler.crawl()
    finally:
        await crawler.close()


if __name__ == '__main__':
    main()
