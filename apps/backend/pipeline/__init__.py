"""
Post-scrape job pipeline.

Deduplication, ingestion into Postgres, liveness checks, ghost-job scoring
and notification events, plus DiscoveryRun which wires them to the scraper
engine.
"""

__version__ = "0.1.0"
