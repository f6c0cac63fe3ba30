"""Garmin Connect integration server: token lifecycle, backfill and push ingestion."""

__version__ = "0.1.0"
