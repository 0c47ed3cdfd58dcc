"""Live market trade feed with historical backfill reconciliation."""

from tradefeed.live import FeedConfig, TradeFeed

__version__ = "0.1.0"

__all__ = ["FeedConfig", "TradeFeed", "__version__"]
