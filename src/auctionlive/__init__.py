"""auctionlive - live auction state aggregation over a change-data-capture feed."""

__version__ = "0.1.0"
