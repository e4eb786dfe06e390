"""Head-lag probe for blockchain data aggregators."""

__version__ = "1.0.0"
