"""Market microstructure analytics: volume profile, auction context, order-book events."""

__version__ = "0.1.0"
