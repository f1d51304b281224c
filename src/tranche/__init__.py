"""tranche: sharded test execution and coverage aggregation for CI."""

__version__ = "0.3.0"
