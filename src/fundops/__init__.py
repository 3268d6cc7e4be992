"""FundOps — commission and settlement engine for fund distributions."""

__version__ = "0.1.0"
