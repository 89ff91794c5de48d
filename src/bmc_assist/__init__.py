"""BMC Assist: streaming AI suggestions for the Business Model Canvas editor."""

__version__ = "0.1.0"
