"""PageClick -- an agent loop that drives a live web page from model tool calls."""

__version__ = "0.3.0"
