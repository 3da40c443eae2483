"""Q-Analytics: correlation, factor extraction and interactive rotation for Q-sort studies."""

__version__ = "0.4.0"
