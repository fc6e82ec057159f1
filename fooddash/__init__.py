"""Driver assignment and commission settlement core."""

__version__ = "0.1.0"
