"""Client core for the lending protocol: PDAs, instruction building, state reads and bootstrap."""

__version__ = "0.1.0"
