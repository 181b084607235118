"""LinkTrust agent: trust verdicts for hyperlinks before a user follows them."""

__version__ = "0.1.0"
