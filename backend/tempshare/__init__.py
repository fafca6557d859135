"""tempshare: chunked, expiring, token-gated file sharing."""

__version__ = "0.1.0"
