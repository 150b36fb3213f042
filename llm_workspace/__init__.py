"""Local retrieval-augmented assistant with permission-gated tools, served over a Unix socket."""

__version__ = "0.1.0"
