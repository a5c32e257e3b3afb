"""cc-logdb: index Claude Code transcripts into SQLite for keyword and semantic search."""

__version__ = "0.1.0"
