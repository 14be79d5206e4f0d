"""Subcommands that summarize an annotated dependency graph."""
