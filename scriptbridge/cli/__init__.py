"""CLI module for scriptbridge."""
