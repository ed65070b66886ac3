"""taskwatch command-line interface."""
