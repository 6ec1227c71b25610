"""Typer sub-applications for the `clademap` CLI."""
