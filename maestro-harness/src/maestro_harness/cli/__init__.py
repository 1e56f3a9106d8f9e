"""Command line entry points (`python -m maestro_harness.cli.<name>`)."""
