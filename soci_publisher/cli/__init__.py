"""soci-publisher CLI: one Typer command that runs the pipeline once.

Output uses Rich; logs go to stderr through ``RichHandler``.
"""
