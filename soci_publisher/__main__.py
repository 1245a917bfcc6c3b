"""Allows ``python -m soci_publisher``."""

from soci_publisher.cli.app import main

main()
