"""Incremental SharePoint crawl and change reconciliation."""

__version__ = "0.1.0"
