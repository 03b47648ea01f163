"""Output sinks for crawled records."""
