"""qbank-ingest command line interface."""
