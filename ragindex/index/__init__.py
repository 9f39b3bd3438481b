"""Index bundles, lexical scoring, filtering and the named index manager."""
