"""Identity aggregation, merges and best-shot rendering."""
