"""Document store, schema and error types."""
