"""Contract co-signing coordinator: store, ingestion, approval, export."""
