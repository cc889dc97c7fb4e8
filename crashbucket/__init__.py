"""crashbucket: crash ingestion and grouping engine."""
