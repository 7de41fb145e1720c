"""Settings, error taxonomy and logging setup shared by all modules."""
