"""Infrastructure helpers: settings, logging setup and statement metrics."""
