"""Infrastructure for clinical-import: settings, configuration and logging."""
