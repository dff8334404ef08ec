"""Read-only performance telemetry for the scrape job engine."""
