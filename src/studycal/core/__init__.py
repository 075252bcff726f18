"""Cross-cutting infrastructure: logging, metrics, tracing, and locks."""
