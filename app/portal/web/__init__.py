"""Framework-level web helpers: template registry, view-model checks, SSE."""
