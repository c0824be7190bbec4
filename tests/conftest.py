import os

# Tests build and tear the app down repeatedly; keep tracing out of the way.
os.environ.setdefault("PS_OTEL_ENABLED", "false")
