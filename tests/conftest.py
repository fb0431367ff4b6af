import os

# Keep test runs from exporting spans or instrumenting libraries
os.environ.setdefault("DISABLE_TELEMETRY", "true")
