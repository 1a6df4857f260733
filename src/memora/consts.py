VERSION = "0.3.0"

# Bumped whenever the mirror's SQLite schema changes shape.
MIRROR_SCHEMA_VERSION = 3
