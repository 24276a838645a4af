"""
influx-migrate
==============
Copies time-series data from InfluxDB 2.x to InfluxDB 3.x in bounded batches,
survives interruption through durable checkpoints and verifies completeness
afterwards.

Usage:
    influx-migrate migrate --start-time -30d

Or as a module:
    python -m influx_migrate migrate --start-time -30d

Environment Variables:
    INFLUX_2X_HOST, INFLUX_2X_PORT, INFLUX_2X_TOKEN, INFLUX_2X_ORG, INFLUX_2X_BUCKET
    INFLUX_3X_HOST, INFLUX_3X_PORT, INFLUX_3X_TOKEN, INFLUX_3X_DATABASE
    MIGRATION_BATCH_SIZE, MIGRATION_CHECKPOINT_INTERVAL, MIGRATION_CHECKPOINT_PATH,
    MIGRATION_VERIFY, MIGRATION_REQUEST_TIMEOUT, MIGRATION_WRITE_CONCURRENCY
"""

__version__ = "1.0.0"
__all__ = ["cli", "config", "migration"]
