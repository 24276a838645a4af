# Config module - re-exports for convenience
#
#   AppConfig          - source + destination + migration settings
#   load_config        - flags > file > env > defaults
#
from .config import (  # noqa: F401
    AppConfig,
    DestinationConfig,
    MigrationSettings,
    SourceConfig,
    load_config,
    validate_config,
)
